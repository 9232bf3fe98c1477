#!/usr/bin/env python3
"""
CDC Data Generator - Continuously inserts, updates, replaces and deletes
user documents so a running watcher has something to consume.
"""

import random
import time
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pymongo

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


FIRST_NAMES = ["Asha", "Bruno", "Chen", "Dana", "Emeka", "Farah", "Goran", "Hana"]
DOMAINS = ["example.com", "mail.test", "corp.local"]
ROLES = ["admin", "editor", "viewer"]


class CDCDataGenerator:
    """Generate continuous data changes for CDC testing."""

    def __init__(
        self,
        mongo_uri: str,
        database: str = "testdb",
        collection: str = "users",
        operations_per_second: float = 1.0
    ):
        """
        Initialize data generator.

        Args:
            mongo_uri: MongoDB connection URI
            database: Database name
            collection: Collection name
            operations_per_second: Target operations per second
        """
        self.ops_per_sec = operations_per_second

        self.client = pymongo.MongoClient(mongo_uri, serverSelectionTimeoutMS=5000)
        self.collection = self.client[database][collection]
        self.client.admin.command('ping')
        logger.info(f"Connected to MongoDB: {database}.{collection}")

        self.stats = {
            'insert': 0,
            'update': 0,
            'replace': 0,
            'delete': 0,
            'skipped': 0,
            'start_time': None
        }

    def generate_user_doc(self) -> Dict[str, Any]:
        """Generate a random user document."""
        name = random.choice(FIRST_NAMES)
        now = datetime.now(timezone.utc)
        return {
            "name": name,
            "email": f"{name.lower()}.{random.randint(100, 999)}@{random.choice(DOMAINS)}",
            "role": random.choice(ROLES),
            "created_at": now,
            "updated_at": now,
        }

    def _random_id(self) -> Optional[Any]:
        sample = list(self.collection.aggregate([{"$sample": {"size": 1}}, {"$project": {"_id": 1}}]))
        return sample[0]["_id"] if sample else None

    def insert_user(self) -> None:
        result = self.collection.insert_one(self.generate_user_doc())
        self.stats['insert'] += 1
        logger.info(f"INSERT: _id={result.inserted_id}")

    def update_user(self) -> None:
        doc_id = self._random_id()
        if doc_id is None:
            self.stats['skipped'] += 1
            return
        update = {"$set": {"role": random.choice(ROLES), "updated_at": datetime.now(timezone.utc)}}
        if random.random() < 0.3:
            update["$unset"] = {"email": ""}
        self.collection.update_one({"_id": doc_id}, update)
        self.stats['update'] += 1
        logger.info(f"UPDATE: _id={doc_id}")

    def replace_user(self) -> None:
        doc_id = self._random_id()
        if doc_id is None:
            self.stats['skipped'] += 1
            return
        self.collection.replace_one({"_id": doc_id}, self.generate_user_doc())
        self.stats['replace'] += 1
        logger.info(f"REPLACE: _id={doc_id}")

    def delete_user(self) -> None:
        doc_id = self._random_id()
        if doc_id is None:
            self.stats['skipped'] += 1
            return
        self.collection.delete_one({"_id": doc_id})
        self.stats['delete'] += 1
        logger.info(f"DELETE: _id={doc_id}")

    def run_continuous(self, duration_seconds: int = 300, operation_weights: Optional[Dict[str, float]] = None):
        """
        Run continuous data generation.

        Args:
            duration_seconds: How long to run (0 = infinite)
            operation_weights: Weights for insert/update/replace/delete
        """
        operation_weights = operation_weights or {'insert': 0.5, 'update': 0.3, 'replace': 0.1, 'delete': 0.1}
        operations = {
            'insert': self.insert_user,
            'update': self.update_user,
            'replace': self.replace_user,
            'delete': self.delete_user,
        }
        names = list(operation_weights)
        weights = [operation_weights[n] for n in names]

        self.stats['start_time'] = time.time()
        logger.info(f"Starting CDC data generator for {duration_seconds}s (or Ctrl+C to stop)")

        interval = 1.0 / self.ops_per_sec
        end_time = time.time() + duration_seconds if duration_seconds > 0 else None

        try:
            while end_time is None or time.time() < end_time:
                operations[random.choices(names, weights=weights)[0]]()
                time.sleep(interval)
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.print_stats()
            self.client.close()

    def print_stats(self):
        """Print operation statistics."""
        duration = time.time() - self.stats['start_time'] if self.stats['start_time'] else 0
        total_ops = sum(self.stats[k] for k in ('insert', 'update', 'replace', 'delete'))
        logger.info(
            f"Duration: {duration:.1f}s, operations: {total_ops} "
            f"(insert={self.stats['insert']}, update={self.stats['update']}, "
            f"replace={self.stats['replace']}, delete={self.stats['delete']}, "
            f"skipped={self.stats['skipped']})"
        )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="CDC Data Generator for MongoDB")
    parser.add_argument(
        "--mongo-uri",
        default=os.getenv("MONGO_URI", "mongodb://localhost:27017/?replicaSet=rs0"),
        help="MongoDB connection URI"
    )
    parser.add_argument("--database", default=os.getenv("MONGO_DATABASE", "testdb"), help="Database name")
    parser.add_argument("--collection", default=os.getenv("MONGO_COLLECTION", "users"), help="Collection name")
    parser.add_argument("--ops-per-sec", type=float, default=1.0, help="Operations per second")
    parser.add_argument("--duration", type=int, default=300, help="Duration in seconds (0 = infinite)")
    args = parser.parse_args()

    generator = CDCDataGenerator(
        mongo_uri=args.mongo_uri,
        database=args.database,
        collection=args.collection,
        operations_per_second=args.ops_per_sec
    )
    generator.run_continuous(duration_seconds=args.duration)


if __name__ == "__main__":
    main()
