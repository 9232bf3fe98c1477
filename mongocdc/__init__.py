"""mongocdc: MongoDB change stream consumer with handler dispatch and reconnection."""

__version__ = "0.1.0"
