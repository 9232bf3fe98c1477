"""Shared fixtures."""

import pytest

from fakes import FakeCollection
from mongocdc.config import settings as settings_module
from mongocdc.connectors.cdc import CDCConfig, ChangeStreamWatcher


@pytest.fixture
def collection():
    """Fake collection; tests push streams onto ``collection.streams``."""
    return FakeCollection(name="users")


@pytest.fixture
def make_watcher(collection):
    """Build watchers against the fake collection and stop them on teardown."""
    created = []

    def factory(config=None, **kwargs):
        watcher = ChangeStreamWatcher(
            kwargs.pop("collection", collection),
            config or CDCConfig(reconnect_delay=0.01),
            **kwargs
        )
        created.append(watcher)
        return watcher

    yield factory

    for watcher in created:
        watcher.shutdown()


@pytest.fixture
def clean_settings(monkeypatch):
    """Drop the cached settings singleton before and after the test."""
    monkeypatch.setattr(settings_module, "_settings", None)
    yield
    settings_module._settings = None
