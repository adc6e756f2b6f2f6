"""Durable storage for lead contexts, graphs, wakes and leases."""

from leadflow.storage.backend import DurableStore, WakeEntry
from leadflow.storage.file_store import FileStore
from leadflow.storage.memory import InMemoryStore

__all__ = ["DurableStore", "FileStore", "InMemoryStore", "WakeEntry"]
