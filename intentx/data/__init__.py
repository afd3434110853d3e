"""Data layer - intent stores."""

from intentx.data.memory import InMemoryIntentStore
from intentx.data.storage import SqlIntentStore, create_db_engine
from intentx.data.store import IntentStore

__all__ = ["IntentStore", "InMemoryIntentStore", "SqlIntentStore", "create_db_engine"]
