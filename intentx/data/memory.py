"""In-memory intent store for tests and demo mode."""

import itertools
import threading

from intentx.data.store import IntentStore
from intentx.errors import DuplicateId, DuplicateIntent, NotFound, StaleState
from intentx.execution.intents import Intent, IntentStatus, Mutation


class InMemoryIntentStore(IntentStore):
    """Dict-backed store guarded by a single global lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._intents: dict[str, Intent] = {}
        self._fingerprints: dict[str, str] = {}
        # Insertion sequence breaks created_at ties.
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()

    def _sort_key(self, intent: Intent) -> tuple:
        return (intent.created_at, self._seq[intent.intent_id])

    def put(self, intent: Intent) -> Intent:
        with self._lock:
            if intent.intent_id in self._intents:
                raise DuplicateId(f"Intent id already exists: {intent.intent_id}")
            if intent.fingerprint and intent.fingerprint in self._fingerprints:
                raise DuplicateIntent(
                    f"Signed payload already admitted as {self._fingerprints[intent.fingerprint]}"
                )
            stored = intent.copy()
            self._intents[stored.intent_id] = stored
            self._seq[stored.intent_id] = next(self._counter)
            if stored.fingerprint:
                self._fingerprints[stored.fingerprint] = stored.intent_id
            return stored.copy()

    def get(self, intent_id: str) -> Intent:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise NotFound(f"Intent not found: {intent_id}")
            return intent.copy()

    def list_by_user(self, user_address: str) -> list[Intent]:
        needle = user_address.lower()
        with self._lock:
            rows = [i for i in self._intents.values() if i.user_address.lower() == needle]
            rows.sort(key=self._sort_key, reverse=True)
            return [i.copy() for i in rows]

    def list_by_status(self, status: IntentStatus) -> list[Intent]:
        with self._lock:
            rows = [i for i in self._intents.values() if i.status == status]
            rows.sort(key=self._sort_key)
            return [i.copy() for i in rows]

    def list_all(self) -> list[Intent]:
        with self._lock:
            rows = sorted(self._intents.values(), key=self._sort_key, reverse=True)
            return [i.copy() for i in rows]

    def compare_and_transition(
        self, intent_id: str, expected_status: IntentStatus, mutation: Mutation
    ) -> Intent:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise NotFound(f"Intent not found: {intent_id}")
            if intent.status != expected_status:
                raise StaleState(
                    f"Intent {intent_id} is {intent.status.value}, expected {expected_status.value}",
                    current_status=intent.status.value,
                )
            updated = intent.copy()
            updated.apply(mutation)
            self._intents[intent_id] = updated
            return updated.copy()
