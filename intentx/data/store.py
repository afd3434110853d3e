"""Intent store interface."""

from abc import ABC, abstractmethod

from intentx.execution.intents import Intent, IntentStatus, Mutation


class IntentStore(ABC):
    """Concurrency-safe keyed storage of intents.

    Implementations return detached copies; the only way to change a stored
    intent is `compare_and_transition`.
    """

    @abstractmethod
    def put(self, intent: Intent) -> Intent:
        """Insert a new intent.

        Raises:
            DuplicateId: If the id already exists.
            DuplicateIntent: If the fingerprint already exists.
        """

    @abstractmethod
    def get(self, intent_id: str) -> Intent:
        """Return the intent.

        Raises:
            NotFound: If no such intent exists.
        """

    @abstractmethod
    def list_by_user(self, user_address: str) -> list[Intent]:
        """All intents of a user, most recent first."""

    @abstractmethod
    def list_by_status(self, status: IntentStatus) -> list[Intent]:
        """Intents in the given status, oldest first."""

    @abstractmethod
    def list_all(self) -> list[Intent]:
        """Every intent, most recent first."""

    @abstractmethod
    def compare_and_transition(
        self, intent_id: str, expected_status: IntentStatus, mutation: Mutation
    ) -> Intent:
        """Atomically apply `mutation` if the current status is `expected_status`.

        Two concurrent calls against the same id are linearized: exactly one
        observes `expected_status`.

        Raises:
            NotFound: If no such intent exists.
            StaleState: If the status differs or the mutation is illegal.
        """

    def list_pending(self) -> list[Intent]:
        """PENDING intents, oldest first (FIFO for the scheduler)."""
        return self.list_by_status(IntentStatus.PENDING)

    def close(self) -> None:
        """Release resources held by the store."""
