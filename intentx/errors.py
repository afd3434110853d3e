"""Error taxonomy for intent admission, storage and execution."""


class IntentError(Exception):
    """Base class for all intent errors.

    `http_status` is the status the API surfaces for this error.
    """

    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def name(self) -> str:
        return self.__class__.__name__


class ValidationError(IntentError):
    """Malformed or out-of-bounds request. Not retryable."""

    http_status = 400


class InvalidSignature(IntentError):
    """Signature is malformed or does not recover to any signer."""

    http_status = 400


class SignatureMismatch(IntentError):
    """Signature does not prove ownership of the claimed address."""

    http_status = 400


class OwnerMismatch(SignatureMismatch):
    """Signature is valid but was produced by a different address."""

    http_status = 403


class Forbidden(IntentError):
    """Requester is not the owner of the intent."""

    http_status = 403


class NotFound(IntentError):
    """Unknown intent id."""

    http_status = 404


class DuplicateId(IntentError):
    """An intent with this id already exists."""

    http_status = 409


class DuplicateIntent(IntentError):
    """The same signed payload was already admitted (replay)."""

    http_status = 409


class StaleState(IntentError):
    """Compare-and-transition observed a status other than the expected one."""

    http_status = 409

    def __init__(self, message: str = "", current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class NotCancellable(IntentError):
    """Cancel requested for an intent that has left PENDING."""

    http_status = 400


class QuoteError(IntentError):
    """Quote source failed or timed out."""

    http_status = 502


class SettlementError(IntentError):
    """Settlement collaborator failed or timed out."""

    http_status = 502
