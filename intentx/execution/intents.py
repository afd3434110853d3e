"""Swap intent model and lifecycle vocabulary."""

import copy
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from intentx.errors import StaleState, ValidationError

MAX_SLIPPAGE_BPS = 10_000
AMOUNT_QUANTUM = Decimal("1e-18")


class IntentStatus(str, Enum):
    """Intent status values."""

    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {IntentStatus.EXECUTED, IntentStatus.CANCELLED, IntentStatus.FAILED}
)

# Allowed edges. EXECUTING -> PENDING is the retry edge; EXECUTING -> EXECUTING
# records settlement bookkeeping on a claimed intent.
TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset({IntentStatus.EXECUTING, IntentStatus.CANCELLED}),
    IntentStatus.EXECUTING: frozenset(
        {
            IntentStatus.EXECUTING,
            IntentStatus.PENDING,
            IntentStatus.EXECUTED,
            IntentStatus.FAILED,
        }
    ),
    IntentStatus.EXECUTED: frozenset(),
    IntentStatus.CANCELLED: frozenset(),
    IntentStatus.FAILED: frozenset(),
}


class FailureReason(str, Enum):
    """Why an execution attempt was rejected."""

    INSUFFICIENT_OUTPUT = "INSUFFICIENT_OUTPUT"
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"
    QUOTE_ERROR = "QUOTE_ERROR"
    SETTLEMENT_ERROR = "SETTLEMENT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def is_retryable(self) -> bool:
        return self is not FailureReason.SETTLEMENT_ERROR


def parse_amount(value: Any, field_name: str) -> Decimal:
    """Parse a positive decimal amount from user input."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} is not a decimal number: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if amount <= 0:
        raise ValidationError(f"{field_name} must be positive, got {amount}")
    if amount.as_tuple().exponent < -18:
        raise ValidationError(f"{field_name} has more than 18 decimals")
    return amount


def format_amount(amount: Decimal | None) -> str | None:
    """Render an amount without exponent or trailing zeros."""
    if amount is None:
        return None
    return format(amount.normalize(), "f")


@dataclass(frozen=True)
class IntentRequest:
    """Fields a client signs when submitting a swap intent."""

    source_token: str
    target_token: str
    source_amount: Decimal
    min_target_amount: Decimal
    slippage_bps: int
    user_address: str
    timestamp: int  # ms since epoch, part of the signed message

    def validate(self) -> None:
        """Check field bounds.

        Raises:
            ValidationError: When any field is missing or out of bounds.
        """
        if not self.source_token or not self.target_token:
            raise ValidationError("sourceToken and targetToken are required")
        if self.source_token == self.target_token:
            raise ValidationError("sourceToken and targetToken must differ")
        if not self.user_address:
            raise ValidationError("userAddress is required")
        parse_amount(self.source_amount, "sourceAmount")
        parse_amount(self.min_target_amount, "minTargetAmount")
        if isinstance(self.slippage_bps, bool) or not isinstance(self.slippage_bps, int):
            raise ValidationError("slippageBps must be an integer")
        if not 0 <= self.slippage_bps <= MAX_SLIPPAGE_BPS:
            raise ValidationError(
                f"slippageBps must be between 0 and {MAX_SLIPPAGE_BPS}, got {self.slippage_bps}"
            )
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int) or self.timestamp <= 0:
            raise ValidationError("timestamp must be a positive integer (ms since epoch)")

    def canonical_message(self) -> str:
        """Deterministic message the client signs.

        Covers every field chosen at submission plus the signing time, so a
        replay with altered fields recovers a different signer.
        """
        payload = {
            "action": "createIntent",
            "sourceToken": self.source_token,
            "targetToken": self.target_token,
            "sourceAmount": format_amount(Decimal(self.source_amount)),
            "minTargetAmount": format_amount(Decimal(self.min_target_amount)),
            "slippageBps": self.slippage_bps,
            "timestamp": self.timestamp,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def fingerprint_intent(canonical_message: str, signer: str) -> str:
    """Compute deterministic fingerprint for replay deduplication."""
    base = "|".join([signer.lower(), canonical_message])
    return hashlib.sha1(base.encode("utf-8")).hexdigest()


@dataclass
class Mutation:
    """Changes applied by a compare-and-transition.

    None means "leave unchanged".
    """

    status: IntentStatus | None = None
    executed_amount: Decimal | None = None
    executed_at: datetime | None = None
    settlement_ref: str | None = None
    increment_attempts: bool = False
    failure_reason: FailureReason | None = None
    last_error: str | None = None
    quoted_amount: Decimal | None = None
    route: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        """Fields to overwrite (attempt counting is handled separately)."""
        return {
            k: v
            for k, v in self.__dict__.items()
            if v is not None and k != "increment_attempts"
        }

    def check(self, intent: "Intent") -> None:
        """Validate this mutation against the current record.

        Raises:
            StaleState: On an illegal edge or an overwrite of a write-once field.
        """
        if self.status is not None and self.status not in TRANSITIONS[intent.status]:
            raise StaleState(
                f"Illegal transition {intent.status.value} -> {self.status.value}",
                current_status=intent.status.value,
            )
        for name in ("executed_amount", "settlement_ref", "executed_at"):
            new = getattr(self, name)
            old = getattr(intent, name)
            if new is not None and old is not None and new != old:
                raise StaleState(f"{name} is already set on intent {intent.intent_id}")
        target = self.status or intent.status
        if self.executed_amount is not None and target != IntentStatus.EXECUTED:
            raise StaleState("executed_amount may only be set when entering EXECUTED")
        if (
            target == IntentStatus.EXECUTED
            and self.executed_amount is None
            and intent.executed_amount is None
        ):
            raise StaleState("EXECUTED requires executed_amount")


class Intent:
    """A user's signed request to swap tokens."""

    def __init__(
        self,
        intent_id: str,
        user_address: str,
        source_token: str,
        target_token: str,
        source_amount: Decimal,
        min_target_amount: Decimal,
        slippage_bps: int,
        signature: str = "",
        signed_at: int | None = None,
        fingerprint: str | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """Initialize a PENDING intent.

        Args:
            intent_id: Unique intent identifier.
            user_address: Owner (recovered signer).
            source_token: Token offered.
            target_token: Token requested.
            source_amount: Amount offered.
            min_target_amount: Minimum acceptable output.
            slippage_bps: Tolerance in basis points.
            signature: Signature the intent was admitted with.
            signed_at: Client signing time (ms since epoch).
            fingerprint: Replay-deduplication fingerprint.
            created_at: Admission time.
        """
        self.intent_id = intent_id
        self.user_address = user_address
        self.source_token = source_token
        self.target_token = target_token
        self.source_amount = source_amount
        self.min_target_amount = min_target_amount
        self.slippage_bps = slippage_bps
        self.signature = signature
        self.signed_at = signed_at
        self.fingerprint = fingerprint
        self.status = IntentStatus.PENDING
        self.created_at = created_at or datetime.utcnow()
        self.executed_at: datetime | None = None
        self.executed_amount: Decimal | None = None
        self.settlement_ref: str | None = None
        self.attempts = 0
        self.failure_reason: FailureReason | None = None
        self.last_error: str | None = None
        self.quoted_amount: Decimal | None = None
        self.route: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def apply(self, mutation: Mutation) -> None:
        """Apply a checked mutation in place."""
        mutation.check(self)
        for name, value in mutation.changes().items():
            setattr(self, name, value)
        if mutation.increment_attempts:
            self.attempts += 1

    def copy(self) -> "Intent":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape served to clients."""
        return {
            "id": self.intent_id,
            "userAddress": self.user_address,
            "sourceToken": self.source_token,
            "targetToken": self.target_token,
            "sourceAmount": format_amount(self.source_amount),
            "minTargetAmount": format_amount(self.min_target_amount),
            "slippageBps": self.slippage_bps,
            "slippage": self.slippage_bps / 100,
            "status": self.status.value,
            "executedAmount": format_amount(self.executed_amount),
            "createdAt": self.created_at.isoformat(),
            "executedAt": self.executed_at.isoformat() if self.executed_at else None,
            "settlementRef": self.settlement_ref,
            "signature": self.signature,
            "attempts": self.attempts,
            "failureReason": self.failure_reason.value if self.failure_reason else None,
            "lastError": self.last_error,
            "route": self.route,
        }

    def __repr__(self) -> str:
        return f"Intent({self.intent_id[:8]}, {self.status.value}, {self.user_address})"
