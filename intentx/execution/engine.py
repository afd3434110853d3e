"""Intent lifecycle engine: admission, cancellation and at-most-once execution.

Every state change goes through `IntentStore.compare_and_transition`, so the
engine holds no locks of its own. The PENDING -> EXECUTING claim is the single
serialization point between the scheduler, concurrent sweeps and user
cancellations.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, localcontext
from enum import Enum
from typing import Any, Callable

from intentx.data.store import IntentStore
from intentx.errors import (
    Forbidden,
    InvalidSignature,
    NotCancellable,
    OwnerMismatch,
    QuoteError,
    SignatureMismatch,
    StaleState,
    ValidationError,
)
from intentx.execution.intents import (
    AMOUNT_QUANTUM,
    FailureReason,
    Intent,
    IntentRequest,
    IntentStatus,
    Mutation,
    fingerprint_intent,
    format_amount,
    parse_amount,
)
from intentx.execution.quotes import Quote, QuoteSource
from intentx.execution.settlement import SettlementClient
from intentx.execution.signatures import SignatureVerifier
from intentx.services.analytics import IntentAnalytics, summarize_intents

logger = logging.getLogger(__name__)

BPS = Decimal(10_000)
EPOCH = datetime(1970, 1, 1)


class ExecutionOutcome(str, Enum):
    """Result of one `attempt_execution` call."""

    EXECUTED = "executed"
    RETRY = "retry"
    FAILED = "failed"
    ALREADY_HANDLED = "already_handled"


@dataclass
class ExecutionResult:
    """Outcome plus the intent as left by the call."""

    outcome: ExecutionOutcome
    intent: Intent
    reason: FailureReason | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "intent": self.intent.to_dict(),
        }


def executed_amount_for(quote: Quote) -> Decimal:
    """Output realized by a quote after price impact, rounded down to 18 decimals."""
    with localcontext() as ctx:
        ctx.prec = 60
        estimated = Decimal(quote.estimated_output)
        impact = Decimal(quote.price_impact_bps) / BPS
        return (estimated * (1 - impact)).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


class IntentLifecycleEngine:
    """Drives intents through PENDING -> EXECUTING -> EXECUTED/FAILED and PENDING -> CANCELLED."""

    def __init__(
        self,
        store: IntentStore,
        verifier: SignatureVerifier,
        quote_source: QuoteSource,
        settlement: SettlementClient | None = None,
        max_execution_attempts: int = 5,
        quote_timeout_seconds: float = 5.0,
        settlement_timeout_seconds: float = 30.0,
        signature_max_age_seconds: int = 300,
        signature_max_skew_seconds: int = 60,
        finalize_attempts: int = 3,
        finalize_retry_delay_seconds: float = 0.5,
        clock: Callable[[], datetime] = datetime.utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        """Initialize engine.

        Args:
            store: Intent store (sole shared state).
            verifier: Signature verifier.
            quote_source: Quote source consulted on every attempt.
            settlement: Optional settlement collaborator.
            max_execution_attempts: Claims per intent before market rejections become FAILED.
            quote_timeout_seconds: Bound for a single quote call.
            settlement_timeout_seconds: Bound for a single settlement call.
            signature_max_age_seconds: Oldest accepted signing time.
            signature_max_skew_seconds: Furthest accepted future signing time.
            finalize_attempts: Store writes tried when recording a settled intent.
            finalize_retry_delay_seconds: Base backoff between those writes.
            clock: Naive-UTC clock.
            id_factory: Intent id generator.
        """
        if max_execution_attempts < 1:
            raise ValueError("max_execution_attempts must be at least 1")
        self.store = store
        self.verifier = verifier
        self.quote_source = quote_source
        self.settlement = settlement
        self.max_execution_attempts = max_execution_attempts
        self.quote_timeout_seconds = quote_timeout_seconds
        self.settlement_timeout_seconds = settlement_timeout_seconds
        self.signature_max_age_seconds = signature_max_age_seconds
        self.signature_max_skew_seconds = signature_max_skew_seconds
        self.finalize_attempts = max(1, finalize_attempts)
        self.finalize_retry_delay_seconds = finalize_retry_delay_seconds
        self.clock = clock
        self.id_factory = id_factory

    # ------------------------------------------------------------------
    # Admission and cancellation
    # ------------------------------------------------------------------

    def _now_ms(self) -> int:
        return int((self.clock() - EPOCH).total_seconds() * 1000)

    def _check_freshness(self, timestamp_ms: int) -> None:
        age_ms = self._now_ms() - timestamp_ms
        if age_ms > self.signature_max_age_seconds * 1000:
            raise ValidationError(
                f"Signed request expired ({age_ms // 1000}s old, max {self.signature_max_age_seconds}s)"
            )
        if -age_ms > self.signature_max_skew_seconds * 1000:
            raise ValidationError("Signed request timestamp is in the future")

    def admit(self, request: IntentRequest, signature: str) -> Intent:
        """Validate, verify and store a new PENDING intent.

        Args:
            request: Signed request fields.
            signature: Signature over `request.canonical_message()`.

        Returns:
            The stored intent.

        Raises:
            ValidationError: Bad bounds or a stale/future timestamp.
            SignatureMismatch: Signature does not recover (400).
            OwnerMismatch: Signature recovers to another address (403).
            DuplicateId: Id collision.
            DuplicateIntent: The same signed payload was already admitted.
        """
        request.validate()
        self._check_freshness(request.timestamp)

        message = request.canonical_message()
        try:
            signer = self.verifier.verify(message, signature)
        except InvalidSignature as e:
            raise SignatureMismatch(f"Signature verification failed: {e.message}") from e

        if signer.lower() != request.user_address.lower():
            raise OwnerMismatch(
                f"Signature was produced by {signer}, not {request.user_address}"
            )

        intent = Intent(
            intent_id=self.id_factory(),
            user_address=signer,
            source_token=request.source_token,
            target_token=request.target_token,
            source_amount=parse_amount(request.source_amount, "sourceAmount"),
            min_target_amount=parse_amount(request.min_target_amount, "minTargetAmount"),
            slippage_bps=request.slippage_bps,
            signature=signature,
            signed_at=request.timestamp,
            fingerprint=fingerprint_intent(message, signer),
            created_at=self.clock(),
        )
        stored = self.store.put(intent)

        logger.info(
            f"Admitted intent {stored.intent_id[:8]}: {format_amount(stored.source_amount)} "
            f"{stored.source_token} -> >= {format_amount(stored.min_target_amount)} {stored.target_token}",
            extra={"intent_id": stored.intent_id, "user_address": stored.user_address},
        )
        return stored

    def cancel(self, intent_id: str, requester: str) -> Intent:
        """Cancel a PENDING intent on behalf of its owner.

        Raises:
            NotFound: Unknown id.
            Forbidden: Requester is not the owner.
            NotCancellable: Intent already left PENDING.
        """
        intent = self.store.get(intent_id)
        if not requester or requester.lower() != intent.user_address.lower():
            raise Forbidden(f"{requester or 'anonymous'} does not own intent {intent_id}")
        if intent.is_terminal:
            raise NotCancellable(
                f"Intent {intent_id} cannot be cancelled (status: {intent.status.value})"
            )

        try:
            cancelled = self.store.compare_and_transition(
                intent_id,
                IntentStatus.PENDING,
                Mutation(status=IntentStatus.CANCELLED, executed_at=self.clock()),
            )
        except StaleState as e:
            raise NotCancellable(
                f"Intent {intent_id} cannot be cancelled (status: {e.current_status or 'changed'})"
            ) from e

        logger.info(
            f"Cancelled intent {intent_id[:8]}",
            extra={"intent_id": intent_id, "user_address": cancelled.user_address},
        )
        return cancelled

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def attempt_execution(self, intent_id: str) -> ExecutionResult:
        """Try to execute one intent.

        Returns ALREADY_HANDLED when the intent is no longer PENDING. A claim
        abandoned before settlement starts goes back to PENDING, or to FAILED
        once the budget is spent. After settlement starts the intent is never
        released: it ends EXECUTED or FAILED, or stays EXECUTING for
        `recover()` when the store cannot record the outcome.

        Raises:
            NotFound: Unknown id.
        """
        try:
            claimed = self.store.compare_and_transition(
                intent_id,
                IntentStatus.PENDING,
                Mutation(status=IntentStatus.EXECUTING, increment_attempts=True),
            )
        except StaleState as e:
            logger.debug(f"Intent {intent_id[:8]} already handled: {e.message}")
            return ExecutionResult(
                ExecutionOutcome.ALREADY_HANDLED, self.store.get(intent_id), message=e.message
            )

        settling = False
        try:
            checked = await self._quote_and_check(claimed)
            if isinstance(checked, ExecutionResult):
                return checked
            executed_amount, route = checked

            if self.settlement is None:
                return self._finalize(claimed, executed_amount, route)

            intent = self.store.compare_and_transition(
                intent_id,
                IntentStatus.EXECUTING,
                Mutation(quoted_amount=executed_amount, route=route),
            )
            settling = True
            return await self._settle(intent, executed_amount, route)
        except (Exception, asyncio.CancelledError) as e:
            if settling:
                logger.error(
                    f"Intent {intent_id[:8]} aborted after settlement started, "
                    f"not released: {e!r}",
                    extra={"intent_id": intent_id},
                )
            else:
                self._release_after_error(claimed, e)
            raise

    async def _fetch_quote(self, intent: Intent) -> Quote:
        """Quote the claimed swap.

        Raises:
            QuoteError: The source failed, timed out or returned an unusable output.
        """
        try:
            quote = await asyncio.wait_for(
                self.quote_source.quote(
                    intent.source_token, intent.target_token, intent.source_amount
                ),
                timeout=self.quote_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise QuoteError(f"Quote timed out after {self.quote_timeout_seconds}s") from e
        except QuoteError:
            raise
        except Exception as e:
            raise QuoteError(f"Quote failed: {e}") from e

        estimated = Decimal(quote.estimated_output)
        if not estimated.is_finite() or estimated <= 0:
            raise QuoteError(f"Quote returned unusable output {estimated}")
        return quote

    async def _quote_and_check(
        self, intent: Intent
    ) -> ExecutionResult | tuple[Decimal, dict[str, Any] | None]:
        """Quote and apply the output bounds.

        Returns the rejection result, or the amount to execute and its route.
        """
        try:
            quote = await self._fetch_quote(intent)
        except QuoteError as e:
            return self._reject(intent, FailureReason.QUOTE_ERROR, e.message)

        estimated = Decimal(quote.estimated_output).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        executed_amount = executed_amount_for(quote)

        if executed_amount < intent.min_target_amount:
            return self._reject(
                intent,
                FailureReason.INSUFFICIENT_OUTPUT,
                f"Output {format_amount(executed_amount)} below minimum "
                f"{format_amount(intent.min_target_amount)}",
            )

        band = estimated * intent.slippage_bps / BPS
        drift = abs(executed_amount - estimated)
        if drift > band:
            return self._reject(
                intent,
                FailureReason.SLIPPAGE_EXCEEDED,
                f"Output drifted {format_amount(drift)} from quote, "
                f"allowed {format_amount(band)} ({intent.slippage_bps} bps)",
            )

        return executed_amount, quote.route or None

    async def _settle(
        self, intent: Intent, executed_amount: Decimal, route: dict[str, Any] | None
    ) -> ExecutionResult:
        """Settle once, then record the reference.

        A failed, timed out or interrupted settlement may still have landed,
        so it ends the intent as SETTLEMENT_ERROR instead of retrying. A
        returned reference is recorded with bounded retries.
        """
        try:
            settlement_ref = await asyncio.wait_for(
                self.settlement.settle(intent, executed_amount),
                timeout=self.settlement_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._fail(
                intent,
                FailureReason.SETTLEMENT_ERROR,
                f"Settlement timed out after {self.settlement_timeout_seconds}s",
            )
        except asyncio.CancelledError:
            self._fail(
                intent,
                FailureReason.SETTLEMENT_ERROR,
                "Settlement interrupted before reporting an outcome",
            )
            raise
        except Exception as e:
            return self._fail(intent, FailureReason.SETTLEMENT_ERROR, f"Settlement failed: {e}")

        for attempt in range(1, self.finalize_attempts + 1):
            try:
                return self._finalize(intent, executed_amount, route, settlement_ref)
            except StaleState:
                raise
            except Exception as e:
                if attempt == self.finalize_attempts:
                    raise
                logger.warning(
                    f"Recording settlement {settlement_ref} for intent {intent.intent_id[:8]} "
                    f"failed (attempt {attempt}/{self.finalize_attempts}): {e}",
                    extra={"intent_id": intent.intent_id, "settlement_ref": settlement_ref},
                )
                await asyncio.sleep(self.finalize_retry_delay_seconds * attempt)

    def _finalize(
        self,
        intent: Intent,
        executed_amount: Decimal,
        route: dict[str, Any] | None,
        settlement_ref: str | None = None,
    ) -> ExecutionResult:
        executed = self.store.compare_and_transition(
            intent.intent_id,
            IntentStatus.EXECUTING,
            Mutation(
                status=IntentStatus.EXECUTED,
                executed_amount=executed_amount,
                executed_at=self.clock(),
                settlement_ref=settlement_ref,
                route=route,
            ),
        )
        logger.info(
            f"Executed intent {executed.intent_id[:8]}: {format_amount(executed_amount)} "
            f"{executed.target_token}",
            extra={
                "intent_id": executed.intent_id,
                "executed_amount": format_amount(executed_amount),
                "settlement_ref": settlement_ref,
                "attempts": executed.attempts,
            },
        )
        return ExecutionResult(ExecutionOutcome.EXECUTED, executed)

    def _reject(self, intent: Intent, reason: FailureReason, message: str) -> ExecutionResult:
        """Rejected attempt: retry while the reason allows and the budget lasts, else fail."""
        if not reason.is_retryable or intent.attempts >= self.max_execution_attempts:
            return self._fail(intent, reason, message)

        released = self.store.compare_and_transition(
            intent.intent_id,
            IntentStatus.EXECUTING,
            Mutation(status=IntentStatus.PENDING, last_error=message),
        )
        logger.info(
            f"Intent {intent.intent_id[:8]} back to pending: {message}",
            extra={
                "intent_id": intent.intent_id,
                "reason": reason.value,
                "attempts": released.attempts,
                "max_attempts": self.max_execution_attempts,
            },
        )
        return ExecutionResult(ExecutionOutcome.RETRY, released, reason, message)

    def _fail(self, intent: Intent, reason: FailureReason, message: str) -> ExecutionResult:
        failed = self.store.compare_and_transition(
            intent.intent_id,
            IntentStatus.EXECUTING,
            Mutation(
                status=IntentStatus.FAILED,
                failure_reason=reason,
                last_error=message,
                executed_at=self.clock(),
            ),
        )
        logger.warning(
            f"Intent {intent.intent_id[:8]} failed ({reason.value}): {message}",
            extra={"intent_id": intent.intent_id, "reason": reason.value, "attempts": failed.attempts},
        )
        return ExecutionResult(ExecutionOutcome.FAILED, failed, reason, message)

    def _release_after_error(self, intent: Intent, error: BaseException) -> None:
        """Resolve a claim abandoned by an unexpected exception."""
        message = f"Unexpected error: {error!r}"
        if intent.attempts >= self.max_execution_attempts:
            mutation = Mutation(
                status=IntentStatus.FAILED,
                failure_reason=FailureReason.INTERNAL_ERROR,
                last_error=message,
                executed_at=self.clock(),
            )
        else:
            mutation = Mutation(status=IntentStatus.PENDING, last_error=message)

        try:
            self.store.compare_and_transition(intent.intent_id, IntentStatus.EXECUTING, mutation)
        except StaleState:
            logger.debug(f"Intent {intent.intent_id[:8]} already resolved after error")
            return
        logger.error(
            f"Execution of intent {intent.intent_id[:8]} aborted: {message}",
            extra={"intent_id": intent.intent_id, "to_status": mutation.status.value},
        )

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    async def recover(self) -> dict[str, int]:
        """Resolve intents left EXECUTING by a previous process.

        Must run before the scheduler starts. An intent with a settlement
        reference (recorded, or found by the settlement collaborator) is
        finalized with its recorded quoted amount; any other claim goes back
        to PENDING. Lookups that fail leave the intent for the next run.

        Returns:
            Counts of finalized, released and unresolved intents.
        """
        summary = {"finalized": 0, "released": 0, "unresolved": 0}

        for intent in self.store.list_by_status(IntentStatus.EXECUTING):
            try:
                ref = intent.settlement_ref
                if ref is None and self.settlement is not None and intent.quoted_amount is not None:
                    ref = await asyncio.wait_for(
                        self.settlement.find_settlement(intent),
                        timeout=self.settlement_timeout_seconds,
                    )

                if ref is not None and intent.quoted_amount is not None:
                    self.store.compare_and_transition(
                        intent.intent_id,
                        IntentStatus.EXECUTING,
                        Mutation(
                            status=IntentStatus.EXECUTED,
                            executed_amount=intent.quoted_amount,
                            executed_at=self.clock(),
                            settlement_ref=ref,
                        ),
                    )
                    summary["finalized"] += 1
                    logger.info(
                        f"Recovered intent {intent.intent_id[:8]} as executed",
                        extra={"intent_id": intent.intent_id, "settlement_ref": ref},
                    )
                else:
                    self.store.compare_and_transition(
                        intent.intent_id,
                        IntentStatus.EXECUTING,
                        Mutation(
                            status=IntentStatus.PENDING,
                            last_error="Execution interrupted by restart",
                        ),
                    )
                    summary["released"] += 1
                    logger.info(
                        f"Released interrupted intent {intent.intent_id[:8]}",
                        extra={"intent_id": intent.intent_id},
                    )
            except StaleState:
                logger.debug(f"Intent {intent.intent_id[:8]} resolved during recovery")
            except Exception as e:
                summary["unresolved"] += 1
                logger.error(
                    f"Could not recover intent {intent.intent_id[:8]}: {e}",
                    extra={"intent_id": intent.intent_id},
                    exc_info=True,
                )

        if any(summary.values()):
            logger.info("Recovery sweep finished", extra=summary)
        return summary

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, intent_id: str) -> Intent:
        return self.store.get(intent_id)

    def list_by_user(self, user_address: str) -> list[Intent]:
        return self.store.list_by_user(user_address)

    def list_pending(self) -> list[Intent]:
        return self.store.list_pending()

    def list_all(self) -> list[Intent]:
        return self.store.list_all()

    def analytics(self, user_address: str | None = None) -> IntentAnalytics:
        """Aggregate counts over all intents, or one user's."""
        intents = self.store.list_by_user(user_address) if user_address else self.store.list_all()
        return summarize_intents(intents)
