"""Tests for the intent lifecycle engine."""

import asyncio
import threading
from dataclasses import replace
from decimal import Decimal

import pytest

from intentx.data.memory import InMemoryIntentStore
from intentx.errors import (
    DuplicateIntent,
    Forbidden,
    NotCancellable,
    NotFound,
    OwnerMismatch,
    QuoteError,
    SignatureMismatch,
    ValidationError,
)
from intentx.execution.engine import ExecutionOutcome, executed_amount_for
from intentx.execution.intents import FailureReason, IntentStatus, Mutation
from intentx.execution.quotes import Quote, RateTableQuoteSource


def test_admit_creates_pending_intent_owned_by_signer(make_engine, make_request, alice):
    """Test the admission scenario: 1.5 ETH for at least 2700 USDC."""
    engine = make_engine()
    request, signature = make_request()

    intent = engine.admit(request, signature)

    assert intent.status == IntentStatus.PENDING
    assert intent.user_address == alice.address
    assert intent.source_amount == Decimal("1.5")
    assert intent.min_target_amount == Decimal("2700")
    assert intent.slippage_bps == 100
    assert intent.signature == signature
    assert intent.signed_at == request.timestamp
    assert engine.get(intent.intent_id).status == IntentStatus.PENDING


def test_admit_accepts_lowercase_claimed_address(make_engine, make_request, alice):
    engine = make_engine()
    request, signature = make_request(user_address=alice.address.lower())

    intent = engine.admit(request, signature)
    assert intent.user_address == alice.address


def test_admit_rejects_signature_from_other_address(make_engine, make_request, bob):
    """Test a valid signature by someone else is an owner mismatch and stores nothing."""
    engine = make_engine()
    request, signature = make_request(key=bob.key)

    with pytest.raises(OwnerMismatch) as exc_info:
        engine.admit(request, signature)

    assert isinstance(exc_info.value, SignatureMismatch)
    assert exc_info.value.http_status == 403
    assert engine.list_all() == []


def test_admit_rejects_malformed_signature(make_engine, make_request):
    engine = make_engine()
    request, _ = make_request()

    with pytest.raises(SignatureMismatch) as exc_info:
        engine.admit(request, "0xdeadbeef")

    assert not isinstance(exc_info.value, OwnerMismatch)
    assert exc_info.value.http_status == 400
    assert engine.list_all() == []


def test_admit_rejects_altered_fields(make_engine, make_request, alice):
    """Test replaying a signature with a changed field fails verification."""
    engine = make_engine()
    request, signature = make_request()
    altered = replace(request, min_target_amount=Decimal("2600"))

    with pytest.raises(SignatureMismatch):
        engine.admit(altered, signature)


def test_admit_rejects_replay(make_engine, make_request):
    engine = make_engine()
    request, signature = make_request()
    engine.admit(request, signature)

    with pytest.raises(DuplicateIntent):
        engine.admit(request, signature)
    assert len(engine.list_all()) == 1


def test_admit_rejects_stale_and_future_timestamps(make_engine, make_request):
    engine = make_engine()
    now = make_request()[0].timestamp

    request, signature = make_request(timestamp=now - 10 * 60 * 1000)
    with pytest.raises(ValidationError):
        engine.admit(request, signature)

    request, signature = make_request(timestamp=now + 5 * 60 * 1000)
    with pytest.raises(ValidationError):
        engine.admit(request, signature)


def test_admit_rejects_bad_bounds_before_verifying(make_engine, make_request):
    engine = make_engine()
    request, signature = make_request(slippage_bps=20_000)

    with pytest.raises(ValidationError):
        engine.admit(request, signature)


def test_identical_requests_from_two_users_are_independent(make_engine, make_request, alice, bob):
    """Test identical fields with different signers give distinct lifecycles."""
    engine = make_engine()
    first = engine.admit(*make_request(alice))
    second = engine.admit(*make_request(bob))

    assert first.intent_id != second.intent_id
    engine.cancel(first.intent_id, alice.address)

    assert engine.get(first.intent_id).status == IntentStatus.CANCELLED
    assert engine.get(second.intent_id).status == IntentStatus.PENDING


def test_cancel_pending(make_engine, make_request, alice):
    engine = make_engine()
    intent = engine.admit(*make_request())

    cancelled = engine.cancel(intent.intent_id, alice.address.lower())

    assert cancelled.status == IntentStatus.CANCELLED
    assert cancelled.executed_at is not None
    assert cancelled.executed_amount is None


def test_cancel_by_non_owner_is_forbidden(make_engine, make_request, bob):
    engine = make_engine()
    intent = engine.admit(*make_request())

    with pytest.raises(Forbidden):
        engine.cancel(intent.intent_id, bob.address)
    with pytest.raises(NotFound):
        engine.cancel("missing", bob.address)
    assert engine.get(intent.intent_id).status == IntentStatus.PENDING


def test_execute_scenario(make_engine, make_request, quotes):
    """Test a 2775 quote executes the 2700-minimum intent."""
    engine = make_engine(quote_source=quotes("2775"))
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.EXECUTED
    executed = engine.get(intent.intent_id)
    assert executed.status == IntentStatus.EXECUTED
    assert executed.executed_amount == Decimal("2775")
    assert executed.to_dict()["executedAmount"] == "2775"
    assert executed.executed_at is not None
    assert executed.attempts == 1
    assert executed.route["protocol"] == "TestPool"


def test_insufficient_output_retries_then_fails(make_engine, make_request, quotes):
    """Test a 2000 quote retries until the budget is spent."""
    engine = make_engine(quote_source=quotes("2000"), max_execution_attempts=3)
    intent = engine.admit(*make_request())

    outcomes = [asyncio.run(engine.attempt_execution(intent.intent_id)) for _ in range(3)]

    assert [r.outcome for r in outcomes] == [
        ExecutionOutcome.RETRY,
        ExecutionOutcome.RETRY,
        ExecutionOutcome.FAILED,
    ]
    assert outcomes[0].intent.status == IntentStatus.PENDING
    assert outcomes[0].reason == FailureReason.INSUFFICIENT_OUTPUT

    failed = engine.get(intent.intent_id)
    assert failed.status == IntentStatus.FAILED
    assert failed.failure_reason == FailureReason.INSUFFICIENT_OUTPUT
    assert failed.executed_amount is None
    assert failed.attempts == 3
    assert "below minimum" in failed.last_error


def test_retry_then_execute_when_market_recovers(make_engine, make_request, quotes):
    engine = make_engine(quote_source=quotes("2000", "2800"))
    intent = engine.admit(*make_request())

    first = asyncio.run(engine.attempt_execution(intent.intent_id))
    second = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert first.outcome == ExecutionOutcome.RETRY
    assert second.outcome == ExecutionOutcome.EXECUTED
    assert engine.get(intent.intent_id).executed_amount == Decimal("2800")
    assert engine.get(intent.intent_id).attempts == 2


def test_slippage_band_measured_against_quote(make_engine, make_request, quotes):
    """Test price impact beyond the band is rejected, within it executes."""
    # 3000 * (1 - 2%) = 2940: above minimum, but 60 away from the quote (band is 30)
    engine = make_engine(quote_source=quotes("3000", price_impact_bps=200))
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))
    assert result.outcome == ExecutionOutcome.RETRY
    assert result.reason == FailureReason.SLIPPAGE_EXCEEDED

    # 50 bps impact stays inside the 100 bps band
    engine.quote_source = quotes("3000", price_impact_bps=50)
    result = asyncio.run(engine.attempt_execution(intent.intent_id))
    assert result.outcome == ExecutionOutcome.EXECUTED
    assert result.intent.executed_amount == Decimal("2985")


def test_rate_table_route_loss_needs_slippage_tolerance(make_engine, make_request):
    """Test the direct pool's 2% loss is gated by the intent's slippage."""
    engine = make_engine(quote_source=RateTableQuoteSource(fluctuation=0))
    tight = engine.admit(*make_request(slippage_bps=199))
    loose = engine.admit(*make_request(slippage_bps=200, timestamp=tight.signed_at + 1))

    rejected = asyncio.run(engine.attempt_execution(tight.intent_id))
    assert rejected.outcome == ExecutionOutcome.RETRY
    assert rejected.reason == FailureReason.SLIPPAGE_EXCEEDED

    result = asyncio.run(engine.attempt_execution(loose.intent_id))
    assert result.outcome == ExecutionOutcome.EXECUTED
    assert result.intent.executed_amount == Decimal("2719.5")
    assert Decimal(result.intent.route["expectedOutput"]) == result.intent.executed_amount


def test_executed_amount_never_below_minimum(make_engine, make_request, quotes):
    engine = make_engine(quote_source=quotes("2700.0000000000000000009"))
    intent = engine.admit(*make_request(slippage_bps=0))

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.EXECUTED
    assert result.intent.executed_amount >= result.intent.min_target_amount


def test_executed_amount_for_applies_impact_and_rounds_down():
    quote = Quote(estimated_output=Decimal("1"), price_impact_bps=1)
    assert executed_amount_for(quote) == Decimal("0.9999")
    quote = Quote(estimated_output=Decimal("1.0000000000000000019"))
    assert executed_amount_for(quote) == Decimal("1.000000000000000001")


def test_quote_error_is_retried(make_engine, make_request, quotes):
    engine = make_engine(quote_source=quotes(error=RuntimeError("aggregator down")))
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.RETRY
    assert result.reason == FailureReason.QUOTE_ERROR
    assert engine.get(intent.intent_id).status == IntentStatus.PENDING


def test_quote_timeout_is_bounded(make_engine, make_request, quotes):
    engine = make_engine(quote_source=quotes("2775", delay=5), quote_timeout_seconds=0.05)
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.RETRY
    assert result.reason == FailureReason.QUOTE_ERROR
    assert "timed out" in result.message


def test_terminal_intents_are_untouched(make_engine, make_request, quotes, alice):
    """Test cancel and execute are no-ops once an intent is terminal."""
    engine = make_engine(quote_source=quotes("2775"))
    intent = engine.admit(*make_request())
    asyncio.run(engine.attempt_execution(intent.intent_id))

    with pytest.raises(NotCancellable):
        engine.cancel(intent.intent_id, alice.address)

    again = asyncio.run(engine.attempt_execution(intent.intent_id))
    assert again.outcome == ExecutionOutcome.ALREADY_HANDLED
    assert again.intent.status == IntentStatus.EXECUTED
    assert engine.get(intent.intent_id).attempts == 1

    cancelled = engine.admit(*make_request(timestamp=intent.signed_at + 1))
    engine.cancel(cancelled.intent_id, alice.address)
    result = asyncio.run(engine.attempt_execution(cancelled.intent_id))
    assert result.outcome == ExecutionOutcome.ALREADY_HANDLED
    assert engine.get(cancelled.intent_id).status == IntentStatus.CANCELLED


def test_cancel_while_executing_is_not_cancellable(make_engine, make_request, alice):
    engine = make_engine()
    intent = engine.admit(*make_request())
    engine.store.compare_and_transition(
        intent.intent_id, IntentStatus.PENDING, Mutation(status=IntentStatus.EXECUTING)
    )

    with pytest.raises(NotCancellable):
        engine.cancel(intent.intent_id, alice.address)
    assert engine.get(intent.intent_id).status == IntentStatus.EXECUTING


def test_attempt_execution_unknown_id(make_engine):
    engine = make_engine()
    with pytest.raises(NotFound):
        asyncio.run(engine.attempt_execution("missing"))


def test_cancel_execute_race_has_single_winner(make_engine, make_request, quotes, alice, store):
    """Test racing cancel and execution always leaves one consistent winner."""
    engine = make_engine(quote_source=quotes("2775", delay=0.01), store=store)

    for i in range(10):
        intent = engine.admit(*make_request(timestamp=make_request()[0].timestamp + i))
        barrier = threading.Barrier(2)
        outcome: dict[str, object] = {}

        def execute() -> None:
            barrier.wait()
            outcome["execute"] = asyncio.run(engine.attempt_execution(intent.intent_id)).outcome

        def cancel() -> None:
            barrier.wait()
            try:
                engine.cancel(intent.intent_id, alice.address)
                outcome["cancel"] = "cancelled"
            except NotCancellable:
                outcome["cancel"] = "not_cancellable"

        threads = [threading.Thread(target=execute), threading.Thread(target=cancel)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        final = engine.get(intent.intent_id)
        if outcome["cancel"] == "cancelled":
            assert outcome["execute"] == ExecutionOutcome.ALREADY_HANDLED
            assert final.status == IntentStatus.CANCELLED
            assert final.executed_amount is None
        else:
            assert outcome["execute"] == ExecutionOutcome.EXECUTED
            assert final.status == IntentStatus.EXECUTED


def test_settlement_records_reference(make_engine, make_request, settlements):
    settlement = settlements(ref="0xfeed")
    engine = make_engine(settlement=settlement)
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.EXECUTED
    executed = engine.get(intent.intent_id)
    assert executed.settlement_ref == "0xfeed"
    assert executed.quoted_amount == Decimal("2775")
    assert settlement.settled[intent.intent_id] == Decimal("2775")


def test_settlement_error_is_terminal(make_engine, make_request, failing_settlement):
    """Test settlement failures fail the intent without retry."""
    engine = make_engine(settlement=failing_settlement, max_execution_attempts=5)
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.FAILED
    failed = engine.get(intent.intent_id)
    assert failed.status == IntentStatus.FAILED
    assert failed.failure_reason == FailureReason.SETTLEMENT_ERROR
    assert failed.attempts == 1
    assert failed.executed_amount is None


def test_settlement_timeout_is_settlement_error(make_engine, make_request, settlements):
    engine = make_engine(settlement=settlements(delay=5), settlement_timeout_seconds=0.05)
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.FAILED
    assert result.reason == FailureReason.SETTLEMENT_ERROR
    assert "timed out" in result.intent.last_error


class FlakySettlementStore(InMemoryIntentStore):
    """Fails the next `failures` writes that record a settlement reference."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def compare_and_transition(self, intent_id, expected_status, mutation):
        if mutation.settlement_ref is not None and self.failures:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return super().compare_and_transition(intent_id, expected_status, mutation)


def test_settled_intent_is_recorded_after_store_error(make_engine, make_request, settlements):
    """Test a failed write after settlement retries the record, not the settlement."""
    settlement = settlements(ref="0xtx1")
    engine = make_engine(
        settlement=settlement, store=FlakySettlementStore(failures=1), finalize_retry_delay_seconds=0
    )
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.EXECUTED
    executed = engine.get(intent.intent_id)
    assert executed.status == IntentStatus.EXECUTED
    assert executed.settlement_ref == "0xtx1"
    assert list(settlement.settled) == [intent.intent_id]


def test_unrecorded_settlement_is_never_settled_again(make_engine, make_request, settlements):
    """Test a settled intent the store cannot record stays executing until recovery."""
    settlement = settlements(ref="0xtx1")
    store = FlakySettlementStore(failures=3)
    engine = make_engine(
        settlement=settlement, store=store, finalize_attempts=3, finalize_retry_delay_seconds=0
    )
    intent = engine.admit(*make_request())

    with pytest.raises(RuntimeError):
        asyncio.run(engine.attempt_execution(intent.intent_id))
    stranded = engine.get(intent.intent_id)
    assert stranded.status == IntentStatus.EXECUTING
    assert stranded.quoted_amount == Decimal("2775")

    again = asyncio.run(engine.attempt_execution(intent.intent_id))
    assert again.outcome == ExecutionOutcome.ALREADY_HANDLED
    assert len(settlement.settled) == 1

    summary = asyncio.run(engine.recover())
    assert summary["finalized"] == 1
    recovered = engine.get(intent.intent_id)
    assert recovered.status == IntentStatus.EXECUTED
    assert recovered.settlement_ref == "0xtx1"
    assert recovered.executed_amount == Decimal("2775")


def test_interrupted_settlement_fails_intent(make_engine, make_request, settlements):
    engine = make_engine(settlement=settlements(delay=5))
    intent = engine.admit(*make_request())

    async def scenario() -> None:
        task = asyncio.create_task(engine.attempt_execution(intent.intent_id))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    failed = engine.get(intent.intent_id)
    assert failed.status == IntentStatus.FAILED
    assert failed.failure_reason == FailureReason.SETTLEMENT_ERROR
    assert failed.executed_amount is None


def test_quote_error_message_is_kept(make_engine, make_request, quotes):
    engine = make_engine(quote_source=quotes(error=QuoteError("no liquidity for ETH/USDC")))
    intent = engine.admit(*make_request())

    result = asyncio.run(engine.attempt_execution(intent.intent_id))

    assert result.outcome == ExecutionOutcome.RETRY
    assert engine.get(intent.intent_id).last_error == "no liquidity for ETH/USDC"


def test_unexpected_error_releases_claim(make_engine, make_request, quotes):
    """Test an exception mid-execution never leaves the intent executing."""
    engine = make_engine(quote_source=quotes(object()), max_execution_attempts=2)
    intent = engine.admit(*make_request())

    with pytest.raises(TypeError):
        asyncio.run(engine.attempt_execution(intent.intent_id))
    released = engine.get(intent.intent_id)
    assert released.status == IntentStatus.PENDING
    assert "Unexpected error" in released.last_error

    with pytest.raises(TypeError):
        asyncio.run(engine.attempt_execution(intent.intent_id))
    failed = engine.get(intent.intent_id)
    assert failed.status == IntentStatus.FAILED
    assert failed.failure_reason == FailureReason.INTERNAL_ERROR


def _strand(engine, intent_id: str, quoted: str | None = None, ref: str | None = None) -> None:
    """Leave an intent EXECUTING as a crashed process would."""
    engine.store.compare_and_transition(
        intent_id,
        IntentStatus.PENDING,
        Mutation(status=IntentStatus.EXECUTING, increment_attempts=True),
    )
    if quoted is not None:
        engine.store.compare_and_transition(
            intent_id,
            IntentStatus.EXECUTING,
            Mutation(quoted_amount=Decimal(quoted), settlement_ref=ref),
        )


def test_recover_finalizes_recorded_settlement(make_engine, make_request, settlements):
    engine = make_engine(settlement=settlements())
    intent = engine.admit(*make_request())
    _strand(engine, intent.intent_id, quoted="2790", ref="0xdone")

    summary = asyncio.run(engine.recover())

    assert summary == {"finalized": 1, "released": 0, "unresolved": 0}
    recovered = engine.get(intent.intent_id)
    assert recovered.status == IntentStatus.EXECUTED
    assert recovered.executed_amount == Decimal("2790")
    assert recovered.settlement_ref == "0xdone"


def test_recover_looks_up_settlement(make_engine, make_request, settlements):
    settlement = settlements()
    engine = make_engine(settlement=settlement)
    found = engine.admit(*make_request())
    missing = engine.admit(*make_request(timestamp=found.signed_at + 1))
    _strand(engine, found.intent_id, quoted="2780")
    _strand(engine, missing.intent_id, quoted="2780")
    settlement.on_chain[found.intent_id] = "0xonchain"

    summary = asyncio.run(engine.recover())

    assert summary == {"finalized": 1, "released": 1, "unresolved": 0}
    assert engine.get(found.intent_id).status == IntentStatus.EXECUTED
    assert engine.get(found.intent_id).settlement_ref == "0xonchain"
    assert engine.get(missing.intent_id).status == IntentStatus.PENDING


def test_recover_without_settlement_releases(make_engine, make_request):
    engine = make_engine()
    intent = engine.admit(*make_request())
    _strand(engine, intent.intent_id)

    summary = asyncio.run(engine.recover())

    assert summary["released"] == 1
    released = engine.get(intent.intent_id)
    assert released.status == IntentStatus.PENDING
    assert released.attempts == 1


def test_recover_leaves_intent_when_lookup_fails(make_engine, make_request, settlements):
    engine = make_engine(settlement=settlements(lookup_error=RuntimeError("rpc down")))
    intent = engine.admit(*make_request())
    _strand(engine, intent.intent_id, quoted="2780")

    summary = asyncio.run(engine.recover())

    assert summary == {"finalized": 0, "released": 0, "unresolved": 1}
    assert engine.get(intent.intent_id).status == IntentStatus.EXECUTING


def test_analytics_counts(make_engine, make_request, quotes, alice, bob):
    engine = make_engine(quote_source=quotes("2775"))
    executed = engine.admit(*make_request(alice))
    cancelled = engine.admit(*make_request(alice, timestamp=executed.signed_at + 1))
    engine.admit(*make_request(bob))
    asyncio.run(engine.attempt_execution(executed.intent_id))
    engine.cancel(cancelled.intent_id, alice.address)

    overall = engine.analytics().to_dict()
    assert overall["totalIntents"] == 3
    assert overall["executedSwaps"] == 1
    assert overall["pendingIntents"] == 1
    assert overall["cancelledIntents"] == 1
    assert overall["totalVolume"] == "2775.00"
    assert overall["successRate"] == 33.3

    mine = engine.analytics(alice.address).to_dict()
    assert mine["totalIntents"] == 2
    assert mine["successRate"] == 50.0
