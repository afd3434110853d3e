"""Pytest fixtures and configuration."""

import asyncio
import time
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable

import pytest
from eth_account import Account

from intentx.data.memory import InMemoryIntentStore
from intentx.data.storage import SqlIntentStore
from intentx.errors import SettlementError
from intentx.execution.engine import IntentLifecycleEngine
from intentx.execution.intents import Intent, IntentRequest
from intentx.execution.quotes import Quote
from intentx.execution.signatures import EthSignatureVerifier, sign_canonical_message

# Throwaway keys, never funded.
ALICE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
BOB_KEY = "0x" + "11" * 32


@pytest.fixture(autouse=True)
def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off the default SQLite file and the background scheduler."""
    monkeypatch.setenv("INTENTX_DB_URL", "")
    monkeypatch.setenv("INTENTX_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("INTENTX_SETTLEMENT_MODE", "none")
    monkeypatch.setenv("INTENTX_LOG_FORMAT", "console")

    # Clear cached settings between tests
    from intentx.config.settings import get_settings

    get_settings.cache_clear()


class StaticQuoteSource:
    """Quote source returning scripted outputs (the last one repeats)."""

    def __init__(
        self,
        *outputs: Any,
        price_impact_bps: int = 0,
        delay: float = 0.0,
        error: Exception | None = None,
        on_call: Callable[[], None] | None = None,
    ) -> None:
        self.outputs = list(outputs) or [Decimal("1")]
        self.price_impact_bps = price_impact_bps
        self.delay = delay
        self.error = error
        self.on_call = on_call
        self.calls = 0

    async def quote(self, source_token: str, target_token: str, source_amount: Decimal) -> Quote:
        self.calls += 1
        if self.on_call is not None:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        output = self.outputs[min(self.calls, len(self.outputs)) - 1]
        if isinstance(output, (int, float, str)):
            output = Decimal(str(output))
        return Quote(
            estimated_output=output,
            route={"protocol": "TestPool", "path": [source_token, target_token]},
            gas_estimate=100000,
            price_impact_bps=self.price_impact_bps,
        )


class RecordingSettlement:
    """Settlement double recording calls."""

    def __init__(
        self,
        ref: str = "0xsettled",
        delay: float = 0.0,
        error: Exception | None = None,
        lookup_error: Exception | None = None,
    ) -> None:
        self.ref = ref
        self.delay = delay
        self.error = error
        self.lookup_error = lookup_error
        self.settled: dict[str, Decimal] = {}
        self.on_chain: dict[str, str] = {}

    async def settle(self, intent: Intent, executed_amount: Decimal) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.settled[intent.intent_id] = executed_amount
        self.on_chain[intent.intent_id] = self.ref
        return self.ref

    async def find_settlement(self, intent: Intent) -> str | None:
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.on_chain.get(intent.intent_id)


@pytest.fixture
def alice():
    return Account.from_key(ALICE_KEY)


@pytest.fixture
def bob():
    return Account.from_key(BOB_KEY)


def now_ms() -> int:
    return int(time.time() * 1000)


@pytest.fixture
def make_request(alice) -> Callable[..., tuple[IntentRequest, str]]:
    """Build a signed request: ETH -> USDC, 1.5 for at least 2700, 100 bps."""

    def _make(account=None, key: str | None = None, **overrides: Any) -> tuple[IntentRequest, str]:
        account = account or alice
        request = IntentRequest(
            source_token="ETH",
            target_token="USDC",
            source_amount=Decimal("1.5"),
            min_target_amount=Decimal("2700"),
            slippage_bps=100,
            user_address=account.address,
            timestamp=now_ms(),
        )
        if overrides:
            request = replace(request, **overrides)
        signing_key = key or account.key
        signature = sign_canonical_message(request.canonical_message(), signing_key)
        return request, signature

    return _make


@pytest.fixture
def make_body(make_request) -> Callable[..., dict[str, Any]]:
    """Signed POST /intents body."""

    def _make(account=None, **overrides: Any) -> dict[str, Any]:
        request, signature = make_request(account, **overrides)
        return {
            "sourceToken": request.source_token,
            "targetToken": request.target_token,
            "sourceAmount": str(request.source_amount),
            "minTargetAmount": str(request.min_target_amount),
            "slippageBps": request.slippage_bps,
            "userAddress": request.user_address,
            "timestamp": request.timestamp,
            "signature": signature,
        }

    return _make


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    """Each store implementation; SQL runs on a file so threads get real connections."""
    if request.param == "memory":
        yield InMemoryIntentStore()
        return
    sql_store = SqlIntentStore(db_url=f"sqlite:///{tmp_path / 'intents.db'}")
    yield sql_store
    sql_store.close()


@pytest.fixture
def memory_store() -> InMemoryIntentStore:
    return InMemoryIntentStore()


@pytest.fixture
def make_engine(memory_store) -> Callable[..., IntentLifecycleEngine]:
    """Engine factory; defaults to the in-memory store and a 2775 quote."""

    def _make(quote_source=None, settlement=None, store=None, **kwargs: Any) -> IntentLifecycleEngine:
        return IntentLifecycleEngine(
            store=store or memory_store,
            verifier=EthSignatureVerifier(),
            quote_source=quote_source or StaticQuoteSource("2775"),
            settlement=settlement,
            **kwargs,
        )

    return _make


@pytest.fixture
def failing_settlement() -> RecordingSettlement:
    return RecordingSettlement(error=SettlementError("executeIntent reverted"))


@pytest.fixture
def quotes() -> type[StaticQuoteSource]:
    return StaticQuoteSource


@pytest.fixture
def settlements() -> type[RecordingSettlement]:
    return RecordingSettlement
