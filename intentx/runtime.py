"""Process wiring: one explicit engine instance per process."""

import logging
from dataclasses import dataclass

from intentx.config import Settings, get_settings
from intentx.data.memory import InMemoryIntentStore
from intentx.data.storage import SqlIntentStore
from intentx.data.store import IntentStore
from intentx.execution.engine import IntentLifecycleEngine
from intentx.execution.quotes import QuoteSource, RateTableQuoteSource
from intentx.execution.settlement import ContractSettlement, SettlementClient, SimulatedSettlement
from intentx.execution.signatures import EthSignatureVerifier, SignatureVerifier
from intentx.services.health import HealthStatus
from intentx.services.scheduler import PollingScheduler

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything the HTTP app, the CLI and the scheduler share."""

    settings: Settings
    store: IntentStore
    engine: IntentLifecycleEngine
    scheduler: PollingScheduler
    health: HealthStatus

    def close(self) -> None:
        self.store.close()


def build_store(settings: Settings) -> IntentStore:
    """SQL store for a configured URL, in-memory store otherwise."""
    if not settings.db_url:
        logger.info("Using in-memory intent store")
        return InMemoryIntentStore()
    return SqlIntentStore(db_url=settings.db_url)


def build_settlement(settings: Settings) -> SettlementClient | None:
    """Settlement collaborator for `settings.settlement_mode`."""
    if settings.settlement_mode == "simulated":
        return SimulatedSettlement()
    if settings.settlement_mode == "contract":
        if not settings.executor_private_key or not settings.contract_address:
            raise ValueError(
                "Contract settlement requires INTENTX_EXECUTOR_PRIVATE_KEY and INTENTX_CONTRACT_ADDRESS"
            )
        return ContractSettlement(
            rpc_url=settings.rpc_url,
            private_key=settings.executor_private_key,
            contract_address=settings.contract_address,
            decimals=settings.token_decimals,
            receipt_timeout_seconds=settings.settlement_timeout_seconds,
        )
    return None


def build_runtime(
    settings: Settings | None = None,
    store: IntentStore | None = None,
    quote_source: QuoteSource | None = None,
    settlement: SettlementClient | None = None,
    verifier: SignatureVerifier | None = None,
) -> Runtime:
    """Build the runtime from settings.

    Args:
        settings: Settings (defaults to cached settings).
        store: Store override.
        quote_source: Quote source override.
        settlement: Settlement override (replaces `settlement_mode`).
        verifier: Signature verifier override.

    Returns:
        Runtime.
    """
    settings = settings or get_settings()
    store = store or build_store(settings)
    if settlement is None:
        settlement = build_settlement(settings)

    engine = IntentLifecycleEngine(
        store=store,
        verifier=verifier or EthSignatureVerifier(),
        quote_source=quote_source or RateTableQuoteSource(fluctuation=settings.quote_fluctuation),
        settlement=settlement,
        max_execution_attempts=settings.max_execution_attempts,
        quote_timeout_seconds=settings.quote_timeout_seconds,
        settlement_timeout_seconds=settings.settlement_timeout_seconds,
        signature_max_age_seconds=settings.signature_max_age_seconds,
        signature_max_skew_seconds=settings.signature_max_skew_seconds,
    )
    health = HealthStatus()
    scheduler = PollingScheduler(
        engine, poll_interval_seconds=settings.poll_interval_seconds, health=health
    )

    logger.info(
        "Runtime initialized",
        extra={
            "store": type(store).__name__,
            "settlement": type(settlement).__name__ if settlement else "none",
            "max_execution_attempts": settings.max_execution_attempts,
        },
    )
    return Runtime(settings=settings, store=store, engine=engine, scheduler=scheduler, health=health)
