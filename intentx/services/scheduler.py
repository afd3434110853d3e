"""Polling scheduler that drives pending intents through the engine."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING

from intentx.services.health import HealthStatus

if TYPE_CHECKING:
    from intentx.execution.engine import IntentLifecycleEngine

logger = logging.getLogger(__name__)

SWEEP_COUNTERS = ("processed", "executed", "retried", "failed", "skipped", "errors")

_OUTCOME_COUNTER = {
    "executed": "executed",
    "retry": "retried",
    "failed": "failed",
    "already_handled": "skipped",
}


class PollingScheduler:
    """Periodic sweep over PENDING intents.

    Intents are attempted one at a time in FIFO order. `stop()` only
    prevents the next sweep: a sweep that already started runs to the end.
    """

    def __init__(
        self,
        engine: IntentLifecycleEngine,
        poll_interval_seconds: float = 5.0,
        health: HealthStatus | None = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            engine: Lifecycle engine to drive.
            poll_interval_seconds: Delay between sweeps.
            health: Health status updated after each sweep.
        """
        if poll_interval_seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {poll_interval_seconds}")
        self.engine = engine
        self.poll_interval_seconds = poll_interval_seconds
        self.health = health or HealthStatus()
        self.is_running = False
        self._wake: asyncio.Event | None = None
        self._stop_requested = False

    async def run(self) -> None:
        """Run sweeps until stopped."""
        if self._stop_requested:
            self._stop_requested = False
            logger.info("Polling scheduler stopped before its first sweep")
            return

        self.is_running = True
        self._wake = asyncio.Event()
        self.health.scheduler_running = True
        logger.info(
            "Starting polling scheduler",
            extra={"poll_interval_seconds": self.poll_interval_seconds},
        )

        try:
            while self.is_running:
                await self.run_once()
                if not self.is_running:
                    break
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.is_running = False
            self._stop_requested = False
            self.health.scheduler_running = False
            logger.info("Polling scheduler stopped")

    async def run_once(self) -> dict[str, int]:
        """Run a single sweep.

        Per-intent errors are logged and counted; nothing propagates.

        Returns:
            Sweep counters.
        """
        sweep_id = str(uuid.uuid4())
        sweep_start = time.time()
        summary = dict.fromkeys(SWEEP_COUNTERS, 0)

        try:
            pending = self.engine.list_pending()
        except Exception as e:
            logger.error(f"Error listing pending intents: {e}", exc_info=True)
            self.health.mark_unhealthy(str(e))
            summary["errors"] += 1
            return summary

        for intent in pending:
            summary["processed"] += 1
            try:
                result = await self.engine.attempt_execution(intent.intent_id)
            except Exception as e:
                summary["errors"] += 1
                logger.error(
                    f"Error executing intent {intent.intent_id[:8]}: {e}",
                    extra={"intent_id": intent.intent_id, "sweep_id": sweep_id},
                    exc_info=True,
                )
                continue
            summary[_OUTCOME_COUNTER[result.outcome.value]] += 1

        sweep_duration = time.time() - sweep_start
        self.health.update_sweep(sweep_duration, summary)
        self.health.mark_healthy()

        if summary["processed"]:
            logger.info(
                f"Sweep {sweep_id[:8]} completed in {sweep_duration:.2f}s",
                extra={"sweep_id": sweep_id, "duration": sweep_duration, **summary},
            )
        return summary

    def stop(self) -> None:
        """Stop after the current sweep. Call from the scheduler's event loop."""
        logger.info("Stopping polling scheduler")
        self.is_running = False
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()
