"""Health check and status monitoring."""

import logging
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


class HealthStatus:
    """Scheduler health as served by GET /health."""

    def __init__(self) -> None:
        """Initialize health status."""
        self.started_at = datetime.utcnow()
        self.scheduler_running = False
        self.last_sweep_at: datetime | None = None
        self.last_sweep_duration: float = 0.0
        self.last_sweep: dict[str, int] = {}
        self.total_sweeps = 0
        self.total_errors = 0
        self.is_healthy = True
        self.error_message: str | None = None

    def update_sweep(self, duration: float, summary: dict[str, int]) -> None:
        """Record a finished sweep.

        Args:
            duration: Sweep duration in seconds.
            summary: Sweep counters.
        """
        self.last_sweep_at = datetime.utcnow()
        self.last_sweep_duration = duration
        self.last_sweep = dict(summary)
        self.total_sweeps += 1
        self.total_errors += summary.get("errors", 0)

    def mark_unhealthy(self, error: str) -> None:
        """Mark as unhealthy.

        Args:
            error: Error message.
        """
        self.is_healthy = False
        self.error_message = error
        logger.error(f"Health check failed: {error}")

    def mark_healthy(self) -> None:
        """Mark as healthy."""
        self.is_healthy = True
        self.error_message = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Health status as dict.
        """
        uptime = (datetime.utcnow() - self.started_at).total_seconds()

        return {
            "is_healthy": self.is_healthy,
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": uptime,
            "scheduler_running": self.scheduler_running,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "last_sweep_duration": self.last_sweep_duration,
            "last_sweep": self.last_sweep,
            "total_sweeps": self.total_sweeps,
            "total_errors": self.total_errors,
            "error_message": self.error_message,
        }
