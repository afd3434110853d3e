"""Services layer - scheduler, health, analytics."""

from intentx.services.analytics import IntentAnalytics, summarize_intents
from intentx.services.health import HealthStatus

__all__ = ["IntentAnalytics", "summarize_intents", "HealthStatus"]
