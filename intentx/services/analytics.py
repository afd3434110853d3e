"""Aggregate counts over stored intents."""

import logging
from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from intentx.execution.intents import Intent, IntentStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class IntentAnalytics:
    """Counts and volume for a set of intents."""

    total_intents: int = 0
    executed_swaps: int = 0
    pending_intents: int = 0
    cancelled_intents: int = 0
    failed_intents: int = 0
    total_volume: Decimal = Decimal("0")

    @property
    def success_rate(self) -> float:
        """Executed share of all intents, in percent (1 decimal)."""
        if self.total_intents == 0:
            return 0.0
        return round(self.executed_swaps / self.total_intents * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalIntents": self.total_intents,
            "executedSwaps": self.executed_swaps,
            "pendingIntents": self.pending_intents,
            "cancelledIntents": self.cancelled_intents,
            "failedIntents": self.failed_intents,
            "totalVolume": str(self.total_volume.quantize(CENT, rounding=ROUND_HALF_UP)),
            "successRate": self.success_rate,
        }


def summarize_intents(intents: Iterable[Intent]) -> IntentAnalytics:
    """Compute analytics for the given intents.

    Volume is the sum of `executed_amount` over executed intents, in target
    token units regardless of which token each intent bought.

    Args:
        intents: Intents to aggregate.

    Returns:
        IntentAnalytics.
    """
    counts: Counter[IntentStatus] = Counter()
    volume = Decimal("0")
    for intent in intents:
        counts[intent.status] += 1
        if intent.status == IntentStatus.EXECUTED and intent.executed_amount is not None:
            volume += intent.executed_amount

    return IntentAnalytics(
        total_intents=sum(counts.values()),
        executed_swaps=counts[IntentStatus.EXECUTED],
        pending_intents=counts[IntentStatus.PENDING],
        cancelled_intents=counts[IntentStatus.CANCELLED],
        failed_intents=counts[IntentStatus.FAILED],
        total_volume=volume,
    )
