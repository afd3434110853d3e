"""Quote sources for swap execution."""

import logging
import random
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    """Estimated output for a swap.

    `price_impact_bps` is how much of the estimate is lost when the swap
    actually moves through the route.
    """

    estimated_output: Decimal
    route: dict[str, Any] = field(default_factory=dict)
    gas_estimate: int = 0
    price_impact_bps: int = 0


class QuoteSource(Protocol):
    """Prices a swap. Two calls with the same inputs may disagree."""

    async def quote(
        self, source_token: str, target_token: str, source_amount: Decimal
    ) -> Quote:
        ...


# Reference rates: 1 unit of the outer token buys this much of the inner one.
DEFAULT_RATES: dict[str, dict[str, Decimal]] = {
    "ETH": {
        "USDC": Decimal("1850"),
        "USDT": Decimal("1845"),
        "DAI": Decimal("1848"),
        "WBTC": Decimal("0.042"),
    },
    "WBTC": {
        "ETH": Decimal("23.8"),
        "USDC": Decimal("44000"),
        "USDT": Decimal("43950"),
        "DAI": Decimal("43980"),
    },
    "USDC": {
        "ETH": Decimal("0.00054"),
        "WBTC": Decimal("0.0000227"),
        "USDT": Decimal("0.9998"),
        "DAI": Decimal("0.9997"),
    },
    "USDT": {
        "ETH": Decimal("0.000542"),
        "WBTC": Decimal("0.0000228"),
        "USDC": Decimal("1.0002"),
        "DAI": Decimal("0.9999"),
    },
    "DAI": {
        "ETH": Decimal("0.000541"),
        "WBTC": Decimal("0.0000227"),
        "USDC": Decimal("1.0003"),
        "USDT": Decimal("1.0001"),
    },
}

HOP_TOKEN = "USDC"


class RateTableQuoteSource:
    """Simulated market: table rates with a random move per call."""

    def __init__(
        self,
        rates: dict[str, dict[str, Decimal]] | None = None,
        fluctuation: float = 0.02,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize quote source.

        Args:
            rates: Rate table (defaults to DEFAULT_RATES).
            fluctuation: Total width of the random move (0.02 = +/-1%).
            rng: Random generator (seeded in tests).
        """
        self.rates = rates or DEFAULT_RATES
        self.fluctuation = fluctuation
        self.rng = rng or random.Random()

    def rate(self, source_token: str, target_token: str) -> Decimal:
        """Base rate for a pair. Unknown pairs trade 1:1."""
        return self.rates.get(source_token.upper(), {}).get(target_token.upper(), Decimal("1"))

    async def quote(
        self, source_token: str, target_token: str, source_amount: Decimal
    ) -> Quote:
        move = Decimal(str((self.rng.random() - 0.5) * self.fluctuation))
        rate = self.rate(source_token, target_token) * (1 + move)
        estimated = source_amount * rate
        route = self._best_route(source_token, target_token, estimated)

        logger.debug(
            f"Quoted {source_amount} {source_token} -> {estimated:.6f} {target_token}",
            extra={"rate": str(rate), "protocol": route["protocol"]},
        )
        return Quote(
            estimated_output=estimated,
            route=route,
            gas_estimate=int(route["gasEstimate"]),
            price_impact_bps=route["lossBps"],
        )

    def _best_route(self, source_token: str, target_token: str, estimated: Decimal) -> dict[str, Any]:
        """Pick the route with the highest output.

        The direct pool keeps 98% of the estimate, the hop through USDC 97%.
        The lost share is reported as the quote's price impact.
        """
        candidates = [
            {
                "path": [source_token, target_token],
                "protocol": "UniswapV3",
                "expectedOutput": estimated * Decimal("0.98"),
                "lossBps": 200,
                "gasEstimate": "150000",
                "confidence": 0.95,
            },
        ]
        if HOP_TOKEN not in (source_token.upper(), target_token.upper()):
            candidates.append(
                {
                    "path": [source_token, HOP_TOKEN, target_token],
                    "protocol": "SushiSwap",
                    "expectedOutput": estimated * Decimal("0.97"),
                    "lossBps": 300,
                    "gasEstimate": "200000",
                    "confidence": 0.92,
                }
            )
        best = max(candidates, key=lambda r: r["expectedOutput"])
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in best.items()}
