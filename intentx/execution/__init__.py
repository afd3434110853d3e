"""Execution layer - intent model, quotes, signatures and settlement."""

from intentx.execution.intents import (
    FailureReason,
    Intent,
    IntentRequest,
    IntentStatus,
    Mutation,
)
from intentx.execution.quotes import Quote, QuoteSource, RateTableQuoteSource
from intentx.execution.settlement import SettlementClient, SimulatedSettlement
from intentx.execution.signatures import EthSignatureVerifier, SignatureVerifier

__all__ = [
    "FailureReason",
    "Intent",
    "IntentRequest",
    "IntentStatus",
    "Mutation",
    "Quote",
    "QuoteSource",
    "RateTableQuoteSource",
    "SettlementClient",
    "SimulatedSettlement",
    "EthSignatureVerifier",
    "SignatureVerifier",
]
