"""Settlement collaborators that finalize swaps outside this process."""

import asyncio
import hashlib
import itertools
import logging
import time
from decimal import Decimal
from typing import Any, Protocol

from intentx.errors import SettlementError
from intentx.execution.intents import Intent

logger = logging.getLogger(__name__)


class SettlementClient(Protocol):
    """Finalizes an executed swap and returns an external reference."""

    async def settle(self, intent: Intent, executed_amount: Decimal) -> str:
        """Settle the swap.

        Must be idempotent per `intent.intent_id`.

        Raises:
            SettlementError: On any failure.
        """
        ...

    async def find_settlement(self, intent: Intent) -> str | None:
        """Look up an earlier settlement for crash recovery."""
        ...


class SimulatedSettlement:
    """Fake chain: returns a deterministic-looking transaction hash.

    Keeps the hash per intent so repeated calls return the same reference.
    """

    def __init__(self, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self._counter = itertools.count(1)
        self._settled: dict[str, str] = {}

    async def settle(self, intent: Intent, executed_amount: Decimal) -> str:
        if intent.intent_id in self._settled:
            return self._settled[intent.intent_id]
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        seed = f"tx-{intent.intent_id}-{executed_amount}-{time.time_ns()}-{next(self._counter)}"
        tx_hash = "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()
        self._settled[intent.intent_id] = tx_hash
        logger.info(
            f"Simulated settlement {tx_hash[:10]}...",
            extra={"intent_id": intent.intent_id, "tx_hash": tx_hash},
        )
        return tx_hash

    async def find_settlement(self, intent: Intent) -> str | None:
        return self._settled.get(intent.intent_id)


# Subset of the IntentX contract ABI used for settlement.
INTENTX_ABI = [
    {
        "name": "executeIntent",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "intentId", "type": "bytes32"},
            {"name": "targetAmount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "IntentExecuted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "intentId", "type": "bytes32", "indexed": True},
            {"name": "executor", "type": "address", "indexed": True},
            {"name": "targetAmount", "type": "uint256", "indexed": False},
        ],
    },
]


class ContractSettlement:
    """Settles intents through the deployed IntentX contract.

    The on-chain intent id is keccak256 of the off-chain id, so lookups
    after a restart need nothing but the intent itself.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        decimals: int = 18,
        receipt_timeout_seconds: float = 120.0,
        w3: Any = None,
    ) -> None:
        """Initialize contract settlement.

        Args:
            rpc_url: JSON-RPC endpoint.
            private_key: Executor wallet key.
            contract_address: Deployed IntentX contract.
            decimals: Target token decimals.
            receipt_timeout_seconds: Wait bound for the mined receipt.
            w3: Web3 client (defaults to an HTTP provider on `rpc_url`).
        """
        from eth_account import Account
        from web3 import Web3

        self.w3 = w3 if w3 is not None else Web3(Web3.HTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=INTENTX_ABI
        )
        self.decimals = decimals
        self.receipt_timeout_seconds = receipt_timeout_seconds

        logger.info(
            "Contract settlement initialized",
            extra={"executor": self.account.address, "contract": contract_address},
        )

    def chain_intent_id(self, intent: Intent) -> bytes:
        from web3 import Web3

        return Web3.keccak(text=intent.intent_id)

    def _to_units(self, amount: Decimal) -> int:
        return int(amount.scaleb(self.decimals).to_integral_value())

    def _settle_sync(self, intent: Intent, executed_amount: Decimal) -> str:
        tx = self.contract.functions.executeIntent(
            self.chain_intent_id(intent), self._to_units(executed_amount)
        ).build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout_seconds
        )
        if receipt.status != 1:
            raise SettlementError(f"executeIntent reverted: {tx_hash.hex()}")
        return self.w3.to_hex(tx_hash)

    async def settle(self, intent: Intent, executed_amount: Decimal) -> str:
        try:
            return await asyncio.to_thread(self._settle_sync, intent, executed_amount)
        except SettlementError:
            raise
        except Exception as e:
            raise SettlementError(f"Blockchain error: {e}") from e

    def _find_sync(self, intent: Intent) -> str | None:
        logs = self.contract.events.IntentExecuted().get_logs(
            from_block=0,
            argument_filters={"intentId": self.chain_intent_id(intent)},
        )
        if not logs:
            return None
        return self.w3.to_hex(logs[-1]["transactionHash"])

    async def find_settlement(self, intent: Intent) -> str | None:
        try:
            return await asyncio.to_thread(self._find_sync, intent)
        except Exception as e:
            raise SettlementError(f"Blockchain lookup failed: {e}") from e
