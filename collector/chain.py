"""
Chain client

Long-lived handle over the RPC endpoints: read calls against the
subscription manager and token contracts, transaction submission signed by
the collector's operating key, and receipt lookups.

Every call goes through with_retry(): reads retry on rate limits and
transport timeouts, writes only on rate limits. Nonces are assigned under a
lock so concurrent workers never submit two transactions with the same nonce.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from collector.models import OnChainPlan
from collector.resilience import is_rate_limited, is_transient, with_retry
from utils.logger import logger


SUBSCRIPTION_MANAGER_ABI = [
    {
        "type": "function",
        "name": "getPlan",
        "stateMutability": "view",
        "inputs": [{"name": "planId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "internalType": "struct SubscriptionManager.Plan",
                "components": [
                    {"name": "id", "type": "uint256"},
                    {"name": "name", "type": "string"},
                    {"name": "price", "type": "uint256"},
                    {"name": "period", "type": "uint256"},
                    {"name": "active", "type": "bool"},
                    {"name": "tokenAddress", "type": "address"},
                ],
            },
        ],
    },
    {
        "type": "function",
        "name": "isPaymentDue",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [
            {"name": "due", "type": "bool"},
            {"name": "nextPaymentDue", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "processPayment",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [],
    },
]

PLAN_FIELDS = tuple(
    component["name"] for component in SUBSCRIPTION_MANAGER_ABI[0]["outputs"][0]["components"]
)

ERC20_ABI = [
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


class ChainClient:
    """RPC access for the collector"""

    def __init__(
        self,
        settings,
        web3: Optional[AsyncWeb3] = None,
        receipt_web3: Optional[AsyncWeb3] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._web3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.RPC_URL))
        if receipt_web3 is not None:
            self._receipt_web3 = receipt_web3
        elif settings.RECEIPT_RPC_URL:
            self._receipt_web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.RECEIPT_RPC_URL))
        else:
            self._receipt_web3 = self._web3

        self._account = Account.from_key(settings.OPERATOR_PRIVATE_KEY.get_secret_value())
        self._manager = self._web3.eth.contract(
            address=to_checksum_address(settings.SUBSCRIPTION_MANAGER_ADDRESS),
            abi=SUBSCRIPTION_MANAGER_ABI,
        )
        self._sleep = sleep
        self._backoffs = tuple(settings.RATE_LIMIT_BACKOFFS)

        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._decimals_cache: Dict[str, int] = {}

    @property
    def operator_address(self) -> str:
        return self._account.address

    @property
    def subscription_manager_address(self) -> str:
        return self._manager.address

    @property
    def delegation_manager_address(self) -> str:
        return to_checksum_address(self.settings.DELEGATION_MANAGER_ADDRESS)

    async def _read(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await with_retry(operation, is_transient, self._backoffs, label=label, sleep=self._sleep)

    async def _write(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await with_retry(operation, is_rate_limited, self._backoffs, label=label, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_plan(self, contract_plan_id: int) -> OnChainPlan:
        raw = await self._read(
            lambda: self._manager.functions.getPlan(contract_plan_id).call(),
            "subscription-plan",
        )
        # The Plan struct decodes as a positional tuple
        plan = dict(zip(PLAN_FIELDS, raw))
        return OnChainPlan(
            contract_plan_id=contract_plan_id,
            price=int(plan["price"]),
            period_seconds=int(plan["period"]),
            active=bool(plan["active"]),
            token_address=to_checksum_address(plan["tokenAddress"]),
            name=plan["name"],
        )

    async def is_payment_due(self, payer: str) -> Tuple[bool, int]:
        due, next_due = await self._read(
            lambda: self._manager.functions.isPaymentDue(to_checksum_address(payer)).call(),
            "is-payment-due",
        )
        return bool(due), int(next_due)

    async def token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key not in self._decimals_cache:
            token = self._web3.eth.contract(address=to_checksum_address(token_address), abi=ERC20_ABI)
            decimals = await self._read(lambda: token.functions.decimals().call(), "token-decimals")
            self._decimals_cache[key] = int(decimals)
        return self._decimals_cache[key]

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        """Receipt for tx_hash, or None while it is still pending"""
        try:
            return await self._read(
                lambda: self._receipt_web3.eth.get_transaction_receipt(tx_hash),
                "receipt",
            )
        except TransactionNotFound:
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        """Sign and submit a transaction from the operating key; returns its hash"""
        tx = {
            "from": self.operator_address,
            "to": to_checksum_address(to),
            "data": data,
            "value": value,
            "chainId": self.settings.CHAIN_ID,
        }

        # Outside the nonce lock; estimate_gas fails fast on a redemption that would revert
        tx["gas"] = await self._read(lambda: self._web3.eth.estimate_gas(dict(tx)), "estimate-gas")
        tx["gasPrice"] = await self._read(lambda: self._web3.eth.gas_price, "gas-price")

        async with self._nonce_lock:
            try:
                if self._next_nonce is None:
                    self._next_nonce = await self._read(
                        lambda: self._web3.eth.get_transaction_count(self.operator_address, "pending"),
                        "nonce",
                    )
                tx["nonce"] = self._next_nonce

                unsigned = {k: v for k, v in tx.items() if k != "from"}
                signed = self._account.sign_transaction(unsigned)
                tx_hash = await self._write(
                    lambda: self._web3.eth.send_raw_transaction(signed.raw_transaction),
                    "send-tx",
                )
            except Exception:
                # Resync from the node on the next submission
                self._next_nonce = None
                raise

            self._next_nonce += 1

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.debug(f"Submitted {tx_hash_hex} with nonce {tx['nonce']}")
        return tx_hash_hex
