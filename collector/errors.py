"""
Collector Exceptions

Precondition errors skip a subscription for the current cycle, transport
errors are retried where they happen, and reconciliation errors are the only
ones that leave the ledger behind the chain.
"""

from typing import Optional


class CollectorError(Exception):
    """Base class for all collector errors"""


class ConfigurationError(CollectorError):
    """Required configuration is missing or invalid (fatal at startup)"""


class DelegationError(CollectorError):
    """Stored delegation is missing, unparsable or not usable"""


class DelegationScopeError(DelegationError):
    """Delegation caveats do not allow the execution it would be redeemed for"""


class PlanUnavailableError(CollectorError):
    """On-chain plan is missing or inactive"""


class RedemptionRevertedError(CollectorError):
    """The redemption transaction was mined but reverted"""

    def __init__(self, tx_hash: str, block_number: Optional[int] = None):
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"Transaction {tx_hash} reverted in block {block_number}")


class ReceiptTimeoutError(CollectorError):
    """No receipt observed before the wall-clock timeout"""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Timeout waiting for receipt {tx_hash} after {timeout:.0f}s")


class ReconciliationError(CollectorError):
    """A confirmed payment could not be written to the ledger"""

    def __init__(self, tx_hash: str, message: str):
        self.tx_hash = tx_hash
        super().__init__(f"Failed to record confirmed payment {tx_hash}: {message}")
