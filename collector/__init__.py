"""
Recurring Payment Collector for Autiv

Charges subscription payers automatically by redeeming delegations they
signed at checkout, instead of holding their funds:

- Scanner finds subscriptions whose next charge time has passed
- Executor re-checks on-chain that payment is due, then redeems the
  approve + processPayment delegation pair in one atomic transaction
- Reconciliation writer records the payment once per transaction hash
- Runner repeats the cycle with bounded concurrency

The ledger is the single source of truth for bookkeeping; the chain is the
authority on whether a payment is due and whether a charge succeeded.
"""

from collector.errors import (
    CollectorError,
    ConfigurationError,
    DelegationError,
    DelegationScopeError,
    PlanUnavailableError,
    RedemptionRevertedError,
    ReceiptTimeoutError,
    ReconciliationError,
)
from collector.models import (
    SubscriptionStatus,
    UserSubscription,
    Payment,
    DueSubscription,
    OnChainPlan,
    ReconciliationRequest,
    ChargeStatus,
    ChargeResult,
    CycleReport,
)
from collector.delegation import (
    Caveat,
    Delegation,
    DelegationPair,
    Execution,
    CaveatEnforcers,
    SaltGenerator,
    normalize_delegation,
    parse_delegation_pair,
    build_delegation,
    encode_redeem_delegations,
)
from collector.resilience import (
    is_rate_limited,
    with_retry,
    PendingReconciliationQueue,
)

__all__ = [
    # Errors
    'CollectorError',
    'ConfigurationError',
    'DelegationError',
    'DelegationScopeError',
    'PlanUnavailableError',
    'RedemptionRevertedError',
    'ReceiptTimeoutError',
    'ReconciliationError',
    # Models
    'SubscriptionStatus',
    'UserSubscription',
    'Payment',
    'DueSubscription',
    'OnChainPlan',
    'ReconciliationRequest',
    'ChargeStatus',
    'ChargeResult',
    'CycleReport',
    # Delegations
    'Caveat',
    'Delegation',
    'DelegationPair',
    'Execution',
    'CaveatEnforcers',
    'SaltGenerator',
    'normalize_delegation',
    'parse_delegation_pair',
    'build_delegation',
    'encode_redeem_delegations',
    # Resilience
    'is_rate_limited',
    'with_retry',
    'PendingReconciliationQueue',
]
