"""
Test data builders shared by the collector tests.

Addresses use decimal digits only so their checksummed and lower-case forms
are identical.
"""

import json
from typing import Optional

from eth_account import Account
from sqlalchemy.orm import Session

from collector.database import (
    DelegationRecord,
    DeveloperRecord,
    PlanRecord,
    ProjectRecord,
    SubscriptionRecord,
    SupportedTokenRecord,
    UserRecord,
)
from collector.delegation import (
    APPROVE_DELEGATION_KEY,
    APPROVE_SIGNATURE,
    CHARGE_DELEGATION_KEY,
    PROCESS_PAYMENT_SIGNATURE,
    CaveatEnforcers,
    build_delegation,
)
from collector.models import DueSubscription, OnChainPlan
from config import (
    DEFAULT_ALLOWED_METHODS_ENFORCER,
    DEFAULT_ALLOWED_TARGETS_ENFORCER,
    Settings,
)


# ============================================================================
# CONSTANTS
# ============================================================================

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OPERATOR_ADDRESS = Account.from_key(TEST_PRIVATE_KEY).address

SUBSCRIPTION_MANAGER = "0x1111111111111111111111111111111111111111"
TOKEN = "0x2222222222222222222222222222222222222222"
DELEGATION_MANAGER = "0x3333333333333333333333333333333333333333"
PAYER = "0x4444444444444444444444444444444444444444"
OTHER_ACCOUNT = "0x5555555555555555555555555555555555555555"

NOW = 1_700_000_000
MONTH = 30 * 24 * 3600
DUMMY_SIGNATURE = "0x" + "ab" * 65

ENFORCERS = CaveatEnforcers(
    allowed_targets=DEFAULT_ALLOWED_TARGETS_ENFORCER,
    allowed_methods=DEFAULT_ALLOWED_METHODS_ENFORCER,
)


# ============================================================================
# SETTINGS
# ============================================================================

def make_settings(**overrides) -> Settings:
    values = dict(
        OPERATOR_PRIVATE_KEY=TEST_PRIVATE_KEY,
        RPC_URL="http://localhost:8545",
        SUBSCRIPTION_MANAGER_ADDRESS=SUBSCRIPTION_MANAGER,
        DELEGATION_MANAGER_ADDRESS=DELEGATION_MANAGER,
        DATABASE_URL="sqlite://",
        RECEIPT_POLL_INTERVAL_SECONDS=0.01,
        RECEIPT_MAX_POLL_INTERVAL_SECONDS=0.04,
        RECEIPT_TIMEOUT_SECONDS=5.0,
        RECONCILE_RETRY_SECONDS=0.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ============================================================================
# DELEGATIONS
# ============================================================================

def signed_delegation_pair(
    payer: str = PAYER,
    operator: str = OPERATOR_ADDRESS,
    token: str = TOKEN,
    manager: str = SUBSCRIPTION_MANAGER,
    salt: int = 1760357528892,
) -> dict:
    """Delegation pair as the checkout flow stores it (salts as strings)"""
    approve = build_delegation(payer, operator, token, APPROVE_SIGNATURE, ENFORCERS, salt=salt)
    charge = build_delegation(payer, operator, manager, PROCESS_PAYMENT_SIGNATURE, ENFORCERS, salt=salt + 1)
    return {
        APPROVE_DELEGATION_KEY: {**approve.to_dict(), "signature": DUMMY_SIGNATURE},
        CHARGE_DELEGATION_KEY: {**charge.to_dict(), "signature": DUMMY_SIGNATURE},
    }


def signed_delegation_json(**kwargs) -> str:
    return json.dumps(signed_delegation_pair(**kwargs))


def make_due(
    subscription_id: str = "sub-1",
    smart_account: str = PAYER,
    delegation_data=None,
    period_seconds: int = MONTH,
    next_payment_date: int = NOW - 60,
) -> DueSubscription:
    return DueSubscription(
        subscription_id=subscription_id,
        user_id=f"user-{subscription_id}",
        developer_id="dev-1",
        plan_id="plan-1",
        project_id="project-1",
        smart_account=smart_account,
        subscription_manager=SUBSCRIPTION_MANAGER,
        contract_plan_id=1,
        token_address=TOKEN,
        token_symbol="USDC",
        period_seconds=period_seconds,
        next_payment_date=next_payment_date,
        delegation_data=delegation_data,
    )


# ============================================================================
# LEDGER ROWS
# ============================================================================

def seed_subscription(
    engine,
    subscription_id: str,
    smart_account: str = PAYER,
    next_payment_date: Optional[int] = NOW - 60,
    status: str = "active",
    delegation_data: Optional[str] = "",
    delegation_active: bool = True,
    delegation_manager: Optional[str] = None,
    period_seconds: int = MONTH,
    plan_id: str = "plan-1",
    token_symbol: Optional[str] = None,
    project_id: Optional[str] = "project-1",
    with_delegation: bool = True,
    last_payment_date: Optional[int] = None,
) -> None:
    """
    Insert a subscription with its user, plan and (optionally) delegation.

    delegation_data="" means "a valid signed pair for smart_account".
    """
    if delegation_data == "":
        delegation_data = signed_delegation_json(payer=smart_account)

    with Session(engine) as session:
        session.merge(DeveloperRecord(id="dev-1", email="dev@example.com"))
        session.merge(SupportedTokenRecord(id="token-1", token_address=TOKEN, symbol="USDC"))
        session.merge(ProjectRecord(id="project-1", developer_id="dev-1", name="Demo", supported_token_id="token-1"))
        session.merge(
            PlanRecord(
                id=plan_id,
                project_id=project_id,
                contract_plan_id=1,
                name="Monthly",
                price="10",
                token_address=TOKEN,
                token_symbol=token_symbol,
                period_seconds=period_seconds,
            )
        )
        session.merge(UserRecord(id=f"user-{subscription_id}", smart_account_address=smart_account))
        session.add(
            SubscriptionRecord(
                id=subscription_id,
                user_id=f"user-{subscription_id}",
                plan_id=plan_id,
                developer_id="dev-1",
                subscription_manager_address=SUBSCRIPTION_MANAGER,
                status=status,
                start_date=NOW - MONTH,
                last_payment_date=last_payment_date,
                next_payment_date=next_payment_date,
            )
        )
        if with_delegation:
            session.add(
                DelegationRecord(
                    user_smart_account=smart_account,
                    subscription_manager_address=delegation_manager or SUBSCRIPTION_MANAGER,
                    delegation_data=delegation_data,
                    is_active=delegation_active,
                    created_at=NOW - MONTH,
                )
            )
        session.commit()


def on_chain_plan(**overrides) -> OnChainPlan:
    values = dict(
        contract_plan_id=1,
        price=10_000_000,
        period_seconds=MONTH,
        active=True,
        token_address=TOKEN,
    )
    values.update(overrides)
    return OnChainPlan(**values)


# ============================================================================
# FAKE CHAIN
# ============================================================================

class FakeChain:
    """In-memory stand-in for ChainClient"""

    def __init__(self, plan: Optional[OnChainPlan] = None, decimals: int = 6):
        self.operator_address = OPERATOR_ADDRESS
        self.subscription_manager_address = SUBSCRIPTION_MANAGER
        self.delegation_manager_address = DELEGATION_MANAGER
        self.plan = plan or on_chain_plan()
        self.decimals = decimals
        self.not_due = set()
        self.receipt_status: Optional[int] = 1
        self.pending_polls = 0
        self.receipt_errors = []
        self.send_error: Optional[Exception] = None
        self.sent = []
        self.due_checks = []
        self.receipt_lookups = 0

    async def is_payment_due(self, payer: str):
        self.due_checks.append(payer)
        if payer.lower() in self.not_due:
            return False, NOW + MONTH
        return True, NOW - 60

    async def get_plan(self, contract_plan_id: int) -> OnChainPlan:
        return self.plan

    async def token_decimals(self, token_address: str) -> int:
        return self.decimals

    async def send_transaction(self, to: str, data: str, value: int = 0) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to, data))
        return "0x" + f"{len(self.sent):064x}"

    async def get_transaction_receipt(self, tx_hash: str):
        self.receipt_lookups += 1
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        if self.receipt_status is None or self.receipt_lookups <= self.pending_polls:
            return None
        return {"status": self.receipt_status, "blockNumber": 100, "transactionHash": tx_hash}


class SleepRecorder:
    """Async sleep replacement that records the requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
