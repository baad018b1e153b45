"""
Collector Data Models

Plain data structures shared by the scanner, executor, reconciliation writer
and runner. Ledger rows are mapped into these by collector.ledger; nothing
here talks to the database or the chain.
"""

from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any


class SubscriptionStatus(str, Enum):
    """Subscription status states"""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ChargeStatus(str, Enum):
    """Exit state of one charge attempt"""
    PAID = "paid"
    SKIPPED_NO_DELEGATION = "skipped_no_delegation"
    SKIPPED_NOT_DUE = "skipped_not_due"
    SKIPPED_PRECONDITION = "skipped_precondition"
    ERROR = "error"


@dataclass
class UserSubscription:
    """A payer's subscription against a plan"""
    subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: Optional[int] = None
    last_payment_date: Optional[int] = None
    next_payment_date: Optional[int] = None
    cancel_requested_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    developer_id: Optional[str] = None


@dataclass
class Payment:
    """Immutable record of a confirmed charge, keyed by transaction hash"""
    subscription_id: str
    user_id: str
    developer_id: Optional[str]
    amount: Decimal
    token_address: str
    token_symbol: Optional[str]
    payment_date: int
    tx_hash: str


@dataclass
class DueSubscription:
    """One row of the due-subscription scan"""
    subscription_id: str
    user_id: str
    developer_id: Optional[str]
    plan_id: str
    project_id: Optional[str]
    smart_account: str
    subscription_manager: str
    contract_plan_id: int
    token_address: str
    token_symbol: str
    period_seconds: int
    next_payment_date: int
    delegation_data: Any = None


@dataclass
class OnChainPlan:
    """Plan as reported by the charging contract (authoritative)"""
    contract_plan_id: int
    price: int
    period_seconds: int
    active: bool
    token_address: str
    name: str = ""


@dataclass
class ReconciliationRequest:
    """Everything needed to record one confirmed charge"""
    subscription_id: str
    user_id: str
    developer_id: Optional[str]
    amount: Decimal
    token_address: str
    token_symbol: Optional[str]
    tx_hash: str
    period_seconds: Optional[int]
    charged_at: int

    @property
    def next_payment_date(self) -> Optional[int]:
        """None when the plan has no renewal period"""
        if self.period_seconds and self.period_seconds > 0:
            return self.charged_at + self.period_seconds
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationRequest':
        return cls(
            subscription_id=data["subscription_id"],
            user_id=data["user_id"],
            developer_id=data.get("developer_id"),
            amount=Decimal(str(data["amount"])),
            token_address=data["token_address"],
            token_symbol=data.get("token_symbol"),
            tx_hash=data["tx_hash"],
            period_seconds=data.get("period_seconds"),
            charged_at=int(data["charged_at"]),
        )


@dataclass
class ChargeResult:
    """Outcome of one subscription's charge workflow in one cycle"""
    subscription_id: str
    status: ChargeStatus
    reason: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == ChargeStatus.PAID


@dataclass
class CycleReport:
    """Summary of a collection cycle"""
    due: int = 0
    replayed: int = 0
    results: List[ChargeResult] = field(default_factory=list)

    def record(self, result: ChargeResult) -> None:
        self.results.append(result)

    def count(self, status: ChargeStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def tx_hashes(self) -> List[str]:
        return [r.tx_hash for r in self.results if r.is_paid and r.tx_hash]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due": self.due,
            "replayed": self.replayed,
            "counts": {status.value: self.count(status) for status in ChargeStatus},
            "tx_hashes": self.tx_hashes,
            "errors": [
                {"subscription_id": r.subscription_id, "reason": r.reason, "error": r.error}
                for r in self.results
                if r.status == ChargeStatus.ERROR
            ],
        }
