"""
Ledger access for the collector.

LedgerStore is the only object that issues SQL. Its methods are synchronous
(SQLAlchemy engine, pooled connections); async callers run them through
asyncio.to_thread so concurrent workers share the pool without blocking the
event loop.
"""

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.engine import Engine, Row

from collector.database import (
    DelegationRecord,
    PaymentRecord,
    PlanRecord,
    ProjectRecord,
    SubscriptionRecord,
    SupportedTokenRecord,
    UserRecord,
)
from collector.models import (
    DueSubscription,
    Payment,
    ReconciliationRequest,
    SubscriptionStatus,
    UserSubscription,
)
from utils.logger import logger


class LedgerStore:
    """Relational ledger of subscriptions, delegations and payments"""

    def __init__(self, engine: Engine, default_token_symbol: str = "USDC"):
        self.engine = engine
        self.default_token_symbol = default_token_symbol

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _delegation_filter(self):
        return and_(
            func.lower(DelegationRecord.user_smart_account) == func.lower(UserRecord.smart_account_address),
            func.lower(DelegationRecord.subscription_manager_address)
            == func.lower(SubscriptionRecord.subscription_manager_address),
            DelegationRecord.is_active.is_(True),
        )

    def fetch_due_subscriptions(self, now: int, limit: int) -> List[DueSubscription]:
        """
        Active subscriptions whose next charge time has passed and that hold
        an active delegation for their subscription manager, oldest-due first.
        """
        latest_delegation = (
            select(DelegationRecord.delegation_data)
            .where(self._delegation_filter())
            .order_by(DelegationRecord.created_at.desc(), DelegationRecord.id.desc())
            .limit(1)
            .correlate(UserRecord, SubscriptionRecord)
            .scalar_subquery()
        )
        has_delegation = (
            select(DelegationRecord.id)
            .where(self._delegation_filter())
            .correlate(UserRecord, SubscriptionRecord)
            .exists()
        )

        stmt = (
            select(
                SubscriptionRecord.id.label("subscription_id"),
                SubscriptionRecord.user_id,
                SubscriptionRecord.developer_id,
                SubscriptionRecord.plan_id,
                SubscriptionRecord.subscription_manager_address,
                SubscriptionRecord.next_payment_date,
                UserRecord.smart_account_address,
                PlanRecord.project_id,
                PlanRecord.contract_plan_id,
                PlanRecord.period_seconds,
                func.coalesce(SupportedTokenRecord.token_address, PlanRecord.token_address).label("token_address"),
                func.coalesce(SupportedTokenRecord.symbol, PlanRecord.token_symbol).label("token_symbol"),
                latest_delegation.label("delegation_data"),
            )
            .select_from(SubscriptionRecord)
            .join(UserRecord, UserRecord.id == SubscriptionRecord.user_id)
            .join(PlanRecord, PlanRecord.id == SubscriptionRecord.plan_id)
            .outerjoin(ProjectRecord, ProjectRecord.id == PlanRecord.project_id)
            .outerjoin(SupportedTokenRecord, SupportedTokenRecord.id == ProjectRecord.supported_token_id)
            .where(
                SubscriptionRecord.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRecord.next_payment_date.is_not(None),
                SubscriptionRecord.next_payment_date <= now,
                has_delegation,
            )
            .order_by(SubscriptionRecord.next_payment_date.asc(), SubscriptionRecord.id.asc())
            .limit(limit)
        )

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()

        return [self._due_from_row(row) for row in rows]

    def _due_from_row(self, row: Row) -> DueSubscription:
        return DueSubscription(
            subscription_id=row.subscription_id,
            user_id=row.user_id,
            developer_id=row.developer_id,
            plan_id=row.plan_id,
            project_id=row.project_id,
            smart_account=row.smart_account_address,
            subscription_manager=row.subscription_manager_address,
            contract_plan_id=int(row.contract_plan_id),
            token_address=row.token_address,
            token_symbol=row.token_symbol or self.default_token_symbol,
            period_seconds=int(row.period_seconds or 0),
            next_payment_date=int(row.next_payment_date),
            delegation_data=row.delegation_data,
        )

    def get_subscription(self, subscription_id: str) -> Optional[UserSubscription]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(SubscriptionRecord.__table__).where(SubscriptionRecord.id == subscription_id)
            ).first()

        if row is None:
            return None
        return UserSubscription(
            subscription_id=row.id,
            user_id=row.user_id,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            start_date=row.start_date,
            last_payment_date=row.last_payment_date,
            next_payment_date=row.next_payment_date,
            cancel_requested_at=row.cancel_requested_at,
            cancelled_at=row.cancelled_at,
            developer_id=row.developer_id,
        )

    def list_payments(self, subscription_id: Optional[str] = None) -> List[Payment]:
        stmt = select(PaymentRecord.__table__).order_by(PaymentRecord.id.asc())
        if subscription_id is not None:
            stmt = stmt.where(PaymentRecord.subscription_id == subscription_id)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()

        return [
            Payment(
                subscription_id=row.subscription_id,
                user_id=row.user_id,
                developer_id=row.developer_id,
                amount=Decimal(row.amount),
                token_address=row.token_address,
                token_symbol=row.token_symbol,
                payment_date=row.payment_date,
                tx_hash=row.tx_hash,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_ignoring_duplicates(self):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Idempotent payment insert not supported on {dialect}")
        return insert(PaymentRecord.__table__)

    def apply_payment(self, request: ReconciliationRequest) -> bool:
        """
        Record a confirmed charge and advance the subscription, atomically.

        The payment insert is keyed by tx_hash; if the hash is already
        recorded nothing is written and False is returned.
        """
        insert_payment = (
            self._insert_ignoring_duplicates()
            .values(
                subscription_id=request.subscription_id,
                user_id=request.user_id,
                developer_id=request.developer_id,
                amount=str(request.amount),
                token_address=request.token_address,
                token_symbol=request.token_symbol,
                payment_date=request.charged_at,
                tx_hash=request.tx_hash,
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
        )

        with self.engine.begin() as conn:
            inserted = conn.execute(insert_payment).rowcount == 1
            if not inserted:
                logger.info(f"Payment {request.tx_hash} already recorded, skipping")
                return False

            conn.execute(
                update(SubscriptionRecord)
                .where(SubscriptionRecord.id == request.subscription_id)
                .values(
                    last_payment_date=request.charged_at,
                    next_payment_date=request.next_payment_date,
                )
            )

        return True
