"""
Ledger schema

SQLAlchemy models for the tables the collector reads and writes. The ledger
is owned by the platform; the collector only creates tables for local
development and tests (init_db). Timestamps are unix seconds, token amounts
are decimal strings so they round-trip exactly on every backend.
"""

import time

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _now() -> int:
    return int(time.time())


# --- Models -------------------------------------------------------------------

class UserRecord(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)
    wallet_address = Column(String(42), nullable=True)
    smart_account_address = Column(String(42), nullable=True, index=True)


class DeveloperRecord(Base):
    __tablename__ = "developers"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)
    wallet_address = Column(String(42), nullable=True)


class SupportedTokenRecord(Base):
    __tablename__ = "supported_tokens"

    id = Column(String(64), primary_key=True)
    token_address = Column(String(42), nullable=False)
    symbol = Column(String(16), nullable=False)


class ProjectRecord(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True)
    developer_id = Column(String(64), ForeignKey("developers.id"), nullable=True)
    name = Column(String(255), nullable=True)
    supported_token_id = Column(String(64), ForeignKey("supported_tokens.id"), nullable=True)


class PlanRecord(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=True)
    contract_plan_id = Column(BigInteger, nullable=False)
    name = Column(String(255), nullable=True)
    price = Column(String(78), nullable=False)  # cached copy; the chain is authoritative
    token_address = Column(String(42), nullable=True)
    token_symbol = Column(String(16), nullable=True)
    period_seconds = Column(BigInteger, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class SubscriptionRecord(Base):
    __tablename__ = "user_subscriptions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(64), ForeignKey("subscription_plans.id"), nullable=False)
    developer_id = Column(String(64), ForeignKey("developers.id"), nullable=True)
    subscription_manager_address = Column(String(42), nullable=False)
    status = Column(String(16), nullable=False, default="active", index=True)
    start_date = Column(BigInteger, nullable=True)
    last_payment_date = Column(BigInteger, nullable=True)
    next_payment_date = Column(BigInteger, nullable=True, index=True)
    cancel_requested_at = Column(BigInteger, nullable=True)
    cancelled_at = Column(BigInteger, nullable=True)


class DelegationRecord(Base):
    __tablename__ = "user_delegations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_smart_account = Column(String(42), nullable=False, index=True)
    subscription_manager_address = Column(String(42), nullable=False)
    delegation_data = Column(Text, nullable=True)  # JSON: approve + processPayment delegations
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(BigInteger, nullable=False, default=_now)
    disabled_at = Column(BigInteger, nullable=True)


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String(64), ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    developer_id = Column(String(64), nullable=True)
    amount = Column(String(78), nullable=False)
    token_address = Column(String(42), nullable=False)
    token_symbol = Column(String(16), nullable=True)
    payment_date = Column(BigInteger, nullable=False)
    tx_hash = Column(String(66), nullable=False, unique=True)


# --- Helpers ------------------------------------------------------------------

def create_ledger_engine(url: str) -> Engine:
    # SQLite needs this flag because ledger calls run in worker threads
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
