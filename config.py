"""Configuration management using Pydantic settings"""

import re
from typing import List, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings

from collector.errors import ConfigurationError


# Caveat enforcers deployed by the delegation framework on Monad Testnet
DEFAULT_ALLOWED_TARGETS_ENFORCER = "0x7F20f61b1f09b08D970938F6fa563634d65c4EeB"
DEFAULT_ALLOWED_METHODS_ENFORCER = "0x2c21fD0Cb9DC8445CB3fb0DC5E7Bb0Aca01842B5"

MONAD_TESTNET_CHAIN_ID = 10143

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def normalize_db_url(url: str) -> str:
    """Heroku-style URLs use postgres://; SQLAlchemy expects postgresql://"""
    return url.replace("postgres://", "postgresql://", 1) if url.startswith("postgres://") else url


class Settings(BaseSettings):
    """Collector settings"""

    # Operating identity (the delegate that redeems payer delegations)
    OPERATOR_PRIVATE_KEY: SecretStr

    # Chain access
    RPC_URL: str
    RECEIPT_RPC_URL: Optional[str] = None
    CHAIN_ID: int = MONAD_TESTNET_CHAIN_ID
    SUBSCRIPTION_MANAGER_ADDRESS: str
    DELEGATION_MANAGER_ADDRESS: str

    # Known caveat enforcers, used for local scope checks before redemption
    ALLOWED_TARGETS_ENFORCER: Optional[str] = DEFAULT_ALLOWED_TARGETS_ENFORCER
    ALLOWED_METHODS_ENFORCER: Optional[str] = DEFAULT_ALLOWED_METHODS_ENFORCER

    # Ledger
    DATABASE_URL: str

    # Collection cycle
    PAYMENT_BATCH_SIZE: int = 20
    SCAN_LIMIT_MULTIPLIER: int = 5
    PAYMENT_POLL_INTERVAL_SECONDS: float = 60.0
    CYCLE_ERROR_BACKOFF_SECONDS: float = 10.0

    # Transport retries
    RATE_LIMIT_BACKOFFS: List[float] = [1.0, 2.0, 3.0]

    # Receipt polling
    RECEIPT_POLL_INTERVAL_SECONDS: float = 1.5
    RECEIPT_MAX_POLL_INTERVAL_SECONDS: float = 12.0
    RECEIPT_TIMEOUT_SECONDS: float = 120.0

    # Reconciliation
    RECONCILE_MAX_ATTEMPTS: int = 3
    RECONCILE_RETRY_SECONDS: float = 1.0
    PENDING_RECONCILIATION_PATH: Optional[str] = None

    DEFAULT_TOKEN_SYMBOL: str = "USDC"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("OPERATOR_PRIVATE_KEY", mode="before")
    @classmethod
    def _check_private_key(cls, value):
        raw = value.get_secret_value() if isinstance(value, SecretStr) else str(value or "")
        if not _PRIVATE_KEY_RE.match(raw):
            raise ValueError("must be a 32-byte hex private key")
        return raw if raw.startswith("0x") else f"0x{raw}"

    @field_validator("SUBSCRIPTION_MANAGER_ADDRESS", "DELEGATION_MANAGER_ADDRESS")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"invalid address: {value}")
        return to_checksum_address(value)

    @field_validator("ALLOWED_TARGETS_ENFORCER", "ALLOWED_METHODS_ENFORCER")
    @classmethod
    def _check_optional_address(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not is_address(value):
            raise ValueError(f"invalid address: {value}")
        return to_checksum_address(value)

    @field_validator("DATABASE_URL")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return normalize_db_url(value.strip())

    @field_validator("RPC_URL")
    @classmethod
    def _check_rpc_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    @field_validator(
        "PAYMENT_BATCH_SIZE",
        "SCAN_LIMIT_MULTIPLIER",
        "RECONCILE_MAX_ATTEMPTS",
        "PAYMENT_POLL_INTERVAL_SECONDS",
        "RECEIPT_POLL_INTERVAL_SECONDS",
        "RECEIPT_MAX_POLL_INTERVAL_SECONDS",
        "RECEIPT_TIMEOUT_SECONDS",
    )
    @classmethod
    def _check_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("RATE_LIMIT_BACKOFFS")
    @classmethod
    def _check_backoffs(cls, value: List[float]) -> List[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("backoff delays must not be negative")
        return value

    @property
    def scan_limit(self) -> int:
        """Maximum number of due subscriptions fetched per cycle"""
        return self.PAYMENT_BATCH_SIZE * self.SCAN_LIMIT_MULTIPLIER

    @property
    def receipt_rpc_url(self) -> str:
        return self.RECEIPT_RPC_URL or self.RPC_URL

    def describe(self) -> dict:
        """Non-secret settings summary for startup logging"""
        return {
            "rpc_url": self.RPC_URL,
            "receipt_rpc_url": self.receipt_rpc_url,
            "chain_id": self.CHAIN_ID,
            "subscription_manager": self.SUBSCRIPTION_MANAGER_ADDRESS,
            "delegation_manager": self.DELEGATION_MANAGER_ADDRESS,
            "batch_size": self.PAYMENT_BATCH_SIZE,
            "scan_limit": self.scan_limit,
            "poll_interval": self.PAYMENT_POLL_INTERVAL_SECONDS,
        }


def load_settings(**overrides) -> Settings:
    """
    Build settings from the environment (and .env).

    Missing or invalid required values are fatal: the collector must not
    start with a partial configuration.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid collector configuration: {problems}") from e
