# /src/txflow/core/config.py
from enum import Enum
from typing import Dict, List

from pydantic import SecretStr
from pydantic_settings import BaseSettings


class FeeStrategy(str, Enum):
    FIXED = "fixed"
    SUGGESTED = "suggested"
    CAPPED = "capped"


class Settings(BaseSettings):
    """
    Runtime configuration. Constructed once by the entrypoint and handed to
    every component that needs it; nothing reads it from module state.
    Secrets (key material, URLs carrying API keys) are injected through the
    environment or a mounted secret file, never committed.
    """
    # Network selection: name -> RPC URL. A comma-separated value lists failover URLs.
    NETWORKS: Dict[str, SecretStr] = {}
    NETWORK: str = "sepolia"
    CHAIN_ID: int | None = None

    # Key material source
    SIGNER_PRIVATE_KEY: SecretStr | None = None
    SIGNER_KEY_FILE: str | None = None

    # Endpoint call policy
    RPC_TIMEOUT_S: float = 10.0
    RPC_MAX_ATTEMPTS: int = 3
    RPC_BACKOFF_MIN_S: float = 1.0
    RPC_BACKOFF_MAX_S: float = 5.0

    # Confirmation tracking
    CONFIRMATION_DEADLINE_S: float = 300.0
    POLL_INTERVAL_S: float = 2.0
    POLL_BACKOFF_MULTIPLIER: float = 1.5
    POLL_BACKOFF_CEILING_S: float = 15.0
    DROP_CONFIRMATIONS: int = 3

    # Fees (wei)
    FEE_STRATEGY: FeeStrategy = FeeStrategy.SUGGESTED
    FIXED_GAS_PRICE: int | None = None
    FIXED_MAX_FEE_PER_GAS: int | None = None
    FIXED_MAX_PRIORITY_FEE_PER_GAS: int | None = None
    FEE_CAP_WEI: int | None = None
    PRIORITY_FEE_MULTIPLIER: float = 1.2
    REPLACEMENT_FEE_BUMP_PCT: int = 10

    # Operational
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: SecretStr | None = None
    AUDIT_LOG_PATH: str | None = None
    AUDIT_LOG_SIGNING_KEY: SecretStr | None = None

    # Demo transfer used by main.py
    TRANSFER_TO: str | None = None
    TRANSFER_VALUE_WEI: int = 0

    @property
    def rpc_urls(self) -> List[str]:
        """RPC URLs configured for the selected network, primary first."""
        secret = self.NETWORKS.get(self.NETWORK)
        if secret is None:
            return []
        return [u.strip() for u in secret.get_secret_value().split(",") if u.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except Exception as e:
        # Late import: logger imports this module
        from txflow.core.logger import get_logger
        get_logger("txflow.config").critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
        raise
