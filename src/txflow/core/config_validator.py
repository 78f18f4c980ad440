# /src/txflow/core/config_validator.py
# Run at startup to validate configuration and secret injection.
from txflow.core.config import FeeStrategy
from txflow.core.logger import get_logger

log = get_logger(__name__)


def validate(settings):
    log.info("CONFIG_VALIDATION_START", network=settings.NETWORK)
    errors = []

    if not settings.rpc_urls:
        errors.append(f"No RPC URL mapped for network '{settings.NETWORK}' in NETWORKS")
    if settings.SIGNER_PRIVATE_KEY is None and not settings.SIGNER_KEY_FILE:
        errors.append("Missing key material: set SIGNER_PRIVATE_KEY or SIGNER_KEY_FILE")
    if settings.RPC_MAX_ATTEMPTS < 1:
        errors.append("RPC_MAX_ATTEMPTS must be at least 1")
    if settings.POLL_INTERVAL_S <= 0 or settings.POLL_BACKOFF_CEILING_S < settings.POLL_INTERVAL_S:
        errors.append("POLL_INTERVAL_S must be positive and not above POLL_BACKOFF_CEILING_S")
    if settings.POLL_BACKOFF_MULTIPLIER < 1:
        errors.append("POLL_BACKOFF_MULTIPLIER must be >= 1")
    if settings.CONFIRMATION_DEADLINE_S <= 0:
        errors.append("CONFIRMATION_DEADLINE_S must be positive")
    if settings.REPLACEMENT_FEE_BUMP_PCT < 1:
        errors.append("REPLACEMENT_FEE_BUMP_PCT must be at least 1")
    if settings.FEE_STRATEGY is FeeStrategy.FIXED and settings.FIXED_GAS_PRICE is None and settings.FIXED_MAX_FEE_PER_GAS is None:
        errors.append("FEE_STRATEGY=fixed needs FIXED_GAS_PRICE or FIXED_MAX_FEE_PER_GAS")
    if settings.FEE_STRATEGY is FeeStrategy.CAPPED and settings.FEE_CAP_WEI is None:
        errors.append("FEE_STRATEGY=capped needs FEE_CAP_WEI")

    if errors:
        for error in errors:
            log.critical("CONFIG_INVALID", error=error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("CONFIG_VALIDATION_PASSED")
