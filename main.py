# /main.py
# Demo entrypoint: send one transfer and follow it to an outcome.
import asyncio
import sys

from txflow.adapters.web3_endpoint import build_endpoint
from txflow.core.config import load_settings
from txflow.core.config_validator import validate as validate_config
from txflow.core.errors import BroadcastUncertain, TxLifecycleError
from txflow.core.logger import bind_account, configure_logging, get_logger
from txflow.core.models import TxIntent, TxState
from txflow.core.signer import KeySigner, load_key_material
from txflow.core.tx import TransactionLifecycleManager


async def main() -> int:
    settings = load_settings()
    configure_logging(settings)
    log = get_logger("txflow.main")
    validate_config(settings)

    signer = KeySigner(load_key_material(settings))
    bind_account(signer.address)
    endpoint = build_endpoint(settings)
    manager = TransactionLifecycleManager(endpoint, signer, settings)
    await manager.initialize()

    balance = await manager.balance()
    log.info("ACCOUNT_BALANCE", wei=balance)

    if not settings.TRANSFER_TO:
        log.info("NO_TRANSFER_CONFIGURED")
        return 0

    intent = TxIntent(to=settings.TRANSFER_TO, value=settings.TRANSFER_VALUE_WEI)
    try:
        handle = await manager.submit(intent)
    except BroadcastUncertain as e:
        log.error("TRANSFER_BROADCAST_UNCERTAIN", error=str(e))
        handle = e.handle
    except TxLifecycleError as e:
        log.error("TRANSFER_FAILED", error=str(e), error_type=type(e).__name__)
        return 1

    outcome = await manager.wait(handle)
    if outcome.state is TxState.TIMED_OUT:
        log.warning("TRANSFER_STALLED_REPLACING", tx_hash=outcome.tx_hash)
        handle = await manager.replace(handle)
        outcome = await manager.wait(handle)

    log.info("TRANSFER_OUTCOME", **outcome.model_dump(mode="json", exclude_none=True))
    return 0 if outcome.state is TxState.CONFIRMED else 1


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
