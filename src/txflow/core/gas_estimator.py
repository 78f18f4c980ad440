# /src/txflow/core/gas_estimator.py
# Fee suggestion for the "suggested" and "capped" strategies.
from decimal import Decimal

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from txflow.core.logger import get_logger
from txflow.core.models import FeeParams

log = get_logger(__name__)

FALLBACK_PRIORITY_FEE = int(Decimal("1.5") * 10**9)  # 1.5 gwei


class GasEstimator:
    """
    Suggests fees from the node: EIP-1559 when the chain reports a base fee,
    the legacy gas price otherwise.
    """
    def __init__(self, w3: AsyncWeb3, priority_multiplier: Decimal = Decimal("1.2")):
        self.w3 = w3
        self.priority_multiplier = Decimal(str(priority_multiplier))

    async def get_base_fee(self) -> int | None:
        latest_block = await self.w3.eth.get_block("latest")
        return latest_block.get("baseFeePerGas")

    async def get_priority_fee(self) -> int:
        try:
            # eth_maxPriorityFeePerGas is the modern standard
            return await self.w3.eth.max_priority_fee
        except (ValueError, NotImplementedError, Web3Exception) as e:
            log.warning("MAX_PRIORITY_FEE_RPC_UNSUPPORTED_FALLING_BACK", error=str(e))
            return FALLBACK_PRIORITY_FEE

    async def suggest(self) -> FeeParams:
        base_fee = await self.get_base_fee()
        if base_fee is None:
            return FeeParams(gas_price=await self.w3.eth.gas_price)

        priority_fee = int(Decimal(await self.get_priority_fee()) * self.priority_multiplier)
        # Headroom for two full blocks of base fee growth
        return FeeParams(
            max_fee_per_gas=2 * base_fee + priority_fee,
            max_priority_fee_per_gas=priority_fee,
        )
