# /src/txflow/core/builder.py
from typing import Optional

from eth_utils import is_address, to_checksum_address

from txflow.core.config import FeeStrategy
from txflow.core.endpoint import ChainEndpoint
from txflow.core.errors import ValidationError
from txflow.core.logger import get_logger
from txflow.core.models import FeeParams, TxIntent, UnsignedTransaction

log = get_logger(__name__)

TRANSFER_GAS = 21_000
ZERO_BYTE_GAS = 4
NONZERO_BYTE_GAS = 16
UINT256_MAX = 2**256 - 1


def intrinsic_gas(data: bytes) -> int:
    """Minimum execution budget for a plain call carrying ``data``."""
    zeros = data.count(0)
    return TRANSFER_GAS + zeros * ZERO_BYTE_GAS + (len(data) - zeros) * NONZERO_BYTE_GAS


def _is_uint(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= UINT256_MAX


def validate_fee(fee: FeeParams) -> FeeParams:
    if fee.is_dynamic:
        if not (_is_uint(fee.max_fee_per_gas) and _is_uint(fee.max_priority_fee_per_gas)):
            raise ValidationError(f"dynamic fee components must be non-negative integers: {fee}")
        if fee.max_priority_fee_per_gas > fee.max_fee_per_gas:
            raise ValidationError("max_priority_fee_per_gas exceeds max_fee_per_gas")
        if fee.gas_price is not None:
            raise ValidationError("gas_price cannot be combined with dynamic fee components")
    elif not _is_uint(fee.gas_price):
        raise ValidationError(f"gas_price must be a non-negative integer: {fee}")
    return fee


class TransactionBuilder:
    """
    Turns a caller's intent plus an allocated nonce into an unsigned transaction.

    All input checks run before the endpoint is touched; fee resolution is the
    only network call and happens last.
    """
    def __init__(self, endpoint: ChainEndpoint, settings, chain_id: int):
        self.endpoint = endpoint
        self.settings = settings
        self.chain_id = chain_id

    def validate(self, intent: TxIntent) -> int:
        """Check the intent; returns the gas limit to use."""
        # Mixed-case input must also carry a valid EIP-55 checksum
        if not isinstance(intent.to, str) or not intent.to.startswith("0x") or not is_address(intent.to):
            raise ValidationError(f"recipient is not a valid address: {intent.to!r}")
        if not _is_uint(intent.value):
            raise ValidationError(f"value must be a non-negative integer below 2**256: {intent.value!r}")
        floor = intrinsic_gas(intent.data)
        gas_limit = intent.gas_limit if intent.gas_limit is not None else floor
        if not isinstance(gas_limit, int) or gas_limit < floor:
            raise ValidationError(f"gas limit {gas_limit} is below the intrinsic cost {floor}")
        return gas_limit

    async def resolve_fee(self) -> FeeParams:
        s = self.settings
        if s.FEE_STRATEGY is FeeStrategy.FIXED:
            if s.FIXED_MAX_FEE_PER_GAS is not None:
                return FeeParams(
                    max_fee_per_gas=s.FIXED_MAX_FEE_PER_GAS,
                    max_priority_fee_per_gas=s.FIXED_MAX_PRIORITY_FEE_PER_GAS or 0,
                )
            if s.FIXED_GAS_PRICE is None:
                raise ValidationError("fixed fee strategy needs FIXED_GAS_PRICE or FIXED_MAX_FEE_PER_GAS")
            return FeeParams(gas_price=s.FIXED_GAS_PRICE)

        suggested = await self.endpoint.suggested_fee()
        if s.FEE_STRATEGY is FeeStrategy.CAPPED and s.FEE_CAP_WEI is not None:
            capped = {k: min(v, s.FEE_CAP_WEI) for k, v in suggested.components().items()}
            if capped != suggested.components():
                log.warning("FEE_CAPPED", suggested=suggested.components(), cap=s.FEE_CAP_WEI)
            return FeeParams(**capped)
        return suggested

    async def build(self, intent: TxIntent, nonce: int, fee: Optional[FeeParams] = None) -> UnsignedTransaction:
        gas_limit = self.validate(intent)
        if not _is_uint(nonce):
            raise ValidationError(f"nonce must be a non-negative integer: {nonce!r}")
        if fee is not None:
            validate_fee(fee)
        else:
            fee = validate_fee(await self.resolve_fee())
        tx = UnsignedTransaction(
            nonce=nonce,
            to=to_checksum_address(intent.to),
            value=intent.value,
            gas_limit=gas_limit,
            fee=fee,
            data=intent.data,
            chain_id=self.chain_id,
        )
        log.debug("TRANSACTION_BUILT", nonce=nonce, to=tx.to, value=tx.value, gas=gas_limit, **fee.components())
        return tx
