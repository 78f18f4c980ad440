# /src/txflow/core/signer.py
"""
Key handling and transaction signing.

Key material enters the process exactly once, through ``parse_private_key``,
which validates it and wraps it in a ``KeyHandle``. Nothing downstream ever
sees the raw bytes; ``KeySigner`` only exposes ``address`` and ``sign``.
"""
from pathlib import Path
from typing import Union

from eth_account import Account as EthAccount
from eth_account.typed_transactions import TypedTransaction
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes
from pydantic import SecretStr

from txflow.core.errors import SignatureError, ValidationError
from txflow.core.logger import get_logger
from txflow.core.models import Account, FeeParams, SignedTransaction, UnsignedTransaction

log = get_logger(__name__)


class KeyHandle:
    """A validated signing key. Its repr never reveals the key."""
    __slots__ = ("_account", "key_ref")

    def __init__(self, local_account, key_ref: str):
        self._account = local_account
        self.key_ref = key_ref

    @property
    def address(self) -> str:
        return self._account.address

    def __repr__(self) -> str:
        return f"KeyHandle(address={self.address}, key_ref={self.key_ref!r})"


def parse_private_key(secret: Union[SecretStr, str], key_ref: str = "inline") -> KeyHandle:
    """Validate 32-byte hex key material and derive its address. Fails fast on anything else."""
    raw = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
    raw = (raw or "").strip()
    body = raw[2:] if raw.lower().startswith("0x") else raw
    if len(body) != 64:
        raise SignatureError(f"key material from {key_ref} is not a 32-byte hex key")
    try:
        local_account = EthAccount.from_key("0x" + body)
    except Exception as e:
        # The exception text may echo the key, so it is not chained
        raise SignatureError(f"key material from {key_ref} is invalid ({type(e).__name__})") from None
    log.info("SIGNING_KEY_LOADED", address=local_account.address, key_ref=key_ref)
    return KeyHandle(local_account, key_ref)


def load_key_material(settings) -> KeyHandle:
    """Resolve the configured key source: an injected secret, or a mounted secret file."""
    if settings.SIGNER_PRIVATE_KEY is not None:
        return parse_private_key(settings.SIGNER_PRIVATE_KEY, key_ref="env:SIGNER_PRIVATE_KEY")
    if settings.SIGNER_KEY_FILE:
        path = Path(settings.SIGNER_KEY_FILE)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SignatureError(f"cannot read key file {path}: {e.strerror}") from None
        return parse_private_key(SecretStr(content), key_ref=f"file:{path}")
    raise SignatureError("no key material configured (SIGNER_PRIVATE_KEY or SIGNER_KEY_FILE)")


class KeySigner:
    def __init__(self, key: KeyHandle):
        self._key = key

    @property
    def address(self) -> str:
        return self._key.address

    @property
    def account(self) -> Account:
        return Account(address=self._key.address, key_ref=self._key.key_ref)

    def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        try:
            signed = self._key._account.sign_transaction(tx.as_tx_dict())
        except Exception as e:
            log.error("TRANSACTION_SIGNING_FAILED", nonce=tx.nonce, error_type=type(e).__name__)
            raise SignatureError(f"signing nonce {tx.nonce} failed ({type(e).__name__})") from None
        raw = bytes(signed.raw_transaction)
        return SignedTransaction(
            tx=tx,
            raw=raw,
            tx_hash="0x" + bytes(signed.hash).hex(),
            sender=self.address,
        )


def decode_signed_transaction(raw: bytes) -> SignedTransaction:
    """Recover the transaction fields and sender from signed typed-transaction bytes."""
    raw = bytes(raw)
    if not raw or raw[0] > 0x7F:
        raise ValidationError("only typed (EIP-2718) transactions are supported")
    try:
        fields = TypedTransaction.from_bytes(HexBytes(raw)).as_dict()
        sender = EthAccount.recover_transaction(raw)
    except Exception as e:
        raise ValidationError(f"undecodable transaction bytes: {e}") from e

    if "maxFeePerGas" in fields:
        fee = FeeParams(
            max_fee_per_gas=fields["maxFeePerGas"],
            max_priority_fee_per_gas=fields["maxPriorityFeePerGas"],
        )
    else:
        fee = FeeParams(gas_price=fields["gasPrice"])
    tx = UnsignedTransaction(
        nonce=fields["nonce"],
        to=to_checksum_address(HexBytes(fields["to"])),
        value=fields["value"],
        gas_limit=fields["gas"],
        fee=fee,
        data=bytes(HexBytes(fields.get("data") or b"")),
        chain_id=fields["chainId"],
    )
    return SignedTransaction(tx=tx, raw=raw, tx_hash="0x" + keccak(raw).hex(), sender=sender)
