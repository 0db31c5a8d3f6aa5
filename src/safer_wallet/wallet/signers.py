"""Owner signers.

Every signer exposes the same capability set (``Signer``); which concrete
implementation backs an owner is chosen from ``OwnerConfig.type`` by
:func:`create_signer`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from safer_wallet.config import OwnerConfig, is_placeholder, resolve_secret
from safer_wallet.exceptions import ConfigurationError, ParameterError
from safer_wallet.wallet.keystore import decrypt_key, load_address

logger = logging.getLogger("safer_wallet.wallet.signers")

KEYSTORE_PASSWORD_ENV = "SAFER_KEYSTORE_PASSWORD"


@runtime_checkable
class Signer(Protocol):
    """What the services need from an owner key."""

    address: str

    def get_address(self) -> str: ...

    def sign_message(self, message: Union[bytes, str]) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...

    def is_available(self) -> bool: ...

    def get_account(self) -> Optional[LocalAccount]: ...


def _message_bytes(message: Union[bytes, str]) -> bytes:
    if isinstance(message, bytes):
        return message
    if message.startswith("0x"):
        return Web3.to_bytes(hexstr=message)
    return message.encode("utf-8")


# ---------------------------------------------------------------------------
# In-memory keys
# ---------------------------------------------------------------------------


class PrivateKeySigner:
    """Signs with a key held in memory."""

    def __init__(self, private_key: Union[str, bytes]) -> None:
        try:
            self._account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise ParameterError("private_key", f"Invalid private key: {exc}") from exc
        self.address = self._account.address

    def get_address(self) -> str:
        return self.address

    def sign_message(self, message: Union[bytes, str]) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=_message_bytes(message)))
        return Web3.to_hex(signed.signature)

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return bytes(self._account.sign_transaction(tx).raw_transaction)

    def is_available(self) -> bool:
        return True

    def get_account(self) -> LocalAccount:
        return self._account


class KeystoreSigner(PrivateKeySigner):
    """Private key decrypted from an encrypted keystore file."""

    def __init__(self, keystore_path: Path, password: str) -> None:
        self.keystore_path = Path(keystore_path).expanduser()
        super().__init__(decrypt_key(self.keystore_path, password))

    def is_available(self) -> bool:
        return self.keystore_path.exists()


# ---------------------------------------------------------------------------
# Hardware
# ---------------------------------------------------------------------------


class LedgerSigner:
    """Signs on a Ledger device through ``ledgereth``.

    The device is only touched on first use, so constructing a signer for a
    disconnected device is cheap; ``is_available`` probes it.
    """

    def __init__(self, derivation_path: str, expected_address: Optional[str] = None) -> None:
        self.derivation_path = derivation_path
        self._expected = expected_address
        self._address: Optional[str] = None

    @staticmethod
    def _ledgereth():
        try:
            import ledgereth
        except ImportError as exc:
            raise ConfigurationError(
                "Ledger support needs the 'ledger' extra: pip install 'safer-wallet[ledger]'"
            ) from exc
        return ledgereth

    @property
    def address(self) -> str:
        if self._address is None:
            account = self._ledgereth().get_account_by_path(self.derivation_path)
            address = Web3.to_checksum_address(account.address)
            if self._expected and address.lower() != self._expected.lower():
                raise ConfigurationError(
                    f"Ledger path {self.derivation_path} is {address}, "
                    f"expected {self._expected}"
                )
            self._address = address
        return self._address

    def get_address(self) -> str:
        return self.address

    def sign_message(self, message: Union[bytes, str]) -> str:
        signed = self._ledgereth().sign_message(
            _message_bytes(message), sender_path=self.derivation_path
        )
        return "0x" + (
            signed.r.to_bytes(32, "big") + signed.s.to_bytes(32, "big") + bytes([signed.v])
        ).hex()

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        ledgereth = self._ledgereth()
        signed = ledgereth.create_transaction(
            destination=tx["to"],
            amount=int(tx.get("value", 0)),
            gas=int(tx["gas"]),
            nonce=int(tx["nonce"]),
            data=tx.get("data", b""),
            gas_price=tx.get("gasPrice"),
            max_fee_per_gas=tx.get("maxFeePerGas"),
            max_priority_fee_per_gas=tx.get("maxPriorityFeePerGas"),
            chain_id=int(tx["chainId"]),
            sender_path=self.derivation_path,
        )
        return Web3.to_bytes(hexstr=signed.raw_transaction())

    def is_available(self) -> bool:
        try:
            _ = self.address
        except Exception as exc:
            logger.debug(f"Ledger not available: {exc}")
            return False
        return True

    def get_account(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_signer(owner: OwnerConfig, password: Optional[str] = None) -> Signer:
    """Build the signer for *owner* according to its ``type``.

    Keystore owners read the password from *password* or the
    ``SAFER_KEYSTORE_PASSWORD`` environment variable.
    """
    if owner.type == "privkey":
        private_key = resolve_secret(owner.private_key)
        if is_placeholder(private_key):
            raise ConfigurationError(f"No private key configured for {owner.address}")
        signer: Signer = PrivateKeySigner(private_key)
    elif owner.type == "keystore":
        path = Path(owner.keystore_path).expanduser()
        stored = load_address(path)
        if stored is None:
            raise ConfigurationError(f"No keystore found at {path}")
        password = password or os.environ.get(KEYSTORE_PASSWORD_ENV)
        if not password:
            raise ConfigurationError(
                f"Keystore password required for {owner.address} "
                f"(set {KEYSTORE_PASSWORD_ENV})"
            )
        try:
            signer = KeystoreSigner(path, password)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
    elif owner.type == "ledger":
        return LedgerSigner(owner.derivation_path, expected_address=owner.address)
    else:
        raise ConfigurationError(f"Unsupported owner type: {owner.type}")

    if signer.address.lower() != owner.address.lower():
        raise ConfigurationError(
            f"Key for owner {owner.name or owner.address} resolves to {signer.address}"
        )
    return signer
