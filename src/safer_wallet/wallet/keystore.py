"""Owner keys encrypted at rest (Web3 Secret Storage files via eth-account)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Union

from eth_account import Account
from web3 import Web3

from safer_wallet.exceptions import ConfigurationError


def _read(keystore_path: Path) -> dict[str, Any]:
    try:
        return json.loads(keystore_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise ConfigurationError(f"{keystore_path} is not a keystore file: {exc}") from exc


def create_keystore(
    keystore_path: Path,
    password: str,
    private_key: Optional[Union[str, bytes]] = None,
) -> str:
    """Encrypt an owner key into *keystore_path*.

    Parameters
    ----------
    keystore_path:
        Target file, e.g. ``~/.safer/keys/alice.json``. Must not exist yet.
    password:
        Encryption password.
    private_key:
        Key to import; a new one is generated when omitted.

    Returns
    -------
    str
        Checksummed owner address.
    """
    keystore_path = Path(keystore_path)
    if keystore_path.exists():
        raise FileExistsError(f"Refusing to overwrite existing keystore {keystore_path}")

    account = Account.from_key(private_key) if private_key else Account.create()
    keystore_path.parent.mkdir(parents=True, exist_ok=True)
    keystore_path.write_text(
        json.dumps(Account.encrypt(account.key, password), indent=2), encoding="utf-8"
    )
    return account.address


def load_address(keystore_path: Path) -> str | None:
    """Owner address stored in the keystore, or ``None`` if the file is missing.

    Does not need the password.
    """
    keystore_path = Path(keystore_path)
    if not keystore_path.is_file():
        return None
    address = _read(keystore_path).get("address", "")
    return Web3.to_checksum_address(address if address.startswith("0x") else "0x" + address)


def decrypt_key(keystore_path: Path, password: str) -> bytes:
    """Return the raw private key; ``ValueError`` on a wrong password."""
    keystore_path = Path(keystore_path)
    if not keystore_path.is_file():
        raise FileNotFoundError(f"No keystore found at {keystore_path}")
    try:
        return bytes(Account.decrypt(_read(keystore_path), password))
    except ValueError as exc:
        raise ValueError(f"Cannot decrypt {keystore_path.name}: {exc}") from exc
