"""Durable local storage for Safe transactions.

Each transaction lives in its own JSON envelope at::

    {base_dir}/{safeAddress}/{networkName}/{nonce}-{hash[-8:]}.safer

Writes go through a temp file and ``os.replace``; there is no locking, so
concurrent writers resolve as last-write-wins.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError
from web3 import Web3

from safer_wallet.exceptions import (
    AmbiguousTransactionError,
    InvalidTransactionFileError,
    ParameterError,
    TransactionNotFoundError,
)
from safer_wallet.storage.models import SafeTransaction, TransactionStatus
from safer_wallet.wallet.chains import parse_chain

logger = logging.getLogger("safer_wallet.storage.files")

FILE_VERSION = "0.1.1"
FILE_TYPE = "SaferTransaction"
FILE_EXTENSION = ".safer"
MIN_PARTIAL_LENGTH = 4

_FULL_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_REQUIRED_FIELDS = ("hash", "to", "nonce", "chainId")


# ---------------------------------------------------------------------------
# Envelope codec
# ---------------------------------------------------------------------------


def transaction_filename(tx: SafeTransaction) -> str:
    return f"{tx.nonce}-{tx.hash[-8:].lower()}{FILE_EXTENSION}"


def transaction_to_file(tx: SafeTransaction) -> tuple[str, str]:
    """Serialize *tx* into ``(filename, content)``."""
    envelope = {
        "version": FILE_VERSION,
        "type": FILE_TYPE,
        "data": tx.model_dump(mode="json", by_alias=True),
    }
    return transaction_filename(tx), json.dumps(envelope, indent=2)


def transaction_from_file(content: Union[str, bytes, dict[str, Any]]) -> SafeTransaction:
    """Parse an envelope (text or already-decoded dict) into a transaction.

    Raises
    ------
    InvalidTransactionFileError
        If the content is not JSON, lacks the version/type/data envelope,
        or the data is missing a required field.
    """
    if isinstance(content, dict):
        envelope = content
    else:
        try:
            envelope = json.loads(content)
        except (TypeError, ValueError) as exc:
            raise InvalidTransactionFileError(f"Invalid transaction file: {exc}") from exc

    if not isinstance(envelope, dict) or not envelope.get("version"):
        raise InvalidTransactionFileError("Invalid transaction file: missing version")
    if envelope.get("type") != FILE_TYPE:
        raise InvalidTransactionFileError(
            f"Invalid transaction file: type must be '{FILE_TYPE}'"
        )
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise InvalidTransactionFileError("Invalid transaction file: missing data")

    missing = [f for f in _REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise InvalidTransactionFileError(
            f"Invalid transaction data: missing {', '.join(missing)}"
        )

    try:
        return SafeTransaction.model_validate(data)
    except ValidationError as exc:
        raise InvalidTransactionFileError(f"Invalid transaction data: {exc}") from exc


def _nonce_of(filename: str) -> Optional[int]:
    head, sep, _ = filename.partition("-")
    if not sep:
        return None
    try:
        return int(head)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FileTransactionStore:
    """Filesystem-backed transaction store with fuzzy identifier lookup.

    Parameters
    ----------
    base_dir:
        Root directory for transaction files.
    default_safe:
        Safe address used when a call does not name one.
    default_chain:
        Chain name or id used when a call does not name one.
    """

    def __init__(
        self,
        base_dir: Path,
        default_safe: Optional[str] = None,
        default_chain: Optional[Union[int, str]] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.default_safe = default_safe
        self.default_chain = default_chain

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def tx_directory(
        self,
        safe_address: Optional[str] = None,
        chain: Optional[Union[int, str]] = None,
    ) -> Path:
        """Directory for one Safe on one network; the base dir if either is unknown."""
        safe_address = safe_address or self.default_safe
        chain = chain if chain is not None else self.default_chain
        if not safe_address or chain is None:
            return self.base_dir
        network_name, _ = parse_chain(chain)
        if Web3.is_address(safe_address):
            safe_address = Web3.to_checksum_address(safe_address)
        return self.base_dir / safe_address / network_name

    def path_for(self, tx: SafeTransaction) -> Path:
        return self.tx_directory(tx.safe_address, tx.chain_id) / transaction_filename(tx)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, tx: SafeTransaction) -> SafeTransaction:
        """Write *tx* to its canonical path, overwriting any previous version."""
        path = self.path_for(tx)
        _, content = transaction_to_file(tx)
        self._atomic_write(path, content)
        logger.debug(f"Saved transaction {tx.hash} ({tx.status.value}) to {path}")
        return tx

    def update_status(
        self,
        identifier: str,
        status: TransactionStatus,
        extra_metadata: Optional[dict[str, Any]] = None,
        safe_address: Optional[str] = None,
        chain: Optional[Union[int, str]] = None,
    ) -> SafeTransaction:
        tx = self.load(identifier, safe_address, chain).update_status(status)
        if extra_metadata:
            tx = tx.with_metadata(**extra_metadata)
        return self.save(tx)

    def import_transaction(self, content: Union[str, bytes, dict[str, Any]]) -> SafeTransaction:
        """Parse an envelope from outside the store and save it."""
        tx = transaction_from_file(content)
        logger.info(f"Importing transaction {tx.hash} (nonce {tx.nonce})")
        return self.save(tx)

    def export_to(self, tx: SafeTransaction, out_dir: Path) -> Path:
        filename, content = transaction_to_file(tx)
        path = Path(out_dir) / filename
        self._atomic_write(path, content)
        return path

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _search_dirs(
        self, safe_address: Optional[str], chain: Optional[Union[int, str]]
    ) -> list[Path]:
        scoped = self.tx_directory(safe_address, chain)
        dirs = [scoped]
        if scoped != self.base_dir:
            dirs.append(self.base_dir)
        return [d for d in dirs if d.is_dir()]

    @staticmethod
    def _files_in(directory: Path) -> list[Path]:
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == FILE_EXTENSION)

    @staticmethod
    def _read(path: Path) -> SafeTransaction:
        return transaction_from_file(path.read_text(encoding="utf-8"))

    def load(
        self,
        identifier: Union[str, int],
        safe_address: Optional[str] = None,
        chain: Optional[Union[int, str]] = None,
    ) -> SafeTransaction:
        """Resolve *identifier* to a stored transaction.

        Accepts a full safeTxHash, a nonce, or a hash fragment of at least
        four characters.

        Raises
        ------
        AmbiguousTransactionError
            If a nonce matches more than one file in a directory.
        ParameterError
            If a hash fragment is too short.
        TransactionNotFoundError
            If nothing matches.
        """
        text = str(identifier).strip()
        if not text:
            raise ParameterError("identifier", "Transaction identifier is required")

        if _FULL_HASH_RE.match(text):
            finder = self._find_by_hash
        elif text.isdigit():
            finder = self._find_by_nonce
        else:
            fragment = text[2:] if text.lower().startswith("0x") else text
            if len(fragment) < MIN_PARTIAL_LENGTH:
                raise ParameterError(
                    "identifier",
                    f"Hash fragment '{text}' is too short; use at least "
                    f"{MIN_PARTIAL_LENGTH} characters.",
                )
            text = fragment
            finder = self._find_by_fragment

        for directory in self._search_dirs(safe_address, chain):
            files = self._files_in(directory)
            if not files:
                continue
            tx = finder(text, files)
            if tx is not None:
                return tx
        raise TransactionNotFoundError(str(identifier))

    def _find_by_hash(self, tx_hash: str, files: list[Path]) -> Optional[SafeTransaction]:
        wanted = tx_hash.lower()
        for path in files:
            try:
                tx = self._read(path)
            except (OSError, InvalidTransactionFileError) as exc:
                logger.warning(f"Skipping unreadable transaction file {path}: {exc}")
                continue
            if tx.hash.lower() == wanted:
                return tx
        suffix = wanted[-8:]
        for path in files:
            if suffix in path.name.lower():
                return self._read(path)
        return None

    def _find_by_nonce(self, text: str, files: list[Path]) -> Optional[SafeTransaction]:
        nonce = int(text)
        matches = [p for p in files if _nonce_of(p.name) == nonce]
        if len(matches) > 1:
            raise AmbiguousTransactionError(text, [p.name for p in matches])
        return self._read(matches[0]) if matches else None

    def _find_by_fragment(self, fragment: str, files: list[Path]) -> Optional[SafeTransaction]:
        needle = fragment.lower()
        matches = [p for p in files if needle in p.name.lower()]
        if not matches:
            return None
        matches.sort(key=lambda p: _nonce_of(p.name) or 0, reverse=True)
        return self._read(matches[0])

    def list(
        self,
        status: Optional[TransactionStatus] = None,
        tx_type: Optional[str] = None,
        safe_address: Optional[str] = None,
        chain: Optional[Union[int, str]] = None,
        sort_by: str = "create_date",
        ascending: bool = False,
    ) -> list[SafeTransaction]:
        """List transactions in the scoped directory.

        Ordered by nonce first (descending unless *ascending*), then by
        *sort_by*, any ``SafeTransaction`` field. Missing values sort after
        present ones when ascending. Malformed files are logged and skipped.
        """
        if sort_by not in SafeTransaction.model_fields:
            raise ParameterError("sort_by", f"Cannot sort transactions by '{sort_by}'")
        directory = self.tx_directory(safe_address, chain)
        if not directory.is_dir():
            return []

        transactions: list[SafeTransaction] = []
        for path in self._files_in(directory):
            try:
                tx = self._read(path)
            except (OSError, InvalidTransactionFileError) as exc:
                logger.warning(f"Skipping unreadable transaction file {path}: {exc}")
                continue
            if status is not None and tx.status != TransactionStatus(status):
                continue
            if tx_type is not None and tx.tx_type != tx_type:
                continue
            transactions.append(tx)

        def _secondary(tx: SafeTransaction) -> tuple[bool, Any]:
            value = getattr(tx, sort_by)
            return value is None, value

        # Two stable sorts: secondary key first, then nonce.
        transactions.sort(key=_secondary, reverse=not ascending)
        transactions.sort(key=lambda tx: tx.nonce, reverse=not ascending)
        return transactions
