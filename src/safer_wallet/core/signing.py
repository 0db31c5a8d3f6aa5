"""Signature aggregation: add owner signatures and report progress to threshold."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from safer_wallet.exceptions import SignatureError, TransactionStateError
from safer_wallet.storage.models import SafeTransaction
from safer_wallet.wallet.safe import SafeSDK
from safer_wallet.wallet.signers import Signer

logger = logging.getLogger("safer_wallet.core.signing")


@dataclass(frozen=True)
class SignatureInfo:
    hash: str
    signer: str
    signature: str
    timestamp: str


@dataclass(frozen=True)
class SignResult:
    signature: SignatureInfo
    transaction: SafeTransaction


@dataclass(frozen=True)
class SignatureStatus:
    hash: str
    signature_count: int
    threshold: int
    is_executable: bool
    pending_owners: list[str]
    signed_owners: list[str]
    signature_timestamps: dict[str, Optional[str]] = field(default_factory=dict)
    last_signed_by: Optional[str] = None
    last_signed_at: Optional[str] = None


def check_signature_status(
    tx: SafeTransaction, threshold: int, owners: list[str]
) -> SignatureStatus:
    """Read-only report of how far *tx* is from *threshold*."""
    signed = [addr.lower() for addr in tx.signatures]
    pending = [owner for owner in owners if owner.lower() not in signed]
    per_signer = tx.metadata.get("signatures") or {}
    timestamps = {
        addr: (per_signer.get(addr) or {}).get("timestamp") for addr in tx.signatures
    }
    count = len(tx.signatures)
    return SignatureStatus(
        hash=tx.hash,
        signature_count=count,
        threshold=threshold,
        is_executable=count >= threshold,
        pending_owners=pending,
        signed_owners=signed,
        signature_timestamps=timestamps,
        last_signed_by=tx.metadata.get("lastSignedBy"),
        last_signed_at=tx.metadata.get("lastSignedAt"),
    )


class SignService:
    """Collects owner signatures onto a transaction."""

    def sign_transaction(
        self, sdk: SafeSDK, tx: SafeTransaction, signer: Signer
    ) -> SignResult:
        """Sign *tx* as *signer* and return the signature with the updated entity.

        Raises
        ------
        TransactionStateError
            If the transaction already reached a terminal status.
        SignatureError
            If the signer is not an owner, already signed, or the stored hash
            does not match what the Safe computes for the transaction fields.
        """
        if tx.status.is_terminal:
            raise TransactionStateError(
                tx.status.value, f"Cannot sign a transaction that is {tx.status.value}"
            )

        signer_address = signer.get_address()
        owners = sdk.get_owners()
        if signer_address.lower() not in {o.lower() for o in owners}:
            raise SignatureError(f"Signer {signer_address} is not an owner of this Safe")

        if tx.is_signed_by(signer_address):
            raise SignatureError(
                "Transaction has already been signed by this owner",
                code="DUPLICATE_SIGNATURE",
            )

        safe_tx_hash = sdk.get_transaction_hash(tx.to_safe_tx_data())
        if safe_tx_hash.lower() != tx.hash.lower():
            raise SignatureError(
                f"Transaction hash mismatch: stored {tx.hash}, Safe computes {safe_tx_hash}",
                code="HASH_MISMATCH",
            )

        signature = sdk.sign_transaction_hash(safe_tx_hash, signer)
        timestamp = datetime.now(timezone.utc).isoformat()

        updated = sdk.add_signature(tx, signer_address, signature)
        per_signer = dict(updated.metadata.get("signatures") or {})
        per_signer[signer_address] = {"timestamp": timestamp}
        updated = updated.with_metadata(
            lastSignedBy=signer_address,
            lastSignedAt=timestamp,
            signatures=per_signer,
        )
        logger.info(
            f"{signer_address} signed {tx.hash} ({len(updated.signatures)} signature(s))"
        )
        return SignResult(
            signature=SignatureInfo(
                hash=safe_tx_hash,
                signer=signer_address,
                signature=signature,
                timestamp=timestamp,
            ),
            transaction=updated,
        )

    def check_signature_status(self, sdk: SafeSDK, tx: SafeTransaction) -> SignatureStatus:
        """Like :func:`check_signature_status`, reading threshold and owners from *sdk*."""
        return check_signature_status(tx, sdk.get_threshold(), sdk.get_owners())
