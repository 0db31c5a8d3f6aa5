"""Pydantic models for Safe transactions.

``SafeTransaction`` is a frozen value object: every "update" returns a new
instance so the same reference can flow through signing and execution
without aliasing surprises.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"    # reserved, never produced
    EXECUTED = "EXECUTED"      # legacy, retryable
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"    # reserved, never produced

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.SUCCESSFUL, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)

# Every transition the execution engine is allowed to make.
STATUS_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PENDING, TransactionStatus.SUBMITTED}
    ),
    TransactionStatus.EXECUTED: frozenset(
        {TransactionStatus.PENDING, TransactionStatus.SUBMITTED}
    ),
    TransactionStatus.SUBMITTED: frozenset(
        {
            TransactionStatus.SUBMITTED,
            TransactionStatus.SUCCESSFUL,
            TransactionStatus.FAILED,
        }
    ),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.SUCCESSFUL: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


class OperationType(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _derived_is_executed(status: TransactionStatus) -> bool:
    return status in (
        TransactionStatus.EXECUTED,
        TransactionStatus.SUCCESSFUL,
        TransactionStatus.FAILED,
    )


def _derived_is_successful(status: TransactionStatus) -> Optional[bool]:
    if status is TransactionStatus.SUCCESSFUL:
        return True
    if status is TransactionStatus.FAILED:
        return False
    return None


@dataclass(frozen=True)
class SafeTxData:
    """The fields the Safe contract hashes and executes."""

    to: str
    value: int = 0
    data: str = "0x"
    operation: int = OperationType.CALL
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS
    nonce: int = 0


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class Confirmation(BaseModel):
    """One owner's signature, shaped like a transaction-service confirmation."""

    owner: str
    signature: str
    signature_type: str
    submission_date: Optional[datetime] = None


class SafeTransaction(BaseModel):
    """A Safe multisig transaction plus its off-chain signing state.

    Identity is ``hash`` (the safeTxHash). ``hash``, ``nonce`` and
    ``chain_id`` never change after creation.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    hash: str
    to: str
    value: str = "0"
    data: str = "0x"
    operation: OperationType = OperationType.CALL
    safe_tx_gas: str = Field(default="0", alias="safeTxGas")
    base_gas: str = Field(default="0", alias="baseGas")
    gas_price: str = Field(default="0", alias="gasPrice")
    gas_token: str = Field(default=ZERO_ADDRESS, alias="gasToken")
    refund_receiver: str = Field(default=ZERO_ADDRESS, alias="refundReceiver")
    nonce: int
    signatures: dict[str, str] = Field(default_factory=dict)
    create_date: datetime = Field(default_factory=_utcnow, alias="createDate")
    status: TransactionStatus = TransactionStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    chain_id: Union[int, str] = Field(alias="chainId")
    execution_date: Optional[datetime] = Field(default=None, alias="executionDate")
    is_executed: Optional[bool] = Field(default=None, alias="isExecuted")
    is_successful: Optional[bool] = Field(default=None, alias="isSuccessful")

    _IDENTITY_FIELDS = ("hash", "nonce", "chain_id")

    @model_validator(mode="before")
    @classmethod
    def _derive_execution_flags(cls, values: Any) -> Any:
        """Fill ``is_executed`` / ``is_successful`` from status unless given."""
        if not isinstance(values, dict):
            return values
        values = dict(values)
        raw_status = values.get("status") or TransactionStatus.PENDING
        try:
            status = TransactionStatus(raw_status)
        except ValueError:
            return values  # field validation reports the bad status
        if values.get("is_executed", values.get("isExecuted")) is None:
            values.pop("isExecuted", None)
            values["is_executed"] = _derived_is_executed(status)
        if values.get("is_successful", values.get("isSuccessful")) is None:
            values.pop("isSuccessful", None)
            values["is_successful"] = _derived_is_successful(status)
        return values

    @field_validator("value", "data", mode="before")
    @classmethod
    def _default_empty(cls, v: Any, info) -> Any:
        if v is None or v == "":
            return "0" if info.field_name == "value" else "0x"
        return str(v)

    @field_validator("chain_id")
    @classmethod
    def _require_chain_id(cls, v: Union[int, str]) -> Union[int, str]:
        if v == "" or v == 0:
            raise ValueError("chainId is required")
        return v

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def safe_tx_hash(self) -> str:
        return self.hash

    @property
    def safe_address(self) -> Optional[str]:
        return self.metadata.get("safeAddress")

    @property
    def tx_type(self) -> Optional[str]:
        return self.metadata.get("type")

    @property
    def transaction_hash(self) -> Optional[str]:
        """On-chain hash of the execution, once known."""
        return self.metadata.get("transactionHash")

    @property
    def ipfs(self) -> Optional[dict]:
        return self.metadata.get("ipfs")

    @property
    def signers(self) -> list[str]:
        return list(self.signatures.keys())

    @property
    def confirmations(self) -> list[Confirmation]:
        return [
            Confirmation(
                owner=owner,
                signature=signature,
                signature_type="ETH_SIGN" if signature.startswith("0x000000") else "EOA",
                submission_date=self.create_date,
            )
            for owner, signature in self.signatures.items()
        ]

    def signatures_string(self) -> str:
        """Concatenate signatures ordered by owner address, as the Safe contract expects."""
        ordered = sorted(self.signatures.items(), key=lambda item: item[0].lower())
        return "0x" + "".join(sig[2:] if sig.startswith("0x") else sig for _, sig in ordered)

    def is_signed_by(self, owner: str) -> bool:
        needle = owner.lower()
        return any(addr.lower() == needle for addr in self.signatures)

    def has_enough_signatures(
        self, threshold: int, executor_address: Optional[str] = None
    ) -> bool:
        """Whether the transaction can be executed now.

        An executor who has not signed counts as one implicit signature:
        the Safe accepts ``msg.sender`` as an approval without ECDSA data.
        """
        count = len(self.signatures)
        if count >= threshold:
            return True
        if not executor_address:
            return False
        if self.is_signed_by(executor_address):
            return False
        return count + 1 >= threshold

    # ------------------------------------------------------------------
    # Pure transforms
    # ------------------------------------------------------------------

    def _evolve(self, **changes: Any) -> SafeTransaction:
        frozen = [f for f in self._IDENTITY_FIELDS if f in changes]
        if frozen:
            raise ValueError(f"Cannot change identity fields: {', '.join(frozen)}")
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def add_signature(self, owner: str, signature: str) -> SafeTransaction:
        return self._evolve(signatures={**self.signatures, owner: signature})

    def update_status(self, status: TransactionStatus) -> SafeTransaction:
        return self._evolve(status=status, is_executed=None, is_successful=None)

    def with_metadata(self, **updates: Any) -> SafeTransaction:
        return self._evolve(metadata={**self.metadata, **updates})

    def evolve(self, **changes: Any) -> SafeTransaction:
        """Return a copy with *changes* applied (identity fields excluded)."""
        return self._evolve(**changes)

    # ------------------------------------------------------------------
    # SDK conversion
    # ------------------------------------------------------------------

    def to_safe_tx_data(self) -> SafeTxData:
        return SafeTxData(
            to=self.to,
            value=int(self.value),
            data=self.data,
            operation=int(self.operation),
            safe_tx_gas=int(self.safe_tx_gas),
            base_gas=int(self.base_gas),
            gas_price=int(self.gas_price),
            gas_token=self.gas_token,
            refund_receiver=self.refund_receiver,
            nonce=self.nonce,
        )

    @classmethod
    def from_safe_tx(
        cls,
        tx: SafeTxData,
        safe_tx_hash: str,
        chain_id: Union[int, str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> SafeTransaction:
        return cls(
            hash=safe_tx_hash,
            to=tx.to,
            value=str(tx.value),
            data=tx.data,
            operation=OperationType(tx.operation),
            safe_tx_gas=str(tx.safe_tx_gas),
            base_gas=str(tx.base_gas),
            gas_price=str(tx.gas_price),
            gas_token=tx.gas_token,
            refund_receiver=tx.refund_receiver,
            nonce=tx.nonce,
            status=TransactionStatus.PENDING,
            metadata=metadata or {},
            chain_id=chain_id,
        )
