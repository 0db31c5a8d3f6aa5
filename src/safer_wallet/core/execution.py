"""Execution state machine: broadcast, confirmation with timeout, final status.

Status lattice driven here::

    PENDING ──▶ SUBMITTED ──▶ SUCCESSFUL
       ▲  │          │   └──▶ FAILED
       └──┘          └──▶ SUBMITTED (confirmation timeout / error)

``EXECUTED`` (legacy) re-enters like ``PENDING``. ``SUCCESSFUL``,
``FAILED`` and ``CANCELLED`` are refused.

Every outcome after the signature guard comes back as an
``ExecutionResult`` whose ``transaction`` is the state to persist.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

from web3 import Web3

from safer_wallet.exceptions import (
    ExecutionError,
    ParameterError,
    SaferError,
    SignatureError,
    TransactionStateError,
)
from safer_wallet.storage.models import STATUS_TRANSITIONS, SafeTransaction, TransactionStatus
from safer_wallet.wallet.safe import SafeSDK, TransactionReceipt, TxOptions
from safer_wallet.wallet.signers import Signer

logger = logging.getLogger("safer_wallet.core.execution")

DEFAULT_CONFIRMATION_TIMEOUT = 120.0

# Safe revert reasons meaning the signature set does not satisfy the threshold.
_INSUFFICIENT_SIGNATURE_REVERTS = ("GS020", "GS026")

_GWEI_PRECISION = Decimal("0.000000001")


# ---------------------------------------------------------------------------
# Gas policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GasOptions:
    """Gas overrides; ``gas_price`` is a decimal gwei string."""

    gas_limit: Optional[str] = None
    gas_price: Optional[str] = None

    def to_tx_options(self) -> TxOptions:
        return TxOptions(
            gas_limit=int(self.gas_limit) if self.gas_limit else None,
            gas_price=int(Web3.to_wei(Decimal(self.gas_price), "gwei")) if self.gas_price else None,
        )


def resolve_gas_options(
    gas_limit: Optional[Union[int, str]] = None,
    gas_price: Optional[Union[str, float, Decimal]] = None,
    gas_boost: Optional[Union[int, str, Decimal]] = None,
    fee_query: Optional[Callable[[], int]] = None,
) -> GasOptions:
    """Work out the gas overrides for an execution.

    Parameters
    ----------
    gas_limit:
        Passed through verbatim.
    gas_price:
        Explicit price in gwei.
    gas_boost:
        Percentage added to the explicit price, or to the live network price
        from *fee_query* (wei) when no explicit price is given.
    fee_query:
        Returns the current network gas price in wei.

    Returns
    -------
    GasOptions
        Empty fields mean the node picks its own default.
    """
    limit = str(gas_limit) if gas_limit not in (None, "") else None
    if limit is not None and (not limit.isdigit() or int(limit) <= 0):
        raise ParameterError("gas_limit", f"Invalid gas limit: {gas_limit}")

    price: Optional[Decimal] = None
    if gas_price not in (None, ""):
        try:
            price = Decimal(str(gas_price))
        except InvalidOperation as exc:
            raise ParameterError("gas_price", f"Invalid gas price: {gas_price}") from exc
        if price <= 0:
            raise ParameterError("gas_price", f"Invalid gas price: {gas_price}")
    elif gas_boost not in (None, ""):
        if fee_query is None:
            raise ParameterError("gas_boost", "Gas boost needs a live gas price")
        price = Decimal(str(Web3.from_wei(fee_query(), "gwei")))

    if gas_boost in (None, ""):
        return GasOptions(gas_limit=limit, gas_price=str(gas_price) if price is not None else None)

    try:
        pct = Decimal(str(gas_boost))
    except InvalidOperation as exc:
        raise ParameterError("gas_boost", f"Invalid gas boost: {gas_boost}") from exc
    if not pct.is_finite() or pct <= -100:
        raise ParameterError("gas_boost", f"Gas boost must be above -100%: {gas_boost}")

    boosted = (price * (100 + pct) / 100).quantize(_GWEI_PRECISION)
    logger.debug(f"Boosted gas price {price} gwei by {pct}% to {boosted} gwei")
    return GasOptions(gas_limit=limit, gas_price=f"{boosted:f}")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResult:
    transaction: SafeTransaction
    error: Optional[ExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, SaferError):
        return exc.code
    message = str(exc)
    if any(code in message for code in _INSUFFICIENT_SIGNATURE_REVERTS):
        return "INSUFFICIENT_SIGNATURES"
    return "EXECUTION_ERROR"


def _move(tx: SafeTransaction, status: TransactionStatus) -> SafeTransaction:
    if status not in STATUS_TRANSITIONS[tx.status]:
        raise TransactionStateError(
            tx.status.value, f"Illegal status transition {tx.status.value} -> {status.value}"
        )
    return tx.update_status(status)


class ExecuteService:
    """Drives a signed transaction on-chain and records what happened."""

    def __init__(self, confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT) -> None:
        self.confirmation_timeout = confirmation_timeout

    async def execute(
        self,
        sdk: SafeSDK,
        tx: SafeTransaction,
        signer: Signer,
        gas: Optional[GasOptions] = None,
    ) -> ExecutionResult:
        """Execute *tx* with *signer* as the submitting account.

        Raises
        ------
        TransactionStateError
            If *tx* is already terminal.
        SignatureError
            If the signatures (plus the executor's implicit approval, when
            the executor is an owner) do not reach the threshold. Nothing
            is broadcast and the entity is unchanged.

        Failures reading the executor address or the Safe's owners and
        threshold come back as a result carrying an ``ExecutionError``,
        with the entity annotated under ``outerError*`` metadata.
        """
        if tx.status.is_terminal:
            raise TransactionStateError(
                tx.status.value,
                f"Transaction already executed with status {tx.status.value}",
            )
        if tx.status is TransactionStatus.EXECUTED:
            logger.warning(
                f"Transaction {tx.hash} is marked EXECUTED from an older version; "
                "executing again"
            )

        gas = gas or GasOptions()
        # Where the entity lands when nothing was confirmed as broadcast.
        fallback = (
            TransactionStatus.SUBMITTED
            if tx.status is TransactionStatus.SUBMITTED
            else TransactionStatus.PENDING
        )

        try:
            executor = signer.get_address()
            owners = sdk.get_owners()
            threshold = sdk.get_threshold()
        except Exception as exc:
            return self._preflight_failed(tx, fallback, exc)
        is_owner = executor.lower() in {o.lower() for o in owners}

        if not tx.has_enough_signatures(threshold, executor if is_owner else None):
            raise SignatureError.insufficient(len(tx.signatures), threshold)

        try:
            response = await asyncio.to_thread(
                sdk.execute_transaction, tx, signer, gas.to_tx_options()
            )
        except Exception as exc:
            return self._broadcast_failed(tx, fallback, exc, threshold)

        if response.transaction_response is None:
            logger.warning(f"Execution of {tx.hash} returned no transaction response")
            uncertain = _move(tx, fallback).with_metadata(
                executor=executor,
                warning="Transaction execution returned no receipt. Status uncertain.",
            )
            return ExecutionResult(uncertain)

        handle = response.transaction_response
        submitted = _move(tx, TransactionStatus.SUBMITTED).with_metadata(
            submittedTxHash=handle.hash or response.hash,
            executor=executor,
            submissionDate=_now().isoformat(),
        )
        logger.info(f"Submitted {tx.hash} as {submitted.metadata['submittedTxHash']}")

        try:
            receipt = await asyncio.wait_for(
                asyncio.to_thread(handle.wait, self.confirmation_timeout),
                timeout=self.confirmation_timeout,
            )
        except asyncio.TimeoutError:
            message = f"Transaction confirmation timeout after {self.confirmation_timeout:g}s"
            logger.warning(f"{tx.hash}: {message}")
            return ExecutionResult(submitted.with_metadata(confirmationError=message))
        except Exception as exc:
            logger.warning(f"{tx.hash}: confirmation failed: {exc}")
            return ExecutionResult(
                submitted.with_metadata(
                    confirmationError=str(exc) or "Unknown error during confirmation"
                )
            )

        return self._confirmed(submitted, receipt)

    def _preflight_failed(
        self,
        tx: SafeTransaction,
        fallback: TransactionStatus,
        exc: Exception,
    ) -> ExecutionResult:
        """Executor or Safe state could not be read; nothing was broadcast."""
        code = _error_code(exc)
        message = str(exc) or "Unknown error before broadcast"
        annotated = _move(tx, fallback).with_metadata(
            outerErrorMessage=message,
            outerErrorCode=code,
            outerErrorTime=_now().isoformat(),
        )
        logger.error(f"Could not prepare execution of {tx.hash}: {message}")
        return ExecutionResult(
            annotated,
            ExecutionError(
                message,
                annotated,
                {"originalError": repr(exc), "code": code},
                code=code,
            ),
        )

    def _broadcast_failed(
        self,
        tx: SafeTransaction,
        fallback: TransactionStatus,
        exc: Exception,
        threshold: int,
    ) -> ExecutionResult:
        code = _error_code(exc)
        message = str(exc) or "Unknown execution error"
        failed = _move(tx, fallback).with_metadata(
            errorMessage=message,
            errorCode=code,
            errorTime=_now().isoformat(),
        )
        details: dict = {"originalError": repr(exc), "code": code}
        if code == "INSUFFICIENT_SIGNATURES":
            details["current"] = getattr(exc, "current", None) or len(tx.signatures)
            details["required"] = getattr(exc, "required", None) or threshold
        logger.error(f"Execution of {tx.hash} failed: {message}")
        return ExecutionResult(failed, ExecutionError(message, failed, details, code=code))

    def _confirmed(self, submitted: SafeTransaction, receipt: TransactionReceipt) -> ExecutionResult:
        success = receipt.status == 1
        final = _move(
            submitted,
            TransactionStatus.SUCCESSFUL if success else TransactionStatus.FAILED,
        )
        final = final.evolve(
            execution_date=_now(),
            metadata={
                **final.metadata,
                "blockNumber": receipt.block_number,
                "gasUsed": str(receipt.gas_used),
                "transactionHash": receipt.transaction_hash,
                "effectiveGasPrice": str(receipt.effective_gas_price),
                "totalCost": str(receipt.gas_used * receipt.effective_gas_price),
            },
        )
        if success:
            logger.info(f"{final.hash} executed in block {receipt.block_number}")
            return ExecutionResult(final)

        logger.error(f"{final.hash} reverted on-chain in block {receipt.block_number}")
        return ExecutionResult(
            final,
            ExecutionError(
                "Transaction reverted on-chain",
                final,
                {"transactionHash": receipt.transaction_hash},
                code="TRANSACTION_REVERTED",
            ),
        )
