"""Build new PENDING Safe transactions: transfers and owner management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from web3 import Web3

from safer_wallet.exceptions import BalanceError, ParameterError
from safer_wallet.storage.models import OperationType, SafeTransaction
from safer_wallet.wallet.safe import ERC20_ABI, SENTINEL_OWNER, SafeSDK

logger = logging.getLogger("safer_wallet.core.factory")


def _require_address(value: str, param: str) -> str:
    if not Web3.is_address(value):
        raise ParameterError(param, f"Invalid Ethereum address: {value}")
    return Web3.to_checksum_address(value)


def _parse_amount(amount: str, decimals: int) -> int:
    """Convert a human amount (``"1.5"``) into base units."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ParameterError("amount", f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value <= 0:
        raise ParameterError("amount", f"Amount must be positive: {amount}")
    units = value.scaleb(decimals)
    if units != units.to_integral_value():
        raise ParameterError(
            "amount", f"Amount {amount} has more than {decimals} decimal places"
        )
    return int(units)


def _format_units(value: int, decimals: int) -> str:
    return f"{Decimal(value).scaleb(-decimals).normalize():f}"


def _build(
    sdk: SafeSDK,
    to: str,
    value: int,
    data: str,
    metadata: dict[str, Any],
) -> SafeTransaction:
    safe_tx = sdk.create_transaction(to=to, value=value, data=data, operation=OperationType.CALL)
    safe_tx_hash = sdk.get_transaction_hash(safe_tx)
    tx = SafeTransaction.from_safe_tx(
        safe_tx,
        safe_tx_hash,
        sdk.chain_id,
        metadata={"safeAddress": sdk.safe_address, **metadata},
    )
    logger.info(f"Created {metadata.get('type')} transaction {tx.hash} (nonce {tx.nonce})")
    return tx


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TransactionService:
    """Transfers out of the Safe."""

    def create_eth_transfer(self, sdk: SafeSDK, receiver: str, amount: str) -> SafeTransaction:
        """Native-token transfer of *amount* (in ether units) to *receiver*.

        Raises ``ParameterError`` for a bad address or amount and
        ``BalanceError`` when the Safe cannot cover it.
        """
        receiver = _require_address(receiver, "receiver_address")
        wei = _parse_amount(amount, 18)
        balance = sdk.get_balance()
        if balance < wei:
            raise BalanceError(_format_units(balance, 18), _format_units(wei, 18))
        return _build(
            sdk,
            to=receiver,
            value=wei,
            data="0x",
            metadata={
                "type": "ethTransfer",
                "to": receiver,
                "amount": str(wei),
                "amountFormatted": _format_units(wei, 18),
            },
        )

    def create_erc20_transfer(
        self, sdk: SafeSDK, token: str, receiver: str, amount: str
    ) -> SafeTransaction:
        token = _require_address(token, "token_address")
        receiver = _require_address(receiver, "receiver_address")
        info = sdk.get_token_info(token)
        units = _parse_amount(amount, info.decimals)
        balance = sdk.get_token_balance(token)
        if balance < units:
            raise BalanceError(
                _format_units(balance, info.decimals),
                _format_units(units, info.decimals),
                info.symbol,
            )
        data = sdk.encode("transfer", [receiver, units], abi=ERC20_ABI)
        return _build(
            sdk,
            to=token,
            value=0,
            data=data,
            metadata={
                "type": "erc20Transfer",
                "tokenAddress": token,
                "tokenSymbol": info.symbol,
                "tokenDecimals": info.decimals,
                "to": receiver,
                "amount": str(units),
                "amountFormatted": _format_units(units, info.decimals),
            },
        )


# ---------------------------------------------------------------------------
# Safe administration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SafeInfo:
    address: str
    chain_id: int
    owners: list[str]
    threshold: int
    nonce: int
    balance: int  # wei

    @property
    def balance_formatted(self) -> str:
        return _format_units(self.balance, 18)


class SafeService:
    """Reads Safe state and builds owner/threshold changes."""

    def get_info(self, sdk: SafeSDK) -> SafeInfo:
        return SafeInfo(
            address=sdk.safe_address,
            chain_id=sdk.chain_id,
            owners=sdk.get_owners(),
            threshold=sdk.get_threshold(),
            nonce=sdk.get_nonce(),
            balance=sdk.get_balance(),
        )

    def create_add_owner(
        self, sdk: SafeSDK, new_owner: str, threshold: Optional[int] = None
    ) -> SafeTransaction:
        new_owner = _require_address(new_owner, "new_owner_address")
        owners = sdk.get_owners()
        if new_owner.lower() in {o.lower() for o in owners}:
            raise ParameterError("new_owner_address", "Address is already an owner")
        threshold = threshold if threshold is not None else sdk.get_threshold()
        _check_threshold(threshold, len(owners) + 1)
        data = sdk.encode("addOwnerWithThreshold", [new_owner, threshold])
        return _build(
            sdk,
            to=sdk.safe_address,
            value=0,
            data=data,
            metadata={"type": "addOwner", "newOwner": new_owner, "newThreshold": threshold},
        )

    def create_remove_owner(
        self, sdk: SafeSDK, owner: str, threshold: Optional[int] = None
    ) -> SafeTransaction:
        owner = _require_address(owner, "owner_address")
        owners = sdk.get_owners()
        lowered = [o.lower() for o in owners]
        if owner.lower() not in lowered:
            raise ParameterError("owner_address", "Address is not an owner")
        remaining = len(owners) - 1
        threshold = threshold if threshold is not None else sdk.get_threshold()
        threshold = min(threshold, remaining)
        _check_threshold(threshold, remaining)

        index = lowered.index(owner.lower())
        prev_owner = owners[index - 1] if index > 0 else SENTINEL_OWNER
        data = sdk.encode(
            "removeOwner",
            [Web3.to_checksum_address(prev_owner), owner, threshold],
        )
        return _build(
            sdk,
            to=sdk.safe_address,
            value=0,
            data=data,
            metadata={"type": "removeOwner", "removedOwner": owner, "newThreshold": threshold},
        )

    def create_change_threshold(self, sdk: SafeSDK, threshold: int) -> SafeTransaction:
        owners = sdk.get_owners()
        _check_threshold(threshold, len(owners))
        data = sdk.encode("changeThreshold", [threshold])
        return _build(
            sdk,
            to=sdk.safe_address,
            value=0,
            data=data,
            metadata={
                "type": "changeThreshold",
                "oldThreshold": sdk.get_threshold(),
                "newThreshold": threshold,
            },
        )


def _check_threshold(threshold: int, owner_count: int) -> None:
    if not isinstance(threshold, int) or threshold < 1 or threshold > owner_count:
        raise ParameterError("threshold", f"Threshold must be between 1 and {owner_count}")
