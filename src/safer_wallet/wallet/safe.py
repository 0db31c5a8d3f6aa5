"""Safe contract access over web3.

``SafeSDK`` is the capability surface the signing and execution services
depend on; ``Web3SafeSDK`` implements it against a live node. Tests supply
their own in-memory implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from safer_wallet.exceptions import SignatureError
from safer_wallet.storage.models import OperationType, SafeTransaction, SafeTxData

if TYPE_CHECKING:
    from safer_wallet.wallet.signers import Signer

logger = logging.getLogger("safer_wallet.wallet.safe")

SENTINEL_OWNER = "0x0000000000000000000000000000000000000001"


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[str], mutability: str) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": mutability,
    }


_SAFE_TX_INPUTS = [
    ("to", "address"),
    ("value", "uint256"),
    ("data", "bytes"),
    ("operation", "uint8"),
    ("safeTxGas", "uint256"),
    ("baseGas", "uint256"),
    ("gasPrice", "uint256"),
    ("gasToken", "address"),
    ("refundReceiver", "address"),
]

SAFE_ABI = [
    _fn("nonce", [], ["uint256"], "view"),
    _fn("getThreshold", [], ["uint256"], "view"),
    _fn("getOwners", [], ["address[]"], "view"),
    _fn("getTransactionHash", _SAFE_TX_INPUTS + [("_nonce", "uint256")], ["bytes32"], "view"),
    _fn("execTransaction", _SAFE_TX_INPUTS + [("signatures", "bytes")], ["bool"], "payable"),
    _fn("addOwnerWithThreshold", [("owner", "address"), ("_threshold", "uint256")], [], "nonpayable"),
    _fn(
        "removeOwner",
        [("prevOwner", "address"), ("owner", "address"), ("_threshold", "uint256")],
        [],
        "nonpayable",
    ),
    _fn("changeThreshold", [("_threshold", "uint256")], [], "nonpayable"),
]

ERC20_ABI = [
    _fn("symbol", [], ["string"], "view"),
    _fn("decimals", [], ["uint8"], "view"),
    _fn("balanceOf", [("owner", "address")], ["uint256"], "view"),
    _fn("transfer", [("to", "address"), ("amount", "uint256")], ["bool"], "nonpayable"),
]


# ---------------------------------------------------------------------------
# Value types exchanged with the services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TxOptions:
    """Outer-transaction overrides. ``None`` leaves the choice to the node."""

    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None  # wei


@dataclass(frozen=True)
class TransactionReceipt:
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int
    transaction_hash: str


class TransactionResponse(Protocol):
    hash: str

    def wait(self, timeout: float) -> TransactionReceipt: ...


@dataclass(frozen=True)
class ExecuteTransactionResponse:
    hash: Optional[str]
    transaction_response: Optional[TransactionResponse] = None


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int


class SafeSDK(Protocol):
    """Everything the services need from the Safe contract and its chain."""

    safe_address: str
    chain_id: int

    def get_owners(self) -> list[str]: ...

    def get_threshold(self) -> int: ...

    def get_nonce(self) -> int: ...

    def get_balance(self) -> int: ...

    def get_gas_price(self) -> int: ...

    def get_token_info(self, token: str) -> TokenInfo: ...

    def get_token_balance(self, token: str) -> int: ...

    def get_transaction_hash(self, tx: SafeTxData) -> str: ...

    def create_transaction(
        self,
        to: str,
        value: int = 0,
        data: str = "0x",
        operation: int = OperationType.CALL,
    ) -> SafeTxData: ...

    def sign_transaction_hash(self, safe_tx_hash: str, signer: Signer) -> str: ...

    def add_signature(
        self, tx: SafeTransaction, owner: str, signature: str
    ) -> SafeTransaction: ...

    def execute_transaction(
        self, tx: SafeTransaction, signer: Signer, options: Optional[TxOptions] = None
    ) -> ExecuteTransactionResponse: ...

    def encode(self, fn_name: str, args: list[Any], abi: Optional[list[dict]] = None) -> str: ...


# ---------------------------------------------------------------------------
# Signature helpers
# ---------------------------------------------------------------------------


def pre_validated_signature(owner: str) -> str:
    """Signature the Safe accepts when ``msg.sender`` is the owner itself."""
    r = owner.lower().replace("0x", "").rjust(64, "0")
    return "0x" + r + "0" * 64 + "01"


def adjust_eth_sign_v(signature: str) -> str:
    """Shift ``v`` from 27/28 to 31/32, marking an eth_sign signature for the Safe."""
    sig = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    if len(sig) != 65:
        raise SignatureError(f"Unexpected signature length {len(sig)}")
    v = sig[64]
    if v in (0, 1):
        v += 27
    if v in (27, 28):
        v += 4
    return "0x" + (sig[:64] + bytes([v])).hex()


def recover_eth_sign_owner(safe_tx_hash: str, signature: str) -> str:
    sig = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    v = sig[64] - 4
    message = encode_defunct(hexstr=safe_tx_hash)
    return Account.recover_message(message, signature=sig[:64] + bytes([v]))


def execution_signatures(
    tx: SafeTransaction, executor: str, owners: list[str], threshold: int
) -> str:
    """Signature bytes for ``execTransaction``, adding the executor's implicit approval."""
    tx_for_exec = tx
    is_owner = executor.lower() in {o.lower() for o in owners}
    if is_owner and not tx.is_signed_by(executor) and len(tx.signatures) < threshold:
        tx_for_exec = tx.add_signature(executor, pre_validated_signature(executor))
    return tx_for_exec.signatures_string()


# ---------------------------------------------------------------------------
# web3 implementation
# ---------------------------------------------------------------------------


class Web3TransactionResponse:
    """Handle on a broadcast transaction; ``wait`` blocks until mined."""

    def __init__(self, w3: Web3, tx_hash: str) -> None:
        self.w3 = w3
        self.hash = tx_hash

    def wait(self, timeout: float = 120) -> TransactionReceipt:
        receipt = self.w3.eth.wait_for_transaction_receipt(self.hash, timeout=timeout)
        return TransactionReceipt(
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice") or 0),
            transaction_hash=Web3.to_hex(receipt["transactionHash"]),
        )


class Web3SafeSDK:
    """``SafeSDK`` backed by a web3 connection to one Safe."""

    def __init__(self, w3: Web3, safe_address: str, chain_id: Optional[int] = None) -> None:
        self.w3 = w3
        self.safe_address = Web3.to_checksum_address(safe_address)
        self.chain_id = chain_id if chain_id is not None else w3.eth.chain_id
        self.contract = w3.eth.contract(address=self.safe_address, abi=SAFE_ABI)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_owners(self) -> list[str]:
        return list(self.contract.functions.getOwners().call())

    def get_threshold(self) -> int:
        return int(self.contract.functions.getThreshold().call())

    def get_nonce(self) -> int:
        return int(self.contract.functions.nonce().call())

    def get_balance(self) -> int:
        return int(self.w3.eth.get_balance(self.safe_address))

    def get_gas_price(self) -> int:
        return int(self.w3.eth.gas_price)

    def _erc20(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def get_token_info(self, token: str) -> TokenInfo:
        contract = self._erc20(token)
        return TokenInfo(
            address=contract.address,
            symbol=contract.functions.symbol().call(),
            decimals=int(contract.functions.decimals().call()),
        )

    def get_token_balance(self, token: str) -> int:
        return int(self._erc20(token).functions.balanceOf(self.safe_address).call())

    def get_transaction_hash(self, tx: SafeTxData) -> str:
        raw = self.contract.functions.getTransactionHash(
            Web3.to_checksum_address(tx.to),
            tx.value,
            Web3.to_bytes(hexstr=tx.data),
            tx.operation,
            tx.safe_tx_gas,
            tx.base_gas,
            tx.gas_price,
            Web3.to_checksum_address(tx.gas_token),
            Web3.to_checksum_address(tx.refund_receiver),
            tx.nonce,
        ).call()
        return Web3.to_hex(raw)

    # ------------------------------------------------------------------
    # Building and signing
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        to: str,
        value: int = 0,
        data: str = "0x",
        operation: int = OperationType.CALL,
    ) -> SafeTxData:
        return SafeTxData(
            to=Web3.to_checksum_address(to),
            value=int(value),
            data=data or "0x",
            operation=int(operation),
            nonce=self.get_nonce(),
        )

    def encode(self, fn_name: str, args: list[Any], abi: Optional[list[dict]] = None) -> str:
        contract = self.w3.eth.contract(abi=abi or SAFE_ABI)
        return contract.encode_abi(fn_name, args=args)

    def sign_transaction_hash(self, safe_tx_hash: str, signer: Signer) -> str:
        raw = signer.sign_message(Web3.to_bytes(hexstr=safe_tx_hash))
        return adjust_eth_sign_v(raw)

    def add_signature(self, tx: SafeTransaction, owner: str, signature: str) -> SafeTransaction:
        """Attach *signature*, checking eth_sign signatures recover to *owner*."""
        v = int(signature[-2:], 16)
        if v > 30:
            recovered = recover_eth_sign_owner(tx.hash, signature)
            if recovered.lower() != owner.lower():
                raise SignatureError(
                    f"Signature recovers to {recovered}, expected {owner}"
                )
        return tx.add_signature(Web3.to_checksum_address(owner), signature)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_transaction(
        self,
        tx: SafeTransaction,
        signer: Signer,
        options: Optional[TxOptions] = None,
    ) -> ExecuteTransactionResponse:
        options = options or TxOptions()
        executor = signer.address
        signatures = execution_signatures(
            tx, executor, self.get_owners(), self.get_threshold()
        )
        safe_tx = tx.to_safe_tx_data()

        call = self.contract.functions.execTransaction(
            Web3.to_checksum_address(safe_tx.to),
            safe_tx.value,
            Web3.to_bytes(hexstr=safe_tx.data),
            safe_tx.operation,
            safe_tx.safe_tx_gas,
            safe_tx.base_gas,
            safe_tx.gas_price,
            Web3.to_checksum_address(safe_tx.gas_token),
            Web3.to_checksum_address(safe_tx.refund_receiver),
            Web3.to_bytes(hexstr=signatures),
        )

        params: dict[str, Any] = {
            "from": executor,
            "nonce": self.w3.eth.get_transaction_count(executor, "pending"),
            "chainId": self.chain_id,
        }
        if options.gas_limit is not None:
            params["gas"] = options.gas_limit
        if options.gas_price is not None:
            params["gasPrice"] = options.gas_price

        tx_dict = call.build_transaction(params)
        raw = signer.sign_transaction(tx_dict)
        tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(raw))
        logger.info(f"Broadcast execTransaction for {tx.hash}: {tx_hash}")
        return ExecuteTransactionResponse(
            hash=tx_hash,
            transaction_response=Web3TransactionResponse(self.w3, tx_hash),
        )
