"""Shared fixtures: deterministic owner keys and an in-memory Safe."""

import time
from typing import Any, Optional

import pytest
from web3 import Web3

from safer_wallet.storage.models import OperationType, SafeTransaction, SafeTxData
from safer_wallet.wallet.safe import (
    ExecuteTransactionResponse,
    TokenInfo,
    TransactionReceipt,
    TxOptions,
    adjust_eth_sign_v,
)
from safer_wallet.wallet.signers import PrivateKeySigner

SAFE_ADDRESS = Web3.to_checksum_address("0x5afe3855358e112b5647b952709e6165e1c1eeee")
CHAIN_ID = 11155111
RECEIVER = Web3.to_checksum_address("0x000000000000000000000000000000000000dead")
TOKEN = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32
KEY_C = "0x" + "33" * 32
KEY_OUTSIDER = "0x" + "44" * 32


# =====================================================================
#   Fake chain collaborators
# =====================================================================


class FakeTransactionResponse:
    """Stands in for a broadcast transaction handle."""

    def __init__(
        self,
        tx_hash: str = "0x" + "ab" * 32,
        status: int = 1,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.hash = tx_hash
        self.status = status
        self.delay = delay
        self.error = error

    def wait(self, timeout: float) -> TransactionReceipt:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TransactionReceipt(
            status=self.status,
            block_number=4242,
            gas_used=21000,
            effective_gas_price=2_000_000_000,
            transaction_hash=self.hash,
        )


class FakeSafeSDK:
    """In-memory ``SafeSDK``: deterministic hashes, real eth_sign signatures."""

    def __init__(
        self,
        owners: list[str],
        threshold: int,
        safe_address: str = SAFE_ADDRESS,
        chain_id: int = CHAIN_ID,
        nonce: int = 0,
        balance: int = 10**18,
    ) -> None:
        self.owners = owners
        self.threshold = threshold
        self.safe_address = safe_address
        self.chain_id = chain_id
        self.nonce = nonce
        self.balance = balance
        self.gas_price = 20_000_000_000
        self.token_balance = 500 * 10**6
        self.response: Optional[ExecuteTransactionResponse] = None
        self.broadcast_error: Optional[Exception] = None
        self.executed: list[tuple[SafeTransaction, str, Optional[TxOptions]]] = []

    def get_owners(self) -> list[str]:
        return list(self.owners)

    def get_threshold(self) -> int:
        return self.threshold

    def get_nonce(self) -> int:
        return self.nonce

    def get_balance(self) -> int:
        return self.balance

    def get_gas_price(self) -> int:
        return self.gas_price

    def get_token_info(self, token: str) -> TokenInfo:
        return TokenInfo(address=token, symbol="USDC", decimals=6)

    def get_token_balance(self, token: str) -> int:
        return self.token_balance

    def get_transaction_hash(self, tx: SafeTxData) -> str:
        fields = (
            tx.to.lower(), int(tx.value), tx.data, int(tx.operation), int(tx.safe_tx_gas),
            int(tx.base_gas), int(tx.gas_price), tx.gas_token, tx.refund_receiver, int(tx.nonce),
        )
        return Web3.to_hex(Web3.keccak(text=f"{self.chain_id}:{self.safe_address}:{fields}"))

    def create_transaction(
        self, to: str, value: int = 0, data: str = "0x", operation: int = OperationType.CALL
    ) -> SafeTxData:
        return SafeTxData(to=to, value=value, data=data, operation=int(operation), nonce=self.nonce)

    def sign_transaction_hash(self, safe_tx_hash: str, signer) -> str:
        return adjust_eth_sign_v(signer.sign_message(Web3.to_bytes(hexstr=safe_tx_hash)))

    def add_signature(self, tx: SafeTransaction, owner: str, signature: str) -> SafeTransaction:
        return tx.add_signature(owner, signature)

    def execute_transaction(self, tx, signer, options=None) -> ExecuteTransactionResponse:
        self.executed.append((tx, signer.address, options))
        if self.broadcast_error is not None:
            raise self.broadcast_error
        if self.response is not None:
            return self.response
        handle = FakeTransactionResponse()
        return ExecuteTransactionResponse(hash=handle.hash, transaction_response=handle)

    def encode(self, fn_name: str, args: list[Any], abi=None) -> str:
        return Web3.to_hex(Web3.keccak(text=f"{fn_name}:{args}"))


# =====================================================================
#   Fixtures
# =====================================================================


@pytest.fixture
def signer_a():
    return PrivateKeySigner(KEY_A)


@pytest.fixture
def signer_b():
    return PrivateKeySigner(KEY_B)


@pytest.fixture
def signer_c():
    return PrivateKeySigner(KEY_C)


@pytest.fixture
def outsider():
    return PrivateKeySigner(KEY_OUTSIDER)


@pytest.fixture
def sdk(signer_a, signer_b, signer_c):
    """Safe with owners A, B, C and threshold 2."""
    return FakeSafeSDK([signer_a.address, signer_b.address, signer_c.address], threshold=2)


def make_transaction(sdk: FakeSafeSDK, nonce: int = 0, **metadata) -> SafeTransaction:
    safe_tx = SafeTxData(to=RECEIVER, value=10**16, nonce=nonce)
    return SafeTransaction.from_safe_tx(
        safe_tx,
        sdk.get_transaction_hash(safe_tx),
        sdk.chain_id,
        metadata={"safeAddress": sdk.safe_address, "type": "ethTransfer", **metadata},
    )


@pytest.fixture
def pending_tx(sdk):
    return make_transaction(sdk)
