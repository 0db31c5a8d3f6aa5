"""Safer storage layer -- transaction model, local files and IPFS."""

from safer_wallet.storage.files import FileTransactionStore, transaction_from_file, transaction_to_file
from safer_wallet.storage.ipfs import IPFSTransactionStore, parse_cid_from_uri
from safer_wallet.storage.models import (
    Confirmation,
    OperationType,
    SafeTransaction,
    SafeTxData,
    TransactionStatus,
)

__all__ = [
    "FileTransactionStore",
    "IPFSTransactionStore",
    "parse_cid_from_uri",
    "transaction_from_file",
    "transaction_to_file",
    "Confirmation",
    "OperationType",
    "SafeTransaction",
    "SafeTxData",
    "TransactionStatus",
]
