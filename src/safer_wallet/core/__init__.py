"""Transaction lifecycle services: creation, signing and execution."""

from safer_wallet.core.execution import ExecuteService, ExecutionResult, GasOptions, resolve_gas_options
from safer_wallet.core.factory import SafeService, TransactionService
from safer_wallet.core.signing import SignResult, SignService, SignatureStatus, check_signature_status

__all__ = [
    "ExecuteService",
    "ExecutionResult",
    "GasOptions",
    "resolve_gas_options",
    "SafeService",
    "TransactionService",
    "SignResult",
    "SignService",
    "SignatureStatus",
    "check_signature_status",
]
