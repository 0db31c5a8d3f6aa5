"""Exception hierarchy for Safer.

Every error carries a stable ``code`` string so callers (CLI, scripts) can
branch without matching on messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from safer_wallet.storage.models import SafeTransaction


class SaferError(Exception):
    """Base class for all Safer errors."""

    code: str = "SAFER_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# ---------------------------------------------------------------------------
# Parameter / validation errors
# ---------------------------------------------------------------------------


class ParameterError(SaferError):
    """A caller-supplied value is missing or invalid. Never retried."""

    code = "INVALID_PARAMETER"

    def __init__(self, param: str, message: str | None = None) -> None:
        super().__init__(message or f"Invalid parameter: {param}")
        self.param = param


class AmbiguousTransactionError(ParameterError):
    """An identifier matched more than one stored transaction."""

    code = "AMBIGUOUS_TRANSACTION"

    def __init__(self, identifier: str, candidates: list[str]) -> None:
        super().__init__(
            "identifier",
            f"Identifier '{identifier}' matches {len(candidates)} transactions: "
            f"{', '.join(candidates)}. Use a longer hash fragment.",
        )
        self.identifier = identifier
        self.candidates = candidates


class InvalidTransactionFileError(ParameterError):
    """A transaction envelope could not be parsed or is missing fields."""

    code = "INVALID_TRANSACTION_FILE"

    def __init__(self, message: str) -> None:
        super().__init__("content", message)


class TransactionStateError(ParameterError):
    """The transaction's status does not allow the requested operation."""

    code = "INVALID_TRANSACTION_STATE"

    def __init__(self, status: str, message: str | None = None) -> None:
        super().__init__("status", message or f"Transaction is {status}")
        self.status = status


class BalanceError(SaferError):
    """The Safe does not hold enough funds for the transfer."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: str, required: str, token: str = "ETH") -> None:
        super().__init__(
            f"Insufficient balance: {available} {token} < {required} {token}"
        )
        self.available = available
        self.required = required
        self.token = token


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------


class NotFoundError(SaferError):
    """Something the caller asked for does not exist."""

    code = "NOT_FOUND"

    def __init__(self, identifier: str, message: str | None = None) -> None:
        super().__init__(message or f"Not found: {identifier}")
        self.identifier = identifier


class TransactionNotFoundError(NotFoundError):
    code = "TX_NOT_FOUND"

    def __init__(self, identifier: str, message: str | None = None) -> None:
        super().__init__(identifier, message or f"Transaction not found: {identifier}")


# ---------------------------------------------------------------------------
# Signing / execution errors
# ---------------------------------------------------------------------------


class SignatureError(SaferError):
    """Duplicate owner signature, non-owner signer, or unmet threshold."""

    code = "SIGNATURE_ERROR"

    def __init__(
        self,
        message: str,
        current: int | None = None,
        required: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.current = current
        self.required = required

    @classmethod
    def insufficient(cls, current: int, required: int) -> SignatureError:
        return cls(
            f"Insufficient signatures to execute: {current}/{required}",
            current=current,
            required=required,
            code="INSUFFICIENT_SIGNATURES",
        )


class ExecutionError(SaferError):
    """Broadcast or confirmation failure.

    ``transaction`` always holds the best-known state of the entity so the
    caller can persist it instead of losing progress.
    """

    code = "EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        transaction: SafeTransaction,
        details: Optional[dict[str, Any]] = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.transaction = transaction
        self.details = details or {}

    @property
    def current(self) -> int | None:
        return self.details.get("current")

    @property
    def required(self) -> int | None:
        return self.details.get("required")


class IPFSError(SaferError):
    """Pinning service rejected the upload or could not be reached."""

    code = "IPFS_ERROR"


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(SaferError):
    """Missing chain id, RPC endpoint, or remote-store credentials."""

    code = "CONFIGURATION_ERROR"


class SafeNotConfiguredError(ConfigurationError):
    code = "SAFE_NOT_CONFIGURED"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "No Safe address specified. Pass --safe or run 'safer config set --safe <address>'."
        )
