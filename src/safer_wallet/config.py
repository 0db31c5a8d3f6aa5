"""Configuration system for Safer.

Loads user settings from ``~/.safer/config.yaml``, supports environment
variable expansion, and resolves owner identifiers against the configured
owner list.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from web3 import Web3

from safer_wallet.exceptions import ConfigurationError, NotFoundError, ParameterError
from safer_wallet.wallet.chains import parse_chain


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    Unset variables are left as-is so placeholder detection can catch them.
    """

    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


# Kept as written in config.yaml and expanded only where they are used, so
# saving the config never writes a resolved secret back to disk.
_SECRET_FIELDS = frozenset({"private_key", "api_key", "secret_api_key", "rpc_url"})


def _expand_env_recursive(obj: object) -> object:
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {
            k: v if k in _SECRET_FIELDS else _expand_env_recursive(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def is_placeholder(value: Optional[str]) -> bool:
    """True for empty values and unexpanded ``${VAR}`` / ``your_...`` stand-ins."""
    if not value:
        return True
    return bool(_ENV_VAR_RE.search(value)) or value.lower().startswith("your_")


def resolve_secret(value: Optional[str]) -> Optional[str]:
    """Expand ``${VAR}`` placeholders in a secret at the point of use."""
    return _expand_env_vars(value) if value else value


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------

OwnerType = Literal["privkey", "keystore", "ledger"]


class OwnerConfig(BaseModel):
    """A Safe owner key this machine can sign with."""

    address: str
    type: OwnerType = "privkey"
    name: str = ""
    private_key: Optional[str] = None      # ${OWNER_PRIVATE_KEY}
    keystore_path: Optional[str] = None
    derivation_path: Optional[str] = None  # Ledger, e.g. "44'/60'/0'/0/0"

    @field_validator("address")
    @classmethod
    def _checksum(cls, v: str) -> str:
        if not Web3.is_address(v):
            raise ValueError(f"Invalid owner address: {v}")
        return Web3.to_checksum_address(v)

    @model_validator(mode="after")
    def _check_type_fields(self) -> OwnerConfig:
        if self.type == "privkey" and not self.private_key:
            raise ValueError("private_key is required for privkey owners")
        if self.type == "keystore" and not self.keystore_path:
            raise ValueError("keystore_path is required for keystore owners")
        if self.type == "ledger" and not self.derivation_path:
            raise ValueError("derivation_path is required for ledger owners")
        return self


class IPFSConfig(BaseModel):
    """Pinata credentials and gateway settings."""

    api_key: str = ""            # ${PINATA_API_KEY}
    secret_api_key: str = ""     # ${PINATA_SECRET_API_KEY}
    gateway: str = "https://gateway.pinata.cloud/ipfs/"
    timeout_seconds: float = 10.0

    @property
    def credentials(self) -> tuple[str, str]:
        """``(api_key, secret_api_key)`` with placeholders expanded."""
        return resolve_secret(self.api_key) or "", resolve_secret(self.secret_api_key) or ""

    @property
    def has_credentials(self) -> bool:
        api_key, secret = self.credentials
        return not (is_placeholder(api_key) or is_placeholder(secret))


class ExecutionConfig(BaseModel):
    """Limits for on-chain execution."""

    confirmation_timeout_seconds: float = 120.0


class SaferConfig(BaseModel):
    """Root configuration object."""

    chain: Optional[str] = None
    rpc_url: Optional[str] = None
    default_safe: Optional[str] = None
    owners: list[OwnerConfig] = Field(default_factory=list)
    ipfs: IPFSConfig = Field(default_factory=IPFSConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    transactions_dir: Optional[str] = None

    @field_validator("chain", mode="before")
    @classmethod
    def _chain_as_text(cls, v: object) -> object:
        return str(v) if isinstance(v, int) else v

    # ------------------------------------------------------------------
    # Chain / RPC
    # ------------------------------------------------------------------

    def require_chain(self) -> tuple[str, int]:
        """Return ``(network_name, chain_id)`` or raise ``ConfigurationError``."""
        if not self.chain:
            raise ConfigurationError(
                "Chain ID is not configured. Run 'safer config set --chain <id>'."
            )
        name, chain_id = parse_chain(self.chain)
        if chain_id is None:
            raise ConfigurationError(f"Unknown chain '{self.chain}'.")
        return name, chain_id

    def require_rpc_url(self) -> str:
        rpc_url = resolve_secret(self.rpc_url)
        if not rpc_url or is_placeholder(rpc_url):
            raise ConfigurationError(
                "RPC URL is not configured. Run 'safer config set --rpc-url <url>'."
            )
        return rpc_url

    def transactions_path(self) -> Path:
        if self.transactions_dir:
            return Path(self.transactions_dir).expanduser()
        return get_root_dir() / "transactions"

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def set_owner(self, owner: OwnerConfig) -> OwnerConfig:
        """Add *owner*, replacing any entry with the same address."""
        if not owner.name:
            owner = owner.model_copy(update={"name": f"Owner {len(self.owners) + 1}"})
        for i, existing in enumerate(self.owners):
            if existing.address.lower() == owner.address.lower():
                self.owners[i] = owner
                return owner
        self.owners.append(owner)
        return owner

    def remove_owner(self, address: str) -> bool:
        before = len(self.owners)
        self.owners = [o for o in self.owners if o.address.lower() != address.lower()]
        return len(self.owners) != before

    def find_owner(self, address: str) -> Optional[OwnerConfig]:
        needle = address.lower()
        return next((o for o in self.owners if o.address.lower() == needle), None)

    def resolve_owner(self, identifier: str) -> OwnerConfig:
        """Find an owner by address, name, address tail, or 1-based index.

        Raises
        ------
        NotFoundError
            If nothing matches.
        ParameterError
            If a partial name matches more than one owner.
        """
        ident = identifier.strip()
        lowered = ident.lower()

        if Web3.is_address(ident):
            owner = self.find_owner(ident)
            if owner is None:
                raise NotFoundError(ident, f"No configured owner with address {ident}")
            return owner

        for owner in self.owners:
            if owner.name.lower() == lowered:
                return owner

        if len(lowered) >= 3:
            tail = lowered[2:] if lowered.startswith("0x") else lowered
            if all(c in "0123456789abcdef" for c in tail):
                by_tail = [o for o in self.owners if o.address.lower().endswith(tail)]
                if len(by_tail) == 1:
                    return by_tail[0]

        if ident.isdigit():
            index = int(ident)
            if 1 <= index <= len(self.owners):
                return self.owners[index - 1]

        partial = [o for o in self.owners if lowered in o.name.lower()]
        if len(partial) == 1:
            return partial[0]
        if len(partial) > 1:
            names = ", ".join(o.name for o in partial)
            raise ParameterError(
                "owner", f"Owner '{identifier}' is ambiguous; matches: {names}"
            )
        raise NotFoundError(identifier, f"No configured owner matches '{identifier}'")


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_root_dir() -> Path:
    """Return the ``~/.safer`` root directory (``SAFER_HOME`` overrides it)."""
    override = os.environ.get("SAFER_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".safer"


def get_config_path() -> Path:
    return get_root_dir() / "config.yaml"


def load_config(path: Path | None = None) -> SaferConfig:
    """Load and validate configuration from a YAML file.

    A missing file yields the defaults. Environment variable placeholders
    (``${VAR}``) are expanded before validation, except in secret fields
    (keys and the RPC URL), which keep their placeholders until used.
    """
    path = path or get_config_path()
    if not path.exists():
        return SaferConfig()
    raw_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    expanded = _expand_env_recursive(raw_data)
    return SaferConfig.model_validate(expanded)


def save_config(config: SaferConfig, path: Path | None = None) -> None:
    """Serialize a :class:`SaferConfig` to a YAML file."""
    path = path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
