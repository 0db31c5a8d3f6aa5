"""Web3 connections and per-Safe SDK instances.

``SafeSession`` is owned by the caller (usually one per CLI invocation).
It reuses one web3 connection and one ``Web3SafeSDK`` per Safe address until
:meth:`SafeSession.invalidate` is called.
"""

from __future__ import annotations

import logging
from typing import Optional

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from safer_wallet.config import SaferConfig
from safer_wallet.exceptions import ConfigurationError, SafeNotConfiguredError
from safer_wallet.wallet.safe import Web3SafeSDK

logger = logging.getLogger("safer_wallet.wallet.provider")


class SafeSession:
    """Explicit cache of web3 / Safe SDK handles for one chain and RPC endpoint."""

    def __init__(self, rpc_url: str, chain_id: int) -> None:
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._w3: Optional[Web3] = None
        self._sdks: dict[str, Web3SafeSDK] = {}

    @classmethod
    def from_config(cls, config: SaferConfig) -> SafeSession:
        _, chain_id = config.require_chain()
        return cls(config.require_rpc_url(), chain_id)

    @property
    def w3(self) -> Web3:
        """The shared web3 connection, created on first use.

        Injects POA middleware for non-mainnet chains.
        """
        if self._w3 is None:
            w3 = Web3(Web3.HTTPProvider(self.rpc_url))
            if self.chain_id != 1:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._w3 = w3
        return self._w3

    def check_chain(self) -> None:
        """Raise ``ConfigurationError`` if the node serves a different chain."""
        remote = self.w3.eth.chain_id
        if remote != self.chain_id:
            raise ConfigurationError(
                f"RPC endpoint serves chain {remote}, configured chain is {self.chain_id}"
            )

    def get_sdk(self, safe_address: Optional[str]) -> Web3SafeSDK:
        if not safe_address:
            raise SafeNotConfiguredError()
        key = safe_address.lower()
        sdk = self._sdks.get(key)
        if sdk is None:
            logger.debug(f"Creating Safe SDK for {safe_address} on chain {self.chain_id}")
            sdk = Web3SafeSDK(self.w3, safe_address, chain_id=self.chain_id)
            self._sdks[key] = sdk
        return sdk

    def invalidate(self, safe_address: Optional[str] = None) -> None:
        """Drop cached SDKs (one Safe, or all of them and the connection)."""
        if safe_address is not None:
            self._sdks.pop(safe_address.lower(), None)
            return
        self._sdks.clear()
        self._w3 = None
