"""Share transactions over IPFS: pin through Pinata, fetch through gateways."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from safer_wallet.config import IPFSConfig
from safer_wallet.exceptions import (
    ConfigurationError,
    IPFSError,
    ParameterError,
    TransactionNotFoundError,
)
from safer_wallet.storage.files import FILE_TYPE, FILE_VERSION, transaction_from_file, transaction_to_file
from safer_wallet.storage.models import SafeTransaction

logger = logging.getLogger("safer_wallet.storage.ipfs")

PINATA_PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"

PUBLIC_GATEWAYS = [
    "https://ipfs.io/ipfs",
    "https://gateway.pinata.cloud/ipfs",
    "https://cloudflare-ipfs.com/ipfs",
    "https://ipfs.infura.io/ipfs",
]

_IPFS_PATH_RE = re.compile(r"/ipfs/([a-zA-Z0-9]+)")


def parse_cid_from_uri(uri: str) -> str:
    """Extract the CID from ``ipfs://CID`` or any ``.../ipfs/CID`` gateway URL."""
    uri = uri.strip()
    if uri.startswith("ipfs://"):
        cid = uri[len("ipfs://"):].strip("/")
        if cid:
            return cid
    else:
        match = _IPFS_PATH_RE.search(uri)
        if match:
            return match.group(1)
    raise ParameterError("uri", f"Invalid IPFS URI format: {uri}")


def _normalize_payload(payload: Any) -> Any:
    """Accept a raw string, a full envelope, or bare transaction data."""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        if payload.get("version") and payload.get("type") == FILE_TYPE and payload.get("data"):
            return payload
        return {"version": FILE_VERSION, "type": FILE_TYPE, "data": payload}
    raise ValueError("Invalid response format from IPFS")


class IPFSTransactionStore:
    """Remote content-addressed transaction store.

    Parameters
    ----------
    config:
        Pinata credentials, preferred gateway and per-request timeout.
    gateways:
        Explicit gateway list, tried in order. Defaults to the configured
        gateway followed by the public fallbacks.
    transport:
        Optional ``httpx`` transport, used by tests to stub the network.
    """

    def __init__(
        self,
        config: Optional[IPFSConfig] = None,
        gateways: Optional[list[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or IPFSConfig()
        self._transport = transport
        if gateways is None:
            gateways = PUBLIC_GATEWAYS
            if self.config.gateway:
                gateways = [self.config.gateway, *gateways]
        self.gateways: list[str] = []
        for gw in gateways:
            gw = gw.rstrip("/")
            if gw not in self.gateways:
                self.gateways.append(gw)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._transport
        )

    def gateway_url(self, cid: str, index: int = 0) -> str:
        if not 0 <= index < len(self.gateways):
            index = 0
        return f"{self.gateways[index]}/{cid}"

    async def publish(self, tx: SafeTransaction) -> SafeTransaction:
        """Pin *tx* and return a copy annotated with ``metadata.ipfs``.

        Raises
        ------
        ConfigurationError
            If Pinata credentials are missing. No request is made.
        IPFSError
            If Pinata rejects the upload or cannot be reached.
        """
        if not self.config.has_credentials:
            raise ConfigurationError(
                "Pinata API credentials not configured. Run "
                "'safer config set --pinata-api-key <key> --pinata-secret <secret>'."
            )

        api_key, secret_api_key = self.config.credentials
        filename, content = transaction_to_file(tx)
        headers = {
            "pinata_api_key": api_key,
            "pinata_secret_api_key": secret_api_key,
        }
        files = {"file": (filename, content.encode("utf-8"), "application/json")}

        async with self._client() as client:
            try:
                resp = await client.post(PINATA_PIN_FILE_URL, headers=headers, files=files)
                resp.raise_for_status()
                cid = resp.json()["IpfsHash"]
            except httpx.HTTPStatusError as exc:
                raise IPFSError(
                    f"Failed to upload to IPFS: Pinata returned {exc.response.status_code}"
                ) from exc
            except httpx.HTTPError as exc:
                raise IPFSError(f"Failed to upload to IPFS: {exc}") from exc
            except (ValueError, KeyError) as exc:
                raise IPFSError(
                    f"Failed to upload to IPFS: unexpected Pinata response ({exc})"
                ) from exc

        logger.info(f"Pinned transaction {tx.hash} as {cid}")
        return tx.with_metadata(
            ipfs={"cid": cid, "url": f"ipfs://{cid}", "gateway": self.gateway_url(cid)}
        )

    async def retrieve(self, cid: str) -> SafeTransaction:
        """Fetch a transaction by CID, trying each gateway in order.

        Raises
        ------
        TransactionNotFoundError
            If every gateway fails; the message carries the last error.
        """
        if not cid:
            raise ParameterError("cid", "Missing CID parameter")

        last_error: Optional[Exception] = None
        async with self._client() as client:
            for gateway in self.gateways:
                url = f"{gateway}/{cid}"
                try:
                    resp = await client.get(url)
                    resp.raise_for_status()
                    try:
                        payload: Any = resp.json()
                    except ValueError:
                        payload = resp.text
                    return transaction_from_file(_normalize_payload(payload))
                except Exception as exc:
                    logger.warning(f"Gateway {gateway} failed for {cid}: {exc}")
                    last_error = exc

        reason = str(last_error) if last_error else "All gateways failed"
        raise TransactionNotFoundError(
            cid, f"Failed to load transaction from IPFS: {reason}"
        )
