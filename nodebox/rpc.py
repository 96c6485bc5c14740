"""Minimal JSON-RPC client for the local bitcoind."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import httpx

from nodebox.errors import RpcError

FALLBACK_USER = "bitcoin"
FALLBACK_PASSWORD = "changeme"


@dataclass(frozen=True)
class RpcCredentials:
    user: str
    password: str


def load_rpc_credentials(path: Path) -> RpcCredentials:
    """Parse the provisioning file (``RPC Username: ...`` / ``RPC Password: ...``).

    The file does not exist yet during early boot; the provisioning defaults
    are used until it does.
    """

    user: Optional[str] = None
    password: Optional[str] = None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return RpcCredentials(FALLBACK_USER, FALLBACK_PASSWORD)
    for line in text.splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        label = label.strip()
        if label == "RPC Username":
            user = value.strip()
        elif label == "RPC Password":
            password = value.strip()
    if not user or not password:
        return RpcCredentials(FALLBACK_USER, FALLBACK_PASSWORD)
    return RpcCredentials(user, password)


class BitcoinRpc:
    def __init__(
        self,
        host: str,
        port: int,
        credentials_path: Path,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = f"http://{host}:{port}/"
        self.credentials_path = Path(credentials_path)
        self.timeout = timeout
        self._transport = transport

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        # credentials are re-read per call so rotated passwords take effect
        credentials = load_rpc_credentials(self.credentials_path)
        payload = {"jsonrpc": "1.0", "id": "nodebox", "method": method, "params": params or []}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=payload,
                    auth=(credentials.user, credentials.password),
                )
        except httpx.HTTPError as exc:
            raise RpcError(f"{method}: node RPC unreachable ({exc.__class__.__name__})") from exc

        if response.status_code == 401:
            raise RpcError(f"{method}: node RPC rejected the credentials")
        try:
            body = response.json()
        except ValueError as exc:
            raise RpcError(f"{method}: node RPC returned HTTP {response.status_code}") from exc
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"{method}: {message}")
        if response.status_code >= 400:
            raise RpcError(f"{method}: node RPC returned HTTP {response.status_code}")
        return body.get("result") if isinstance(body, dict) else body

    async def get_blockchain_info(self) -> Any:
        return await self.call("getblockchaininfo")

    async def get_network_info(self) -> Any:
        return await self.call("getnetworkinfo")

    async def get_mempool_info(self) -> Any:
        return await self.call("getmempoolinfo")

    async def get_mining_info(self) -> Any:
        return await self.call("getmininginfo")

    async def get_peer_info(self) -> Any:
        return await self.call("getpeerinfo")

    async def get_wallet_info(self) -> Any:
        return await self.call("getwalletinfo")
