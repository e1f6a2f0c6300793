"""
JSON-RPC adapters for the network of record.

- RpcClient: synchronous JSON-RPC 2.0 over httpx. Single attempt per call;
  transport failures and 429/5xx surface as TransportError so the core's
  retry layer decides what to retry.
- RpcMembershipResolver: anchor → tokens → holders → public keys.
- RpcBroadcaster: submits raw transactions; an RPC error is a rejection.

Methods used:
    token.getChildren     [anchorId]  -> [tokenId, ...]
    token.getHolder       [tokenId]   -> address
    account.getPublicKey  [address]   -> hex | null
    tx.sendRawTransaction [rawHex]    -> txHash | {"txHash": ...}

Example:
    rpc = RpcClient("http://localhost:8545/rpc")
    resolver = RpcMembershipResolver(rpc)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import httpx

from ..errors import BroadcastRejected, CouncilError, DiscoveryError, TransportError
from ..version import __version__

Params = Union[Sequence[Any], Mapping[str, Any], None]

# Server-side "not found" codes seen for unknown accounts.
NOT_FOUND_CODES = (-32004, -32602)


def _is_retriable_http(status: int) -> bool:
    return status in (429, 502, 503, 504)


class RpcError(CouncilError):
    """The server answered with a JSON-RPC error object."""
    code = "COUNCIL_RPC"

    def __init__(self, *, method: str, rpc_code: int, message: str, data: Any = None) -> None:
        self.method = method
        self.rpc_code = int(rpc_code)
        self.rpc_message = message
        self.data = data
        super().__init__(message, details={"method": method, "rpc_code": self.rpc_code})


@dataclass
class RpcClient:
    """Synchronous JSON-RPC 2.0 client over HTTP."""

    url: str
    timeout: float = 15.0
    headers: Optional[Mapping[str, str]] = None
    transport: Optional[httpx.BaseTransport] = None
    _ids: Iterator[int] = field(default_factory=lambda: count(1), repr=False)
    _client: httpx.Client = field(init=False, repr=False)

    def __post_init__(self) -> None:
        merged: Dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"council/{__version__}",
        }
        if self.headers:
            merged.update(dict(self.headers))
        self._client = httpx.Client(timeout=self.timeout, headers=merged, transport=self.transport)

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, params: Params = None) -> Any:
        """Perform one JSON-RPC request and return `result` or raise."""
        if params is None:
            params = []
        elif isinstance(params, Mapping):
            params = dict(params)
        else:
            params = list(params)
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = self._client.post(self.url, content=json.dumps(payload, separators=(",", ":")))
        except httpx.TransportError as e:
            raise TransportError(f"{method}: {e}", endpoint=self.url) from e
        if _is_retriable_http(r.status_code):
            raise TransportError(f"{method}: HTTP {r.status_code}", endpoint=self.url)
        try:
            resp = r.json()
        except ValueError as e:
            raise RpcError(
                method=method, rpc_code=-32603, message=f"non-JSON response (HTTP {r.status_code})"
            ) from e
        if not isinstance(resp, dict):
            raise RpcError(method=method, rpc_code=-32603, message="malformed JSON-RPC response")
        if resp.get("error"):
            err = resp["error"]
            raise RpcError(
                method=method,
                rpc_code=err.get("code", -32603),
                message=err.get("message", "unknown error"),
                data=err.get("data"),
            )
        if "result" not in resp:
            raise RpcError(method=method, rpc_code=-32603, message="malformed JSON-RPC response")
        return resp["result"]


class RpcMembershipResolver:
    def __init__(self, client: RpcClient) -> None:
        self.client = client

    def children(self, anchor_id: str) -> List[str]:
        try:
            result = self.client.request("token.getChildren", [anchor_id])
        except RpcError as e:
            raise DiscoveryError(f"anchor lookup failed: {e.rpc_message}", anchor_id=anchor_id) from e
        if not isinstance(result, list):
            raise DiscoveryError("anchor lookup returned no token list", anchor_id=anchor_id)
        return [str(t) for t in result]

    def holder(self, token: str) -> str:
        try:
            result = self.client.request("token.getHolder", [token])
        except RpcError as e:
            raise DiscoveryError(f"holder lookup failed: {e.rpc_message}", token=token) from e
        if isinstance(result, dict):
            result = result.get("address")
        if not isinstance(result, str) or not result:
            raise DiscoveryError("holder lookup returned no address", token=token)
        return result

    def public_key(self, address: str) -> Optional[str]:
        try:
            result = self.client.request("account.getPublicKey", [address])
        except RpcError as e:
            if e.rpc_code in NOT_FOUND_CODES or "not found" in e.rpc_message.lower():
                return None
            raise
        if isinstance(result, dict):
            result = result.get("publicKey")
        return str(result) if result else None


class RpcBroadcaster:
    def __init__(self, client: RpcClient) -> None:
        self.client = client

    def broadcast(self, raw_hex: str) -> str:
        try:
            result = self.client.request("tx.sendRawTransaction", [raw_hex])
        except RpcError as e:
            raise BroadcastRejected(reason=e.rpc_message, details={"rpc_code": e.rpc_code}) from e
        if isinstance(result, dict):
            result = result.get("txHash") or result.get("hash")
        if not isinstance(result, str) or not result:
            raise BroadcastRejected(reason="node returned no transaction hash")
        return result


__all__ = ["RpcError", "RpcClient", "RpcMembershipResolver", "RpcBroadcaster"]
