"""
HTTP bulk payload staging.

    POST {base}/ipfs/upload   multipart "file"  -> {"success": true, "cid": "..."}
    GET  {base}/ipfs/{cid}                       -> raw bytes

Large proposals are staged here and only the content address travels over
the messaging channel.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..errors import StagingError, TransportError

log = logging.getLogger(__name__)


class HttpStager:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _check(self, r: httpx.Response, what: str) -> None:
        if r.status_code in (429, 502, 503, 504):
            raise TransportError(f"{what}: HTTP {r.status_code}", endpoint=self.base_url)
        if r.status_code >= 400:
            raise StagingError(f"{what}: HTTP {r.status_code}", details={"body": r.text[:256]})

    def stage(self, data: bytes, *, filename: str = "proposal.json") -> str:
        url = f"{self.base_url}/ipfs/upload"
        try:
            r = self._client.post(url, files={"file": (filename, data, "application/json")})
        except httpx.TransportError as e:
            raise TransportError(f"upload: {e}", endpoint=url) from e
        self._check(r, "upload")
        try:
            body = r.json()
        except ValueError as e:
            raise StagingError("upload: non-JSON response") from e
        cid = body.get("cid") if isinstance(body, dict) else None
        if not cid:
            raise StagingError("upload: response carries no cid", details={"body": body})
        log.info("staging: uploaded %d bytes as %s", len(data), cid)
        return str(cid)

    def fetch(self, content_address: str) -> bytes:
        url = f"{self.base_url}/ipfs/{content_address}"
        try:
            r = self._client.get(url)
        except httpx.TransportError as e:
            raise TransportError(f"download: {e}", endpoint=url) from e
        self._check(r, "download")
        return r.content


__all__ = ["HttpStager"]
