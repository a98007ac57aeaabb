"""Content-store client for the Autonolas IPFS registry."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from .cid import GATEWAY_URL, cid_to_hex, digest_from_cid
from .errors import ContentStoreError

logger = logging.getLogger(__name__)

REGISTRY_ADD_URL = "https://registry.autonolas.tech/api/v0/add"


def _last_hash(body: str) -> Optional[str]:
    last: Optional[str] = None
    for line in body.strip().splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON line in registry response: %r", line)
            continue
        if isinstance(entry, dict) and entry.get("Hash"):
            last = str(entry["Hash"])
    return last


class IPFSClient:
    """Uploads to the registry ``add`` endpoint and reads back through the gateway."""

    def __init__(
        self,
        add_url: str = REGISTRY_ADD_URL,
        gateway_url: str = GATEWAY_URL,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.add_url = add_url
        self.gateway_url = gateway_url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def upload(
        self,
        content: Union[bytes, str],
        filename: str = "file",
        *,
        content_type: str = "application/octet-stream",
        wrap_with_directory: bool = False,
    ) -> str:
        """Pin ``content`` and return the CID the registry reports last."""

        if isinstance(content, str):
            content = content.encode("utf-8")
        params = {
            "pin": "true",
            "cid-version": "1",
            "wrap-with-directory": "true" if wrap_with_directory else "false",
        }
        files = {"file": (filename, content, content_type)}
        try:
            async with self._client() as client:
                response = await client.post(self.add_url, params=params, files=files)
        except httpx.HTTPError as exc:
            raise ContentStoreError(f"IPFS registry upload failed: {exc}") from exc
        if response.status_code != 200:
            raise ContentStoreError(
                f"IPFS registry upload failed with status {response.status_code}",
                status=response.status_code,
            )
        cid = _last_hash(response.text)
        if not cid:
            raise ContentStoreError("IPFS registry upload did not return a CID", status=response.status_code)
        logger.debug("Uploaded %s (%d bytes) as %s", filename, len(content), cid)
        return cid

    async def upload_json(
        self,
        payload: Any,
        filename: str = "content.json",
        *,
        wrap_with_directory: bool = False,
    ) -> str:
        body = json.dumps(payload, indent=2)
        return await self.upload(
            body, filename, content_type="application/json", wrap_with_directory=wrap_with_directory
        )

    async def fetch(self, url: str) -> bytes:
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ContentStoreError(f"Fetching {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise ContentStoreError(
                f"Fetching {url} failed with status {response.status_code}", status=response.status_code
            )
        return response.content

    async def fetch_json(self, url: str) -> Any:
        content = await self.fetch(url)
        try:
            return json.loads(content)
        except ValueError as exc:
            raise ContentStoreError(f"Content at {url} is not JSON: {exc}") from exc


def build_metadata(prompt: str, tool: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"prompt": prompt, "tool": tool, "nonce": str(uuid.uuid4())}
    if extra:
        metadata.update(extra)
    return metadata


async def push_json_to_ipfs(client: IPFSClient, content: Any, filename: str = "content.json") -> Tuple[str, str]:
    """Upload ``content`` and return ``(0x digest hex, cid)``."""

    cid = await client.upload_json(content, filename)
    return digest_from_cid(cid).hex, cid


async def push_metadata_to_ipfs(
    client: IPFSClient,
    prompt: str,
    tool: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Tuple[str, str]:
    return await push_json_to_ipfs(client, build_metadata(prompt, tool, extra), "metadata.json")


async def push_file_to_ipfs(client: IPFSClient, path: Union[str, Path]) -> Tuple[str, str]:
    """Upload a local file and return ``(cid, f01... hex rendering)``."""

    content = Path(path).read_bytes()
    cid = await client.upload(content, "file")
    return cid, cid_to_hex(cid)


__all__ = [
    "IPFSClient",
    "REGISTRY_ADD_URL",
    "build_metadata",
    "push_file_to_ipfs",
    "push_json_to_ipfs",
    "push_metadata_to_ipfs",
]
