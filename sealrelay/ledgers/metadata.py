"""
HTTP metadata resolver.

Looks up display metadata for a sealed asset from a JSON endpoint:
``GET {base_url}/{chain_id}/{contract_hex}/{token_id_hex}``. The result is
advisory; resolution failures fall back to whatever the event carried.
"""

from typing import Optional

import httpx

from ..constants import CONNECTION_TIMEOUT
from ..types import SealMetadata
from .base import MetadataResolver
from .rpc import http_request


class HttpMetadataResolver(MetadataResolver):

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = CONNECTION_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def resolve(self, chain_id: int, contract: bytes, token_id: bytes) -> SealMetadata:
        url = f"{self.base_url}/{chain_id}/{contract.hex()}/{token_id.hex()}"
        body = await http_request(self._client, url, ledger="metadata", allow_not_found=True)
        if not isinstance(body, dict):
            return SealMetadata()
        return SealMetadata(
            name=str(body.get("name", "") or ""),
            description=str(body.get("description", "") or ""),
            uri=str(body.get("uri") or body.get("image") or body.get("external_url") or ""),
            collection=str(body.get("collection", "") or ""),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
