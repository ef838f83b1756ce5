"""
Guardian network REST client.

Signed envelopes are served at
``{api}/api/v1/signed_vaa/{chain}/{emitter}/{sequence}`` as base64
``vaaBytes``. A 404 means the guardians have not signed it yet.
"""

import base64
from typing import Optional

import httpx

from ..constants import CONNECTION_TIMEOUT
from ..exceptions import LedgerCallFailed
from ..logger import get_logger
from .base import GuardianNetwork
from .rpc import http_request

logger = get_logger(__name__)


class WormholeGuardianClient(GuardianNetwork):

    def __init__(self, api_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = CONNECTION_TIMEOUT):
        self.api_url = api_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_envelope(self, chain_id: int, emitter: bytes, sequence: int) -> Optional[bytes]:
        url = f"{self.api_url}/api/v1/signed_vaa/{chain_id}/{emitter.hex()}/{sequence}"
        body = await http_request(self._client, url, ledger="guardian", allow_not_found=True)
        if body is None:
            return None
        encoded = body.get("vaaBytes") or body.get("vaa")
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded)
        except ValueError as e:
            raise LedgerCallFailed(f"Guardian returned undecodable envelope: {e}", ledger="guardian") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

