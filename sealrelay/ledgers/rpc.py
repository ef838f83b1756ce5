"""
HTTP and JSON-RPC transport shared by the ledger clients.

All outgoing requests are logged as ``--> "METHOD url"`` / ``<-- ... status``
lines. Transport and protocol errors surface as LedgerCallFailed so callers
can apply bounded backoff.
"""

import itertools
import json
import time
from typing import Any, List, Optional
from urllib.parse import urlencode

import httpx

from ..constants import CONNECTION_TIMEOUT, LOG_INCLUDE_REQUEST_CONTENT, LOG_MAX_PATH_LENGTH
from ..exceptions import LedgerCallFailed
from ..logger import get_logger

logger = get_logger(__name__)


def _log_url(url: str, params: Optional[dict]) -> str:
    log_url = url
    if params:
        separator = '&' if '?' in url else '?'
        log_url = f"{url}{separator}{urlencode(params, doseq=True)}"
    if len(log_url) > LOG_MAX_PATH_LENGTH:
        log_url = log_url[:LOG_MAX_PATH_LENGTH] + "...[TRUNCATED]"
    return log_url


async def http_request(
    client: httpx.AsyncClient,
    url: str,
    method: str = 'GET',
    *,
    ledger: str = "",
    allow_not_found: bool = False,
    **kwargs,
) -> Any:
    """
    Make an HTTP request and return the decoded JSON body.

    Returns None for a 404 when ``allow_not_found`` is set.

    Raises:
        LedgerCallFailed: on network errors, error statuses or invalid JSON
    """
    start_time = time.time()
    log_url = _log_url(url, kwargs.get('params'))

    body = ""
    if LOG_INCLUDE_REQUEST_CONTENT and kwargs.get('json') is not None:
        body = f"\n\nOutgoing Request:\n\"{json.dumps(kwargs['json'], indent=2)}\"\n"
    logger.debug(f"--> \"{method} {log_url} HTTP/1.1\"{body}")

    try:
        response = await client.request(method, url, **kwargs)
    except httpx.RequestError as e:
        process_time = time.time() - start_time
        logger.warning(f"<-- \"{method} {log_url} HTTP/1.1\" NETWORK_ERROR ({process_time:.3f}s)")
        raise LedgerCallFailed(f"{ledger or url}: {e}", ledger=ledger) from e

    process_time = time.time() - start_time
    logger.debug(f"<-- \"{method} {log_url} HTTP/1.1\" {response.status_code} ({process_time:.3f}s)")

    if response.status_code == 404 and allow_not_found:
        return None
    try:
        response.raise_for_status()
        return response.json()
    except (json.JSONDecodeError, httpx.HTTPStatusError) as e:
        logger.warning(f"<-- \"{method} {log_url} HTTP/1.1\" {response.status_code} ERROR: {e}")
        raise LedgerCallFailed(f"{ledger or url}: {e}", ledger=ledger) from e


class JsonRpcError(LedgerCallFailed):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, *, code: int = 0, ledger: str = ""):
        super().__init__(message, ledger=ledger)
        self.code = code


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over ``httpx.AsyncClient``."""

    def __init__(
        self,
        url: str,
        *,
        ledger: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = CONNECTION_TIMEOUT,
    ):
        self.url = url
        self.ledger = ledger
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Invoke ``method`` and return its ``result``.

        Raises:
            JsonRpcError: if the node returned an error object
            LedgerCallFailed: on transport failure
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        logger.debug(f"[{self.ledger}] {method}")
        reply = await http_request(self._client, self.url, 'POST', ledger=self.ledger, json=payload)
        if not isinstance(reply, dict):
            raise LedgerCallFailed(f"{self.ledger}: malformed JSON-RPC reply to {method}", ledger=self.ledger)
        if reply.get("error"):
            err = reply["error"]
            raise JsonRpcError(
                f"{self.ledger} {method}: {err.get('message', err)}",
                code=int(err.get("code", 0) or 0),
                ledger=self.ledger,
            )
        return reply.get("result")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
