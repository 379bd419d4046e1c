from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from statsgoblin.common.config import Settings, settings
from statsgoblin.common.errors import StoreError, TransientStoreError

log = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 429}


def _reason(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("reason") or err.get("type") or err)
    return str(err or body)[:200]


class OpenSearchStore:
    """Thin async client for the OpenSearch REST endpoints we use.

    Every call is bounded by the client timeout. Connection failures,
    timeouts, 408/429 and 5xx responses raise ``TransientStoreError``; any
    other 4xx raises ``StoreError``.
    """

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        timeout_seconds: float = 10.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        auth = (username, password) if username and password else None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=httpx.Timeout(timeout_seconds),
            verify=verify,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientStoreError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientStoreError(f"{method} {path} failed: {e}") from e

        if resp.status_code in _TRANSIENT_STATUS or resp.status_code >= 500:
            raise TransientStoreError(
                f"{method} {path} -> {resp.status_code}: {_reason(resp)}", status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise StoreError(f"{method} {path} -> {resp.status_code}: {_reason(resp)}", status_code=resp.status_code)
        return resp.json()

    # -------------------- indices --------------------
    async def put_index_template(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/_index_template/{quote(name, safe='')}", json=body)

    async def index_document(self, index: str, doc_id: str, document: dict[str, Any]) -> dict[str, Any]:
        # PUT with an explicit id creates or overwrites, so redelivery is idempotent
        return await self._request("PUT", f"/{quote(index, safe='')}/_doc/{quote(doc_id, safe='')}", json=document)

    # -------------------- search --------------------
    async def search(self, index_pattern: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/{quote(index_pattern, safe='*,')}/_search",
            json=body,
            params={"ignore_unavailable": "true", "allow_no_indices": "true"},
        )

    # -------------------- cluster --------------------
    async def cluster_health(self) -> dict[str, Any]:
        return await self._request("GET", "/_cluster/health")


def connect(cfg: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> OpenSearchStore:
    cfg = cfg or settings
    return OpenSearchStore(
        base_url=cfg.opensearch_url,
        username=cfg.opensearch_username,
        password=cfg.opensearch_password,
        timeout_seconds=cfg.store_timeout_seconds,
        verify=cfg.opensearch_verify_certs,
        transport=transport,
    )
