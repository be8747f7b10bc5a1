"""
Record store client — read-only access to the PocketBase-style REST API.

Every call returns a ``QueryResult`` instead of raising: a non-2xx status,
a transport error or an undecodable body all become a ``QueryFailure``
carrying the status and a truncated body for diagnostics. Callers that
cannot degrade (the detail endpoints) use ``raise_for_failure()``.

Auth handling is explicit (``AuthMode``):
  • none          — never send the credential
  • bearer        — always send ``Authorization: Bearer <token>``
  • retry_on_401  — try anonymously first (collections may be public);
                    on 401 retry exactly once with the bearer header
"""

from __future__ import annotations

import logging
import time
from typing import Optional
from urllib.parse import quote

import httpx

from app.config import AuthMode, Settings
from app.models.dashboard import QueryFailure, QueryResult, RecordPage, StageQuery

logger = logging.getLogger(__name__)

# Response body bytes kept in a QueryFailure
ERROR_BODY_LIMIT = 800


def create_http_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Per-request async HTTP client for the record store."""
    return httpx.AsyncClient(
        timeout=settings.request_timeout_seconds,
        headers={"Content-Type": "application/json"},
        transport=transport,
    )


def _truncate(content: bytes) -> str:
    return content[:ERROR_BODY_LIMIT].decode("utf-8", errors="replace")


class RecordStoreClient:
    """Thin async wrapper over the collection records endpoints."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        token: str = "",
        auth_mode: AuthMode = AuthMode.RETRY_ON_401,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._auth_mode = AuthMode(auth_mode)

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> RecordStoreClient:
        return cls(
            client,
            base_url=settings.store_url,
            token=settings.pb_token,
            auth_mode=settings.auth_mode,
        )

    def _records_url(self, collection: str, record_id: Optional[str] = None) -> str:
        url = f"{self._base_url}/api/collections/{quote(collection, safe='')}/records"
        if record_id is not None:
            url += "/" + quote(record_id, safe="")
        return url

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _get(self, url: str, params: Optional[dict[str, str]] = None) -> httpx.Response:
        if self._auth_mode is AuthMode.BEARER and self._token:
            return await self._client.get(url, params=params, headers=self._auth_headers())

        response = await self._client.get(url, params=params)
        if (
            response.status_code == 401
            and self._auth_mode is AuthMode.RETRY_ON_401
            and self._token
        ):
            logger.debug("401 from %s — retrying once with bearer token", url)
            response = await self._client.get(url, params=params, headers=self._auth_headers())
        return response

    async def _fetch(
        self,
        label: str,
        collection: str,
        url: str,
        params: Optional[dict[str, str]] = None,
    ) -> tuple[Optional[dict], Optional[QueryFailure]]:
        """GET ``url`` and return (json_body, None) or (None, failure)."""
        params = params or {}
        start = time.perf_counter()
        try:
            response = await self._get(url, params=params or None)
        except httpx.HTTPError as e:
            logger.warning("Record store %s [%s] transport error: %s", collection, label, e)
            return None, QueryFailure(
                label=label,
                collection=collection,
                status_text=type(e).__name__,
                body=str(e)[:ERROR_BODY_LIMIT],
                query=params,
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        if not response.is_success:
            logger.warning(
                "Record store %s [%s] returned %d %s (%.1f ms)",
                collection, label, response.status_code, response.reason_phrase, elapsed_ms,
            )
            return None, QueryFailure(
                label=label,
                collection=collection,
                status_code=response.status_code,
                status_text=response.reason_phrase,
                body=_truncate(response.content),
                query=params,
            )

        try:
            body = response.json()
        except ValueError:
            return None, QueryFailure(
                label=label,
                collection=collection,
                status_code=response.status_code,
                status_text="Invalid JSON",
                body=_truncate(response.content),
                query=params,
            )
        if not isinstance(body, dict):
            return None, QueryFailure(
                label=label,
                collection=collection,
                status_code=response.status_code,
                status_text="Unexpected response shape",
                body=_truncate(response.content),
                query=params,
            )

        logger.debug("Record store %s [%s] OK (%.1f ms)", collection, label, elapsed_ms)
        return body, None

    # ── Public API ────────────────────────────────────────────────

    async def list_records(self, query: StageQuery) -> QueryResult:
        """One page of ``query.collection`` matching ``query``."""
        body, failure = await self._fetch(
            query.label, query.collection, self._records_url(query.collection), query.params(),
        )
        if failure is not None:
            return QueryResult.failed(failure)

        items = body.get("items") or []
        return QueryResult.success(RecordPage(
            items=[item for item in items if isinstance(item, dict)],
            total_items=int(body.get("totalItems") or 0),
            page=int(body.get("page") or query.page),
            per_page=int(body.get("perPage") or query.per_page),
            total_pages=int(body.get("totalPages") or 0),
        ))

    async def list_all(self, query: StageQuery, max_pages: int) -> QueryResult:
        """
        Follow pagination from page 1 up to ``max_pages``.

        Pages are fetched sequentially because the page count is only known
        after the first response. Any failing page fails the whole scan.
        A scan cut short by ``max_pages`` succeeds with ``truncated`` set and
        a notice describing how much was read.
        """
        first = await self.list_records(query.with_page(1))
        if not first.ok:
            return first

        page = first.page
        items = list(page.items)
        last_page = min(page.total_pages, max_pages)

        for number in range(2, last_page + 1):
            result = await self.list_records(query.with_page(number))
            if not result.ok:
                return result
            items.extend(result.page.items)

        truncated = page.total_pages > max_pages or len(items) < page.total_items
        notice = None
        if truncated:
            logger.warning(
                "Scan of %s [%s] truncated: %d of %d records (%d of %d pages)",
                query.collection, query.label, len(items), page.total_items,
                last_page, page.total_pages,
            )
            notice = QueryFailure(
                label=query.label,
                collection=query.collection,
                status_text="Scan truncated",
                body=f"Read {len(items)} of {page.total_items} records "
                     f"({last_page} of {page.total_pages} pages)",
                query=query.params(),
            )

        return QueryResult.success(RecordPage(
            items=items,
            total_items=page.total_items,
            page=1,
            per_page=page.per_page,
            total_pages=page.total_pages,
            truncated=truncated,
        ), notice=notice)

    async def get_record(self, collection: str, record_id: str) -> QueryResult:
        """Single record by id; a missing record is a 404 failure."""
        body, failure = await self._fetch(
            "get", collection, self._records_url(collection, record_id),
        )
        if failure is not None:
            return QueryResult.failed(failure)
        return QueryResult.success(RecordPage(items=[body], total_items=1, per_page=1, total_pages=1))
