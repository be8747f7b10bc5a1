"""
Record detail endpoints.

Companion routes for the dashboard: a raw JSON view and a minimal HTML
preview of a single generated article, plus the static home ping.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from app.config import Settings, get_settings
from app.models.dashboard import QueryResult, RecordStoreError
from app.services.record_store import RecordStoreClient, create_http_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["records"])

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

_POST_TEMPLATE = """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width,initial-scale=1"/>
  <meta name="robots" content="noindex,nofollow"/>
  <title>{title}</title>
  <style>
    body{{font-family:system-ui;background:#0e0e11;color:#eaeaf0;margin:0}}
    .wrap{{max-width:820px;margin:auto;padding:32px}}
    h1{{font-size:32px}}
    .summary{{opacity:.9;margin-bottom:16px}}
  </style>
</head>
<body>
  <div class="wrap">
    <h1>{title}</h1>
    <p class="summary">{summary}</p>
    {body}
  </div>
</body>
</html>"""


def _escape(value) -> str:
    return html.escape(str(value or ""), quote=False)


def render_paragraphs(text) -> str:
    """Split on blank lines and wrap each chunk in <p>."""
    text = "" if text is None else str(text)
    return "\n".join(f"<p>{_escape(p)}</p>" for p in _PARAGRAPH_BREAK.split(text))


def render_post(record: dict) -> str:
    return _POST_TEMPLATE.format(
        title=_escape(record.get("title")),
        summary=_escape(record.get("summary")),
        body=render_paragraphs(record.get("body")),
    )


async def fetch_generated_record(settings: Settings, record_id: str) -> QueryResult:
    async with create_http_client(settings) as http:
        store = RecordStoreClient.from_settings(http, settings)
        return await store.get_record(settings.generation_collection, record_id)


# ═══════════════════════════════════════════════════════════════════
# GET /api/article — raw record JSON
# ═══════════════════════════════════════════════════════════════════

@router.get("/article")
async def get_article(record_id: Optional[str] = Query(None, alias="id")):
    if not record_id:
        return PlainTextResponse("Missing id", status_code=400)

    settings = get_settings()
    if not settings.store_configured:
        return PlainTextResponse("PB_URL missing", status_code=500)

    try:
        page = (await fetch_generated_record(settings, record_id)).raise_for_failure()
    except RecordStoreError as e:
        logger.warning("Article %s lookup failed: %s", record_id, e)
        return JSONResponse(
            status_code=500,
            content={"error": "Record store error", "status": e.failure.status_code},
        )
    return JSONResponse(content=page.first)


# ═══════════════════════════════════════════════════════════════════
# GET /api/post — HTML preview
# ═══════════════════════════════════════════════════════════════════

@router.get("/post", response_class=HTMLResponse)
async def get_post(record_id: Optional[str] = Query(None, alias="id")):
    if not record_id:
        return PlainTextResponse("Missing id", status_code=400)

    settings = get_settings()
    if not settings.store_configured:
        return PlainTextResponse("PB_URL missing", status_code=500)

    try:
        page = (await fetch_generated_record(settings, record_id)).raise_for_failure()
    except RecordStoreError as e:
        logger.warning("Post %s lookup failed: %s", record_id, e)
        return PlainTextResponse(
            f"Record store error {e.failure.status_code}: {e.failure.body}",
            status_code=502,
        )
    return HTMLResponse(render_post(page.first))


@router.get("/home")
async def home():
    return {"ok": True, "api": "pipeline-dashboard"}
