"""
Shared fixtures for backend tests.

Provides:
  • mock_settings – Settings rebuilt from the dummy test environment
  • fake_store – an in-process PocketBase-style record store (httpx.MockTransport)
  • store_transport – routes the app's HTTP clients to ``fake_store``
  • test_client – FastAPI TestClient
  • pipeline_records – one record set covering every pipeline stage
"""

from __future__ import annotations

import math
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch
from urllib.parse import unquote

import httpx
import pytest

# ── Ensure backend package is importable ──────────────────────────
_BACKEND_DIR = str(Path(__file__).resolve().parent.parent)
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ═══════════════════════════════════════════════════════════════════
# Environment — set dummy env vars BEFORE importing app modules
# ═══════════════════════════════════════════════════════════════════

STORE_URL = "http://pb.test"

# Fixed "now" for window-dependent assertions
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

_DUMMY_ENV = {
    "APP_ENV": "test",
    "LOG_LEVEL": "WARNING",
    "CORS_ORIGINS": "*",
    "PB_URL": STORE_URL,
    "PB_TOKEN": "",
    "AUTH_MODE": "retry_on_401",
    "DAY_BOUNDARY": "utc",
    "VERTICALS": "news,sport",
}

# Direct assignment (not setdefault) so values from a developer shell
# don't leak into the suite.
for k, v in _DUMMY_ENV.items():
    os.environ[k] = v


# ═══════════════════════════════════════════════════════════════════
# Fake record store
# ═══════════════════════════════════════════════════════════════════

_TERM = re.compile(r"^(\w+) (!=|>=|<=|=|>|<) (.+)$")
_PATH = re.compile(r"^/api/collections/([^/]+)/records(?:/([^/]+))?$")


def _parse_value(text: str) -> Any:
    if text.startswith('"') and text.endswith('"'):
        return text[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    if text in ("true", "false"):
        return text == "true"
    if text == "null":
        return None
    return float(text)


def _matches(record: dict, term: str) -> bool:
    match = _TERM.match(term.strip())
    assert match, f"fake store cannot parse filter term {term!r}"
    name, op, raw = match.groups()
    expected = _parse_value(raw)
    actual = record.get(name)
    if actual is None and isinstance(expected, str):
        actual = ""
    if op == "=":
        return actual == expected
    if op == "!=":
        return actual != expected
    if actual is None or type(actual) is not type(expected):
        return False
    return {
        ">": actual > expected,
        ">=": actual >= expected,
        "<": actual < expected,
        "<=": actual <= expected,
    }[op]


class FakeRecordStore:
    """Just enough of the PocketBase records API to serve the aggregator."""

    def __init__(self, collections: Optional[dict[str, list[dict]]] = None):
        self.collections: dict[str, list[dict]] = collections or {}
        self.failures: dict[str, tuple[int, str]] = {}
        self.required_token: Optional[str] = None
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def fail_collection(self, collection: str, status: int = 500, body: str = "boom") -> None:
        self.failures[collection] = (status, body)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.required_token is not None:
            if request.headers.get("Authorization") != f"Bearer {self.required_token}":
                return httpx.Response(401, json={"code": 401, "message": "unauthorized"})

        match = _PATH.match(request.url.path)
        if not match:
            return httpx.Response(404, json={"code": 404, "message": "not found"})
        collection, record_id = unquote(match.group(1)), match.group(2)

        if collection in self.failures:
            status, body = self.failures[collection]
            return httpx.Response(status, text=body)

        records = list(self.collections.get(collection, []))
        if record_id is not None:
            record_id = unquote(record_id)
            for record in records:
                if record.get("id") == record_id:
                    return httpx.Response(200, json=record)
            return httpx.Response(404, json={"code": 404, "message": "The requested resource wasn't found."})

        params = request.url.params
        expression = params.get("filter", "")
        if expression:
            terms = expression.split(" && ")
            records = [r for r in records if all(_matches(r, t) for t in terms)]

        for key in reversed([k for k in params.get("sort", "").split(",") if k]):
            name = key.lstrip("-")
            records.sort(key=lambda r: str(r.get(name) or ""), reverse=key.startswith("-"))

        per_page = int(params.get("perPage", 30))
        page = int(params.get("page", 1))
        total = len(records)
        return httpx.Response(200, json={
            "page": page,
            "perPage": per_page,
            "totalItems": total,
            "totalPages": math.ceil(total / per_page) if per_page else 0,
            "items": records[(page - 1) * per_page: page * per_page],
        })


YESTERDAY = "2023-12-31"


def ts(hour: int, minute: int = 0, date: str = "2024-01-01") -> str:
    """Store-formatted UTC timestamp."""
    return f"{date} {hour:02d}:{minute:02d}:00.000Z"


@pytest.fixture()
def pipeline_records() -> dict[str, list[dict]]:
    """Records for all five stages, relative to NOW (2024-01-01 12:00Z)."""
    return {
        "news_raw": [
            {"id": "r1", "created": ts(10), "updated": ts(10), "title": "Storm", "source_domain": "a.com"},
            {"id": "r2", "created": ts(8), "updated": ts(8), "title": "Vote", "source_domain": "b.com"},
            {"id": "r3", "created": ts(7), "updated": ts(7), "title": "Match", "source_domain": "a.com"},
            {"id": "r4", "created": ts(23, date=YESTERDAY), "updated": ts(23, date=YESTERDAY),
             "title": "Old", "source_domain": "c.com"},
        ],
        "directed_items": [
            {"id": "d1", "created": ts(9), "updated": ts(11), "rejected": True,
             "priority": "URGENT", "spam_detected": False, "vertical": "news"},
            {"id": "d2", "created": ts(9), "updated": ts(9), "rejected": False,
             "priority": "NORMAL", "spam_detected": True, "vertical": "sport"},
            {"id": "d3", "created": ts(10), "updated": ts(10), "rejected": False,
             "priority": "URGENT", "spam_detected": False, "vertical": "news"},
            {"id": "d4", "created": ts(20, date=YESTERDAY), "updated": ts(20, date=YESTERDAY),
             "rejected": True, "priority": "URGENT", "spam_detected": True, "vertical": "news"},
        ],
        "events": [
            {"id": "e1", "created": ts(6), "updated": ts(11), "status": "new",
             "observation_count": 3, "vertical": "news"},
            {"id": "e2", "created": ts(5), "updated": ts(10), "status": "active",
             "observation_count": 5},
            {"id": "e3", "created": ts(4, date=YESTERDAY), "updated": ts(5, date=YESTERDAY),
             "status": "closed", "observation_count": 2, "vertical": "sport"},
            {"id": "e4", "created": ts(3), "updated": ts(9), "status": "merged",
             "observation_count": 4, "vertical": "sport"},
            {"id": "e5", "created": ts(2, date=YESTERDAY), "updated": ts(3, date=YESTERDAY),
             "status": "active", "observation_count": "x", "vertical": "news"},
        ],
        "publish_ready": [
            {"id": "g1", "created": ts(9), "updated": ts(11), "processed_at": ts(11),
             "ready_to_publish": True, "vertical": "news", "title": "Storm hits",
             "summary": "Short", "body": "One\n\nTwo",
             "audit_json": '{"neutral": true}', "usage_json": '{"total_tokens": 100000}'},
            {"id": "g2", "created": ts(9, 30), "updated": ts(9, 30), "processed_at": "",
             "ready_to_publish": True, "vertical": "sport",
             "audit_json": {"neutral": False}, "usage_json": {"total_tokens": 25000}},
            {"id": "g3", "created": ts(10), "updated": ts(10),
             "ready_to_publish": False, "vertical": "news",
             "audit_json": "not json", "usage_json": "{broken"},
            {"id": "g4", "created": ts(22, date=YESTERDAY), "updated": ts(22, date=YESTERDAY),
             "processed_at": ts(23, date=YESTERDAY), "ready_to_publish": True, "vertical": "news",
             "audit_json": '{"neutral": true}', "usage_json": '{"total_tokens": 999}'},
        ],
        "published_posts": [
            {"id": "p1", "created": ts(10, 45), "published_at": ts(10, 45), "vertical": "news",
             "source_url": "https://a.com/1", "platform": "web", "publish_ready_id": "g1"},
            {"id": "p2", "created": ts(10, 30), "published_at": ts(10, 30), "vertical": "sport",
             "source_url": "https://b.com/2", "platform": "web", "publish_ready_id": "g2"},
            {"id": "p3", "created": ts(10, 15), "published_at": ts(10, 15),
             "source_url": "https://a.com/1", "platform": "web", "publish_ready_id": "g1"},
            {"id": "p4", "created": ts(21, date=YESTERDAY), "published_at": ts(21, date=YESTERDAY),
             "vertical": "news", "platform": "web", "publish_ready_id": "g4"},
        ],
    }


# ═══════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture()
def mock_settings():
    """Return a Settings instance built from the dummy environment."""
    # Clear the lru_cache so our env vars are picked up
    from app.config import get_settings
    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()


@pytest.fixture()
def fake_store(pipeline_records):
    return FakeRecordStore(pipeline_records)


@pytest.fixture()
def store_transport(fake_store):
    """Point every HTTP client the app creates at ``fake_store``."""
    def _client(settings, transport=None):
        return httpx.AsyncClient(
            transport=fake_store.transport,
            headers={"Content-Type": "application/json"},
        )

    with patch("app.services.aggregator.create_http_client", side_effect=_client), \
         patch("app.routers.records.create_http_client", side_effect=_client):
        yield fake_store


@pytest.fixture()
def test_client(mock_settings):
    """FastAPI TestClient running the app lifespan."""
    from fastapi.testclient import TestClient
    from app.main import app
    with TestClient(app) as client:
        yield client
