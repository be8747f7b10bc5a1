"""
Per-stage reducers.

Pure functions turning ``QueryResult``s into metric groups and signals.
A failed result only nulls the metrics it feeds and is appended to the
stage's ``errors``; nothing here raises on bad data.
"""

from __future__ import annotations

import json
import logging
import math
from collections import Counter
from typing import Any, Iterable, Mapping, Optional

from app.models.dashboard import (
    CostEstimate,
    DuplicateSignal,
    EventMetrics,
    GenerationMetrics,
    IngestionMetrics,
    PublicationMetrics,
    QueryFailure,
    QueryResult,
    Record,
    TriageMetrics,
)
from app.services.filters import parse_timestamp

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "unknown"

# Closed set; other status values are left out of the partition.
EVENT_STATUSES = ("new", "active", "closed")

COST_DECIMALS = 4

INGESTION_FIELDS = ("id", "created", "updated", "title", "source_domain", "provider", "language")
TRIAGE_FIELDS = ("id", "updated", "created", "event_id", "directed", "priority", "rejected")
EVENT_FIELDS = ("id", "updated", "created", "title", "status", "observation_count")
GENERATION_FIELDS = ("id", "updated", "created", "event_id", "title", "ready_to_publish")
PUBLICATION_FIELDS = (
    "id", "created", "updated", "platform", "publish_ready_id",
    "published_url", "published_at", "event_id",
)


# ═══════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════

def pick(record: Optional[Mapping[str, Any]], keys: Iterable[str]) -> Optional[Record]:
    """Project ``record`` onto the keys it actually has."""
    if record is None:
        return None
    return {k: record[k] for k in keys if k in record}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def group_by_category(records: Iterable[Mapping[str, Any]], field_name: str) -> dict[str, int]:
    """Count records per ``field_name`` value, blanks under ``unknown``."""
    counts: Counter[str] = Counter()
    for record in records:
        value = record.get(field_name)
        counts[UNKNOWN_CATEGORY if _is_blank(value) else str(value)] += 1
    return dict(sorted(counts.items()))


def count_duplicates(values: Iterable[Any]) -> tuple[int, int, list[str]]:
    """
    Return (keyed, duplicates, repeated_keys).

    Blank values are skipped. The first occurrence of a value is not a
    duplicate; each later occurrence counts once.
    """
    seen: set[str] = set()
    repeated: set[str] = set()
    keyed = 0
    duplicates = 0
    for value in values:
        if _is_blank(value):
            continue
        key = str(value)
        keyed += 1
        if key in seen:
            duplicates += 1
            repeated.add(key)
        else:
            seen.add(key)
    return keyed, duplicates, sorted(repeated)


def load_blob(value: Any) -> Optional[dict]:
    """Decode an embedded JSON blob; the store may return text or an object."""
    if isinstance(value, dict):
        return value
    if not isinstance(value, (str, bytes)) or not value:
        return None
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _as_number(value: Any) -> Optional[float]:
    """Finite numeric value of ``value``, or None."""
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _sum_finite(numbers: Iterable[Optional[float]]) -> int:
    """Add up the finite numbers; a value that would overflow the total adds zero."""
    total = 0.0
    for number in numbers:
        if number is None:
            continue
        candidate = total + number
        if math.isfinite(candidate):
            total = candidate
    return int(total)


def sum_numeric(records: Iterable[Mapping[str, Any]], field_name: str) -> int:
    """Sum ``field_name`` across records; non-numeric values add zero."""
    return _sum_finite(_as_number(record.get(field_name)) for record in records)


def token_usage(records: Iterable[Mapping[str, Any]], blob_field: str, key: str) -> int:
    """Sum ``blob[key]`` over records; unparseable blobs add zero."""
    blobs = (load_blob(record.get(blob_field)) for record in records)
    return _sum_finite(_as_number(blob.get(key)) for blob in blobs if blob is not None)


def neutrality_rate(records: list[Mapping[str, Any]], blob_field: str) -> Optional[int]:
    """Integer percentage of records whose audit blob says neutral=true."""
    if not records:
        return None
    neutral = 0
    for record in records:
        blob = load_blob(record.get(blob_field))
        if blob is not None and blob.get("neutral") is True:
            neutral += 1
    return round(100 * neutral / len(records))


def _failures(*results: Optional[QueryResult]) -> list[QueryFailure]:
    """Failures plus truncation notices, in argument order."""
    return [r.diagnostic for r in results if r is not None and r.diagnostic is not None]


def _all_items(result: QueryResult) -> Optional[list[Record]]:
    """Scan items, or None when the scan failed or was truncated."""
    return result.items if result.complete else None


def _first(result: QueryResult, fields: Iterable[str]) -> Optional[Record]:
    if not result.ok:
        return None
    return pick(result.page.first, fields)


# ═══════════════════════════════════════════════════════════════════
# Stage reducers
# ═══════════════════════════════════════════════════════════════════

def reduce_ingestion(
    latest: QueryResult,
    today: QueryResult,
    source_field: str,
) -> IngestionMetrics:
    """``latest``: newest record + totalItems. ``today``: full scan of the window."""
    distinct_sources = None
    today_items = _all_items(today)
    if today_items is not None:
        distinct_sources = len({
            str(r.get(source_field)) for r in today_items if not _is_blank(r.get(source_field))
        })
    return IngestionMetrics(
        total_items=latest.total_items,
        last_item=_first(latest, INGESTION_FIELDS),
        today_count=today.total_items,
        distinct_sources_today=distinct_sources,
        errors=_failures(latest, today),
    )


def reduce_triage(
    latest: QueryResult,
    today: QueryResult,
    rejected: QueryResult,
    urgent: QueryResult,
    spam: QueryResult,
    brand_fields: Iterable[str] = (),
) -> TriageMetrics:
    return TriageMetrics(
        total_items=latest.total_items,
        last_item=_first(latest, (*TRIAGE_FIELDS, *brand_fields)),
        today_count=today.total_items,
        rejected_today=rejected.total_items,
        urgent_today=urgent.total_items,
        spam_today=spam.total_items,
        errors=_failures(latest, today, rejected, urgent, spam),
    )


def reduce_events(
    latest: QueryResult,
    by_status: Mapping[str, QueryResult],
    all_events: QueryResult,
    updated_today: QueryResult,
    category_field: str,
    observation_field: str = "observation_count",
) -> EventMetrics:
    """
    ``by_status`` holds one count query per name in EVENT_STATUSES.
    ``all_events`` is a full scan used for the observation sum.
    """
    events = _all_items(all_events)
    updated = _all_items(updated_today)
    return EventMetrics(
        total_items=latest.total_items,
        last_item=_first(latest, (*EVENT_FIELDS, category_field)),
        by_status={status: by_status[status].total_items for status in EVENT_STATUSES},
        observation_total=sum_numeric(events, observation_field) if events is not None else None,
        updated_today=updated_today.total_items,
        updated_today_by_category=(
            group_by_category(updated, category_field) if updated is not None else None
        ),
        errors=_failures(latest, *by_status.values(), all_events, updated_today),
    )


def reduce_generation(
    latest: QueryResult,
    pending: QueryResult,
    today: QueryResult,
    ready_today: QueryResult,
    ready_by_vertical: Mapping[str, QueryResult],
    all_generated: QueryResult,
    brand_field: str,
    audit_field: str = "audit_json",
    usage_field: str = "usage_json",
    usage_key: str = "total_tokens",
) -> GenerationMetrics:
    """
    ``today`` is a full scan of the window; token usage reads its blobs.
    ``all_generated`` scans the whole collection for the neutrality rate.
    """
    today_items = _all_items(today)
    generated = _all_items(all_generated)
    return GenerationMetrics(
        total_items=latest.total_items,
        last_item=_first(latest, (*GENERATION_FIELDS, brand_field)),
        pending_count=pending.total_items,
        today_count=today.total_items,
        today_ready_to_publish=ready_today.total_items,
        today_ready_by_vertical={v: r.total_items for v, r in ready_by_vertical.items()},
        neutrality_rate=(
            neutrality_rate(generated, audit_field) if generated is not None else None
        ),
        token_usage_today=(
            token_usage(today_items, usage_field, usage_key) if today_items is not None else None
        ),
        errors=_failures(
            latest, pending, today, ready_today, *ready_by_vertical.values(), all_generated,
        ),
    )


def reduce_publication(
    latest: QueryResult,
    today: QueryResult,
    brand_field: str,
) -> PublicationMetrics:
    today_items = _all_items(today)
    return PublicationMetrics(
        total_items=latest.total_items,
        last_item=_first(latest, PUBLICATION_FIELDS),
        today_published=today.total_items,
        today_by_category=(
            group_by_category(today_items, brand_field) if today_items is not None else None
        ),
        errors=_failures(latest, today),
    )


# ═══════════════════════════════════════════════════════════════════
# Signals
# ═══════════════════════════════════════════════════════════════════

def duplicate_signal(recent: QueryResult, dup_field: str) -> DuplicateSignal:
    if not recent.ok:
        return DuplicateSignal(field=dup_field)
    keyed, duplicates, repeated = count_duplicates(r.get(dup_field) for r in recent.items)
    return DuplicateSignal(
        field=dup_field,
        sampled=len(recent.items),
        keyed=keyed,
        duplicates=duplicates,
        repeated_keys=repeated,
    )


def latency_minutes(
    newest_ingested: Optional[Mapping[str, Any]],
    newest_published: Optional[Mapping[str, Any]],
) -> Optional[int]:
    """Whole minutes from newest ingestion to newest publication, never negative."""
    if not newest_ingested or not newest_published:
        return None
    ingested_at = parse_timestamp(newest_ingested.get("created"))
    published_at = (
        parse_timestamp(newest_published.get("published_at"))
        or parse_timestamp(newest_published.get("created"))
    )
    if ingested_at is None or published_at is None:
        return None
    minutes = int((published_at - ingested_at).total_seconds() // 60)
    return max(minutes, 0)


def cost_estimate(tokens: Optional[int], rate_per_token: float) -> CostEstimate:
    if tokens is None:
        return CostEstimate(rate_per_token=rate_per_token)
    return CostEstimate(
        tokens=tokens,
        rate_per_token=rate_per_token,
        estimated_cost=round(tokens * rate_per_token, COST_DECIMALS),
    )
