"""
Dashboard aggregator.

Builds the fixed query plan for one request, runs every slot concurrently
against the record store, then hands the results to the stage reducers
and assembles the payload. A failing slot never cancels its siblings:
each slot resolves to its own ``QueryResult`` before reduction starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from app.config import Settings
from app.models.dashboard import (
    ConfigurationError,
    DashboardPayload,
    PayloadEnv,
    PayloadMeta,
    QueryFailure,
    QueryResult,
    Signals,
    StageGroups,
    StageQuery,
)
from app.services import reducers
from app.services.filters import And, DayWindow, day_window, field
from app.services.record_store import ERROR_BODY_LIMIT, RecordStoreClient, create_http_client

logger = logging.getLogger(__name__)

# Newest first, id as tie-breaker so pagination is stable
SCAN_SORT = "-created,id"


class PlannedQuery(BaseModel):
    """A slot in the plan; ``scan`` slots follow pagination."""
    model_config = ConfigDict(frozen=True)

    query: StageQuery
    scan: bool = False


# ═══════════════════════════════════════════════════════════════════
# Query plan
# ═══════════════════════════════════════════════════════════════════

def build_query_plan(settings: Settings, window: DayWindow) -> dict[str, PlannedQuery]:
    """Every read one dashboard request performs, keyed by slot label."""
    plan: dict[str, PlannedQuery] = {}

    def add(label: str, collection: str, *, sort: str = "", per_page: int = 1,
            where=None, scan: bool = False) -> None:
        if scan:
            sort = sort or SCAN_SORT
            per_page = settings.scan_page_size
        plan[label] = PlannedQuery(
            query=StageQuery(
                label=label, collection=collection, sort=sort, per_page=per_page, filter=where,
            ),
            scan=scan,
        )

    created_today = window.within("created")

    # ── WF1: ingestion ──
    raw = settings.ingestion_collection
    add("ingestion.latest", raw, sort="-created")
    add("ingestion.today", raw, where=created_today, scan=True)

    # ── WF2: triage / routing ──
    directed = settings.triage_collection
    add("triage.latest", directed, sort="-updated")
    add("triage.today", directed, where=created_today)
    add("triage.rejected", directed, where=created_today & field("rejected").eq(True))
    add("triage.urgent", directed, where=created_today & field("priority").eq("URGENT"))
    add("triage.spam", directed, where=created_today & field("spam_detected").eq(True))

    # ── WF3: event clustering ──
    events = settings.events_collection
    add("events.latest", events, sort="-updated")
    for status in reducers.EVENT_STATUSES:
        add(f"events.status.{status}", events, where=field("status").eq(status))
    add("events.all", events, scan=True)
    add("events.updated_today", events, where=window.within("updated"), scan=True)

    # ── WF4: generation ──
    ready = settings.generation_collection
    ready_today = created_today & field("ready_to_publish").eq(True)
    add("generation.latest", ready, sort="-updated")
    add("generation.pending", ready, where=field("processed_at").eq(""))
    add("generation.all", ready, scan=True)
    add("generation.today", ready, where=created_today, scan=True)
    add("generation.ready_today", ready, where=ready_today)
    for vertical in settings.verticals_list:
        add(
            f"generation.vertical.{vertical}", ready,
            where=And(created_today, field(settings.brand_field).eq(vertical),
                      field("ready_to_publish").eq(True)),
        )

    # ── WF5: publication ──
    published = settings.publication_collection
    add("publication.latest", published, sort="-created")
    add("publication.today", published, where=created_today, scan=True)
    add("publication.recent", published, sort="-created", per_page=settings.duplicate_sample_size)

    return plan


# ═══════════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════════

async def _run_slot(store: RecordStoreClient, planned: PlannedQuery, max_pages: int) -> QueryResult:
    if planned.scan:
        return await store.list_all(planned.query, max_pages)
    return await store.list_records(planned.query)


async def run_plan(
    store: RecordStoreClient,
    plan: dict[str, PlannedQuery],
    max_pages: int,
) -> dict[str, QueryResult]:
    """Run all slots concurrently and join; exceptions become slot failures."""
    labels = list(plan)
    outcomes = await asyncio.gather(
        *(_run_slot(store, plan[label], max_pages) for label in labels),
        return_exceptions=True,
    )

    results: dict[str, QueryResult] = {}
    for label, outcome in zip(labels, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            query = plan[label].query
            logger.error("Slot %s raised unexpectedly", label, exc_info=outcome)
            outcome = QueryResult.failed(QueryFailure(
                label=label,
                collection=query.collection,
                status_text=type(outcome).__name__,
                body=str(outcome)[:ERROR_BODY_LIMIT],
                query=query.params(),
            ))
        results[label] = outcome
    return results


# ═══════════════════════════════════════════════════════════════════
# Assembly
# ═══════════════════════════════════════════════════════════════════

def assemble_payload(
    settings: Settings,
    window: DayWindow,
    results: dict[str, QueryResult],
    generated_at: Optional[datetime] = None,
) -> DashboardPayload:
    """Reduce slot results into the response payload."""
    stages = StageGroups(
        ingestion=reducers.reduce_ingestion(
            results["ingestion.latest"],
            results["ingestion.today"],
            source_field=settings.source_field,
        ),
        triage=reducers.reduce_triage(
            results["triage.latest"],
            results["triage.today"],
            results["triage.rejected"],
            results["triage.urgent"],
            results["triage.spam"],
            brand_fields=(settings.brand_field, settings.event_brand_field),
        ),
        events=reducers.reduce_events(
            results["events.latest"],
            {s: results[f"events.status.{s}"] for s in reducers.EVENT_STATUSES},
            results["events.all"],
            results["events.updated_today"],
            category_field=settings.event_brand_field,
        ),
        generation=reducers.reduce_generation(
            results["generation.latest"],
            results["generation.pending"],
            results["generation.today"],
            results["generation.ready_today"],
            {v: results[f"generation.vertical.{v}"] for v in settings.verticals_list},
            results["generation.all"],
            brand_field=settings.brand_field,
        ),
        publication=reducers.reduce_publication(
            results["publication.latest"],
            results["publication.today"],
            brand_field=settings.brand_field,
        ),
    )

    newest_ingested = results["ingestion.latest"]
    newest_published = results["publication.latest"]
    signals = Signals(
        duplicates=reducers.duplicate_signal(results["publication.recent"], settings.dup_field),
        latency_minutes=reducers.latency_minutes(
            newest_ingested.page.first if newest_ingested.ok else None,
            newest_published.page.first if newest_published.ok else None,
        ),
        cost=reducers.cost_estimate(
            stages.generation.token_usage_today, settings.token_cost_per_token,
        ),
    )

    errors = [r.diagnostic for r in results.values() if r.diagnostic is not None]
    return DashboardPayload(
        meta=PayloadMeta(
            generated_at=generated_at or datetime.now(timezone.utc),
            day_start=window.start_text,
            day_end=window.end_text,
            day_boundary=window.policy.value,
            store_url=settings.store_url,
        ),
        env=PayloadEnv(
            brand_field=settings.brand_field,
            event_brand_field=settings.event_brand_field,
            dup_field=settings.dup_field,
            source_field=settings.source_field,
            auth_mode=settings.auth_mode.value,
            token_configured=settings.token_configured,
        ),
        stages=stages,
        signals=signals,
        errors=errors,
    )


async def build_dashboard(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    now: Optional[datetime] = None,
) -> DashboardPayload:
    """
    Compute the full dashboard payload for one request.

    Raises:
        ConfigurationError: when the record store URL is not configured.
    """
    if not settings.store_configured:
        raise ConfigurationError("PB_URL is not configured for the record store")

    start = time.perf_counter()
    window = day_window(settings.day_boundary, now)
    plan = build_query_plan(settings, window)

    async with create_http_client(settings, transport) as http:
        store = RecordStoreClient.from_settings(http, settings)
        results = await run_plan(store, plan, settings.scan_max_pages)

    payload = assemble_payload(settings, window, results)

    elapsed_ms = (time.perf_counter() - start) * 1000
    if payload.errors:
        logger.warning(
            "Dashboard built with %d/%d failed slots", len(payload.errors), len(plan),
        )
    logger.info("Dashboard computed from %d slots in %.1f ms", len(plan), elapsed_ms)
    return payload
