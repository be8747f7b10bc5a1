"""
Pydantic models for the pipeline dashboard.

These models define the contracts between the record store client, the
per-stage reducers and the JSON payload served to the monitoring UI.
Everything here is rebuilt on every request; nothing is persisted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.services.filters import Expression

Record = dict[str, Any]


# ═══════════════════════════════════════════════════════════════════
# Record store query contracts
# ═══════════════════════════════════════════════════════════════════

class StageQuery(BaseModel):
    """One read against a record store collection."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    label: str
    collection: str
    sort: str = ""
    per_page: int = 1
    page: int = 1
    filter: Optional[Expression] = None

    def params(self) -> dict[str, str]:
        """Render query-string parameters, dropping empty ones."""
        params = {
            "sort": self.sort,
            "perPage": str(self.per_page),
            "page": str(self.page),
            "filter": self.filter.render() if self.filter is not None else "",
        }
        return {k: v for k, v in params.items() if v}

    def with_page(self, page: int) -> StageQuery:
        return self.model_copy(update={"page": page})


class RecordPage(BaseModel):
    """A successful list (or get-by-id) response."""
    items: list[Record] = []
    total_items: int = 0
    page: int = 1
    per_page: int = 0
    total_pages: int = 0
    # Set by full scans that stopped before the last page
    truncated: bool = False

    @property
    def first(self) -> Optional[Record]:
        return self.items[0] if self.items else None


class QueryFailure(BaseModel):
    """Diagnostics for a query that did not produce a page."""
    label: str
    collection: str
    status_code: Optional[int] = None
    status_text: str = ""
    body: str = ""
    query: dict[str, str] = {}


class QueryResult(BaseModel):
    """
    Either a page or a failure, never both.

    A page may carry a ``notice``: diagnostics for a usable but incomplete
    result (a truncated scan). Counts from it are still valid; metrics that
    need every record are not.
    """
    page: Optional[RecordPage] = None
    failure: Optional[QueryFailure] = None
    notice: Optional[QueryFailure] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> QueryResult:
        if (self.page is None) == (self.failure is None):
            raise ValueError("QueryResult requires exactly one of 'page' or 'failure'")
        if self.notice is not None and self.page is None:
            raise ValueError("QueryResult 'notice' is only valid alongside a page")
        return self

    @classmethod
    def success(cls, page: RecordPage, notice: Optional[QueryFailure] = None) -> QueryResult:
        return cls(page=page, notice=notice)

    @classmethod
    def failed(cls, failure: QueryFailure) -> QueryResult:
        return cls(failure=failure)

    @property
    def ok(self) -> bool:
        return self.page is not None

    @property
    def complete(self) -> bool:
        """True when the page holds every matching record."""
        return self.page is not None and not self.page.truncated

    @property
    def diagnostic(self) -> Optional[QueryFailure]:
        return self.failure or self.notice

    @property
    def items(self) -> list[Record]:
        return self.page.items if self.page is not None else []

    @property
    def total_items(self) -> Optional[int]:
        return self.page.total_items if self.page is not None else None

    def raise_for_failure(self) -> RecordPage:
        """Return the page, or raise RecordStoreError for strict callers."""
        if self.failure is not None:
            raise RecordStoreError(self.failure)
        return self.page


class RecordStoreError(Exception):
    """Raised by strict callers that cannot degrade a failed query."""

    def __init__(self, failure: QueryFailure):
        self.failure = failure
        super().__init__(
            f"{failure.collection} {failure.status_code} {failure.status_text} :: {failure.body}"
        )


class ConfigurationError(Exception):
    """Fatal configuration problem; the whole request fails."""


# ═══════════════════════════════════════════════════════════════════
# Stage metric groups
# ═══════════════════════════════════════════════════════════════════

class StageMetrics(BaseModel):
    """Fields shared by every stage group."""
    total_items: Optional[int] = None
    last_item: Optional[Record] = None
    errors: list[QueryFailure] = []


class IngestionMetrics(StageMetrics):
    """WF1: raw items pulled from sources."""
    today_count: Optional[int] = None
    distinct_sources_today: Optional[int] = None


class TriageMetrics(StageMetrics):
    """WF2: triage / routing decisions over today's window."""
    today_count: Optional[int] = None
    rejected_today: Optional[int] = None
    urgent_today: Optional[int] = None
    spam_today: Optional[int] = None


class EventMetrics(StageMetrics):
    """WF3: event clustering."""
    by_status: dict[str, Optional[int]] = {}
    observation_total: Optional[int] = None
    updated_today: Optional[int] = None
    updated_today_by_category: Optional[dict[str, int]] = None


class GenerationMetrics(StageMetrics):
    """WF4: article generation."""
    pending_count: Optional[int] = None
    today_count: Optional[int] = None
    today_ready_to_publish: Optional[int] = None
    today_ready_by_vertical: dict[str, Optional[int]] = {}
    neutrality_rate: Optional[int] = None
    token_usage_today: Optional[int] = None


class PublicationMetrics(StageMetrics):
    """WF5: published posts."""
    today_published: Optional[int] = None
    today_by_category: Optional[dict[str, int]] = None


class StageGroups(BaseModel):
    ingestion: IngestionMetrics
    triage: TriageMetrics
    events: EventMetrics
    generation: GenerationMetrics
    publication: PublicationMetrics


# ═══════════════════════════════════════════════════════════════════
# Cross-stage signals
# ═══════════════════════════════════════════════════════════════════

class DuplicateSignal(BaseModel):
    """Repeated dedup keys among the most recent published records."""
    field: str
    sampled: Optional[int] = None
    keyed: Optional[int] = None
    duplicates: Optional[int] = None
    repeated_keys: list[str] = []


class CostEstimate(BaseModel):
    tokens: Optional[int] = None
    rate_per_token: float
    estimated_cost: Optional[float] = None


class Signals(BaseModel):
    duplicates: DuplicateSignal
    latency_minutes: Optional[int] = None
    cost: CostEstimate


# ═══════════════════════════════════════════════════════════════════
# Response payloads
# ═══════════════════════════════════════════════════════════════════

class PayloadMeta(BaseModel):
    generated_at: datetime
    day_start: str
    day_end: str
    day_boundary: str
    store_url: str


class PayloadEnv(BaseModel):
    """Field aliases and auth mode the payload was computed with."""
    brand_field: str
    event_brand_field: str
    dup_field: str
    source_field: str
    auth_mode: str
    token_configured: bool


class DashboardPayload(BaseModel):
    """Root response object for GET /api/dashboard."""
    ok: bool = True
    meta: PayloadMeta
    env: PayloadEnv
    stages: StageGroups
    signals: Signals
    errors: list[QueryFailure] = Field(default_factory=list)


class ErrorPayload(BaseModel):
    ok: bool = False
    error: str
