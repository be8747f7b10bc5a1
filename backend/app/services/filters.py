"""
Filter expressions and the "today" window for record store queries.

Expressions are small typed objects that render themselves into the
record store's filter syntax (``field >= "value" && other = true``), so
the reducers never format filter strings by hand.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from app.config import DayBoundary

STORE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Render a datetime the way the record store stores it (UTC, ms, 'Z')."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return f"{value.strftime(STORE_TIMESTAMP_FORMAT)}.{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a store timestamp ('2024-01-01 10:00:00.000Z' or ISO 8601)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ═══════════════════════════════════════════════════════════════════
# Expressions
# ═══════════════════════════════════════════════════════════════════

class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="


class Expression:
    """Base class for anything that renders into a filter string."""

    def render(self) -> str:
        raise NotImplementedError

    def __and__(self, other: Expression) -> And:
        return And(self, other)

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.render() == other.render()

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.render()))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.render()!r})"


class Literal(Expression):
    """A value on the right-hand side of a comparison."""

    def __init__(self, value: Any):
        self.value = value

    def render(self) -> str:
        value = self.value
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return repr(value)
        if isinstance(value, datetime):
            value = format_timestamp(value)
        text = str(value).replace("\\", "\\\\").replace('"', '\\"')
        return f'"{text}"'


class Field(Expression):
    """A reference to a record field by name."""

    def __init__(self, name: str):
        if not name or any(ch.isspace() for ch in name):
            raise ValueError(f"Invalid field name {name!r}")
        self.name = name

    def render(self) -> str:
        return self.name

    def _compare(self, op: Operator, value: Any) -> Comparison:
        return Comparison(self, op, value if isinstance(value, Literal) else Literal(value))

    def eq(self, value: Any) -> Comparison:
        return self._compare(Operator.EQ, value)

    def ne(self, value: Any) -> Comparison:
        return self._compare(Operator.NE, value)

    def gt(self, value: Any) -> Comparison:
        return self._compare(Operator.GT, value)

    def gte(self, value: Any) -> Comparison:
        return self._compare(Operator.GTE, value)

    def lt(self, value: Any) -> Comparison:
        return self._compare(Operator.LT, value)

    def lte(self, value: Any) -> Comparison:
        return self._compare(Operator.LTE, value)


class Comparison(Expression):
    def __init__(self, field: Field, op: Operator, value: Literal):
        self.field = field
        self.op = Operator(op)
        self.value = value

    def render(self) -> str:
        return f"{self.field.render()} {self.op.value} {self.value.render()}"


class And(Expression):
    """Conjunction; nested conjunctions are flattened."""

    def __init__(self, *terms: Expression):
        flat: list[Expression] = []
        for term in terms:
            if isinstance(term, And):
                flat.extend(term.terms)
            elif term is not None:
                flat.append(term)
        if not flat:
            raise ValueError("And() needs at least one term")
        self.terms = tuple(flat)

    def render(self) -> str:
        return " && ".join(term.render() for term in self.terms)


def field(name: str) -> Field:
    return Field(name)


# ═══════════════════════════════════════════════════════════════════
# Day window
# ═══════════════════════════════════════════════════════════════════

class DayWindow(BaseModel):
    """Start and end of "today", both expressed in UTC."""
    start: datetime
    end: datetime
    policy: DayBoundary

    @property
    def start_text(self) -> str:
        return format_timestamp(self.start)

    @property
    def end_text(self) -> str:
        return format_timestamp(self.end)

    def within(self, name: str) -> And:
        """``name >= start && name <= end``."""
        ref = field(name)
        return And(ref.gte(self.start), ref.lte(self.end))

    def contains(self, value: Any) -> bool:
        parsed = value if isinstance(value, datetime) else parse_timestamp(value)
        if parsed is None:
            return False
        return self.start <= parsed <= self.end


def day_window(policy: DayBoundary, now: Optional[datetime] = None) -> DayWindow:
    """
    Build the window for the day containing ``now``.

    ``utc`` uses UTC midnight. ``local`` uses midnight on the server's
    local clock, converted to UTC so every query renders the same way.
    """
    policy = DayBoundary(policy)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if policy is DayBoundary.UTC:
        start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1) - timedelta(milliseconds=1)
    else:
        # Resolve each local midnight on its own; the offset differs on DST days
        today = now.astimezone().date()
        start = datetime.combine(today, time.min).astimezone()
        end = datetime.combine(today + timedelta(days=1), time.min).astimezone()
        end -= timedelta(milliseconds=1)
    return DayWindow(
        start=start.astimezone(timezone.utc),
        end=end.astimezone(timezone.utc),
        policy=policy,
    )
