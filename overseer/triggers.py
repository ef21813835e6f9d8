"""
Trigger calculator: cron expression + reference instant -> next fire instant.

Five-field expressions are standard cron (minute hour day month weekday).
Six-field expressions carry a leading seconds field. The calculator holds no
state, so re-querying after a stall simply yields the next future instant and
missed windows are never replayed.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import List, Optional

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None

from overseer.errors import InvalidScheduleError, OverseerError

UTC = timezone.utc
MAX_CANDIDATES = 10000


def require_croniter_dependency() -> None:
    if croniter is None:
        raise OverseerError(
            "Missing required dependency: croniter. Install with: pip install croniter"
        )


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _normalize(cron_expr: object) -> List[str]:
    if not isinstance(cron_expr, str) or not cron_expr.strip():
        raise InvalidScheduleError(cron_expr, "must be a non-empty string")
    fields = cron_expr.split()
    if len(fields) == 1 and fields[0].startswith("@"):
        return fields
    if len(fields) not in (5, 6):
        raise InvalidScheduleError(cron_expr, f"expected 5 or 6 fields, got {len(fields)}")
    return fields


def _iterator(cron_expr: str, start: datetime):
    require_croniter_dependency()
    fields = _normalize(cron_expr)
    try:
        return croniter(" ".join(fields), start, second_at_beginning=len(fields) == 6)
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidScheduleError(cron_expr, str(exc)) from exc


def validate_schedule(cron_expr: str) -> str:
    """Return the expression unchanged, or raise InvalidScheduleError."""
    _iterator(cron_expr, datetime(2000, 1, 1, tzinfo=UTC))
    return cron_expr


def next_fire_time(cron_expr: str, after: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Earliest instant strictly after ``after`` matching ``cron_expr``.

    The expression is evaluated in ``tz`` (UTC when omitted); the result is an
    aware UTC datetime. Naive ``after`` values are read as UTC.
    """
    zone = tz or UTC
    after_utc = ensure_aware_utc(after)
    iterator = _iterator(cron_expr, after_utc.astimezone(zone))
    try:
        for _ in range(MAX_CANDIDATES):
            candidate = iterator.get_next(datetime)
            if candidate.tzinfo is None:
                candidate = candidate.replace(tzinfo=zone)
            candidate_utc = candidate.astimezone(UTC)
            if candidate_utc > after_utc:
                return candidate_utc
    except (ValueError, KeyError) as exc:
        raise InvalidScheduleError(cron_expr, str(exc)) from exc
    raise InvalidScheduleError(cron_expr, "no future instant matches")


def next_fire_times(
    cron_expr: str,
    count: int,
    after: datetime,
    tz: Optional[tzinfo] = None,
) -> List[datetime]:
    runs: List[datetime] = []
    cursor = after
    while len(runs) < count:
        cursor = next_fire_time(cron_expr, cursor, tz)
        runs.append(cursor)
    return runs
