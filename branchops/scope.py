from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Union

from branchops.errors import InvalidParameterError

PERIODS = ("today", "yesterday", "week", "month", "quarter", "year")

ALL_BRANCHES = "all"

BranchSelection = Union[frozenset, str]


@dataclass(frozen=True)
class ReportScope:
    start: datetime
    end: datetime
    branch_ids: BranchSelection = ALL_BRANCHES
    period: Optional[str] = None

    @property
    def all_branches(self) -> bool:
        return self.branch_ids == ALL_BRANCHES

    def previous(self) -> "ReportScope":
        tz = self.start.tzinfo
        first_day = self.start.date()
        if self.period in ("today", "yesterday"):
            prev_start = first_day - timedelta(days=1)
            prev_end = prev_start
        elif self.period == "week":
            prev_start = first_day - timedelta(days=7)
            prev_end = first_day - timedelta(days=1)
        elif self.period == "month":
            prev_end = first_day - timedelta(days=1)
            prev_start = prev_end.replace(day=1)
        elif self.period == "quarter":
            prev_end = first_day - timedelta(days=1)
            prev_start = _quarter_start(prev_end)
        elif self.period == "year":
            prev_start = date(first_day.year - 1, 1, 1)
            prev_end = date(first_day.year - 1, 12, 31)
        else:
            days = (self.end.date() - first_day).days + 1
            prev_end = first_day - timedelta(days=1)
            prev_start = prev_end - timedelta(days=days - 1)
        return ReportScope(
            start=_day_start(prev_start, tz),
            end=_day_end(prev_end, tz),
            branch_ids=self.branch_ids,
            period=self.period,
        )

    def as_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "period": self.period,
            "branch_ids": ALL_BRANCHES if self.all_branches else sorted(self.branch_ids),
        }


def _day_start(day: date, tz: Optional[tzinfo]) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def _day_end(day: date, tz: Optional[tzinfo]) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz)


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def _period_bounds(period: str, today: date) -> tuple[date, date]:
    if period == "today":
        return today, today
    if period == "yesterday":
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if period == "week":
        return today - timedelta(days=today.weekday()), today
    if period == "month":
        return today.replace(day=1), today
    if period == "quarter":
        return _quarter_start(today), today
    return date(today.year, 1, 1), today


def _parse_date(value: Union[str, date, None], name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidParameterError(f"{name} must be an ISO date (YYYY-MM-DD)") from None


def parse_branch_ids(raw: Union[str, int, list, None]) -> BranchSelection:
    if raw is None or raw == "" or raw == ALL_BRANCHES:
        return ALL_BRANCHES
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = list(raw)
    elif isinstance(raw, int):
        values = [raw]
    else:
        text = str(raw).strip()
        if text.startswith("["):
            try:
                values = json.loads(text)
            except ValueError:
                raise InvalidParameterError("branchIds is not a valid JSON list") from None
            if not isinstance(values, list):
                raise InvalidParameterError("branchIds must be a list")
        else:
            values = [part.strip() for part in text.split(",") if part.strip()]
    ids = set()
    for value in values:
        if isinstance(value, bool):
            raise InvalidParameterError(f"invalid branch id: {value!r}")
        try:
            ids.add(int(value))
        except (TypeError, ValueError):
            raise InvalidParameterError(f"invalid branch id: {value!r}") from None
    if not ids:
        raise InvalidParameterError("branchIds is empty")
    return frozenset(ids)


def resolve_scope(
    period: Optional[str],
    start_date: Union[str, date, None],
    end_date: Union[str, date, None],
    branch_ids: Union[str, int, list, None],
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> ReportScope:
    """Build the reporting window and branch selection for one request.

    Explicit dates take precedence over ``period``. A lone ``start_date`` is a
    one-day window. ``now`` is supplied by the caller so the result only
    depends on the arguments.
    """
    tz = tz or now.tzinfo
    local_now = now.astimezone(tz) if (tz is not None and now.tzinfo is not None) else now
    start_day = _parse_date(start_date, "startDate")
    end_day = _parse_date(end_date, "endDate")
    selection = parse_branch_ids(branch_ids)

    if start_day is None and end_day is not None:
        raise InvalidParameterError("startDate is required when endDate is given")
    if start_day is not None:
        end_day = end_day or start_day
        if start_day > end_day:
            raise InvalidParameterError("startDate must not be after endDate")
        if period is not None and period not in PERIODS:
            raise InvalidParameterError(f"invalid period: {period}")
        return ReportScope(
            start=_day_start(start_day, tz),
            end=_day_end(end_day, tz),
            branch_ids=selection,
            period=None,
        )

    if period not in PERIODS:
        raise InvalidParameterError(
            f"invalid period: {period}; expected one of {', '.join(PERIODS)}"
        )
    first, last = _period_bounds(period, local_now.date())
    return ReportScope(
        start=_day_start(first, tz),
        end=_day_end(last, tz),
        branch_ids=selection,
        period=period,
    )
