"""Work period reconstruction.

Everything in here is a pure function over :class:`Period` values, so the
history rules can be exercised without a database.  The stored history and
the worker's top-level fields may disagree (older records were written before
periods were tracked, or were edited by hand); :func:`reconstruct` merges
both into one deterministic, deduplicated list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Period:
    entry_date: date
    exit_date: Optional[date] = None
    exit_reason: Optional[str] = None
    room_number: Optional[str] = None
    sector: Optional[str] = None
    farm_id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.exit_date is None

    @property
    def completeness(self) -> int:
        """2 with exit date and reason, 1 with exit date only, else 0."""

        if self.exit_date is None:
            return 0
        return 2 if self.exit_reason else 1

    def days(self, today: date) -> int:
        end = self.exit_date or today
        return max(0, (end - self.entry_date).days)


@dataclass(frozen=True)
class PeriodSummary:
    period: Period
    days: int
    is_open: bool


@dataclass
class WorkHistory:
    periods: List[Period] = field(default_factory=list)
    summaries: List[PeriodSummary] = field(default_factory=list)
    total_days: int = 0
    duplicates_removed: int = 0


def _sorted(periods: Iterable[Period]) -> List[Period]:
    return sorted(periods, key=lambda p: p.entry_date)


def _merge(stored: Sequence[Period], current: Optional[Period]):
    periods = list(stored)
    if current is not None and not any(p.entry_date == current.entry_date for p in periods):
        periods.append(current)

    kept = {}
    removed = 0
    for period in periods:
        seen = kept.get(period.entry_date)
        if seen is None:
            kept[period.entry_date] = period
            continue
        removed += 1
        if period.completeness > seen.completeness:
            kept[period.entry_date] = period
    return _sorted(kept.values()), removed


def canonicalize(stored: Sequence[Period], current: Optional[Period]) -> List[Period]:
    """The history as it should be persisted: merged, deduplicated, ordered."""

    periods, removed = _merge(stored, current)
    if removed:
        logger.debug("Dropped %d duplicate period(s) while canonicalizing", removed)
    return periods


def reconstruct(stored: Sequence[Period], current: Optional[Period], today: date) -> WorkHistory:
    """Rebuild a worker's history with per-period and total day counts.

    ``current`` is the period described by the worker's own fields; pass
    ``None`` for a worker without an entry date, which yields an empty
    history.  Open periods are counted up to ``today``.
    """

    if current is None:
        return WorkHistory()
    periods, removed = _merge(stored, current)
    summaries = [PeriodSummary(p, p.days(today), p.is_open) for p in periods]
    return WorkHistory(
        periods=periods,
        summaries=summaries,
        total_days=sum(s.days for s in summaries),
        duplicates_removed=removed,
    )


def close_current_period(
    periods: Sequence[Period],
    entry_date: date,
    exit_date: date,
    reason: Optional[str],
    fallback: Period,
) -> List[Period]:
    """Close the period that started on ``entry_date``.

    An open period is preferred when several share the entry date.  When
    none matches, the history is missing the current period and a closed one
    is synthesized from ``fallback``.
    """

    periods = list(periods)
    matches = [i for i, p in enumerate(periods) if p.entry_date == entry_date]
    if matches:
        opened = [i for i in matches if periods[i].is_open]
        index = (opened or matches)[0]
        periods[index] = replace(periods[index], exit_date=exit_date, exit_reason=reason)
    else:
        logger.warning(
            "No period starting %s in history; synthesizing a closed one", entry_date
        )
        periods.append(replace(fallback, entry_date=entry_date, exit_date=exit_date, exit_reason=reason))
    return _sorted(periods)


def close_all_periods(periods: Sequence[Period], exit_date: Optional[date] = None) -> List[Period]:
    """Close every open period, before a new one is opened.

    Without ``exit_date`` an open period is closed on its own entry date.
    """

    closed = []
    for period in periods:
        if period.is_open:
            end = period.entry_date if exit_date is None else max(exit_date, period.entry_date)
            period = replace(period, exit_date=end)
        closed.append(period)
    return _sorted(closed)


def move_entry_date(periods: Sequence[Period], old: Optional[date], new: date) -> List[Period]:
    moved = [replace(p, entry_date=new) if p.entry_date == old else p for p in periods]
    return _sorted(moved)


def open_period_count(periods: Iterable[Period]) -> int:
    return sum(1 for p in periods if p.is_open)


def has_multi_farm_history(periods: Iterable[Period]) -> bool:
    return len({p.farm_id for p in periods if p.farm_id is not None}) > 1


def previous_farm_id(
    periods: Sequence[Period],
    current_farm_id: Optional[int],
    exclude: Optional[int] = None,
) -> Optional[int]:
    """Most recent farm in the history other than ``exclude``.

    ``exclude`` defaults to the current farm.  Falls back to the current
    farm itself when it differs from ``exclude``.
    """

    skip = exclude if exclude is not None else current_farm_id
    for period in sorted(periods, key=lambda p: p.entry_date, reverse=True):
        if period.farm_id is not None and period.farm_id != skip:
            return period.farm_id
    if current_farm_id is not None and current_farm_id != skip:
        return current_farm_id
    return None
