# stats.py
# =============================================================================
# Trainlog Stats: period aggregation & weekly medal scoring
# Pure functions over an explicit snapshot of one owner's records.
# Nothing here touches the database; app.py loads the snapshot and calls in.
# =============================================================================

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import MAXYEAR, date, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

# No medal for the first two sessions of a week.
MEDAL_BASELINE = 2

_MONTH_RE = re.compile(r"\A([0-9]{4})-([0-9]{2})\Z")
_YEAR_RE = re.compile(r"\A([0-9]{4})\Z")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class StatsError(Exception):
    pass


class InvalidPeriodError(StatsError, ValueError):
    """Missing or malformed month/year parameter."""


class StorageError(StatsError):
    """The workout store could not be read."""


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
class WorkoutType(str, Enum):
    CYCLING = "cycling"
    STRENGTH = "strength"
    RUNNING = "running"
    SWIMMING = "swimming"
    WALKING = "walking"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, label: str) -> "WorkoutType":
        """Canonical type for a stored label. Raises ValueError if unknown."""
        key = (label or "").strip().lower()
        key = _LEGACY_LABELS.get(key, key)
        return cls(key)


# Labels written by the first calendar front end
_LEGACY_LABELS = {
    "velo": "cycling",
    "musculation": "strength",
    "course": "running",
    "natation": "swimming",
    "marche": "walking",
}


@dataclass(frozen=True)
class WorkoutRecord:
    id: int
    owner_id: int
    date: date
    type: WorkoutType
    distance_km: Optional[float] = None
    elevation_m: Optional[int] = None
    duration_min: Optional[int] = None


@dataclass(frozen=True)
class SetLog:
    exercise_id: int
    set_number: int
    reps: Optional[int]
    weight: Optional[float]
    workout_date: date
    workout_type: WorkoutType = WorkoutType.STRENGTH


# -----------------------------------------------------------------------------
# Periods
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Month:
    year: int
    month: int

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        if self.month == 12:
            return date(self.year + 1, 1, 1)
        return date(self.year, self.month + 1, 1)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def contains(self, d: date) -> bool:
        return self.start <= d < self.end

    def overlaps(self, first: date, last: date) -> bool:
        return last >= self.start and first < self.end

    def sub_period_key(self, d: date) -> int:
        # ISO year * 100 + ISO week keeps weeks ordered across New Year
        iso_year, iso_week, _ = d.isocalendar()
        return iso_year * 100 + iso_week


@dataclass(frozen=True)
class Year:
    year: int

    @property
    def start(self) -> date:
        return date(self.year, 1, 1)

    @property
    def end(self) -> date:
        return date(self.year + 1, 1, 1)

    @property
    def label(self) -> str:
        return f"{self.year:04d}"

    def contains(self, d: date) -> bool:
        return self.start <= d < self.end

    def overlaps(self, first: date, last: date) -> bool:
        return last >= self.start and first < self.end

    def sub_period_key(self, d: date) -> str:
        return f"{d.month:02d}"


Period = Union[Month, Year]


def _check_year(year: int, token: str) -> None:
    # The period end is the first day of the next year, so MAXYEAR is out.
    if year < 1 or year >= MAXYEAR:
        raise InvalidPeriodError(f"year out of range: {token!r}")


def resolve_period(month: Optional[str] = None, year: Optional[str] = None) -> Period:
    """Turn a ``YYYY-MM`` or ``YYYY`` token into a period.

    When both are given the month wins. Neither, or a malformed token,
    raises InvalidPeriodError.
    """
    if month is not None:
        m = _MONTH_RE.match(month)
        if not m:
            raise InvalidPeriodError("month must be YYYY-MM format")
        y, mm = int(m.group(1)), int(m.group(2))
        _check_year(y, month)
        if not 1 <= mm <= 12:
            raise InvalidPeriodError(f"month out of range: {month!r}")
        return Month(y, mm)
    if year is not None:
        m = _YEAR_RE.match(year)
        if not m:
            raise InvalidPeriodError("year must be YYYY format")
        y = int(m.group(1))
        _check_year(y, year)
        return Year(y)
    raise InvalidPeriodError("month (YYYY-MM) or year (YYYY) query param required")


def in_period(records: Iterable[WorkoutRecord], period: Period) -> List[WorkoutRecord]:
    return [r for r in records if period.contains(r.date)]


# -----------------------------------------------------------------------------
# Period summary
# -----------------------------------------------------------------------------
@dataclass
class PeriodSummary:
    period: str
    total_count: int = 0
    counts_by_type: Dict[str, int] = field(default_factory=dict)
    total_distance_km: float = 0.0
    total_elevation_m: int = 0
    active_day_count: int = 0


def count_by_type(records: Iterable[WorkoutRecord]) -> Tuple[Dict[str, int], int]:
    counts: Dict[str, int] = defaultdict(int)
    total = 0
    for r in records:
        counts[r.type.value] += 1
        total += 1
    return dict(counts), total


def sum_measures(records: Iterable[WorkoutRecord]) -> Tuple[float, int, int]:
    """Total distance, total elevation and number of distinct active days."""
    distance = 0.0
    elevation = 0
    days = set()
    for r in records:
        distance += r.distance_km or 0.0
        elevation += r.elevation_m or 0
        days.add(r.date)
    return round(distance, 2), elevation, len(days)


def period_summary(records: Iterable[WorkoutRecord], period: Period) -> PeriodSummary:
    scoped = in_period(records, period)
    counts, total = count_by_type(scoped)
    distance, elevation, active_days = sum_measures(scoped)
    return PeriodSummary(
        period=period.label,
        total_count=total,
        counts_by_type=counts,
        total_distance_km=distance,
        total_elevation_m=elevation,
        active_day_count=active_days,
    )


# -----------------------------------------------------------------------------
# Weekly medals
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class WeekBucket:
    week_start: date
    workout_count: int
    medals: int

    @property
    def week_end(self) -> date:
        # The last week of the calendar runs past date.max
        if self.week_start > date.max - timedelta(days=6):
            return date.max
        return self.week_start + timedelta(days=6)


@dataclass(frozen=True)
class MedalHistoryEntry:
    week_start: date
    workout_count: int
    medals: int
    cumulative_medals: int


@dataclass(frozen=True)
class WeekProgress:
    week_start: date
    current_week_count: int
    total_medals: int


def week_start(d: date) -> date:
    """Monday of the week containing ``d``."""
    return d - timedelta(days=d.weekday())


def medals_for(workout_count: int) -> int:
    return max(workout_count - MEDAL_BASELINE, 0)


def week_buckets(records: Iterable[WorkoutRecord]) -> List[WeekBucket]:
    """Every week with at least one workout, oldest first."""
    counts: Dict[date, int] = defaultdict(int)
    for r in records:
        counts[week_start(r.date)] += 1
    return [
        WeekBucket(week_start=ws, workout_count=n, medals=medals_for(n))
        for ws, n in sorted(counts.items())
    ]


def total_medals(records: Iterable[WorkoutRecord]) -> int:
    return sum(b.medals for b in week_buckets(records))


def current_week_progress(records: Iterable[WorkoutRecord], today: date) -> WeekProgress:
    buckets = week_buckets(records)
    monday = week_start(today)
    current = next((b.workout_count for b in buckets if b.week_start == monday), 0)
    return WeekProgress(
        week_start=monday,
        current_week_count=current,
        total_medals=sum(b.medals for b in buckets),
    )


def weekly_medals(records: Iterable[WorkoutRecord], period: Period) -> List[WeekBucket]:
    """Buckets from the full history whose 7-day span touches the period."""
    return [
        b for b in week_buckets(records)
        if period.overlaps(b.week_start, b.week_end)
    ]


def medal_history(
    records: Iterable[WorkoutRecord], fill_gaps: bool = False
) -> List[MedalHistoryEntry]:
    buckets = week_buckets(records)
    if fill_gaps and buckets:
        by_week = {b.week_start: b for b in buckets}
        filled: List[WeekBucket] = []
        first, last = buckets[0].week_start, buckets[-1].week_start
        for i in range((last - first).days // 7 + 1):
            ws = first + timedelta(weeks=i)
            filled.append(by_week.get(ws, WeekBucket(ws, 0, 0)))
        buckets = filled

    history: List[MedalHistoryEntry] = []
    running = 0
    for b in buckets:
        running += b.medals
        history.append(
            MedalHistoryEntry(
                week_start=b.week_start,
                workout_count=b.workout_count,
                medals=b.medals,
                cumulative_medals=running,
            )
        )
    return history


# -----------------------------------------------------------------------------
# Distance by sub-period
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DistanceRow:
    period_key: Union[int, str]
    type: str
    distance_km: float


def distance_by_subperiod(
    records: Iterable[WorkoutRecord], period: Period
) -> List[DistanceRow]:
    totals: Dict[Tuple[Union[int, str], str], float] = defaultdict(float)
    for r in in_period(records, period):
        totals[(period.sub_period_key(r.date), r.type.value)] += r.distance_km or 0.0
    return [
        DistanceRow(period_key=key, type=wtype, distance_km=round(km, 2))
        for (key, wtype), km in sorted(totals.items())
        if km != 0
    ]


# -----------------------------------------------------------------------------
# Strength volume
# -----------------------------------------------------------------------------
@dataclass
class StrengthVolume:
    total_tonnage: float = 0.0
    distinct_exercise_count: int = 0
    total_set_count: int = 0


def strength_volume(sets: Iterable[SetLog], period: Period) -> StrengthVolume:
    tonnage = 0.0
    exercises = set()
    n_sets = 0
    for s in sets:
        if s.workout_type is not WorkoutType.STRENGTH or not period.contains(s.workout_date):
            continue
        n_sets += 1
        exercises.add(s.exercise_id)
        if s.reps is not None and s.weight is not None:
            tonnage += s.reps * float(s.weight)
    return StrengthVolume(
        total_tonnage=round(tonnage, 1),
        distinct_exercise_count=len(exercises),
        total_set_count=n_sets,
    )
