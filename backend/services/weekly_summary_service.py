"""Per-week aggregation of challenge check-ins.

Week 1 runs from the enrollment's start date to the end of that calendar
week (Sunday). Every later week is a full Monday-Sunday calendar week.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session

from db.models import ChallengeCheckIn, UserChallenge
from services.enrollment_service import enrollment_start_date
from services.errors import EnrollmentNotActive, InvalidWeekIndex
from services.streak_service import effective_as_of
from utils.datetime_utils import end_of_week, start_of_week

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
TREND_STABLE_PCT = 5.0


@dataclass(frozen=True)
class WeeklySummary:
    week_number: int
    week_start: date
    week_end: date
    meals_logged: int
    total_oil_ml: float
    avg_oil_per_meal: float
    avg_verification_score: float
    photos_uploaded: int
    verified_meals: int
    top_cooking_method: str | None
    top_oil_type: str | None
    cooking_methods: dict[str, int] = field(default_factory=dict)
    oil_types: dict[str, int] = field(default_factory=dict)
    mood_distribution: dict[str, int] = field(default_factory=dict)
    avg_energy_level: float = 0.0
    daily_breakdown: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def week_bounds(challenge_start: date, week_index: int) -> tuple[date, date]:
    if week_index < 1:
        raise InvalidWeekIndex()
    if week_index == 1:
        return challenge_start, end_of_week(challenge_start)
    monday = start_of_week(challenge_start) + timedelta(weeks=week_index - 1)
    return monday, monday + timedelta(days=6)


def current_week_index(challenge_start: date, as_of: date) -> int:
    if as_of <= challenge_start:
        return 1
    return (start_of_week(as_of) - start_of_week(challenge_start)).days // 7 + 1


def _count(values: Iterable[str | None]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for value in values:
        if value:
            counts[value] = counts.get(value, 0) + 1
    return counts


def _mode(counts: dict[str, int]) -> str | None:
    # Ties go to the first key encountered.
    best: str | None = None
    best_count = 0
    for key, count in counts.items():
        if count > best_count:
            best, best_count = key, count
    return best


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def summarize_week(
    check_ins: Iterable[ChallengeCheckIn],
    challenge_start: date,
    week_index: int,
) -> WeeklySummary:
    week_start, week_end = week_bounds(challenge_start, week_index)
    rows = sorted(
        (c for c in check_ins if week_start <= c.check_in_date <= week_end),
        key=lambda c: (c.check_in_date, c.id or 0),
    )

    total_oil = sum(float(c.oil_quantity_ml or 0.0) for c in rows)
    cooking_methods = _count(c.cooking_method for c in rows)
    oil_types = _count(c.oil_type for c in rows)

    breakdown = []
    for offset, label in enumerate(WEEKDAY_LABELS):
        day_rows = [c for c in rows if c.check_in_date.weekday() == offset]
        breakdown.append({
            "day": label,
            "meals": len(day_rows),
            "oil_ml": round(sum(float(c.oil_quantity_ml or 0.0) for c in day_rows), 2),
        })

    return WeeklySummary(
        week_number=week_index,
        week_start=week_start,
        week_end=week_end,
        meals_logged=len(rows),
        total_oil_ml=round(total_oil, 2),
        avg_oil_per_meal=round(total_oil / len(rows), 2) if rows else 0.0,
        avg_verification_score=_avg([float(c.verification_score) for c in rows if c.verification_score is not None]),
        photos_uploaded=sum(1 for c in rows if c.photo_url),
        verified_meals=sum(1 for c in rows if c.verified_with_token),
        top_cooking_method=_mode(cooking_methods),
        top_oil_type=_mode(oil_types),
        cooking_methods=cooking_methods,
        oil_types=oil_types,
        mood_distribution=_count(c.mood for c in rows),
        avg_energy_level=_avg([float(c.energy_level) for c in rows if c.energy_level is not None]),
        daily_breakdown=breakdown,
    )


def oil_trend(current_total: float, previous_total: float | None) -> dict[str, Any] | None:
    """Week-over-week oil change; lower is better for the participant."""
    if not previous_total:
        return None
    change = (current_total - previous_total) / previous_total * 100.0
    if abs(change) < TREND_STABLE_PCT:
        direction = "stable"
    elif change > 0:
        direction = "up"
    else:
        direction = "down"
    return {"direction": direction, "change_pct": round(change, 1)}


def _enrollment_rows(db: Session, enrollment: UserChallenge) -> tuple[date, list[ChallengeCheckIn]]:
    start = enrollment_start_date(enrollment)
    if start is None:
        raise EnrollmentNotActive("Challenge has not been started")
    rows = (
        db.query(ChallengeCheckIn)
        .filter(ChallengeCheckIn.user_challenge_id == enrollment.id)
        .order_by(ChallengeCheckIn.check_in_date.asc(), ChallengeCheckIn.id.asc())
        .all()
    )
    return start, rows


def get_weekly_summary(db: Session, enrollment: UserChallenge, week_index: int) -> WeeklySummary:
    if week_index < 1:
        raise InvalidWeekIndex()
    start, rows = _enrollment_rows(db, enrollment)
    return summarize_week(rows, start, week_index)


def list_weekly_summaries(
    db: Session,
    enrollment: UserChallenge,
    as_of: date | None = None,
) -> list[dict[str, Any]]:
    """Weeks 1..current, the in-progress week included, each with its oil trend."""
    start, rows = _enrollment_rows(db, enrollment)
    last_week = current_week_index(start, effective_as_of(enrollment, as_of))

    out: list[dict[str, Any]] = []
    previous: WeeklySummary | None = None
    for week_index in range(1, last_week + 1):
        summary = summarize_week(rows, start, week_index)
        payload = summary.to_dict()
        payload["oil_trend"] = oil_trend(summary.total_oil_ml, previous.total_oil_ml if previous else None)
        out.append(payload)
        previous = summary
    return out
