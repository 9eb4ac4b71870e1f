from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session

from db.models import ChallengeCheckIn, UserChallenge
from services.enrollment_service import enrollment_end_date, enrollment_start_date, user_tz
from utils.datetime_utils import iter_days, today_for_tz


@dataclass(frozen=True)
class StreakSummary:
    current_streak: int
    best_streak: int
    last_check_in_date: date | None
    streak_start_date: date | None
    total_check_ins: int
    missed_days: int
    as_of: date

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _longest_run(days: list[date]) -> int:
    best = 0
    run = 0
    previous: date | None = None
    for day in days:
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        best = max(best, run)
        previous = day
    return best


def compute_streak_summary(
    check_in_dates: Iterable[date],
    challenge_start: date | None,
    as_of: date,
) -> StreakSummary:
    """Derive streak state from one date per check-in row.

    Pure: identical inputs always give an identical summary. Rows dated
    after ``as_of`` are ignored. ``as_of`` without a check-in means the
    current streak is 0. ``missed_days`` counts ``[challenge_start, as_of]``
    inclusive.
    """
    rows = [d for d in check_in_dates if d <= as_of]
    day_set = set(rows)
    days = sorted(day_set)

    current = 0
    streak_start: date | None = None
    cursor = as_of
    while cursor in day_set:
        current += 1
        streak_start = cursor
        cursor -= timedelta(days=1)

    missed = 0
    if challenge_start is not None and challenge_start <= as_of:
        missed = sum(1 for day in iter_days(challenge_start, as_of) if day not in day_set)

    return StreakSummary(
        current_streak=current,
        best_streak=_longest_run(days),
        last_check_in_date=days[-1] if days else None,
        streak_start_date=streak_start,
        total_check_ins=len(rows),
        missed_days=missed,
        as_of=as_of,
    )


def effective_as_of(enrollment: UserChallenge, as_of: date | None = None) -> date:
    """Default to the participant's today; a completed enrollment stops at its completion date."""
    resolved = as_of or today_for_tz(user_tz(enrollment.user))
    end = enrollment_end_date(enrollment)
    if end is not None and resolved > end:
        return end
    return resolved


def check_in_dates(db: Session, enrollment_id: int) -> list[date]:
    rows = (
        db.query(ChallengeCheckIn.check_in_date)
        .filter(ChallengeCheckIn.user_challenge_id == enrollment_id)
        .order_by(ChallengeCheckIn.check_in_date.asc(), ChallengeCheckIn.id.asc())
        .all()
    )
    return [row[0] for row in rows]


def get_streak_summary(db: Session, enrollment: UserChallenge, as_of: date | None = None) -> StreakSummary:
    return compute_streak_summary(
        check_in_dates(db, enrollment.id),
        enrollment_start_date(enrollment),
        effective_as_of(enrollment, as_of),
    )
