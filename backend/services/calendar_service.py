from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Iterable

from sqlalchemy.orm import Session

from db.models import ChallengeCheckIn, UserChallenge
from services.enrollment_service import enrollment_end_date, enrollment_start_date, user_tz
from utils.datetime_utils import today_for_tz


class CalendarStatus(str, Enum):
    FUTURE = "future"
    BEFORE_CHALLENGE = "before_challenge"
    VERIFIED = "verified"
    CHECKED_IN = "checked_in"
    PENDING = "pending"
    MISSED = "missed"
    NONE = "none"


@dataclass(frozen=True)
class DayActivity:
    count: int = 0
    verified: bool = False


def build_day_activity(check_ins: Iterable[ChallengeCheckIn]) -> dict[date, DayActivity]:
    activity: dict[date, DayActivity] = {}
    for row in check_ins:
        current = activity.get(row.check_in_date, DayActivity())
        activity[row.check_in_date] = DayActivity(
            count=current.count + 1,
            verified=current.verified or bool(row.verified_with_token),
        )
    return activity


def calendar_status(
    day: date,
    as_of: date,
    challenge_start: date | None,
    activity: DayActivity | None,
    challenge_end: date | None = None,
) -> CalendarStatus:
    """Classify one calendar day. First matching rule wins.

    ``challenge_end`` is the local completion date; later days are outside
    the active period and never count as missed.
    """
    if day > as_of:
        return CalendarStatus.FUTURE
    if challenge_start is not None and day < challenge_start:
        return CalendarStatus.BEFORE_CHALLENGE
    if challenge_end is not None and day > challenge_end:
        return CalendarStatus.NONE
    if activity is not None and activity.count > 0:
        return CalendarStatus.VERIFIED if activity.verified else CalendarStatus.CHECKED_IN
    if day == as_of:
        return CalendarStatus.PENDING
    if challenge_start is not None and challenge_start <= day < as_of:
        return CalendarStatus.MISSED
    return CalendarStatus.NONE


def _check_ins_between(db: Session, enrollment_id: int, start: date, end: date) -> list[ChallengeCheckIn]:
    return (
        db.query(ChallengeCheckIn)
        .filter(
            ChallengeCheckIn.user_challenge_id == enrollment_id,
            ChallengeCheckIn.check_in_date >= start,
            ChallengeCheckIn.check_in_date <= end,
        )
        .all()
    )


def get_calendar_status(
    db: Session,
    enrollment: UserChallenge,
    day: date,
    as_of: date | None = None,
) -> CalendarStatus:
    as_of = as_of or today_for_tz(user_tz(enrollment.user))
    activity = build_day_activity(_check_ins_between(db, enrollment.id, day, day))
    return calendar_status(
        day,
        as_of,
        enrollment_start_date(enrollment),
        activity.get(day),
        enrollment_end_date(enrollment),
    )


def month_calendar(
    db: Session,
    enrollment: UserChallenge,
    year: int,
    month: int,
    as_of: date | None = None,
) -> list[dict[str, Any]]:
    as_of = as_of or today_for_tz(user_tz(enrollment.user))
    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])
    activity = build_day_activity(_check_ins_between(db, enrollment.id, first, last))
    start = enrollment_start_date(enrollment)
    end = enrollment_end_date(enrollment)

    days: list[dict[str, Any]] = []
    for day_number in range(1, last.day + 1):
        day = date(year, month, day_number)
        day_activity = activity.get(day)
        days.append({
            "date": day,
            "status": calendar_status(day, as_of, start, day_activity, end).value,
            "meals": day_activity.count if day_activity else 0,
        })
    return days
