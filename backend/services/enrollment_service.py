from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from db.models import Challenge, ChallengeCheckIn, User, UserChallenge
from services.errors import (
    ChallengeNotComplete,
    ChallengeNotFound,
    EnrollmentAlreadyActive,
    EnrollmentNotActive,
    EnrollmentNotFound,
)
from utils.datetime_utils import as_naive_utc, to_local, today_for_tz, utcnow

logger = logging.getLogger(__name__)

VALID_STATUSES = ("not_started", "in_progress", "completed")

# Completion multiplier tiers keyed by average verification score.
COMPLETION_MULTIPLIERS: tuple[tuple[float, float], ...] = ((80.0, 1.5), (60.0, 1.2))
DEFAULT_VERIFICATION_AVERAGE = 50.0


def user_tz(user: User | None) -> str | None:
    return getattr(user, "timezone", None)


def challenge_to_dict(challenge: Challenge) -> dict[str, Any]:
    return {
        "id": challenge.id,
        "title": challenge.title,
        "description": challenge.description,
        "duration_days": challenge.duration_days,
        "reward_points": challenge.reward_points,
        "challenge_type": challenge.challenge_type,
    }


def enrollment_start_date(enrollment: UserChallenge) -> date | None:
    """Local calendar date on which the participant started the challenge."""
    if enrollment.started_at is None:
        return None
    return to_local(enrollment.started_at, user_tz(enrollment.user)).date()


def enrollment_end_date(enrollment: UserChallenge) -> date | None:
    if enrollment.completed_at is None:
        return None
    return to_local(enrollment.completed_at, user_tz(enrollment.user)).date()


def challenge_progress(enrollment: UserChallenge, today: date) -> float:
    """Percentage of the challenge duration elapsed, capped at 100."""
    start = enrollment_start_date(enrollment)
    duration = int(getattr(enrollment.challenge, "duration_days", 0) or 0)
    if start is None or duration <= 0:
        return 0.0
    days_passed = max((today - start).days, 0)
    return round(min(days_passed / duration * 100.0, 100.0), 1)


def enrollment_to_dict(enrollment: UserChallenge, today: date | None = None) -> dict[str, Any]:
    today = today or today_for_tz(user_tz(enrollment.user))
    return {
        "id": enrollment.id,
        "challenge": challenge_to_dict(enrollment.challenge) if enrollment.challenge else None,
        "status": enrollment.status,
        "start_date": enrollment_start_date(enrollment),
        "started_at": enrollment.started_at.isoformat() if enrollment.started_at else None,
        "completed_at": enrollment.completed_at.isoformat() if enrollment.completed_at else None,
        "progress_pct": challenge_progress(enrollment, today),
    }


def list_active_challenges(db: Session) -> list[Challenge]:
    return (
        db.query(Challenge)
        .filter(Challenge.is_active.is_(True))
        .order_by(Challenge.reward_points.desc(), Challenge.id.asc())
        .all()
    )


def list_enrollments(db: Session, user: User, status: str | None = None) -> list[UserChallenge]:
    query = db.query(UserChallenge).filter(UserChallenge.user_id == user.id)
    if status in VALID_STATUSES:
        query = query.filter(UserChallenge.status == status)
    return query.order_by(UserChallenge.created_at.desc(), UserChallenge.id.desc()).all()


def load_enrollment(db: Session, user: User, enrollment_id: int) -> UserChallenge:
    enrollment = (
        db.query(UserChallenge)
        .filter(UserChallenge.id == enrollment_id, UserChallenge.user_id == user.id)
        .first()
    )
    if not enrollment:
        raise EnrollmentNotFound()
    return enrollment


def require_in_progress(enrollment: UserChallenge) -> None:
    if enrollment.status != "in_progress":
        raise EnrollmentNotActive(f"Challenge enrollment is {enrollment.status}, not in progress")


def start_challenge(db: Session, user: User, challenge_id: int, now: datetime | None = None) -> UserChallenge:
    challenge = db.query(Challenge).filter(Challenge.id == challenge_id, Challenge.is_active.is_(True)).first()
    if not challenge:
        raise ChallengeNotFound()

    existing = (
        db.query(UserChallenge)
        .filter(
            UserChallenge.user_id == user.id,
            UserChallenge.challenge_id == challenge_id,
            UserChallenge.status == "in_progress",
        )
        .first()
    )
    if existing:
        raise EnrollmentAlreadyActive()

    enrollment = UserChallenge(
        user_id=user.id,
        challenge_id=challenge.id,
        status="in_progress",
        started_at=as_naive_utc(now or utcnow()),
    )
    db.add(enrollment)
    db.flush()
    logger.info("User %s started challenge %s (enrollment %s)", user.id, challenge.id, enrollment.id)
    return enrollment


def average_verification_score(check_ins: list[ChallengeCheckIn]) -> float:
    scores = [c.verification_score for c in check_ins if c.verification_score is not None]
    if not scores:
        return DEFAULT_VERIFICATION_AVERAGE
    return sum(scores) / len(scores)


def completion_multiplier(avg_score: float) -> float:
    for threshold, multiplier in COMPLETION_MULTIPLIERS:
        if avg_score >= threshold:
            return multiplier
    return 1.0


def complete_challenge(db: Session, enrollment: UserChallenge, now: datetime | None = None) -> dict[str, Any]:
    """Transition in_progress -> completed and describe the reward for the points ledger."""
    require_in_progress(enrollment)
    now = now or utcnow()
    today = today_for_tz(user_tz(enrollment.user), now)
    progress = challenge_progress(enrollment, today)
    if progress < 100.0:
        raise ChallengeNotComplete(f"Challenge is {progress:.0f}% complete")

    enrollment.status = "completed"
    enrollment.completed_at = as_naive_utc(now)
    db.flush()

    avg_score = average_verification_score(list(enrollment.check_ins))
    multiplier = completion_multiplier(avg_score)
    base_points = int(enrollment.challenge.reward_points or 0)
    event = {
        "enrollment_id": enrollment.id,
        "challenge_id": enrollment.challenge_id,
        "user_id": enrollment.user_id,
        "avg_verification_score": round(avg_score, 1),
        "base_points": base_points,
        "multiplier": multiplier,
        "total_points": int(round(base_points * multiplier)),
    }
    logger.info(
        "Enrollment %s completed: %s points (x%s)",
        enrollment.id,
        event["total_points"],
        multiplier,
    )
    return event
