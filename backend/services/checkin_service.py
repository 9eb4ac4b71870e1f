from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import ChallengeCheckIn, UserChallenge
from services.enrollment_service import enrollment_start_date, require_in_progress, user_tz
from services.errors import (
    DuplicateMealType,
    InvalidCheckInDate,
    InvalidMealType,
    TokenError,
    VerificationRequired,
)
from services.rate_limit_service import InMemoryRateLimiter
from services.token_service import normalize_code, pending_token, unclaimed_verified_token, validate_token
from utils.datetime_utils import as_naive_utc, to_local, today_for_tz, utcnow

logger = logging.getLogger(__name__)

VALID_MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")

# Local hours (inclusive) in which a same-day entry for the meal looks plausible.
MEAL_HOUR_WINDOWS = {
    "breakfast": (5, 12),
    "lunch": (11, 16),
    "dinner": (17, 23),
}

BASE_SCORE = 50
PHOTO_BONUS = 20
DETAIL_BONUS = 10
UNIFORM_OIL_PENALTY = 20
SAME_METHOD_PENALTY = 10
ODD_HOUR_PENALTY = 10
PATTERN_WINDOW = 5


@dataclass(frozen=True)
class VerificationResult:
    score: int
    suspicious: bool
    reason: str | None


def score_check_in(
    fields: dict[str, Any],
    meal_type: str,
    recent: Sequence[ChallengeCheckIn],
    local_hour: int | None,
) -> VerificationResult:
    """Honesty score for a new entry given the participant's most recent ones (newest first)."""
    score = BASE_SCORE
    suspicious = False
    reasons: list[str] = []

    if fields.get("photo_url"):
        score += PHOTO_BONUS
    if fields.get("oil_quantity_ml"):
        score += DETAIL_BONUS
    if fields.get("cooking_method"):
        score += DETAIL_BONUS
    if fields.get("ingredients_used"):
        score += DETAIL_BONUS

    if len(recent) >= PATTERN_WINDOW:
        window = list(recent)[:PATTERN_WINDOW]
        quantity = fields.get("oil_quantity_ml")
        if quantity is not None:
            same_oil = sum(1 for c in window if c.oil_quantity_ml == quantity)
            if same_oil >= PATTERN_WINDOW - 1:
                suspicious = True
                reasons.append("Uniform oil quantities detected")
                score -= UNIFORM_OIL_PENALTY
        method = fields.get("cooking_method")
        if method:
            same_method = sum(1 for c in window if c.cooking_method == method)
            if same_method >= PATTERN_WINDOW:
                suspicious = True
                reasons.append("Same cooking method every day")
                score -= SAME_METHOD_PENALTY

    hours = MEAL_HOUR_WINDOWS.get(meal_type)
    if hours is not None and local_hour is not None and not (hours[0] <= local_hour <= hours[1]):
        reasons.append("Entry time doesn't match meal type")
        score -= ODD_HOUR_PENALTY

    return VerificationResult(
        score=max(0, min(100, score)),
        suspicious=suspicious,
        reason="; ".join(reasons) if reasons else None,
    )


def _json_list(values: Sequence[str] | None) -> str | None:
    cleaned = [str(v).strip() for v in (values or []) if str(v).strip()]
    return json.dumps(cleaned) if cleaned else None


def _parse_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in parsed] if isinstance(parsed, list) else []


def check_in_to_dict(row: ChallengeCheckIn) -> dict[str, Any]:
    return {
        "id": row.id,
        "enrollment_id": row.user_challenge_id,
        "check_in_date": row.check_in_date,
        "meal_type": row.meal_type,
        "oil_type": row.oil_type,
        "oil_quantity_ml": row.oil_quantity_ml,
        "cooking_method": row.cooking_method,
        "cooking_notes": row.cooking_notes,
        "ingredients_used": _parse_list(row.ingredients_used),
        "alternative_ingredients": _parse_list(row.alternative_ingredients),
        "energy_level": row.energy_level,
        "mood": row.mood,
        "cravings_notes": row.cravings_notes,
        "photo_url": row.photo_url,
        "verified_with_token": bool(row.verified_with_token),
        "verification_score": row.verification_score,
        "flagged_suspicious": bool(row.flagged_suspicious),
        "flag_reason": row.flag_reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def list_check_ins(db: Session, enrollment_id: int, on_date: date | None = None) -> list[ChallengeCheckIn]:
    query = db.query(ChallengeCheckIn).filter(ChallengeCheckIn.user_challenge_id == enrollment_id)
    if on_date is not None:
        query = query.filter(ChallengeCheckIn.check_in_date == on_date)
    return query.order_by(ChallengeCheckIn.check_in_date.desc(), ChallengeCheckIn.id.desc()).all()


def _meal_already_logged(db: Session, enrollment_id: int, check_in_date: date, meal_type: str) -> bool:
    return (
        db.query(ChallengeCheckIn.id)
        .filter(
            ChallengeCheckIn.user_challenge_id == enrollment_id,
            ChallengeCheckIn.check_in_date == check_in_date,
            ChallengeCheckIn.meal_type == meal_type,
        )
        .first()
        is not None
    )


def record_check_in(
    db: Session,
    enrollment: UserChallenge,
    *,
    check_in_date: date,
    meal_type: str,
    fields: dict[str, Any] | None = None,
    verification_code: str | None = None,
    abandon_verification: bool = False,
    now: datetime | None = None,
    limiter: InMemoryRateLimiter | None = None,
    ip_address: str | None = None,
) -> ChallengeCheckIn:
    """Persist one meal check-in, consuming the verification token when one is presented.

    A photo entry also claims a token the participant already validated on
    its own within the TTL window; each token verifies at most one row.

    ``check_in_date`` is the participant's local date as supplied by the
    caller. The row and the token consumption are flushed in the caller's
    transaction; any failure raises before anything is committed.
    """
    fields = dict(fields or {})
    meal_type = (meal_type or "").strip().lower()
    if meal_type not in VALID_MEAL_TYPES:
        raise InvalidMealType()
    require_in_progress(enrollment)

    now = now or utcnow()
    tz_name = user_tz(enrollment.user)
    today = today_for_tz(tz_name, now)
    start = enrollment_start_date(enrollment)
    if check_in_date > today:
        raise InvalidCheckInDate("Check-ins cannot be logged for future dates")
    if start is not None and check_in_date < start:
        raise InvalidCheckInDate("Check-in date is before the challenge started")

    if _meal_already_logged(db, enrollment.id, check_in_date, meal_type):
        logger.warning("Duplicate %s check-in for enrollment %s on %s", meal_type, enrollment.id, check_in_date)
        raise DuplicateMealType()

    verified = False
    token_id: int | None = None
    code = (verification_code or "").strip()
    photo = bool(fields.get("photo_url"))
    claimable = unclaimed_verified_token(db, enrollment.id, now) if (code or photo) else None
    if code:
        if claimable is not None and normalize_code(code) == normalize_code(claimable.code):
            token_id = claimable.id
        else:
            try:
                token_id = validate_token(db, enrollment, code, now=now, limiter=limiter, ip_address=ip_address).id
            except TokenError as exc:
                raise VerificationRequired(reason=exc.code, detail=exc.detail) from exc
        verified = True
    elif photo and not abandon_verification:
        if claimable is not None:
            # Code was already checked through the standalone validation.
            token_id = claimable.id
            verified = True
        elif pending_token(db, enrollment.id, now) is not None:
            raise VerificationRequired(
                reason="code_missing",
                detail="Enter the verification code from your photo, or abandon verification to log without it",
            )

    recent = (
        db.query(ChallengeCheckIn)
        .filter(ChallengeCheckIn.user_challenge_id == enrollment.id)
        .order_by(ChallengeCheckIn.check_in_date.desc(), ChallengeCheckIn.id.desc())
        .limit(PATTERN_WINDOW)
        .all()
    )
    local_hour = to_local(now, tz_name).hour if check_in_date == today else None
    result = score_check_in(fields, meal_type, recent, local_hour)

    row = ChallengeCheckIn(
        user_id=enrollment.user_id,
        user_challenge_id=enrollment.id,
        check_in_date=check_in_date,
        meal_type=meal_type,
        oil_type=fields.get("oil_type"),
        oil_quantity_ml=fields.get("oil_quantity_ml"),
        cooking_method=fields.get("cooking_method"),
        cooking_notes=fields.get("cooking_notes"),
        ingredients_used=_json_list(fields.get("ingredients_used")),
        alternative_ingredients=_json_list(fields.get("alternative_ingredients")),
        energy_level=fields.get("energy_level"),
        mood=fields.get("mood"),
        cravings_notes=fields.get("cravings_notes"),
        photo_url=fields.get("photo_url"),
        photo_uploaded_at=as_naive_utc(now) if fields.get("photo_url") else None,
        verified_with_token=verified,
        verification_token_id=token_id,
        verification_score=result.score,
        flagged_suspicious=result.suspicious,
        flag_reason=result.reason,
        created_at=as_naive_utc(now),
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        # A concurrent submission won a unique index; drop our token consumption too.
        db.rollback()
        if _meal_already_logged(db, enrollment.id, check_in_date, meal_type):
            raise DuplicateMealType() from exc
        raise VerificationRequired(
            reason="no_active_token",
            detail="This verification code has already been used for another check-in",
        ) from exc

    logger.info(
        "Recorded %s check-in %s for enrollment %s on %s (verified=%s, score=%s)",
        meal_type,
        row.id,
        enrollment.id,
        check_in_date,
        verified,
        result.score,
    )
    return row
