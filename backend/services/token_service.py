"""Anti-cheat verification codes for photo check-ins.

A participant requests a code, writes it with the displayed timestamp on
paper, photographs the meal next to it and types the code back. Tokens
move through ``active -> used`` exactly once; requesting a new code moves
the previous one to ``superseded``. Expiry is evaluated at validation time
against ``expires_at`` and is never written back. A token consumed through
the standalone validation stays claimable by one photo check-in for the
length of the TTL window.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import settings
from db.models import ChallengeCheckIn, ChallengeToken, UserChallenge
from services.enrollment_service import require_in_progress, user_tz
from services.errors import CodeMismatch, NoActiveToken, TokenExpired
from services.rate_limit_service import (
    TOKEN_ISSUE_RULE,
    TOKEN_VALIDATE_RULE,
    InMemoryRateLimiter,
    enforce_rate_limit,
)
from utils.datetime_utils import as_naive_utc, format_display_time, utcnow

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L: codes are copied by hand.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

STATUS_ACTIVE = "active"
STATUS_USED = "used"
STATUS_SUPERSEDED = "superseded"


def generate_code(length: int | None = None, prefix: str | None = None) -> str:
    size = max(int(length or settings.VERIFICATION_TOKEN_LENGTH), 4)
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(size))
    head = (prefix if prefix is not None else settings.VERIFICATION_TOKEN_PREFIX).strip().upper()
    return f"{head}-{body}" if head else body


def normalize_code(value: str | None) -> str:
    return (value or "").strip().upper()


def token_to_dict(token: ChallengeToken) -> dict[str, Any]:
    return {
        "code": token.code,
        "display_time": token.display_time,
        "issued_at": token.issued_at.isoformat(),
        "expires_at": token.expires_at.isoformat(),
    }


def latest_active_token(db: Session, enrollment_id: int) -> ChallengeToken | None:
    return (
        db.query(ChallengeToken)
        .filter(
            ChallengeToken.user_challenge_id == enrollment_id,
            ChallengeToken.status == STATUS_ACTIVE,
        )
        .order_by(ChallengeToken.issued_at.desc(), ChallengeToken.id.desc())
        .first()
    )


def pending_token(db: Session, enrollment_id: int, now: datetime | None = None) -> ChallengeToken | None:
    """Active token that has not expired yet, i.e. a verification flow still in flight."""
    token = latest_active_token(db, enrollment_id)
    if token is None:
        return None
    if as_naive_utc(now or utcnow()) > token.expires_at:
        return None
    return token


def unclaimed_verified_token(
    db: Session,
    enrollment_id: int,
    now: datetime | None = None,
) -> ChallengeToken | None:
    """Token consumed by a standalone validation within the TTL window and not yet attached to a check-in."""
    cutoff = as_naive_utc(now or utcnow()) - timedelta(minutes=max(int(settings.VERIFICATION_TOKEN_TTL_MINUTES), 1))
    claimed = select(ChallengeCheckIn.verification_token_id).where(ChallengeCheckIn.verification_token_id.isnot(None))
    return (
        db.query(ChallengeToken)
        .filter(
            ChallengeToken.user_challenge_id == enrollment_id,
            ChallengeToken.status == STATUS_USED,
            ChallengeToken.used_at >= cutoff,
            ChallengeToken.id.notin_(claimed),
        )
        .order_by(ChallengeToken.used_at.desc(), ChallengeToken.id.desc())
        .first()
    )


def issue_token(
    db: Session,
    enrollment: UserChallenge,
    now: datetime | None = None,
    limiter: InMemoryRateLimiter | None = None,
    ip_address: str | None = None,
) -> ChallengeToken:
    require_in_progress(enrollment)
    enforce_rate_limit(
        rule=TOKEN_ISSUE_RULE,
        scope_key=f"enrollment:{enrollment.id}",
        user_id=enrollment.user_id,
        ip_address=ip_address,
        details={"enrollment_id": enrollment.id},
        limiter=limiter,
    )

    now = now or utcnow()
    issued_at = as_naive_utc(now)

    # Only the latest token is ever valid.
    superseded = (
        db.query(ChallengeToken)
        .filter(
            ChallengeToken.user_challenge_id == enrollment.id,
            ChallengeToken.status == STATUS_ACTIVE,
        )
        .update({"status": STATUS_SUPERSEDED}, synchronize_session=False)
    )

    token = ChallengeToken(
        user_id=enrollment.user_id,
        user_challenge_id=enrollment.id,
        code=generate_code(),
        display_time=format_display_time(now, user_tz(enrollment.user)),
        issued_at=issued_at,
        expires_at=issued_at + timedelta(minutes=max(int(settings.VERIFICATION_TOKEN_TTL_MINUTES), 1)),
        status=STATUS_ACTIVE,
    )
    db.add(token)
    db.flush()
    logger.info(
        "Issued verification token %s for enrollment %s (superseded %s)",
        token.id,
        enrollment.id,
        superseded,
    )
    return token


def validate_token(
    db: Session,
    enrollment: UserChallenge,
    entered_code: str,
    now: datetime | None = None,
    limiter: InMemoryRateLimiter | None = None,
    ip_address: str | None = None,
) -> ChallengeToken:
    """Consume the enrollment's current token if ``entered_code`` matches.

    Raises NoActiveToken, TokenExpired or CodeMismatch. The caller owns the
    transaction, so a consumed token is rolled back with the rest of a
    failed write.
    """
    enforce_rate_limit(
        rule=TOKEN_VALIDATE_RULE,
        scope_key=f"enrollment:{enrollment.id}",
        user_id=enrollment.user_id,
        ip_address=ip_address,
        details={"enrollment_id": enrollment.id},
        limiter=limiter,
    )
    checked_at = as_naive_utc(now or utcnow())

    token = latest_active_token(db, enrollment.id)
    if token is None:
        logger.warning("Token validation for enrollment %s: no active token", enrollment.id)
        raise NoActiveToken()
    if checked_at > token.expires_at:
        logger.warning("Token validation for enrollment %s: token %s expired", enrollment.id, token.id)
        raise TokenExpired()
    if normalize_code(entered_code) != normalize_code(token.code):
        logger.warning("Token validation for enrollment %s: code mismatch", enrollment.id)
        raise CodeMismatch()

    # Conditional write: a concurrent validation that got here first leaves 0 rows.
    consumed = (
        db.query(ChallengeToken)
        .filter(ChallengeToken.id == token.id, ChallengeToken.status == STATUS_ACTIVE)
        .update({"status": STATUS_USED, "used_at": checked_at}, synchronize_session=False)
    )
    if consumed != 1:
        logger.warning("Token %s was consumed concurrently", token.id)
        raise NoActiveToken()
    db.expire(token)
    logger.info("Verification token %s consumed for enrollment %s", token.id, enrollment.id)
    return token
