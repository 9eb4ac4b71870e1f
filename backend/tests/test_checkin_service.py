from __future__ import annotations

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import Challenge, ChallengeCheckIn, ChallengeToken, User  # noqa: E402
from services.checkin_service import check_in_to_dict, record_check_in, score_check_in  # noqa: E402
from services.enrollment_service import start_challenge  # noqa: E402
from services.errors import (  # noqa: E402
    DuplicateMealType,
    EnrollmentNotActive,
    InvalidCheckInDate,
    InvalidMealType,
    VerificationRequired,
)
from services.rate_limit_service import InMemoryRateLimiter  # noqa: E402
from services.token_service import issue_token, validate_token  # noqa: E402


START = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
LUNCH_TIME = datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_enrollment(db, username: str = "checkin_tester"):
    user = User(username=username, display_name="Check-in Tester", timezone="UTC")
    challenge = Challenge(title="Oil-Free Week", duration_days=7, reward_points=200)
    db.add_all([user, challenge])
    db.commit()
    enrollment = start_challenge(db, user, challenge.id, now=START)
    db.commit()
    return enrollment


def _count_rows(db) -> int:
    return db.query(ChallengeCheckIn).count()


def test_check_in_is_recorded_with_score_and_fields():
    db = _new_db()
    enrollment = _new_enrollment(db)

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="Lunch",
        fields={
            "oil_type": "mustard",
            "oil_quantity_ml": 10.0,
            "cooking_method": "steam",
            "ingredients_used": ["dal", " rice ", ""],
            "energy_level": 4,
            "mood": "happy",
        },
        now=LUNCH_TIME,
        limiter=InMemoryRateLimiter(),
    )
    db.commit()

    payload = check_in_to_dict(row)
    assert payload["meal_type"] == "lunch"
    assert payload["ingredients_used"] == ["dal", "rice"]
    assert payload["verified_with_token"] is False
    assert payload["verification_score"] == 80  # 50 + quantity + method + ingredients
    assert payload["flagged_suspicious"] is False


def test_second_check_in_for_same_meal_and_day_is_rejected():
    db = _new_db()
    enrollment = _new_enrollment(db)
    record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="lunch", now=LUNCH_TIME)
    db.commit()

    with pytest.raises(DuplicateMealType):
        record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="lunch", now=LUNCH_TIME)
    db.rollback()
    assert _count_rows(db) == 1

    record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="dinner", now=LUNCH_TIME)
    db.commit()
    assert _count_rows(db) == 2


def test_unknown_meal_type_is_rejected():
    db = _new_db()
    enrollment = _new_enrollment(db)
    with pytest.raises(InvalidMealType):
        record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="brunch", now=LUNCH_TIME)


def test_completed_enrollment_rejects_check_ins():
    db = _new_db()
    enrollment = _new_enrollment(db)
    enrollment.status = "completed"
    db.commit()
    with pytest.raises(EnrollmentNotActive):
        record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="lunch", now=LUNCH_TIME)


def test_dates_outside_the_active_period_are_rejected():
    db = _new_db()
    enrollment = _new_enrollment(db)
    with pytest.raises(InvalidCheckInDate):
        record_check_in(db, enrollment, check_in_date=date(2024, 1, 2), meal_type="lunch", now=LUNCH_TIME)
    with pytest.raises(InvalidCheckInDate):
        record_check_in(db, enrollment, check_in_date=date(2023, 12, 31), meal_type="lunch", now=LUNCH_TIME)


def test_backdated_entry_within_challenge_is_accepted():
    db = _new_db()
    enrollment = _new_enrollment(db)
    later = LUNCH_TIME + timedelta(days=2)
    row = record_check_in(db, enrollment, check_in_date=date(2024, 1, 2), meal_type="dinner", now=later)
    db.commit()
    assert row.check_in_date == date(2024, 1, 2)
    assert row.flag_reason is None  # hour check only applies to same-day entries


def test_photo_with_pending_token_requires_code():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    with pytest.raises(VerificationRequired) as excinfo:
        record_check_in(
            db,
            enrollment,
            check_in_date=date(2024, 1, 1),
            meal_type="lunch",
            fields={"photo_url": "meal-photos/1.jpg"},
            now=LUNCH_TIME + timedelta(minutes=3),
            limiter=limiter,
        )
    assert excinfo.value.reason == "code_missing"
    db.rollback()
    assert _count_rows(db) == 0


def test_wrong_code_fails_the_whole_submission():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    with pytest.raises(VerificationRequired) as excinfo:
        record_check_in(
            db,
            enrollment,
            check_in_date=date(2024, 1, 1),
            meal_type="lunch",
            fields={"photo_url": "meal-photos/1.jpg"},
            verification_code="NOIL-WRONG1",
            now=LUNCH_TIME + timedelta(minutes=3),
            limiter=limiter,
        )
    assert excinfo.value.reason == "code_mismatch"
    db.rollback()
    assert _count_rows(db) == 0
    assert db.query(ChallengeToken).filter(ChallengeToken.id == token.id).one().status == "active"


def test_correct_code_marks_entry_verified_and_consumes_token():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()
    code = token.code

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        verification_code=code.lower(),
        now=LUNCH_TIME + timedelta(minutes=3),
        limiter=limiter,
    )
    db.commit()

    assert row.verified_with_token is True
    assert row.photo_uploaded_at is not None
    assert db.query(ChallengeToken).filter(ChallengeToken.id == token.id).one().status == "used"


def test_duplicate_meal_does_not_consume_token():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    record_check_in(db, enrollment, check_in_date=date(2024, 1, 1), meal_type="lunch", now=LUNCH_TIME)
    db.commit()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    with pytest.raises(DuplicateMealType):
        record_check_in(
            db,
            enrollment,
            check_in_date=date(2024, 1, 1),
            meal_type="lunch",
            fields={"photo_url": "meal-photos/2.jpg"},
            verification_code=token.code,
            now=LUNCH_TIME,
            limiter=limiter,
        )
    db.rollback()
    assert db.query(ChallengeToken).filter(ChallengeToken.id == token.id).one().status == "active"


def test_abandoned_verification_stores_unverified_entry():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        abandon_verification=True,
        now=LUNCH_TIME + timedelta(minutes=1),
        limiter=limiter,
    )
    db.commit()
    assert row.verified_with_token is False
    assert db.query(ChallengeToken).filter(ChallengeToken.id == token.id).one().status == "active"


def test_photo_after_token_expiry_is_not_gated():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        now=LUNCH_TIME + timedelta(minutes=30),
        limiter=limiter,
    )
    assert row.verified_with_token is False


def test_score_penalizes_uniform_history_and_odd_hours():
    recent = [SimpleNamespace(oil_quantity_ml=10.0, cooking_method="fry") for _ in range(5)]
    result = score_check_in(
        {"oil_quantity_ml": 10.0, "cooking_method": "fry"},
        "breakfast",
        recent,
        local_hour=22,
    )
    # 50 + 10 + 10 - 20 - 10 - 10
    assert result.score == 30
    assert result.suspicious is True
    assert result.reason == (
        "Uniform oil quantities detected; Same cooking method every day; Entry time doesn't match meal type"
    )


def test_score_is_clamped_and_snacks_have_no_hour_window():
    fields = {"photo_url": "x.jpg", "oil_quantity_ml": 5.0, "cooking_method": "bake", "ingredients_used": ["oats"]}
    result = score_check_in(fields, "snack", [], local_hour=3)
    assert result.score == 100
    assert result.reason is None


def test_code_validated_on_its_own_verifies_the_next_photo_entry():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()
    validate_token(db, enrollment, token.code, now=LUNCH_TIME + timedelta(minutes=2), limiter=limiter)
    db.commit()

    lunch = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        now=LUNCH_TIME + timedelta(minutes=3),
        limiter=limiter,
    )
    db.commit()
    assert lunch.verified_with_token is True
    assert lunch.verification_token_id == token.id

    snack = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="snack",
        fields={"photo_url": "meal-photos/2.jpg"},
        now=LUNCH_TIME + timedelta(minutes=4),
        limiter=limiter,
    )
    db.commit()
    assert snack.verified_with_token is False
    assert snack.verification_token_id is None


def test_resending_a_validated_code_attaches_it_once():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()
    code = token.code
    validate_token(db, enrollment, code, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        verification_code=f" {code.lower()} ",
        now=LUNCH_TIME + timedelta(minutes=1),
        limiter=limiter,
    )
    db.commit()
    assert row.verified_with_token is True

    with pytest.raises(VerificationRequired) as excinfo:
        record_check_in(
            db,
            enrollment,
            check_in_date=date(2024, 1, 1),
            meal_type="dinner",
            fields={"photo_url": "meal-photos/2.jpg"},
            verification_code=code,
            now=LUNCH_TIME + timedelta(minutes=2),
            limiter=limiter,
        )
    assert excinfo.value.reason == "no_active_token"


def test_validated_code_is_not_claimable_after_the_window():
    db = _new_db()
    enrollment = _new_enrollment(db)
    limiter = InMemoryRateLimiter()
    token = issue_token(db, enrollment, now=LUNCH_TIME, limiter=limiter)
    db.commit()
    validate_token(db, enrollment, token.code, now=LUNCH_TIME, limiter=limiter)
    db.commit()

    row = record_check_in(
        db,
        enrollment,
        check_in_date=date(2024, 1, 1),
        meal_type="lunch",
        fields={"photo_url": "meal-photos/1.jpg"},
        now=LUNCH_TIME + timedelta(minutes=11),
        limiter=limiter,
    )
    assert row.verified_with_token is False
