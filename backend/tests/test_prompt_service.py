from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import Challenge, ChallengeDailyPrompt, User  # noqa: E402
from services.enrollment_service import start_challenge  # noqa: E402
from services.prompt_service import (  # noqa: E402
    PROGRESSIVE_PROMPTS,
    RANDOM_VERIFICATION_PROMPTS,
    PromptNotFound,
    answer_daily_prompt,
    choose_prompt,
    get_or_create_daily_prompt,
    prompt_to_dict,
)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_enrollment(db):
    user = User(username="prompt_tester", display_name="Prompt Tester", timezone="UTC")
    challenge = Challenge(title="Mindful Cooking", duration_days=14, reward_points=150)
    db.add_all([user, challenge])
    db.commit()
    enrollment = start_challenge(db, user, challenge.id, now=datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc))
    db.commit()
    return enrollment


def test_first_week_prompts_follow_the_progressive_script():
    for day_number, expected in enumerate(PROGRESSIVE_PROMPTS, start=1):
        assert choose_prompt(day_number) == expected
    text, detail = choose_prompt(8)
    assert text in RANDOM_VERIFICATION_PROMPTS
    assert detail == "verification"


def test_one_prompt_per_day_is_reused():
    db = _new_db()
    enrollment = _new_enrollment(db)

    first = get_or_create_daily_prompt(db, enrollment, date(2024, 1, 3))
    db.commit()
    again = get_or_create_daily_prompt(db, enrollment, date(2024, 1, 3))

    assert again.id == first.id
    assert first.prompt_text == PROGRESSIVE_PROMPTS[2][0]
    assert db.query(ChallengeDailyPrompt).count() == 1


def test_answer_marks_prompt_verified():
    db = _new_db()
    enrollment = _new_enrollment(db)
    get_or_create_daily_prompt(db, enrollment, date(2024, 1, 1))
    db.commit()

    prompt = answer_daily_prompt(db, enrollment, date(2024, 1, 1), "  mustard oil ")
    db.commit()

    payload = prompt_to_dict(prompt)
    assert payload["user_response"] == "mustard oil"
    assert payload["response_verified"] is True
    assert payload["expected_detail"] == "oil_type"


def test_answering_without_a_prompt_fails():
    db = _new_db()
    enrollment = _new_enrollment(db)
    with pytest.raises(PromptNotFound):
        answer_daily_prompt(db, enrollment, date(2024, 1, 2), "olive")
