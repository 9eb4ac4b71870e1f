from __future__ import annotations

import logging
import secrets
from datetime import date
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import ChallengeDailyPrompt, UserChallenge
from services.enrollment_service import enrollment_start_date, require_in_progress
from services.errors import ChallengeEngineError

logger = logging.getLogger(__name__)

# (prompt, expected detail) for each of the first seven days.
PROGRESSIVE_PROMPTS: tuple[tuple[str, str], ...] = (
    ("What cooking oil did you use today?", "oil_type"),
    ("How much oil (in ml) did you estimate using?", "oil_quantity"),
    ("What cooking method did you use (frying, sauteing, steaming)?", "cooking_method"),
    ("Did you try any oil alternatives today (like air frying)?", "alternatives"),
    ("What ingredients went into your main dish?", "ingredients"),
    ("How's your energy level compared to before the challenge?", "energy"),
    ("Share a photo of your healthiest meal today!", "photo"),
)

RANDOM_VERIFICATION_PROMPTS: tuple[str, ...] = (
    "What color was your main vegetable today?",
    "Did you cook for just yourself or others?",
    "What time did you have this meal?",
    "Was this a hot or cold dish?",
    "What's one spice you used today?",
    "Did you use a non-stick pan or regular pan?",
    "What was the main protein in your meal?",
    "How long did cooking take?",
)


class PromptNotFound(ChallengeEngineError):
    code = "prompt_not_found"
    status_code = 404
    default_detail = "Daily prompt not found"


def prompt_to_dict(prompt: ChallengeDailyPrompt) -> dict[str, Any]:
    return {
        "id": prompt.id,
        "prompt_date": prompt.prompt_date,
        "prompt_text": prompt.prompt_text,
        "expected_detail": prompt.expected_detail,
        "user_response": prompt.user_response,
        "response_verified": bool(prompt.response_verified),
    }


def choose_prompt(day_number: int) -> tuple[str, str]:
    if 1 <= day_number <= len(PROGRESSIVE_PROMPTS):
        return PROGRESSIVE_PROMPTS[day_number - 1]
    return secrets.choice(RANDOM_VERIFICATION_PROMPTS), "verification"


def _prompt_for(db: Session, enrollment_id: int, prompt_date: date) -> ChallengeDailyPrompt | None:
    return (
        db.query(ChallengeDailyPrompt)
        .filter(
            ChallengeDailyPrompt.user_challenge_id == enrollment_id,
            ChallengeDailyPrompt.prompt_date == prompt_date,
        )
        .first()
    )


def get_or_create_daily_prompt(db: Session, enrollment: UserChallenge, today: date) -> ChallengeDailyPrompt:
    existing = _prompt_for(db, enrollment.id, today)
    if existing:
        return existing
    require_in_progress(enrollment)

    start = enrollment_start_date(enrollment) or today
    text, detail = choose_prompt((today - start).days + 1)
    prompt = ChallengeDailyPrompt(
        user_challenge_id=enrollment.id,
        prompt_date=today,
        prompt_text=text,
        expected_detail=detail,
    )
    db.add(prompt)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _prompt_for(db, enrollment.id, today)
        if existing is None:
            raise
        return existing
    return prompt


def answer_daily_prompt(db: Session, enrollment: UserChallenge, today: date, response: str) -> ChallengeDailyPrompt:
    prompt = _prompt_for(db, enrollment.id, today)
    if prompt is None:
        raise PromptNotFound()
    prompt.user_response = response.strip()
    prompt.response_verified = True
    db.flush()
    logger.info("Daily prompt %s answered for enrollment %s", prompt.id, enrollment.id)
    return prompt
