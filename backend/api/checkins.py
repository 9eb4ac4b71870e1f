from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import client_ip, get_current_user
from config import settings
from db.database import get_db
from db.models import User
from services.checkin_service import check_in_to_dict, list_check_ins, record_check_in
from services.enrollment_service import load_enrollment
from services.prompt_service import answer_daily_prompt, get_or_create_daily_prompt, prompt_to_dict
from services.token_service import unclaimed_verified_token
from utils.datetime_utils import today_for_tz

router = APIRouter(prefix="/enrollments", tags=["check-ins"], dependencies=[Depends(get_current_user)])


class CheckInRequest(BaseModel):
    meal_type: str
    check_in_date: Optional[date] = None  # participant's local date; defaults to today
    oil_type: Optional[str] = Field(default=None, max_length=100)
    oil_quantity_ml: Optional[float] = Field(default=None, ge=0, le=1000)
    cooking_method: Optional[str] = Field(default=None, max_length=100)
    cooking_notes: Optional[str] = Field(default=None, max_length=2000)
    ingredients_used: Optional[list[str]] = None
    alternative_ingredients: Optional[list[str]] = None
    energy_level: Optional[int] = Field(default=None, ge=1, le=5)
    mood: Optional[str] = Field(default=None, max_length=50)
    cravings_notes: Optional[str] = Field(default=None, max_length=2000)
    photo_url: Optional[str] = Field(default=None, max_length=2048)
    verification_code: Optional[str] = Field(default=None, max_length=64)
    abandon_verification: bool = False


class PromptAnswerRequest(BaseModel):
    response: str = Field(min_length=1, max_length=2000)


@router.post("/{enrollment_id}/check-ins", status_code=201)
def create_check_in(
    enrollment_id: int,
    req: CheckInRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    prevalidated = unclaimed_verified_token(db, enrollment.id)
    fields = req.model_dump(exclude={"meal_type", "check_in_date", "verification_code", "abandon_verification"})
    row = record_check_in(
        db,
        enrollment,
        check_in_date=req.check_in_date or today_for_tz(user.timezone),
        meal_type=req.meal_type,
        fields=fields,
        verification_code=req.verification_code,
        abandon_verification=req.abandon_verification,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(row)
    payload = check_in_to_dict(row)
    # A code consumed by this request earns the bonus here; a pre-validated one already did.
    consumed_here = row.verification_token_id is not None and (
        prevalidated is None or prevalidated.id != row.verification_token_id
    )
    payload["verification"] = (
        {"valid": True, "bonus_points": settings.VERIFICATION_BONUS_POINTS} if consumed_here else None
    )
    return payload


@router.get("/{enrollment_id}/check-ins")
def get_check_ins(
    enrollment_id: int,
    on_date: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    return [check_in_to_dict(row) for row in list_check_ins(db, enrollment.id, on_date)]


@router.get("/{enrollment_id}/prompt")
def get_daily_prompt(
    enrollment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    prompt = get_or_create_daily_prompt(db, enrollment, today_for_tz(user.timezone))
    db.commit()
    return prompt_to_dict(prompt)


@router.post("/{enrollment_id}/prompt/answer")
def answer_prompt(
    enrollment_id: int,
    req: PromptAnswerRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    prompt = answer_daily_prompt(db, enrollment, today_for_tz(user.timezone), req.response)
    db.commit()
    return prompt_to_dict(prompt)
