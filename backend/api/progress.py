from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.calendar_service import get_calendar_status, month_calendar
from services.enrollment_service import load_enrollment
from services.streak_service import get_streak_summary
from services.weekly_summary_service import get_weekly_summary, list_weekly_summaries
from utils.datetime_utils import today_for_tz

router = APIRouter(prefix="/enrollments", tags=["progress"], dependencies=[Depends(get_current_user)])


@router.get("/{enrollment_id}/streak")
def get_streak(
    enrollment_id: int,
    as_of: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    return get_streak_summary(db, enrollment, as_of).to_dict()


@router.get("/{enrollment_id}/calendar")
def get_month_calendar(
    enrollment_id: int,
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    today = today_for_tz(user.timezone)
    year = year or today.year
    month = month or today.month
    return {"year": year, "month": month, "days": month_calendar(db, enrollment, year, month, today)}


@router.get("/{enrollment_id}/calendar/{day}")
def get_day_status(
    enrollment_id: int,
    day: date,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    status = get_calendar_status(db, enrollment, day, today_for_tz(user.timezone))
    return {"date": day, "status": status.value}


@router.get("/{enrollment_id}/weeks")
def get_weeks(
    enrollment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    return list_weekly_summaries(db, enrollment)


@router.get("/{enrollment_id}/weeks/{week_index}")
def get_week(
    enrollment_id: int,
    week_index: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    return get_weekly_summary(db, enrollment, week_index).to_dict()
