from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.enrollment_service import (
    challenge_to_dict,
    complete_challenge,
    enrollment_to_dict,
    list_active_challenges,
    list_enrollments,
    load_enrollment,
    start_challenge,
)

router = APIRouter(tags=["challenges"], dependencies=[Depends(get_current_user)])


@router.get("/challenges")
def get_challenges(db: Session = Depends(get_db)):
    return [challenge_to_dict(c) for c in list_active_challenges(db)]


@router.post("/challenges/{challenge_id}/start", status_code=201)
def start(
    challenge_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = start_challenge(db, user, challenge_id)
    db.commit()
    db.refresh(enrollment)
    return enrollment_to_dict(enrollment)


@router.get("/enrollments")
def get_enrollments(
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [enrollment_to_dict(e) for e in list_enrollments(db, user, status)]


@router.get("/enrollments/{enrollment_id}")
def get_enrollment(
    enrollment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return enrollment_to_dict(load_enrollment(db, user, enrollment_id))


@router.post("/enrollments/{enrollment_id}/complete")
def complete(
    enrollment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark the challenge completed; the returned event feeds the points ledger."""
    enrollment = load_enrollment(db, user, enrollment_id)
    event = complete_challenge(db, enrollment)
    db.commit()
    db.refresh(enrollment)
    return {"enrollment": enrollment_to_dict(enrollment), "completion": event}
