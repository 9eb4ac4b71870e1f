from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import client_ip, get_current_user
from config import settings
from db.database import get_db
from db.models import User
from services.enrollment_service import load_enrollment
from services.errors import TokenError
from services.token_service import issue_token, token_to_dict, validate_token

router = APIRouter(prefix="/enrollments", tags=["verification"], dependencies=[Depends(get_current_user)])


class ValidateTokenRequest(BaseModel):
    entered_code: str = Field(min_length=1, max_length=64)


@router.post("/{enrollment_id}/token", status_code=201)
def request_token(
    enrollment_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    token = issue_token(db, enrollment, ip_address=client_ip(request))
    db.commit()
    return token_to_dict(token)


@router.post("/{enrollment_id}/token/validate")
def validate(
    enrollment_id: int,
    req: ValidateTokenRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = load_enrollment(db, user, enrollment_id)
    try:
        validate_token(db, enrollment, req.entered_code, ip_address=client_ip(request))
    except TokenError as exc:
        db.rollback()
        return {"valid": False, "reason": exc.code, "message": exc.detail}
    db.commit()
    return {
        "valid": True,
        "message": "Verification successful! Log your meal photo now to mark it verified.",
        "bonus_points": settings.VERIFICATION_BONUS_POINTS,
    }
