from __future__ import annotations


class ChallengeEngineError(Exception):
    """Raised when a challenge operation is rejected. Never leaves a partial write."""

    code = "challenge_error"
    status_code = 400
    default_detail = "Challenge request rejected"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ChallengeNotFound(ChallengeEngineError):
    code = "challenge_not_found"
    status_code = 404
    default_detail = "Challenge not found"


class EnrollmentNotFound(ChallengeEngineError):
    code = "enrollment_not_found"
    status_code = 404
    default_detail = "Challenge enrollment not found"


class EnrollmentNotActive(ChallengeEngineError):
    code = "enrollment_not_active"
    status_code = 409
    default_detail = "This challenge is not in progress"


class EnrollmentAlreadyActive(ChallengeEngineError):
    code = "enrollment_already_active"
    status_code = 409
    default_detail = "You are already taking this challenge"


class ChallengeNotComplete(ChallengeEngineError):
    code = "challenge_not_complete"
    status_code = 409
    default_detail = "Challenge duration has not elapsed yet"


class RateLimited(ChallengeEngineError):
    code = "rate_limited"
    status_code = 429
    default_detail = "Too many verification requests. Please try again later."

    def __init__(self, retry_after: int, detail: str | None = None) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(detail)


class TokenError(ChallengeEngineError):
    """Non-fatal token failures; the participant may request a new code."""


class NoActiveToken(TokenError):
    code = "no_active_token"
    default_detail = "No active verification code found. Please generate a new code and try again."


class TokenExpired(TokenError):
    code = "expired"
    default_detail = "Verification code has expired. Please generate a new code."


class CodeMismatch(TokenError):
    code = "code_mismatch"
    default_detail = "Verification code does not match. Please check the code you wrote and try again."


class DuplicateMealType(ChallengeEngineError):
    code = "duplicate_meal_type"
    status_code = 409
    default_detail = "You've already logged this meal type for this day"


class InvalidMealType(ChallengeEngineError):
    code = "invalid_meal_type"
    status_code = 422
    default_detail = "meal_type must be one of breakfast, lunch, dinner, snack"


class InvalidCheckInDate(ChallengeEngineError):
    code = "invalid_check_in_date"
    status_code = 422
    default_detail = "Check-in date is outside the challenge period"


class VerificationRequired(ChallengeEngineError):
    code = "verification_required"
    status_code = 422
    default_detail = "Photo verification must be completed or abandoned before checking in"

    def __init__(self, reason: str, detail: str | None = None) -> None:
        self.reason = reason
        super().__init__(detail)


class InvalidWeekIndex(ChallengeEngineError):
    code = "invalid_week_index"
    status_code = 422
    default_detail = "week_index must be 1 or greater"
