from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    Date, DateTime, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    """Local mirror of the identity owned by the auth service."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    display_name = Column(Text, nullable=False)
    timezone = Column(Text)  # IANA name, falls back to settings.DEFAULT_TIMEZONE
    created_at = Column(DateTime, default=datetime.utcnow)

    enrollments = relationship("UserChallenge", back_populates="user", cascade="all, delete-orphan")


class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    duration_days = Column(Integer, nullable=False, default=7)
    reward_points = Column(Integer, nullable=False, default=0)
    challenge_type = Column(Text, nullable=False, default="oil_reduction")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    enrollments = relationship("UserChallenge", back_populates="challenge")


class UserChallenge(Base):
    __tablename__ = "user_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    status = Column(Text, nullable=False, default="not_started")  # not_started | in_progress | completed
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="enrollments")
    challenge = relationship("Challenge", back_populates="enrollments")
    check_ins = relationship("ChallengeCheckIn", back_populates="enrollment", cascade="all, delete-orphan")
    tokens = relationship("ChallengeToken", back_populates="enrollment", cascade="all, delete-orphan")
    daily_prompts = relationship("ChallengeDailyPrompt", back_populates="enrollment", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_user_challenges_user_status", "user_id", "status"),
    )


class ChallengeCheckIn(Base):
    __tablename__ = "challenge_check_ins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user_challenge_id = Column(Integer, ForeignKey("user_challenges.id"), nullable=False)
    check_in_date = Column(Date, nullable=False)
    meal_type = Column(Text, nullable=False)  # breakfast | lunch | dinner | snack
    oil_type = Column(Text)
    oil_quantity_ml = Column(Float)
    cooking_method = Column(Text)
    cooking_notes = Column(Text)
    ingredients_used = Column(Text)  # JSON array
    alternative_ingredients = Column(Text)  # JSON array
    energy_level = Column(Integer)  # 1-5
    mood = Column(Text)
    cravings_notes = Column(Text)
    photo_url = Column(Text)
    photo_uploaded_at = Column(DateTime)
    verified_with_token = Column(Boolean, nullable=False, default=False)
    verification_token_id = Column(Integer, ForeignKey("challenge_tokens.id"))  # token that verified this row
    verification_score = Column(Integer)  # 0-100
    flagged_suspicious = Column(Boolean, nullable=False, default=False)
    flag_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    enrollment = relationship("UserChallenge", back_populates="check_ins")

    __table_args__ = (
        UniqueConstraint("user_challenge_id", "check_in_date", "meal_type", name="uq_check_in_meal_per_day"),
        Index("idx_check_ins_enrollment_date", "user_challenge_id", "check_in_date"),
        Index("idx_check_ins_verification_token", "verification_token_id", unique=True),
    )


class ChallengeToken(Base):
    __tablename__ = "challenge_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user_challenge_id = Column(Integer, ForeignKey("user_challenges.id"), nullable=False)
    code = Column(Text, nullable=False)
    display_time = Column(Text, nullable=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active | used | superseded
    used_at = Column(DateTime)

    enrollment = relationship("UserChallenge", back_populates="tokens")

    __table_args__ = (
        Index("idx_challenge_tokens_enrollment_status", "user_challenge_id", "status", "issued_at"),
    )


class ChallengeDailyPrompt(Base):
    __tablename__ = "challenge_daily_prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_challenge_id = Column(Integer, ForeignKey("user_challenges.id"), nullable=False)
    prompt_date = Column(Date, nullable=False)
    prompt_text = Column(Text, nullable=False)
    expected_detail = Column(Text)
    user_response = Column(Text)
    response_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    enrollment = relationship("UserChallenge", back_populates="daily_prompts")

    __table_args__ = (
        UniqueConstraint("user_challenge_id", "prompt_date", name="uq_daily_prompt_per_day"),
    )


class RateLimitAuditEvent(Base):
    __tablename__ = "rate_limit_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint = Column(Text, nullable=False)
    scope_key = Column(Text, nullable=False)
    blocked = Column(Boolean, nullable=False, default=False)
    retry_after_seconds = Column(Integer)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ip_address = Column(Text)
    details_json = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
