from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Oil Challenge Engine"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/challenges.db"
    DATA_DIR: Path = Path("data")
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:8050",
        "http://localhost:5173",
        "https://localhost:8050",
    ]
    JWT_ALGORITHM: str = "HS256"
    AUTH_COOKIE_NAME: str = "challenge_session"
    AUTH_COOKIE_SECURE: bool = False
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = (
        "default-src 'self'; "
        "img-src 'self' data: blob:; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; "
        "frame-ancestors 'none'; "
        "base-uri 'self';"
    )
    VERIFICATION_TOKEN_PREFIX: str = "NOIL"
    VERIFICATION_TOKEN_LENGTH: int = 6
    VERIFICATION_TOKEN_TTL_MINUTES: int = 10
    VERIFICATION_BONUS_POINTS: int = 30
    RATE_LIMIT_TOKEN_ISSUE_ATTEMPTS: int = 5
    RATE_LIMIT_TOKEN_ISSUE_WINDOW_SECONDS: int = 600
    RATE_LIMIT_TOKEN_VALIDATE_ATTEMPTS: int = 10
    RATE_LIMIT_TOKEN_VALIDATE_WINDOW_SECONDS: int = 600

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SECURE must be true in production-like environments")
        if int(self.VERIFICATION_TOKEN_LENGTH) < 4:
            errors.append("VERIFICATION_TOKEN_LENGTH must be at least 4 characters")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
