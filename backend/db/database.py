import logging

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=False,
)


# Enable WAL mode for better concurrent read performance
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    if not settings.DATABASE_URL.startswith("sqlite"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_startup_migrations() -> None:
    """Apply lightweight schema fixes for existing SQLite databases."""
    if not settings.DATABASE_URL.startswith("sqlite"):
        # Other backends are provisioned by create_all; the SQL below is SQLite dialect.
        logger.info("Skipping SQLite startup migrations for %s", engine.url.get_backend_name())
        return

    inspector = inspect(engine)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    check_in_columns = _table_columns("challenge_check_ins")
    token_columns = _table_columns("challenge_tokens")
    user_columns = _table_columns("users")
    if not check_in_columns and not token_columns and not user_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if user_columns and "timezone" not in user_columns:
        alter_statements.append("ALTER TABLE users ADD COLUMN timezone TEXT")
    if check_in_columns:
        if "verified_with_token" not in check_in_columns:
            alter_statements.append("ALTER TABLE challenge_check_ins ADD COLUMN verified_with_token BOOLEAN DEFAULT 0")
        if "flagged_suspicious" not in check_in_columns:
            alter_statements.append("ALTER TABLE challenge_check_ins ADD COLUMN flagged_suspicious BOOLEAN DEFAULT 0")
        if "flag_reason" not in check_in_columns:
            alter_statements.append("ALTER TABLE challenge_check_ins ADD COLUMN flag_reason TEXT")
        if "verification_token_id" not in check_in_columns:
            alter_statements.append("ALTER TABLE challenge_check_ins ADD COLUMN verification_token_id INTEGER")
    if token_columns and "used_at" not in token_columns:
        alter_statements.append("ALTER TABLE challenge_tokens ADD COLUMN used_at DATETIME")

    with engine.begin() as conn:
        for stmt in alter_statements:
            conn.execute(text(stmt))

        if check_in_columns:
            conn.execute(text("UPDATE challenge_check_ins SET verified_with_token = COALESCE(verified_with_token, 0)"))
            conn.execute(text("UPDATE challenge_check_ins SET flagged_suspicious = COALESCE(flagged_suspicious, 0)"))
            conn.execute(text(
                """
                CREATE INDEX IF NOT EXISTS idx_check_ins_enrollment_date
                ON challenge_check_ins (user_challenge_id, check_in_date)
                """
            ))
            conn.execute(text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_check_ins_verification_token
                ON challenge_check_ins (verification_token_id)
                """
            ))

        if token_columns:
            conn.execute(text(
                """
                CREATE INDEX IF NOT EXISTS idx_challenge_tokens_enrollment_status
                ON challenge_tokens (user_challenge_id, status, issued_at)
                """
            ))

        conn.execute(text(
            """
            CREATE TABLE IF NOT EXISTS rate_limit_audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint TEXT NOT NULL,
                scope_key TEXT NOT NULL,
                blocked BOOLEAN NOT NULL DEFAULT 0,
                retry_after_seconds INTEGER,
                user_id INTEGER,
                ip_address TEXT,
                details_json TEXT,
                created_at DATETIME,
                FOREIGN KEY(user_id) REFERENCES users(id)
            )
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_rate_limit_audit_endpoint
            ON rate_limit_audit_events (endpoint, created_at)
            """
        ))
