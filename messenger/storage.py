import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from messenger.config import settings
from messenger.errors import ConflictError, NotFoundError
from messenger.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite connections cross FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("users", "conversations", "participants", "messages", "events")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from messenger import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Repository Functions
# =============================================================================

def create_user(db: Session, username: str, display_name: Optional[str] = None):
    """
    Create a user.

    Credentials are issued elsewhere; the core only needs a stable id and a
    username to show next to messages.

    Raises:
        ConflictError: the username is already taken
    """
    from messenger.models import User

    logger.info(f"Creating user: username={username}")
    user = User(username=username, display_name=display_name, created_at=utc_now_iso())
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Username already taken: {username}")
        raise ConflictError(f"Username already exists: {username}")
    db.refresh(user)
    return user


def get_user(db: Session, user_id: int):
    """Return the user or raise NotFoundError."""
    from messenger.models import User

    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user
