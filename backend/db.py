from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.orm.exc import StaleDataError

from config import DATABASE_URL
from errors import ConflictError

# Create the SQLAlchemy engine (responsible for the connection to the database)
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

# SessionLocal is a class we will use to create database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for our ORM models (tables will inherit from this)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """
    FastAPI dependency that provides a database session.
    It opens a session at the start of a request and closes it when done.
    """
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """
    Run a read-modify-write sequence as one unit of work.

    Commits on success. On any error the session is rolled back so nothing
    partial is left behind; a version mismatch detected at flush time means
    someone else changed the row first and is reported as a ConflictError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(
            "The record was modified by someone else. Reload it and try again."
        ) from exc
    except Exception:
        db.rollback()
        raise
