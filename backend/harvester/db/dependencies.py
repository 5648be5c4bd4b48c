"""FastAPI dependencies for database access."""

from collections.abc import Generator

from sqlalchemy.orm import Session

from harvester.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped session."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
