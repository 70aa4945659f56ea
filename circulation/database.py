from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from circulation.config import DATABASE_URL


engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    This generator function:
    1. Creates a new SQLAlchemy session
    2. Yields it to the caller (FastAPI endpoint)
    3. Rolls back anything left uncommitted if the request failed
    4. Ensures the session is closed after use (in finally block)

    Engine operations commit their own units of work, so a rollback here only
    discards the half-finished unit that raised.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
