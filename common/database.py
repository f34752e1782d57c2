"""Engine, session factory and declarative base shared by the services."""
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings

settings = get_settings()


def _connect_args(database_url: str) -> Dict[str, Any]:
    # Every entry point inherits a bounded wait on locks held by other writers.
    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        return {"check_same_thread": False, "timeout": settings.db_lock_timeout_seconds}
    if backend == "postgresql":
        timeout_ms = int(settings.db_lock_timeout_seconds * 1000)
        return {"options": f"-c lock_timeout={timeout_ms} -c statement_timeout={timeout_ms * 2}"}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
