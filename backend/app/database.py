from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import get_settings

settings = get_settings()

_database_uri = settings.sqlalchemy_database_uri()
# The scheduler runs jobs on executor threads; SQLite connections must be shareable across them.
_connect_args = {"check_same_thread": False} if _database_uri.startswith("sqlite") else {}

engine = create_engine(
    _database_uri,
    pool_pre_ping=True,
    connect_args=_connect_args,
    future=True,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
