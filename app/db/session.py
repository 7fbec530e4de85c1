from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # in-memory sqlite must share one connection across worker threads
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    return create_engine(url, pool_pre_ping=True, future=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Handlers flush explicitly; nothing is written behind a query's back.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


settings = get_settings()

DATABASE_URL = settings.database_url  # fail fast if missing

engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
