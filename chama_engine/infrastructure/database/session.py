"""Database engine and session factory for the engine services"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from chama_engine.config import settings


def build_engine(database_url: str) -> Engine:
    """PostgreSQL gets a recycled connection pool; SQLite (local runs) a plain engine"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # Services hand committed ORM objects back to callers, so keep attributes loaded after commit
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)
