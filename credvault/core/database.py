# =====================================================
# FILE: credvault/core/database.py
# Engine, session factory and FastAPI session dependency
# =====================================================

from contextlib import contextmanager
from typing import Iterator
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from credvault.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets a thread-safe single connection for :memory:"""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=settings.DB_POOL_PRE_PING,
        pool_recycle=settings.DB_POOL_RECYCLE,
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.get_database_url, echo=settings.DB_ECHO)
SessionLocal = build_session_factory(engine)


@contextmanager
def get_db_session(factory: sessionmaker = None) -> Iterator[Session]:
    """Session scope for background jobs: commit on success, rollback on error"""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Create all tables"""
    import credvault.models  # noqa: F401  registers the mappers

    Base.metadata.create_all(bind=bind or engine)
    logger.info("✅ Database tables ensured")


def check_connection(bind: Engine = None) -> bool:
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection failed: {str(e)}")
        return False
