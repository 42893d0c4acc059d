"""
SQLite storage for mapping rules, filters and proxies.

init_db() must run before get_session(); main.py does it at startup.
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, Settings

logger = logging.getLogger(__name__)

RULES_DB_FILE = CONFIG_DIR / "rules.db"

Base = declarative_base()

_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """DATABASE_URL from the environment, else the SQLite file in CONFIG_DIR."""
    url = Settings().database_url
    if url:
        return url
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{RULES_DB_FILE}"


def init_db(database_url: Optional[str] = None) -> None:
    """Create the engine and session factory, then any missing tables."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    logger.info("[DATABASE] Opening rules database at %s", url)
    try:
        if url.startswith("sqlite"):
            _engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            _engine = create_engine(url, pool_pre_ping=True)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Register tables on Base
        import models  # noqa: F401

        Base.metadata.create_all(bind=_engine)
    except Exception as e:
        logger.exception("[DATABASE] Initialization failed: %s", e)
        raise
    logger.info("[DATABASE] Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


def get_session():
    """New session from the factory. Callers close it."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()
