# database.py
import os
import logging
import threading
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

Base = declarative_base()

# ─── Connection-pool tuning ────────────────────────────────────────
# Only the document-search tool touches the database; the chat pipeline
# runs without one when DATABASE_URL is unset.
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))           # steady-state connections
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))     # burst above pool_size
POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))     # seconds to wait for a conn
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "1800"))   # recycle every 30 min (avoids stale PG conns)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_lock = threading.Lock()


def database_url() -> str:
    return (os.getenv("DATABASE_URL") or "").strip()


def get_session_factory() -> Optional[sessionmaker]:
    """Lazily build the engine/sessionmaker. Returns None if no database is configured."""
    global _engine, _session_factory
    if _session_factory is not None:
        return _session_factory

    url = database_url()
    if not url:
        return None

    with _lock:
        if _session_factory is None:
            _engine = create_engine(
                url,
                pool_size=POOL_SIZE,
                max_overflow=MAX_OVERFLOW,
                pool_timeout=POOL_TIMEOUT,
                pool_recycle=POOL_RECYCLE,
                pool_pre_ping=True,  # test connection liveness before checkout
            )
            logger.info(
                "DB pool configured: size=%d, max_overflow=%d, recycle=%ds, pre_ping=True",
                POOL_SIZE, MAX_OVERFLOW, POOL_RECYCLE,
            )
            _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _session_factory


def init_db() -> bool:
    """Create the vector extension and tables when a database is configured."""
    if get_session_factory() is None or _engine is None:
        return False

    from sqlalchemy import text
    import models  # noqa: F401  registers tables on Base.metadata

    with _engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(bind=_engine)
    return True
