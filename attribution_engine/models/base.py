"""
Base database model and session management
"""
import os
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.orm import declarative_base, sessionmaker
from attribution_engine.config import get_settings

settings = get_settings()

# Base class for all models
Base = declarative_base()


def _resolve_url(url: str) -> str:
    """Resolve relative SQLite paths to absolute so cwd changes can't break it"""
    if url.startswith("sqlite:///") and not url.startswith("sqlite:////"):
        rel_path = url[len("sqlite:///"):]
        if rel_path and rel_path != ":memory:":
            return "sqlite:///" + os.path.abspath(rel_path)
    return url


def create_db_engine(url: str):
    """Create an engine suited to the backend behind url"""
    url = _resolve_url(url)

    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 60},
            poolclass=NullPool,
            pool_pre_ping=True
        )

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=5,
        pool_recycle=300,
    )


def make_session_factory(url: str = None) -> sessionmaker:
    """Build a session factory and make sure the engine tables exist"""
    engine = create_db_engine(url or settings.database_url)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# Create database engine and session factory
engine = create_db_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory=None):
    """Transactional scope: commit on success, rollback on any error"""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables"""
    # Register every table on Base.metadata before create_all
    import attribution_engine.models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
