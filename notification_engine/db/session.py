from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from notification_engine.config.settings import settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create the engine on first use so importing the package needs no database driver."""
    return create_engine(
        str(settings.DATABASE_URL),
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=settings.DATABASE_ECHO,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), class_=Session, expire_on_commit=False)


def get_sync_session():
    """Yield a sync database session, rolling back on error"""
    db = get_session_factory()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
