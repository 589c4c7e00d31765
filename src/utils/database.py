"""Database connection management utilities."""
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import StaticPool
from config.settings import settings

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine = None
_session_factory = None


def build_engine(db_url: str, echo: bool = False):
    """Create an engine with pool settings appropriate for the backend."""
    if db_url.startswith('sqlite'):
        connect_args = {"check_same_thread": False}
        if ':memory:' in db_url or db_url in ('sqlite://', 'sqlite:///'):
            # Share a single connection so every thread sees the same in-memory DB
            return create_engine(
                db_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo,
            )
        # SQLite doesn't support pool_size/max_overflow parameters
        return create_engine(db_url, connect_args=connect_args, echo=echo)

    return create_engine(
        db_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using (prevents stale connections)
        pool_recycle=3600,
        echo=echo,
    )


def get_engine():
    """Get or create the global database engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database.database_url, echo=settings.database.echo)
        logger.info(f"Database engine initialized ({_engine.dialect.name})")
    return _engine


def get_session_factory():
    """Get or create the global session factory."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine()
        _session_factory = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))
    return _session_factory


def close_session(session):
    """Close a database session properly."""
    try:
        session.close()
    except Exception as e:
        logger.warning(f"Error closing session: {e}")


@contextmanager
def session_scope(session_factory=None):
    """Provide a transactional scope around a series of operations.

    Usage:
        with session_scope() as session:
            # use session here
            # automatically commits on success, rolls back on error
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        close_session(session)


def init_database(engine=None):
    """Create the backfill tables if they don't exist."""
    engine = engine or get_engine()

    # Import models to ensure they're registered on the metadata
    from src.models import Base, BackfillJob, BackfillCheckpoint, BackfillRateLimit  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables created/verified")
    return engine


def cleanup_connections():
    """Clean up database connections (useful for worker shutdown)."""
    global _engine, _session_factory

    if _session_factory is not None:
        try:
            _session_factory.remove()
            logger.info("Session factory cleaned up successfully")
        except Exception as e:
            logger.warning(f"Error cleaning up session factory: {e}")
        finally:
            _session_factory = None

    if _engine is not None:
        try:
            _engine.dispose()
            logger.info("Database engine disposed successfully")
        except Exception as e:
            logger.warning(f"Error disposing database engine: {e}")
        finally:
            _engine = None
