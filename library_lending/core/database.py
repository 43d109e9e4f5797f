import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from library_lending.core.config import settings
from library_lending.core.exceptions import StoreError

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url, **kwargs):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 15}, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # take over transaction control from pysqlite, see _on_begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # writers queue on the database lock up front instead of
        # deadlocking on a shared -> reserved lock upgrade
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    # models must be imported so their tables are registered on Base.metadata
    from library_lending.models import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """Run a block as one transaction on ``db``.

    Commits when the block finishes, rolls back on any exception. Store
    failures are re-raised as :class:`StoreError` so a partially applied
    write never escapes.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Store failure, transaction rolled back")
        raise StoreError(f"Data store failure: {exc.__class__.__name__}") from exc
    except Exception:
        db.rollback()
        raise
