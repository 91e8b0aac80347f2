from typing import Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import Settings, get_settings
from .log import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, so two readers can both pass
    # the duplicate check. BEGIN IMMEDIATE takes the write lock up front, the
    # same serialization SELECT ... FOR UPDATE gives us on PostgreSQL.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, settings: Optional[Settings] = None) -> Engine:
    """Build an engine whose every storage call is bounded by a timeout."""
    settings = settings or get_settings()
    timeout = settings.DB_STATEMENT_TIMEOUT_SECONDS

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
        _use_immediate_transactions(engine)
        return engine

    timeout_ms = int(timeout * 1000)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args={
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
        },
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


engine = make_engine(get_settings().DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    from . import tables  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind)
    logger.info("Ledger tables ready on %s", bind.url.render_as_string(hide_password=True))
