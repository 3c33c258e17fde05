import importlib.util
from contextlib import contextmanager
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from urllib.parse import urlparse
from custody.core.config import get_settings


class Base(DeclarativeBase):
    pass


settings = get_settings()
logger = logging.getLogger(__name__)


def _resolve_database_url(database_url: str) -> str:
    if not database_url.startswith("postgresql://"):
        return database_url
    has_psycopg2 = importlib.util.find_spec("psycopg2") is not None
    has_psycopg3 = importlib.util.find_spec("psycopg") is not None
    if not has_psycopg2 and has_psycopg3:
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def _build_connect_args(database_url: str) -> dict:
    parsed = urlparse(database_url)
    if parsed.scheme.startswith("sqlite"):
        # Scanner and reconciler jobs share the engine with request threads.
        return {"check_same_thread": False, "timeout": 30}
    if not parsed.scheme.startswith("postgresql"):
        return {}

    connect_args = {
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    }
    local_hosts = {"localhost", "127.0.0.1", "db"}
    if parsed.hostname not in local_hosts:
        connect_args["sslmode"] = "require"
    return connect_args


def _build_pool_kwargs(database_url: str) -> dict:
    if not database_url.startswith("postgresql"):
        return {}

    configured_pool_size = int(settings.db_pool_size)
    configured_max_overflow = int(settings.db_max_overflow)
    configured_pool_timeout = int(settings.db_pool_timeout)

    # Request threads plus the background jobs each hold a connection while
    # an account row is locked; small pools starve them.
    pool_size = max(5, configured_pool_size)
    max_overflow = max(5, configured_max_overflow)
    pool_timeout = max(8, configured_pool_timeout)

    if (
        pool_size != configured_pool_size
        or max_overflow != configured_max_overflow
        or pool_timeout != configured_pool_timeout
    ):
        logger.warning(
            "Adjusted DB pool settings for stability: pool_size %s->%s, max_overflow %s->%s, pool_timeout %s->%s",
            configured_pool_size,
            pool_size,
            configured_max_overflow,
            max_overflow,
            configured_pool_timeout,
            pool_timeout,
        )

    return {
        "pool_pre_ping": settings.db_pool_pre_ping,
        "pool_recycle": settings.db_pool_recycle,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_use_lifo": True,
    }


def _use_immediate_transactions(engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two writers
    # deadlock on lock promotion. Take the write lock when the transaction opens.
    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(raw_url: str):
    database_url = _resolve_database_url(raw_url)
    engine = create_engine(
        database_url,
        **_build_pool_kwargs(database_url),
        connect_args=_build_connect_args(database_url),
    )
    if database_url.startswith("sqlite"):
        _use_immediate_transactions(engine)
    return engine


engine = build_engine(str(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def insert_ignore(session, model, values: dict, index_elements: list[str]) -> bool:
    """Insert a row unless its key already exists. Returns True when inserted.

    The existence check and the write are one statement, so concurrent callers
    racing on the same key see exactly one winner.
    """
    table = getattr(model, "__table__", model)
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy import insert as generic_insert
        from sqlalchemy.exc import IntegrityError

        try:
            with session.begin_nested():
                session.execute(generic_insert(table).values(**values))
        except IntegrityError:
            return False
        return True

    stmt = insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = session.execute(stmt)
    return result.rowcount == 1


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=None):
    """Commit on success, roll back on any error, always close."""
    session = (session_factory or SessionLocal)()
    session.expire_on_commit = False
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
