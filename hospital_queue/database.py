from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

# Execution option a unit of work sets on its connection before the first
# statement; on SQLite it turns the transaction's BEGIN into BEGIN IMMEDIATE.
WRITE_LOCK = "hospital_queue_write_lock"


def _serialize_sqlite_writers(engine):
    """
    pysqlite starts transactions lazily and can deadlock two writers that
    both hold a read lock. Writers take the write lock at BEGIN so SQLite
    queues them behind its busy timeout; readers use a plain BEGIN and, with
    the WAL journal, never wait on a writer or hold one up.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def begin_write(db):
    """Open ``db``'s transaction as a writer. Call before the first query of a unit of work."""
    return db.connection(execution_options={WRITE_LOCK: True})


def build_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(
            url, connect_args={"check_same_thread": False, "timeout": 15}
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(
        url,
        pool_recycle=3600,  # recycle connections after one hour
        pool_pre_ping=True,
    )


def make_session_factory(bind):
    # expire_on_commit=False keeps rows returned by a unit of work readable
    # after the session that loaded them is closed.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = make_session_factory(engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all tables if they do not exist yet."""
    from . import models  # noqa: F401  (registers the mappers)

    Base.metadata.create_all(bind=bind or engine)
