from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from casehub.config import settings

Base = declarative_base()


def build_engine(db_url: str) -> Engine:
    """
    Create an engine for ``db_url``.

    SQLite gets ``BEGIN IMMEDIATE`` transactions: the write lock is taken when
    the transaction starts, so two read-modify-write units against the same
    row serialize in the store instead of racing.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True, isolation_level="READ COMMITTED")

    engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(settings.db_url)
SessionLocal = build_session_factory(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
