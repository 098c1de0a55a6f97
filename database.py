from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

import os
# Prioritize Postgres URL from env, otherwise fallback to local SQLite
DATABASE_URL = os.getenv("DATABASE_URL")
# Seconds a SQLite connection waits for another writer before failing
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

if DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = DATABASE_URL
    connect_args = {}
else:
    BASE_DIR = os.path.dirname(os.path.abspath(__file__))
    SQLALCHEMY_DATABASE_URL = f"sqlite:///{os.path.join(BASE_DIR, 'drive_mirror.db')}"
    connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}


def configure_sqlite(target_engine: Engine) -> None:
    """
    Make SQLite behave like the production database for the sync engine:
    enforce foreign keys (ON DELETE CASCADE from entries to grants) and let
    SQLAlchemy emit BEGIN itself so per-record SAVEPOINTs work with pysqlite.

    Transactions start with BEGIN IMMEDIATE. A deferred transaction that reads
    and then writes fails at once with SQLITE_BUSY when another connection is
    writing; taking the write lock up front makes concurrent runs wait on the
    busy timeout instead.
    """
    if target_engine.dialect.name != "sqlite":
        return

    @event.listens_for(target_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(SQLITE_BUSY_TIMEOUT * 1000)}")
        cursor.close()

    @event.listens_for(target_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args=connect_args
)
configure_sqlite(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
