from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from digivault.core.settings import settings


class Base(DeclarativeBase):
    pass


_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_engine(
    settings.database_url,
    connect_args=(
        {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds} if _is_sqlite else {}
    ),
)

if _is_sqlite:
    # pysqlite manages BEGIN itself and breaks SAVEPOINT; take over so nested
    # transactions work and writers queue on the busy timeout instead of
    # failing on a read->write lock upgrade.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
