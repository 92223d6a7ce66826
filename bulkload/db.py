"""
db.py - Engines for the write and read connections
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine

from bulkload.config import Settings


def normalize_url(url: str) -> str:
    """Point bare postgres URLs at the psycopg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def _explicit_sqlite_transactions(engine: Engine) -> None:
    # pysqlite starts transactions on its own and breaks SAVEPOINT handling
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine(url: str) -> Engine:
    engine = create_engine(normalize_url(url), future=True)
    if engine.dialect.name == "sqlite":
        _explicit_sqlite_transactions(engine)
    return engine


class ConnectionPool:
    """
    One engine for writes (resolution, allocation, upserts) and one for reads.

    Reads go through their own connection so they never observe a write
    transaction that has not been committed yet.
    """

    def __init__(self, write_url: str, read_url: str | None = None):
        self.write_engine = get_engine(write_url)
        if read_url and read_url != write_url:
            self.read_engine = get_engine(read_url)
        else:
            self.read_engine = self.write_engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionPool":
        return cls(settings.require_database_url(), settings.read_database_url)

    def write(self):
        """Transaction on the write engine: commits on success, rolls back on error."""
        return self.write_engine.begin()

    def read(self) -> Connection:
        return self.read_engine.connect()

    def dispose(self) -> None:
        self.write_engine.dispose()
        if self.read_engine is not self.write_engine:
            self.read_engine.dispose()
