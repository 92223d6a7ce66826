import pytest
from sqlalchemy import event

from bulkload.db import get_engine
from bulkload.resolvers import TableResolverFactory
from bulkload.upsert import UpsertConfig


@pytest.fixture
def engine():
    engine = get_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def statements(engine):
    """SQL text of every statement sent to the database."""
    seen = []

    def record(conn, cursor, statement, parameters, context, executemany):
        seen.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine, "before_cursor_execute", record)


@pytest.fixture
def conn(engine):
    with engine.connect() as conn:
        _load_table_fixtures(conn)
        yield conn


@pytest.fixture
def factory(conn):
    return TableResolverFactory(conn)


def fetch_table(conn, name):
    return [tuple(row) for row in conn.exec_driver_sql(f"SELECT * FROM {name} ORDER BY 1")]


def inserts(statements):
    return [s for s in statements if s.lstrip().startswith("INSERT INTO")]


def _load_table_fixtures(conn):
    conn.exec_driver_sql("CREATE TABLE some_table (id INTEGER PRIMARY KEY, other VARCHAR(255))")
    conn.exec_driver_sql("CREATE INDEX idx_some_table_other ON some_table (other)")
    (
        UpsertConfig.create("some_table", ["id", "other"]).batch(conn)
        .with_row(1, "value1")
        .with_row(3, "value3")
        .with_row(4, "value4")
        .with_row(8, "value8")
        .with_row(9, "value9")
        .execute_if_not_empty()
    )

    conn.exec_driver_sql(
        "CREATE TABLE another_table (id INTEGER PRIMARY KEY, other_id INTEGER, second_other VARCHAR(255))"
    )
    conn.exec_driver_sql("CREATE INDEX idx_another_table_other ON another_table (other_id, second_other)")
    (
        UpsertConfig.create("another_table", ["id", "other_id", "second_other"]).batch(conn)
        .with_row(1, 1, "value1")
        .with_row(2, 3, "value1")
        .with_row(4, 1, "value2")
        .with_row(8, 4, "value4")
        .with_row(9, 4, "value5")
        .execute_if_not_empty()
    )

    conn.exec_driver_sql("CREATE TABLE table_with_numeric_text (id INTEGER PRIMARY KEY, numeric_text VARCHAR(255))")
    (
        UpsertConfig.create("table_with_numeric_text", ["id", "numeric_text"]).batch(conn)
        .with_row(1, "000001")
        .with_row(2, "123")
        .with_row(3, "123-123")
        .execute_if_not_empty()
    )

    conn.exec_driver_sql("CREATE TABLE names (id INTEGER PRIMARY KEY, name VARCHAR(255), note VARCHAR(255))")
