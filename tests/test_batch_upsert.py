import pytest

from bulkload.errors import ConfigurationError, RowArityError
from bulkload.identifiers import ResolvedIdentifier, UnresolvedIdentifier
from bulkload.upsert import MAX_BIND_PARAMS, UpsertConfig, merge_conflicting

from conftest import fetch_table, inserts

ORIGINAL_ANOTHER_TABLE = [
    (1, 1, "value1"),
    (2, 3, "value1"),
    (4, 1, "value2"),
    (8, 4, "value4"),
    (9, 4, "value5"),
]


@pytest.fixture
def resolver(factory):
    return factory.create_single_value_resolver("some_table", "other", "id")


def test_skips_rows_that_cannot_be_resolved(resolver, conn):
    insert = (
        UpsertConfig.create("another_table", ["other_id", "second_other"])
        .with_resolver(resolver)
        .batch(conn)
        .with_row(resolver.unresolved("value1"), "other=value1")
        .with_row(resolver.unresolved("value2"), "other=value2")
        .with_row(resolver.unresolved("value3"), "other=value3")
        .with_row(resolver.unresolved("value4"), "other=value4")
    )

    insert.execute_if_not_empty()

    assert [row[1:] for row in fetch_table(conn, "another_table")] == [
        row[1:] for row in ORIGINAL_ANOTHER_TABLE
    ] + [(1, "other=value1"), (3, "other=value3"), (4, "other=value4")]
    assert insert.executed_rows == 3
    assert insert.dropped_rows == 1


def test_null_on_unresolved_keeps_row(resolver, conn):
    insert = (
        UpsertConfig.create("another_table", ["other_id", "second_other"])
        .with_resolver(resolver)
        .with_null_on_unresolved()
        .batch(conn)
        .with_row(resolver.unresolved("value1"), "other=value1")
        .with_row(resolver.unresolved("value2"), "other=value2")
    )

    insert.execute_if_not_empty()

    assert fetch_table(conn, "another_table")[-2:] == [(10, 1, "other=value1"), (11, None, "other=value2")]
    assert insert.dropped_rows == 0


def test_works_with_multiple_flushes(resolver, conn):
    insert = (
        UpsertConfig.create("another_table", ["other_id", "second_other"])
        .with_resolver(resolver)
        .batch(conn)
    )
    for suffix in ("1", "2", "3"):
        for value in ("value1", "value3", "value4"):
            insert.with_row(resolver.unresolved(value), f"other={value}.{suffix}")
        insert.flush_if_over_limit(3)
    insert.execute_if_not_empty()

    assert fetch_table(conn, "another_table")[5:] == [
        (10, 1, "other=value1.1"),
        (11, 3, "other=value3.1"),
        (12, 4, "other=value4.1"),
        (13, 1, "other=value1.2"),
        (14, 3, "other=value3.2"),
        (15, 4, "other=value4.2"),
        (16, 1, "other=value1.3"),
        (17, 3, "other=value3.3"),
        (18, 4, "other=value4.3"),
    ]


def test_flush_waits_until_limit_is_exceeded(conn, statements):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).batch(conn)
    insert.with_row(1, "a", None).with_row(2, "b", None)
    statements.clear()

    insert.flush_if_over_limit(2)
    assert inserts(statements) == []

    insert.with_row(3, "c", None).flush_if_over_limit(2)
    assert len(inserts(statements)) == 1
    assert len(insert) == 1
    assert [row[0] for row in fetch_table(conn, "names")] == [1, 2]


def test_execute_chunks_by_limit(conn, statements):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).with_limit(2).batch(conn)
    for n in range(1, 5):
        insert.with_row(n, f"name{n}", None)
    statements.clear()

    insert.execute_if_not_empty()

    executed = inserts(statements)
    assert len(executed) == 2
    assert executed[0] == executed[1]
    assert insert.statements_executed == 2
    assert [row[0] for row in fetch_table(conn, "names")] == [1, 2, 3, 4]


def test_remainder_chunk_uses_own_statement(conn, statements):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).with_limit(2).batch(conn)
    for n in range(1, 6):
        insert.with_row(n, f"name{n}", None)
    statements.clear()

    insert.execute_if_not_empty()

    executed = inserts(statements)
    assert len(executed) == 3
    assert executed[0] == executed[1] != executed[2]
    assert executed[2].count("(?, ?, ?)") == 1
    assert [row[0] for row in fetch_table(conn, "names")] == [1, 2, 3, 4, 5]


def test_execute_if_not_empty_on_empty_buffer(conn, statements):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).batch(conn)
    statements.clear()

    insert.execute_if_not_empty()

    assert inserts(statements) == []


def test_on_duplicate_updates_listed_columns(conn):
    config = UpsertConfig.create("names", ["id", "name", "note"]).on_duplicate(["name"])
    config.batch(conn).with_row(1, "A", "first").execute_if_not_empty()

    config.batch(conn).with_row(1, "B", "second").execute_if_not_empty()

    assert fetch_table(conn, "names") == [(1, "B", "first")]


def test_empty_on_duplicate_keeps_existing_row(conn):
    config = UpsertConfig.create("names", ["id", "name", "note"]).on_duplicate([])
    config.batch(conn).with_row(1, "A", None).execute_if_not_empty()

    config.batch(conn).with_row(1, "B", None).execute_if_not_empty()

    assert fetch_table(conn, "names") == [(1, "A", None)]


def test_on_duplicate_policies(conn):
    conn.exec_driver_sql("INSERT INTO names (id, name, note) VALUES (1, 'short', NULL), (2, 'kept', 'old')")
    config = UpsertConfig.create("names", ["id", "name", "note"]).on_duplicate(
        ["name", "note"], policy={"name": "prefer_longer", "note": "prefer_non_null"}
    )

    config.batch(conn).with_row(1, "much longer", "new").with_row(2, "x", "new").execute_if_not_empty()

    assert fetch_table(conn, "names") == [(1, "much longer", "new"), (2, "kept", "old")]


def test_formatted_field_values(resolver, conn):
    insert = (
        UpsertConfig.create("another_table", ["other_id", "second_other"])
        .with_resolver(resolver)
        .with_formatted("second_other", "other={}")
        .batch(conn)
        .with_row(resolver.unresolved("value1"), resolver.unresolved("value1"))
        .with_row(resolver.unresolved("value3"), "value3")
        .with_row(resolver.unresolved("value4"), resolver.unresolved("value4"))
    )

    insert.execute_if_not_empty()

    assert fetch_table(conn, "another_table")[5:] == [
        (10, 1, "other=1"),
        (11, 3, "other=value3"),
        (12, 4, "other=4"),
    ]


def test_resolved_identifiers_need_no_resolver(conn):
    UpsertConfig.create("names", ["id", "name", "note"]).batch(conn).with_row(
        ResolvedIdentifier(5), "five", None
    ).execute_if_not_empty()

    assert fetch_table(conn, "names") == [(5, "five", None)]


def test_assoc_row_projects_declared_columns(conn):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).batch(conn)

    insert.with_assoc_row({"id": 1, "name": "A", "extra": "ignored"}).execute_if_not_empty()

    assert fetch_table(conn, "names") == [(1, "A", None)]


def test_row_arity_must_match_columns(conn):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).batch(conn)

    with pytest.raises(RowArityError):
        insert.with_row(1, "A")


def test_on_duplicate_rejects_unknown_columns():
    config = UpsertConfig.create("names", ["id", "name"])

    with pytest.raises(ConfigurationError):
        config.on_duplicate(["missing"])
    with pytest.raises(ConfigurationError):
        config.on_duplicate(["name"], policy={"name": "prefer_random"})


def test_config_methods_return_copies(resolver):
    config = UpsertConfig.create("names", ["id", "name"])

    assert config.with_resolver(resolver).resolvers == (resolver,)
    assert config.resolvers == ()
    assert config.with_null_on_unresolved().null_on_unresolved
    assert not config.null_on_unresolved
    with pytest.raises(ConfigurationError):
        config.with_limit(0)


def test_flushed_placeholders_are_released(resolver, conn):
    insert = UpsertConfig.create("another_table", ["other_id", "second_other"]).with_resolver(resolver).batch(conn)
    insert.with_row(resolver.unresolved("value1"), "a").with_row(resolver.unresolved("value1"), "b")

    insert.execute_if_not_empty()

    assert isinstance(resolver.unresolved("value1"), UnresolvedIdentifier)


def test_resolved_rows_hold_placeholders_until_executed(resolver, conn):
    insert = UpsertConfig.create("another_table", ["other_id", "second_other"]).with_resolver(resolver).batch(conn)
    for n in range(3):
        insert.with_row(resolver.unresolved("value1"), f"row{n}")

    insert.flush_if_over_limit(2)

    assert len(insert) == 1
    assert isinstance(resolver.unresolved("value1"), ResolvedIdentifier)


def test_speculative_id_is_shared_between_batches(factory, conn):
    resolver = factory.create_single_value_resolver("some_table", "other", "id").with_auto_increment({})
    entities = UpsertConfig.create("some_table", ["id", "other"]).with_resolver(resolver).batch(conn)
    links = UpsertConfig.create("another_table", ["other_id", "second_other"]).with_resolver(resolver).batch(conn)
    entities.with_row(resolver.unresolved("new"), "new")
    links.with_row(resolver.unresolved("new"), "link")

    links.execute_if_not_empty()
    entities.execute_if_not_empty()

    assert fetch_table(conn, "some_table")[-1] == (10, "new")
    assert fetch_table(conn, "another_table")[-1] == (10, 10, "link")


def test_merge_conflicting_keeps_first_position_and_last_update():
    rows = [(1, "A", "x"), (2, "C", "y"), (1, "B", "z")]

    merged = merge_conflicting(rows, ("id", "name", "note"), ("name",), ("id",))

    assert merged == [(1, "B", "x"), (2, "C", "y")]


def test_merge_conflicting_follows_policies():
    rows = [(1, "short", None), (1, "x", "first"), (1, None, "second")]

    merged = merge_conflicting(
        rows,
        ("id", "name", "note"),
        ("name", "note"),
        ("id",),
        {"name": "prefer_longer", "note": "prefer_non_null"},
    )

    assert merged == [(1, "short", "first")]


def test_merge_conflicting_leaves_null_keys_and_do_nothing_alone():
    rows = [(None, "A", None), (None, "B", None)]

    assert merge_conflicting(rows, ("id", "name", "note"), ("name",), ("id",)) == rows
    assert merge_conflicting([(1, "A"), (1, "B")], ("id", "name"), (), ("id",)) == [(1, "A"), (1, "B")]


def test_same_key_twice_in_one_chunk_is_written_once(conn, statements):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).on_duplicate(["name"]).batch(conn)
    insert.with_row(1, "A", None).with_row(1, "B", "ignored")
    statements.clear()

    insert.execute_if_not_empty()

    executed = inserts(statements)
    assert len(executed) == 1
    assert executed[0].count("(?, ?, ?)") == 1
    assert fetch_table(conn, "names") == [(1, "B", None)]
    assert insert.executed_rows == 2


class FailingOnceResolver:
    """Delegates to a resolver but fails the n-th resolve call like a lost connection."""

    def __init__(self, resolver, fail_on):
        self.resolver = resolver
        self.fail_on = fail_on
        self.calls = 0

    def unresolved(self, value):
        return self.resolver.unresolved(value)

    def resolve(self, identifier):
        self.calls += 1
        if self.calls == self.fail_on:
            raise ConnectionError("connection lost")
        return self.resolver.resolve(identifier)


def test_rows_survive_a_failed_resolution_pass(resolver, conn):
    failing = FailingOnceResolver(resolver, fail_on=2)
    insert = UpsertConfig.create("another_table", ["other_id", "second_other"]).with_resolver(failing).batch(conn)
    insert.with_row(resolver.unresolved("value1"), "one").with_row(resolver.unresolved("value3"), "two")

    with pytest.raises(ConnectionError):
        insert.execute_if_not_empty()
    assert len(insert) == 2

    insert.execute_if_not_empty()

    assert insert.executed_rows == 2
    assert fetch_table(conn, "another_table")[5:] == [(10, 1, "one"), (11, 3, "two")]


def test_flush_rejects_non_positive_limit(conn):
    insert = UpsertConfig.create("names", ["id", "name", "note"]).batch(conn)

    with pytest.raises(ConfigurationError):
        insert.flush_if_over_limit(0)


def test_chunk_size_respects_bind_parameter_ceiling():
    wide = UpsertConfig.create("wide", [f"c{n}" for n in range(40)])

    assert wide.chunk_size() == MAX_BIND_PARAMS // 40
    assert wide.chunk_size(10) == 10
    assert UpsertConfig.create("names", ["id", "name"]).chunk_size() == 2000
