"""
upsert.py - Buffered multi-row INSERT ... ON CONFLICT with deferred identifiers

UpsertConfig is the immutable description of one target table, BatchUpsert
the mutable buffer that resolves identifiers and executes statements in chunks.

    config = (
        UpsertConfig.create("products", ["id", "sku", "type_id"])
        .with_resolver(product_resolver)
        .on_duplicate(["type_id"])
    )
    batch = config.batch(conn)
    for row in rows:
        batch.with_row(product_resolver.unresolved(row["sku"]), row["sku"], row["type"])
        batch.flush_if_over_limit()
    batch.execute_if_not_empty()
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.sql.elements import TextClause

from bulkload.errors import ConfigurationError, IdentifierNotResolved, RowArityError
from bulkload.identifiers import Identifier, IdResolver
from bulkload.sql_templates import bind_params, check_policy, generate_upsert

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 2000
# psycopg / PostgreSQL protocol limit on parameters per statement
MAX_BIND_PARAMS = 65535


def merge_conflicting(
    rows: list[tuple],
    columns: tuple[str, ...],
    update_columns: tuple[str, ...],
    conflict_columns: tuple[str, ...],
    policy: Mapping[str, str] | None = None,
) -> list[tuple]:
    """
    Collapse rows sharing a conflict key into one, as if applied in order.

    The first row keeps its position and the values of columns that are not
    updated on conflict; update columns are merged under their policy.
    Keys containing NULL never conflict.
    """
    if not update_columns:
        return rows
    policy = policy or {}
    key_idx = [columns.index(name) for name in conflict_columns]
    upd_idx = [(columns.index(name), policy.get(name, "prefer_incoming")) for name in update_columns]

    merged: list[list] = []
    seen: dict[tuple, list] = {}
    for row in rows:
        key = tuple(row[i] for i in key_idx)
        current = seen.get(key) if None not in key else None
        if current is None:
            current = list(row)
            merged.append(current)
            if None not in key:
                seen[key] = current
            continue
        for index, mode in upd_idx:
            old, new = current[index], row[index]
            if mode == "prefer_non_null":
                current[index] = old if old is not None else new
            elif mode == "prefer_longer":
                if old is None or (new is not None and len(str(new)) > len(str(old))):
                    current[index] = new
            else:
                current[index] = new
    return [tuple(row) for row in merged]


@dataclass(frozen=True)
class UpsertConfig:
    table: str
    columns: tuple[str, ...]
    update_columns: tuple[str, ...] = ()
    conflict_columns: tuple[str, ...] = ()
    policy: Mapping[str, str] = field(default_factory=dict)
    resolvers: tuple[IdResolver, ...] = ()
    null_on_unresolved: bool = False
    formatted: Mapping[str, str] = field(default_factory=dict)
    limit: int = DEFAULT_LIMIT

    @classmethod
    def create(cls, table: str, columns: list[str]) -> "UpsertConfig":
        if not columns:
            raise ConfigurationError(f"No columns declared for {table}")
        if len(set(columns)) != len(columns):
            raise ConfigurationError(f"Duplicate columns declared for {table}: {columns}")
        return cls(table=table, columns=tuple(columns))

    def with_resolver(self, resolver: IdResolver) -> "UpsertConfig":
        return replace(self, resolvers=(*self.resolvers, resolver))

    def with_null_on_unresolved(self) -> "UpsertConfig":
        return replace(self, null_on_unresolved=True)

    def with_formatted(self, column: str, fmt: str) -> "UpsertConfig":
        self._check_columns([column])
        return replace(self, formatted={**self.formatted, column: fmt})

    def with_limit(self, limit: int) -> "UpsertConfig":
        if limit < 1:
            raise ConfigurationError(f"Flush limit must be positive, got {limit}")
        return replace(self, limit=limit)

    def on_duplicate(
        self,
        columns: list[str],
        key: list[str] | None = None,
        policy: Mapping[str, str] | None = None,
    ) -> "UpsertConfig":
        """
        Columns to overwrite when a row conflicts on ``key``.

        ``key`` defaults to the first declared column. Columns left out keep
        their stored value; an empty list turns conflicts into no-ops.
        """
        key = list(key) if key else [self.columns[0]]
        self._check_columns([*columns, *key])
        policy = dict(policy or {})
        check_policy(policy)
        return replace(
            self,
            update_columns=tuple(columns),
            conflict_columns=tuple(key),
            policy=policy,
        )

    def chunk_size(self, limit: int | None = None) -> int:
        """Rows per statement: the limit, capped by the bind parameter ceiling."""
        return max(1, min(limit or self.limit, MAX_BIND_PARAMS // len(self.columns)))

    def batch(self, conn: Connection) -> "BatchUpsert":
        return BatchUpsert(self, conn)

    def _check_columns(self, names) -> None:
        unknown = [name for name in names if name not in self.columns]
        if unknown:
            raise ConfigurationError(f"Columns {unknown} are not declared for {self.table}")


class BatchUpsert:
    """
    Row buffer for one UpsertConfig.

    Rows keep their insertion order across flushes. A row whose identifier no
    resolver can resolve is dropped, or gets NULL in that field when the
    config says so. Database errors are not caught here.
    """

    def __init__(self, config: UpsertConfig, conn: Connection):
        self.config = config
        self.conn = conn
        self._rows: list[tuple] = []
        self._resolved: list[tuple[tuple, list[Identifier]]] = []
        self._statements: dict[int, TextClause] = {}
        self.executed_rows = 0
        self.dropped_rows = 0
        self.statements_executed = 0

    def __len__(self) -> int:
        return len(self._rows) + len(self._resolved)

    def with_row(self, *values: Any) -> "BatchUpsert":
        if len(values) != len(self.config.columns):
            raise RowArityError(self.config.table, len(self.config.columns), len(values))
        for value in values:
            if isinstance(value, Identifier):
                value.acquire()
        self._rows.append(values)
        return self

    def with_assoc_row(self, row: Mapping[str, Any]) -> "BatchUpsert":
        return self.with_row(*(row.get(name) for name in self.config.columns))

    def flush_if_over_limit(self, limit: int | None = None) -> "BatchUpsert":
        if limit is None:
            limit = self.config.limit
        elif limit < 1:
            raise ConfigurationError(f"Flush limit must be positive, got {limit}")
        if len(self) > limit:
            self._resolve_rows()
            self._execute_chunks(self.config.chunk_size(limit))
        return self

    def execute_if_not_empty(self) -> "BatchUpsert":
        self._resolve_rows()
        self._execute_chunks(self.config.chunk_size())
        if self._resolved:
            self._execute(len(self._resolved))
        return self

    # ────────────────────────────── resolution

    def _resolve_value(self, value: Identifier) -> int:
        for resolver in self.config.resolvers:
            try:
                return resolver.resolve(value)
            except IdentifierNotResolved:
                continue
        # resolved identifiers need no resolver, anything else raises here
        return value.resolve({})

    def _resolve_rows(self) -> None:
        # rows leave the buffer only once resolved, so an error keeps the rest
        done = 0
        try:
            for row in self._rows:
                self._resolve_row(row)
                done += 1
        finally:
            del self._rows[:done]

    def _resolve_row(self, row: tuple) -> None:
        values = list(row)
        held = []
        released = []
        dropped = False
        for index, value in enumerate(values):
            if not isinstance(value, Identifier):
                continue
            if dropped:
                released.append(value)
                continue
            try:
                values[index] = self._resolve_value(value)
                held.append(value)
            except IdentifierNotResolved:
                released.append(value)
                if not self.config.null_on_unresolved:
                    dropped = True
                    continue
                values[index] = None

        if dropped:
            for value in [*held, *released]:
                value.release()
            self.dropped_rows += 1
            logger.debug("Dropped unresolvable row for %s: %r", self.config.table, row)
            return

        for value in released:
            value.release()
        formatted = self.config.formatted
        for index, name in enumerate(self.config.columns):
            if name in formatted and values[index] is not None:
                values[index] = formatted[name].format(values[index])
        self._resolved.append((tuple(values), held))

    # ────────────────────────────── execution

    def _statement(self, rows_count: int) -> TextClause:
        if rows_count not in self._statements:
            cfg = self.config
            quote = self.conn.dialect.identifier_preparer.quote
            self._statements[rows_count] = text(
                generate_upsert(
                    cfg.table,
                    list(cfg.columns),
                    rows_count,
                    list(cfg.update_columns),
                    list(cfg.conflict_columns),
                    cfg.policy,
                    quote,
                )
            )
        return self._statements[rows_count]

    def _execute_chunks(self, limit: int) -> None:
        while len(self._resolved) >= limit:
            self._execute(limit)

    def _execute(self, rows_count: int) -> None:
        cfg = self.config
        chunk = self._resolved[:rows_count]
        rows = merge_conflicting(
            [values for values, _ in chunk], cfg.columns, cfg.update_columns, cfg.conflict_columns, cfg.policy
        )
        self.conn.execute(self._statement(len(rows)), bind_params(rows))
        del self._resolved[:rows_count]
        self.executed_rows += rows_count
        self.statements_executed += 1
        logger.debug("Flushed %d rows into %s", rows_count, self.config.table)
        for _, held in chunk:
            for identifier in held:
                identifier.release()
