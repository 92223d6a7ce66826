"""
resolvers.py - Natural key -> surrogate id resolution against database tables

SingleTableResolver maps one lookup column to the table's id column,
CombinedTableResolver maps (value, foreign natural key) pairs through a
junction table. Both look keys up lazily, in one query per resolution pass,
and can hand out ids for rows that do not exist yet by inserting them inside
a transaction that is rolled back afterwards.
"""

import logging
from typing import Any, Hashable, Mapping

from sqlalchemy.engine import Connection

from bulkload.errors import IdentifierNotResolved
from bulkload.identifiers import Identifier, IdentifierCache, IdResolver, ResolvedIdentifier
from bulkload.sql_templates import build_lookup
from bulkload.upsert import UpsertConfig

logger = logging.getLogger(__name__)


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


class SingleTableResolver:
    def __init__(self, conn: Connection, table_name: str, search_field: str, target_field: str):
        self.conn = conn
        self.table_name = table_name
        self.search_field = search_field
        self.target_field = target_field
        self.filter: dict[str, Any] = {}
        self.auto_increment: dict[str, Any] | None = None
        self._cache = IdentifierCache(f"{table_name}.{search_field}")

    def _copy(self) -> "SingleTableResolver":
        resolver = SingleTableResolver(self.conn, self.table_name, self.search_field, self.target_field)
        resolver.filter = dict(self.filter)
        resolver.auto_increment = dict(self.auto_increment) if self.auto_increment is not None else None
        return resolver

    def with_filter(self, filter: Mapping[str, Any]) -> "SingleTableResolver":
        resolver = self._copy()
        resolver.filter = dict(filter)
        return resolver

    def with_auto_increment(self, default_row: Mapping[str, Any]) -> "SingleTableResolver":
        """Allocate ids for missing keys using ``default_row`` for the other columns."""
        resolver = self._copy()
        resolver.auto_increment = dict(default_row)
        return resolver

    def unresolved(self, value: Hashable) -> Identifier:
        return self._cache.unresolved(value)

    def resolve(self, identifier: Identifier) -> int:
        if isinstance(identifier, ResolvedIdentifier):
            return identifier.value
        if not self._cache.owns(identifier):
            raise IdentifierNotResolved(getattr(identifier, "key", None))

        self._cache.requeue(identifier)
        self._resolve_pending()
        return self._cache.find(identifier)

    def _resolve_pending(self) -> None:
        pending = self._cache.drain()
        if not pending:
            return

        remaining = {str(key): key for key in pending}
        self._fetch(remaining)
        logger.debug("[%s] found %d of %d keys", self._cache.name, len(pending) - len(remaining), len(pending))

        if remaining and self.auto_increment is not None:
            self._allocate(remaining)

    def _fetch(self, remaining: dict[str, Hashable]) -> None:
        stmt = build_lookup(
            self.table_name,
            [self.target_field, self.search_field],
            {self.search_field: list(remaining.values()), **self.filter},
        )
        for target, search in self.conn.execute(stmt):
            key = remaining.pop(str(search), None)
            if key is not None:
                self._cache.store(key, target)

    def _allocate(self, remaining: dict[str, Hashable]) -> None:
        # the row has to match the filter or the read-back below would miss it
        template = {
            **self.auto_increment,
            **{name: value for name, value in self.filter.items() if not _is_collection(value)},
        }
        template.pop(self.search_field, None)
        insert = UpsertConfig.create(self.table_name, [*template, self.search_field])
        requested = len(remaining)

        with self.conn.begin_nested() as savepoint:
            batch = insert.batch(self.conn)
            for key in remaining.values():
                batch.with_row(*template.values(), key)
            batch.execute_if_not_empty()
            self._fetch(remaining)
            savepoint.rollback()

        logger.debug("[%s] allocated %d ids", self._cache.name, requested - len(remaining))


class CombinedTableResolver:
    """
    Resolves (search value, foreign natural key) pairs.

    The foreign natural key goes through ``foreign_resolver`` first; pairs whose
    foreign key does not resolve stay unresolved and are never allocated.
    """

    def __init__(
        self,
        conn: Connection,
        table_name: str,
        search_field: str,
        target_field: str,
        foreign_field: str,
        foreign_resolver: IdResolver,
    ):
        self.conn = conn
        self.table_name = table_name
        self.search_field = search_field
        self.target_field = target_field
        self.foreign_field = foreign_field
        self.foreign_resolver = foreign_resolver
        self.default_row: dict[str, Any] = {}
        self.allocate = True
        self._cache = IdentifierCache(f"{table_name}.({search_field}, {foreign_field})")
        self._foreign: dict[Hashable, Identifier] = {}

    def _copy(self) -> "CombinedTableResolver":
        resolver = CombinedTableResolver(
            self.conn,
            self.table_name,
            self.search_field,
            self.target_field,
            self.foreign_field,
            self.foreign_resolver,
        )
        resolver.default_row = dict(self.default_row)
        resolver.allocate = self.allocate
        return resolver

    def with_auto_increment(self, default_row: Mapping[str, Any]) -> "CombinedTableResolver":
        resolver = self._copy()
        resolver.default_row = dict(default_row)
        resolver.allocate = True
        return resolver

    def without_auto_increment(self) -> "CombinedTableResolver":
        resolver = self._copy()
        resolver.allocate = False
        return resolver

    def unresolved(self, value: tuple[Hashable, Hashable]) -> Identifier:
        local, foreign_key = value
        identifier = self._cache.unresolved((local, foreign_key))
        if not isinstance(identifier, ResolvedIdentifier):
            self._depend_on(foreign_key)
        return identifier

    def resolve(self, identifier: Identifier) -> int:
        if isinstance(identifier, ResolvedIdentifier):
            return identifier.value
        if not self._cache.owns(identifier):
            raise IdentifierNotResolved(getattr(identifier, "key", None))

        self._cache.requeue(identifier)
        self._resolve_pending()
        return self._cache.find(identifier)

    def _depend_on(self, foreign_key: Hashable) -> None:
        if foreign_key in self._foreign:
            return
        foreign = self.foreign_resolver.unresolved(foreign_key)
        foreign.acquire()
        self._foreign[foreign_key] = foreign

    def _resolve_foreign(self) -> dict[Hashable, int]:
        foreign, self._foreign = self._foreign, {}
        foreign_ids = {}
        for foreign_key, identifier in foreign.items():
            try:
                foreign_ids[foreign_key] = self.foreign_resolver.resolve(identifier)
            except IdentifierNotResolved:
                logger.debug("[%s] foreign key %r not resolved", self._cache.name, foreign_key)
            finally:
                identifier.release()
        return foreign_ids

    def _resolve_pending(self) -> None:
        pending = self._cache.drain()
        if not pending:
            return

        for _, foreign_key in pending:
            self._depend_on(foreign_key)
        foreign_ids = self._resolve_foreign()

        remaining = {
            (str(local), foreign_key): (local, foreign_key)
            for local, foreign_key in pending
            if foreign_key in foreign_ids
        }
        if not remaining:
            return

        self._fetch(remaining, foreign_ids)
        if remaining and self.allocate:
            self._allocate(remaining, foreign_ids)

    def _fetch(self, remaining: dict[tuple, tuple], foreign_ids: dict[Hashable, int]) -> None:
        reverse: dict[int, list[Hashable]] = {}
        for foreign_key, foreign_id in foreign_ids.items():
            reverse.setdefault(foreign_id, []).append(foreign_key)

        stmt = build_lookup(
            self.table_name,
            [self.target_field, self.search_field, self.foreign_field],
            {
                self.search_field: list({local for local, _ in remaining.values()}),
                self.foreign_field: list(reverse),
            },
        )
        for target, search, foreign_id in self.conn.execute(stmt):
            for foreign_key in reverse.get(foreign_id, ()):
                key = remaining.pop((str(search), foreign_key), None)
                if key is not None:
                    self._cache.store(key, target)

    def _allocate(self, remaining: dict[tuple, tuple], foreign_ids: dict[Hashable, int]) -> None:
        template = {
            name: value
            for name, value in self.default_row.items()
            if name not in (self.search_field, self.foreign_field)
        }
        insert = UpsertConfig.create(self.table_name, [*template, self.search_field, self.foreign_field])
        requested = len(remaining)

        with self.conn.begin_nested() as savepoint:
            batch = insert.batch(self.conn)
            for local, foreign_key in remaining.values():
                batch.with_row(*template.values(), local, foreign_ids[foreign_key])
            batch.execute_if_not_empty()
            self._fetch(remaining, foreign_ids)
            savepoint.rollback()

        logger.debug("[%s] allocated %d ids", self._cache.name, requested - len(remaining))


class TableResolverFactory:
    def __init__(self, conn: Connection):
        self.conn = conn

    def create_single_value_resolver(
        self, table_name: str, search_field: str, target_field: str
    ) -> SingleTableResolver:
        return SingleTableResolver(self.conn, table_name, search_field, target_field)

    def create_combined_value_resolver(
        self,
        table_name: str,
        target_field: str,
        search_field: str,
        foreign_field: str,
        foreign_resolver: IdResolver,
    ) -> CombinedTableResolver:
        return CombinedTableResolver(
            self.conn, table_name, search_field, target_field, foreign_field, foreign_resolver
        )
