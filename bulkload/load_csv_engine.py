#!/usr/bin/env python
"""
load_csv_engine.py - Generic CSV → database loader engine

Each CSV row is projected onto the columns of one target table. Columns that
reference other rows by natural key (a SKU, a title + SKU pair, ...) become
identifiers that are resolved right before each batch is written.

Usage: python -m bulkload.load_csv_engine --config catalog_loader products product_values
"""

import argparse
import importlib
import logging
import pathlib
import sys
import time
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping

import pandas as pd
from sqlalchemy import func, select, table
from sqlalchemy.engine import Connection
from tqdm import tqdm

from bulkload.config import DEFAULT_BATCH_SIZE, Settings, configure_logging
from bulkload.db import ConnectionPool
from bulkload.errors import ConfigurationError
from bulkload.identifiers import IdResolver
from bulkload.models import init_db
from bulkload.resolvers import TableResolverFactory
from bulkload.upsert import BatchUpsert, UpsertConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ref:
    """Column value looked up through ``lookup`` by the record's ``field``."""
    lookup: str
    field: str
    foreign_field: str | None = None


def ref(lookup: str, field: str, foreign_field: str | None = None) -> Ref:
    return Ref(lookup, field, foreign_field)


def clean_value(value: Any) -> Any:
    """Empty CSV cells and NaN become NULL"""
    if isinstance(value, str):
        return value if value != "" else None
    if value is None or pd.isna(value):
        return None
    return value


class CSVLoader:
    def __init__(
        self,
        entity: str,
        csv_paths: Mapping[str, str],
        entities: Mapping[str, dict],
        lookups: Mapping[str, dict],
        source_name: str = "UNKNOWN",
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if entity not in entities:
            raise ConfigurationError(f"No entity definition for: {entity}")
        self.entity = entity
        self.spec = entities[entity]
        self.csv_path = pathlib.Path(csv_paths[entity]) if entity in csv_paths else None
        self.lookups = lookups
        self.source_name = source_name
        self.batch_size = batch_size

        for source in self.spec["columns"].values():
            if isinstance(source, Ref) and source.lookup not in lookups:
                raise ConfigurationError(f"Unknown lookup {source.lookup!r} in entity {entity}")

    def _used_lookups(self) -> list[str]:
        names = [source.lookup for source in self.spec["columns"].values() if isinstance(source, Ref)]
        return list(dict.fromkeys(names))

    def build_resolvers(self, conn: Connection) -> dict[str, IdResolver]:
        """Create a resolver per lookup this entity uses, foreign ones included."""
        factory = TableResolverFactory(conn)
        resolvers: dict[str, IdResolver] = {}

        def build(name: str, chain: tuple = ()) -> IdResolver:
            if name in resolvers:
                return resolvers[name]
            if name in chain:
                raise ConfigurationError(f"Lookup cycle: {' -> '.join((*chain, name))}")
            if name not in self.lookups:
                raise ConfigurationError(f"Unknown lookup: {name}")

            lookup = self.lookups[name]
            auto_increment = lookup.get("auto_increment")
            if "foreign_lookup" in lookup:
                foreign = build(lookup["foreign_lookup"], (*chain, name))
                resolver = factory.create_combined_value_resolver(
                    lookup["table"], lookup.get("target", "id"), lookup["search"], lookup["foreign"], foreign
                )
                if auto_increment is False:
                    resolver = resolver.without_auto_increment()
                elif auto_increment:
                    resolver = resolver.with_auto_increment(auto_increment)
            else:
                resolver = factory.create_single_value_resolver(
                    lookup["table"], lookup["search"], lookup.get("target", "id")
                )
                if lookup.get("filter"):
                    resolver = resolver.with_filter(lookup["filter"])
                if auto_increment is not None and auto_increment is not False:
                    resolver = resolver.with_auto_increment(auto_increment)

            resolvers[name] = resolver
            return resolver

        for name in self._used_lookups():
            build(name)
        return resolvers

    def build_batch(self, conn: Connection, resolvers: Mapping[str, IdResolver]) -> BatchUpsert:
        spec = self.spec
        config = UpsertConfig.create(spec["table"], list(spec["columns"])).with_limit(self.batch_size)
        for name in self._used_lookups():
            config = config.with_resolver(resolvers[name])
        if spec.get("null_on_unresolved"):
            config = config.with_null_on_unresolved()
        for column, fmt in spec.get("formatted", {}).items():
            config = config.with_formatted(column, fmt)
        config = config.on_duplicate(
            spec.get("on_duplicate", []),
            key=spec.get("key"),
            policy=spec.get("policy"),
        )
        return config.batch(conn)

    def project(self, record: Mapping[str, Any], resolvers: Mapping[str, IdResolver]) -> tuple:
        """Turn one CSV record into a row of literal values and identifiers."""
        values = []
        for source in self.spec["columns"].values():
            if not isinstance(source, Ref):
                values.append(clean_value(record.get(source)))
                continue

            natural_key = clean_value(record.get(source.field))
            if natural_key is not None and source.foreign_field:
                foreign_key = clean_value(record.get(source.foreign_field))
                natural_key = (natural_key, foreign_key) if foreign_key is not None else None

            if natural_key is None:
                values.append(None)
            else:
                values.append(resolvers[source.lookup].unresolved(natural_key))
        return tuple(values)

    def load_records(self, conn: Connection, records: Iterable[Mapping[str, Any]]) -> BatchUpsert:
        """Write records through one batch; the caller owns the transaction."""
        resolvers = self.build_resolvers(conn)
        batch = self.build_batch(conn, resolvers)
        for record in records:
            batch.with_row(*self.project(record, resolvers)).flush_if_over_limit()
        batch.execute_if_not_empty()
        return batch

    def read_records(self) -> Iterator[dict]:
        if self.csv_path is None:
            raise ConfigurationError(f"No CSV path configured for {self.entity}")
        reader = pd.read_csv(self.csv_path, dtype=str, keep_default_na=False, chunksize=self.batch_size)
        for chunk in tqdm(reader, desc=f"Reading {self.csv_path.name}", unit="chunk"):
            yield from chunk.to_dict("records")

    def count_rows(self, pool: ConnectionPool) -> int:
        with pool.read() as conn:
            return conn.execute(select(func.count()).select_from(table(self.spec["table"]))).scalar_one()

    def load(self, pool: ConnectionPool) -> BatchUpsert:
        """Main loading logic"""
        target = self.spec["table"]
        logger.info("Loading %s from %s (source: %s)", self.entity, self.csv_path, self.source_name)

        t0 = time.time()
        before = self.count_rows(pool)
        try:
            with pool.write() as conn:
                batch = self.load_records(conn, self.read_records())
        except Exception as e:
            logger.error("Load of %s failed and rolled back: %s: %s", self.entity, type(e).__name__, e)
            raise

        after = self.count_rows(pool)
        elapsed = time.time() - t0
        logger.info(
            "✓ %s: +%s rows | %s written | %s dropped | %.1fs | source '%s'",
            target, f"{after - before:,}", f"{batch.executed_rows:,}", f"{batch.dropped_rows:,}",
            elapsed, self.source_name,
        )
        return batch


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Load CSV files into the database through batched upserts")
    parser.add_argument("entities", nargs="*", help="entities to load, in order (default: all)")
    parser.add_argument("--config", default="catalog_loader", help="loader configuration module")
    parser.add_argument("--file", help="CSV file to use instead of the configured path (one entity only)")
    parser.add_argument("--init-db", action="store_true", help="create the catalog tables first")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        sys.exit(f"[ERROR] {e}")
    configure_logging(settings.log_level)

    module = args.config if "." in args.config else f"bulkload.loaders.{args.config}"
    loader = importlib.import_module(module)

    entities = args.entities or list(loader.ENTITIES)
    csv_paths = dict(loader.CSV_PATHS)
    if args.file:
        if len(entities) != 1:
            parser.error("--file needs exactly one entity")
        csv_paths[entities[0]] = args.file

    try:
        pool = ConnectionPool.from_settings(settings)
    except ConfigurationError as e:
        sys.exit(f"[ERROR] {e}")

    try:
        if args.init_db:
            init_db(pool.write_engine)
        for entity in entities:
            CSVLoader(
                entity=entity,
                csv_paths=csv_paths,
                entities=loader.ENTITIES,
                lookups=loader.LOOKUPS,
                source_name=loader.SOURCE_NAME,
                batch_size=settings.batch_size,
            ).load(pool)
    finally:
        pool.dispose()


if __name__ == "__main__":
    main()
