"""
config.py - Settings read from the environment / .env

PG_URL or DATABASE_URL      write connection
READ_DATABASE_URL           read connection (defaults to the write one)
BULKLOAD_BATCH_SIZE         rows per flush (default 2000)
BULKLOAD_LOG_LEVEL          logging level (default INFO)
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

from bulkload.errors import ConfigurationError

load_dotenv()

DEFAULT_BATCH_SIZE = 2000
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    read_database_url: str | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        raw_batch = env.get("BULKLOAD_BATCH_SIZE") or str(DEFAULT_BATCH_SIZE)
        try:
            batch_size = int(raw_batch)
        except ValueError:
            raise ConfigurationError(f"BULKLOAD_BATCH_SIZE must be an integer, got {raw_batch!r}") from None
        if batch_size < 1:
            raise ConfigurationError(f"BULKLOAD_BATCH_SIZE must be positive, got {batch_size}")

        log_level = (env.get("BULKLOAD_LOG_LEVEL") or "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigurationError(f"Unknown BULKLOAD_LOG_LEVEL {log_level!r}")

        return cls(
            database_url=env.get("PG_URL") or env.get("DATABASE_URL"),
            read_database_url=env.get("READ_DATABASE_URL"),
            batch_size=batch_size,
            log_level=log_level,
        )

    def require_database_url(self) -> str:
        if not self.database_url:
            raise ConfigurationError("Set PG_URL or DATABASE_URL in your .env")
        return self.database_url


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger().setLevel(level)
