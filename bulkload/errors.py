"""
errors.py - Exceptions raised by the bulk loader
"""


class BulkLoadError(Exception):
    """Base class for every error raised by bulkload itself."""


class IdentifierNotResolved(BulkLoadError, LookupError):
    """A placeholder key has no backing row and could not be allocated."""

    def __init__(self, key=None):
        self.key = key
        super().__init__(f"Identifier not resolved: {key!r}" if key is not None else "Identifier not resolved")


class ConfigurationError(BulkLoadError, ValueError):
    """Invalid settings, loader configuration or builder configuration."""


class RowArityError(BulkLoadError, ValueError):
    """A row does not match the number of declared columns."""

    def __init__(self, table: str, expected: int, got: int):
        self.table = table
        self.expected = expected
        self.got = got
        super().__init__(f"Row for {table} has {got} values, expected {expected}")
