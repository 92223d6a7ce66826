"""
sql_templates.py - Reusable SQL generation for the batch upsert and resolvers

Contains the statement shapes shared by every loader: multi-row parameterized
INSERT ... ON CONFLICT statements and lookup SELECTs over one table.
"""

from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import column, select, table
from sqlalchemy.sql import Select

from bulkload.errors import ConfigurationError

POLICIES = ("prefer_incoming", "prefer_non_null", "prefer_longer")


def check_policy(policy: Mapping[str, str]) -> None:
    """Reject merge policies build_set does not know."""
    for col, mode in policy.items():
        if mode not in POLICIES:
            raise ConfigurationError(
                f"Unknown policy {mode!r} for column {col!r}. Use one of: {', '.join(POLICIES)}"
            )


def build_set(
    table_name: str,
    cols: Iterable[str],
    policy: Mapping[str, str] | None = None,
    quote: Callable[[str], str] = str,
) -> str:
    """Generate SET clause obeying policy."""
    policy = policy or {}
    tbl = quote(table_name)
    parts = []
    for col in cols:
        mode = policy.get(col, "prefer_incoming")
        c = quote(col)
        if mode == "prefer_incoming":
            parts.append(f"{c} = EXCLUDED.{c}")
        elif mode == "prefer_non_null":
            parts.append(f"{c} = COALESCE({tbl}.{c}, EXCLUDED.{c})")
        elif mode == "prefer_longer":
            parts.append(
                f"{c} = CASE WHEN {tbl}.{c} IS NULL OR length(EXCLUDED.{c}) > length({tbl}.{c}) "
                f"THEN EXCLUDED.{c} ELSE {tbl}.{c} END"
            )
        else:
            raise ConfigurationError(f"Unknown policy {mode!r} for column {col!r}")
    return ", ".join(parts)


def bind_name(row: int, col: int) -> str:
    return f"r{row}c{col}"


def generate_upsert(
    table_name: str,
    columns: list[str],
    rows_count: int,
    update_columns: list[str] | None = None,
    conflict_columns: list[str] | None = None,
    policy: Mapping[str, str] | None = None,
    quote: Callable[[str], str] = str,
) -> str:
    """
    Generate a multi-row upsert for ``rows_count`` rows.

    Without update columns conflicting rows are left untouched
    (ON CONFLICT DO NOTHING); otherwise the update columns take the values
    that would have been inserted, subject to the per-column policy.
    """
    if rows_count < 1:
        raise ValueError("rows_count must be at least 1")

    col_list = ", ".join(quote(c) for c in columns)
    values = ",\n       ".join(
        "(" + ", ".join(f":{bind_name(row, col)}" for col in range(len(columns))) + ")"
        for row in range(rows_count)
    )
    statement = f"INSERT INTO {quote(table_name)} ({col_list})\nVALUES {values}"

    if not update_columns:
        return f"{statement}\nON CONFLICT DO NOTHING"

    conflict = ", ".join(quote(c) for c in conflict_columns or columns[:1])
    upd = build_set(table_name, update_columns, policy, quote)
    return f"{statement}\nON CONFLICT ({conflict}) DO UPDATE SET {upd}"


def bind_params(rows: list[tuple]) -> dict[str, Any]:
    """Flatten resolved rows into the named parameters of generate_upsert."""
    params = {}
    for row_index, row in enumerate(rows):
        for col_index, value in enumerate(row):
            params[bind_name(row_index, col_index)] = value
    return params


def build_lookup(table_name: str, columns: list[str], conditions: Mapping[str, Any]) -> Select:
    """
    SELECT columns FROM table_name WHERE <conditions>.

    Scalar condition values compare with '=', collections with IN.
    """
    names = list(dict.fromkeys([*columns, *conditions]))
    tbl = table(table_name, *(column(name) for name in names))
    stmt = select(*(tbl.c[name] for name in columns))
    for name, value in conditions.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            stmt = stmt.where(tbl.c[name].in_(list(value)))
        else:
            stmt = stmt.where(tbl.c[name] == value)
    return stmt
