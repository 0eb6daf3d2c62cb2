"""Live schema introspection for PostgreSQL (public schema).

Reads information_schema / pg_catalog and builds TableSchema objects the
fixture factory and validator work from. Used by the schema regression
tests; nothing in the request path depends on it.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable

from psycopg2.extensions import cursor as PgCursor

from eventcore.infra.db import fetchall, txn

CursorFactory = Callable[[], AbstractContextManager[PgCursor]]

_COLUMNS_SQL = """
    SELECT c.column_name, c.data_type, c.udt_name, c.is_nullable, c.column_default,
           c.character_maximum_length, c.numeric_precision, c.numeric_scale,
           c.ordinal_position
    FROM information_schema.columns c
    WHERE c.table_schema = 'public' AND c.table_name = %s
    ORDER BY c.ordinal_position
"""

_CONSTRAINTS_SQL = """
    SELECT tc.constraint_name, tc.constraint_type, kcu.column_name,
           ccu.table_name AS foreign_table_name,
           ccu.column_name AS foreign_column_name
    FROM information_schema.table_constraints tc
    LEFT JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
    LEFT JOIN information_schema.constraint_column_usage ccu
      ON ccu.constraint_name = tc.constraint_name
     AND ccu.table_schema = tc.table_schema
    WHERE tc.table_schema = 'public' AND tc.table_name = %s
    ORDER BY tc.constraint_name, kcu.ordinal_position
"""

_INDEXES_SQL = """
    SELECT i.relname AS index_name,
           array_agg(a.attname ORDER BY k.ordinality) AS column_names,
           ix.indisunique AS is_unique
    FROM pg_class t
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_index ix ON t.oid = ix.indrelid
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN unnest(ix.indkey) WITH ORDINALITY k(colnum, ordinality) ON true
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.colnum
    WHERE n.nspname = 'public' AND t.relname = %s AND t.relkind = 'r'
    GROUP BY i.relname, ix.indisunique
    ORDER BY i.relname
"""

_TABLES_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = 'public' AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str
    udt_name: str
    nullable: bool
    default: str | None = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    position: int = 0

    @property
    def is_array(self) -> bool:
        return self.type == "ARRAY" or self.type.endswith("[]") or self.udt_name.startswith("_")

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @property
    def is_serial(self) -> bool:
        return bool(self.default and self.default.startswith("nextval("))


@dataclass(frozen=True)
class ForeignKey:
    column: str
    foreign_table: str
    foreign_column: str


@dataclass(frozen=True)
class IndexInfo:
    name: str
    columns: tuple[str, ...]
    unique: bool


@dataclass
class TableSchema:
    """Columns and constraints of one table."""

    table_name: str
    columns: dict[str, ColumnInfo] = field(default_factory=dict)
    primary: list[str] = field(default_factory=list)
    foreign: list[ForeignKey] = field(default_factory=list)
    unique: list[str] = field(default_factory=list)
    check: list[str] = field(default_factory=list)
    indexes: list[IndexInfo] = field(default_factory=list)

    def column_names(self) -> list[str]:
        return list(self.columns)

    def foreign_key_for(self, column: str) -> ForeignKey | None:
        for fk in self.foreign:
            if fk.column == column:
                return fk
        return None

    def as_dict(self) -> dict[str, Any]:
        """``{columns: {name: {type, nullable, udtName}}, constraints: {...}}``."""
        return {
            "tableName": self.table_name,
            "columns": {
                name: {"type": col.type, "nullable": col.nullable, "udtName": col.udt_name}
                for name, col in self.columns.items()
            },
            "constraints": {
                "primary": list(self.primary),
                "foreign": [
                    {
                        "column": fk.column,
                        "foreignTable": fk.foreign_table,
                        "foreignColumn": fk.foreign_column,
                    }
                    for fk in self.foreign
                ],
                "unique": list(self.unique),
            },
        }


def build_table_schema(
    table_name: str,
    column_rows: list[tuple],
    constraint_rows: list[tuple],
    index_rows: list[tuple] = (),
) -> TableSchema:
    """Assemble a TableSchema from raw catalog rows (see the *_SQL queries)."""
    schema = TableSchema(table_name=table_name)

    for name, data_type, udt_name, is_nullable, default, max_len, precision, scale, pos in column_rows:
        schema.columns[name] = ColumnInfo(
            name=name,
            type=data_type,
            udt_name=udt_name,
            nullable=is_nullable == "YES",
            default=default,
            max_length=max_len,
            precision=precision,
            scale=scale,
            position=pos,
        )

    for constraint_name, constraint_type, column, foreign_table, foreign_column in constraint_rows:
        if constraint_type == "PRIMARY KEY":
            if column and column not in schema.primary:
                schema.primary.append(column)
        elif constraint_type == "FOREIGN KEY":
            schema.foreign.append(ForeignKey(column, foreign_table, foreign_column))
        elif constraint_type == "UNIQUE":
            if column and column not in schema.unique:
                schema.unique.append(column)
        elif constraint_type == "CHECK":
            schema.check.append(constraint_name)

    for index_name, column_names, is_unique in index_rows:
        schema.indexes.append(IndexInfo(index_name, tuple(column_names), bool(is_unique)))

    return schema


def consistency_problems(schema: TableSchema) -> list[str]:
    """Constraints that point at columns the table does not have."""
    problems = []
    for column in schema.primary:
        if column not in schema.columns:
            problems.append(f"primary key on unknown column {column}")
    for column in schema.unique:
        if column not in schema.columns:
            problems.append(f"unique constraint on unknown column {column}")
    for fk in schema.foreign:
        if fk.column not in schema.columns:
            problems.append(f"foreign key on unknown column {fk.column}")
        if not fk.foreign_table or not fk.foreign_column:
            problems.append(f"foreign key {fk.column} has no target")
    return problems


class SchemaIntrospector:
    """Extracts and caches TableSchema objects from a live database.

    Args:
        cursor_factory: Zero-arg callable returning a cursor context manager,
            e.g. ``pool.transaction``. Defaults to ``txn`` (DATABASE_URL).
    """

    def __init__(self, cursor_factory: CursorFactory = txn) -> None:
        self._cursor_factory = cursor_factory
        self._cache: dict[str, TableSchema] = {}

    def list_tables(self) -> list[str]:
        with self._cursor_factory() as cur:
            return [row[0] for row in fetchall(cur, _TABLES_SQL)]

    def extract(self, table_name: str, *, refresh: bool = False) -> TableSchema:
        """Schema for one table.

        Raises:
            LookupError: The table does not exist in the public schema.
        """
        if not refresh and table_name in self._cache:
            return self._cache[table_name]

        with self._cursor_factory() as cur:
            column_rows = fetchall(cur, _COLUMNS_SQL, (table_name,))
            if not column_rows:
                raise LookupError(f"table {table_name} not found")
            constraint_rows = fetchall(cur, _CONSTRAINTS_SQL, (table_name,))
            index_rows = fetchall(cur, _INDEXES_SQL, (table_name,))

        schema = build_table_schema(table_name, column_rows, constraint_rows, index_rows)
        self._cache[table_name] = schema
        return schema

    def extract_many(self, table_names) -> dict[str, TableSchema]:
        return {name: self.extract(name) for name in table_names}

    @property
    def cached_tables(self) -> list[str]:
        return list(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
