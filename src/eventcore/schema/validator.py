"""Row validation against introspected table metadata."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import urlparse

from .introspect import ColumnInfo, TableSchema

RECOGNIZED_TYPES = frozenset(
    {
        "integer",
        "bigint",
        "smallint",
        "numeric",
        "decimal",
        "varchar",
        "text",
        "character",
        "character varying",
        "timestamp",
        "timestamptz",
        "date",
        "time",
        "boolean",
        "uuid",
        "json",
        "jsonb",
    }
)

KNOWN_STATUSES = frozenset(
    {
        "draft",
        "published",
        "archived",
        "cancelled",
        "canceled",
        "active",
        "inactive",
        "pending",
        "completed",
        "failed",
        "started",
        "paid",
        "payment_failed",
    }
)

_INTEGER_RANGES = {
    "smallint": (-(2**15), 2**15 - 1),
    "integer": (-(2**31), 2**31 - 1),
    "bigint": (-(2**63), 2**63 - 1),
}
_STRING_TYPES = ("character varying", "varchar", "character", "text")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^(\+33|0)[1-9](\d{2}){4}$")
_POSTAL_CODE_RE = re.compile(r"^\d{5}$")
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I
)


def is_recognized_type(column: ColumnInfo) -> bool:
    """True if the column's type (or udt name) is one the harness understands."""
    return (
        column.type in RECOGNIZED_TYPES
        or column.udt_name in RECOGNIZED_TYPES
        or column.is_array
        or column.type.startswith("timestamp")
        or column.type.startswith("time ")
    )


@dataclass
class ValidationResult:
    table_name: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_columns: int = 0
    validated_columns: int = 0

    @property
    def valid(self) -> bool:
        return not self.errors


def _parse_temporal(value: str) -> bool:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for parser in (datetime.fromisoformat, date.fromisoformat, time.fromisoformat):
        try:
            parser(text)
            return True
        except ValueError:
            continue
    return False


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    return None


def _temporal_value(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


class SchemaValidator:
    """Checks that a row (dict) conforms to a TableSchema."""

    def __init__(self, known_statuses=KNOWN_STATUSES) -> None:
        self.known_statuses = frozenset(s.lower() for s in known_statuses)

    def validate(self, schema: TableSchema, row: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult(
            table_name=schema.table_name,
            total_columns=len(schema.columns),
            validated_columns=len(row),
        )

        for name, column in schema.columns.items():
            result.errors.extend(self._column_errors(column, row, present=name in row))

        result.errors.extend(self._constraint_errors(schema, row))
        result.errors.extend(self._relation_errors(schema, row))

        for key in row:
            if key not in schema.columns:
                result.warnings.append(f"{key} is not a column of {schema.table_name}")

        return result

    def validate_types_only(self, schema: TableSchema, row: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult(
            table_name=schema.table_name,
            total_columns=len(schema.columns),
            validated_columns=len(row),
        )
        for name, column in schema.columns.items():
            value = row.get(name)
            if value is None:
                continue
            error = self.type_error(column, value)
            if error:
                result.errors.append(error)
        return result

    def _column_errors(self, column: ColumnInfo, row: Mapping[str, Any], *, present: bool) -> list[str]:
        name = column.name
        value = row.get(name)

        if value is None:
            # Omitted NOT NULL columns are fine when the database fills them in.
            if not column.nullable and (present or not column.has_default):
                return [f"{name} cannot be null (NOT NULL constraint)"]
            return []

        errors = []
        type_error = self.type_error(column, value)
        if type_error:
            errors.append(type_error)

        if column.max_length and isinstance(value, str) and len(value) > column.max_length:
            errors.append(
                f"{name} exceeds maximum length {column.max_length} (actual: {len(value)})"
            )

        if column.precision and column.scale is not None:
            precision_error = self._precision_error(column, value)
            if precision_error:
                errors.append(precision_error)

        format_error = self._format_error(name, value)
        if format_error:
            errors.append(format_error)

        dependency_error = self._dependency_error(name, value, row)
        if dependency_error:
            errors.append(dependency_error)

        return errors

    def type_error(self, column: ColumnInfo, value: Any) -> str | None:
        name = column.name
        kind = column.type.lower()
        udt = column.udt_name.lower()

        if column.is_array:
            if not isinstance(value, (list, tuple)):
                return f"{name} must be an array (got {type(value).__name__}: {value!r})"
            return None

        if kind in _INTEGER_RANGES:
            if isinstance(value, bool) or not isinstance(value, int):
                return f"{name} must be an integer (got {type(value).__name__}: {value!r})"
            low, high = _INTEGER_RANGES[kind]
            if not low <= value <= high:
                return f"{name} is out of range for {kind} (got {value})"
            return None

        if kind in ("numeric", "decimal"):
            number = _as_decimal(value)
            if number is None or number.is_nan():
                return f"{name} must be a valid number (got {type(value).__name__}: {value!r})"
            return None

        if kind in _STRING_TYPES:
            if not isinstance(value, str):
                return f"{name} must be a string (got {type(value).__name__}: {value!r})"
            return None

        if kind.startswith("timestamp") or kind.startswith("time") or kind == "date":
            if isinstance(value, (datetime, date, time)):
                return None
            if not isinstance(value, str):
                return f"{name} must be a date/time or string (got {type(value).__name__}: {value!r})"
            if not _parse_temporal(value):
                return f'{name} must be a valid date/time string (got "{value}")'
            return None

        if kind == "boolean":
            if not isinstance(value, bool):
                return f"{name} must be a boolean (got {type(value).__name__}: {value!r})"
            return None

        if kind == "uuid" or udt == "uuid":
            if isinstance(value, uuid.UUID):
                return None
            if not isinstance(value, str):
                return f"{name} must be a string UUID (got {type(value).__name__}: {value!r})"
            if not _UUID_RE.match(value):
                return f'{name} must be a valid UUID format (got "{value}")'
            return None

        if kind in ("json", "jsonb"):
            if not isinstance(value, (dict, list)):
                return f"{name} must be a JSON object (got {type(value).__name__}: {value!r})"
            return None

        return None

    def _precision_error(self, column: ColumnInfo, value: Any) -> str | None:
        number = _as_decimal(value)
        if number is None or not number.is_finite():
            return None

        _, digits, exponent = number.as_tuple()
        decimals = max(-exponent, 0)
        total_digits = max(len(digits), decimals)
        if total_digits > column.precision:
            return f"{column.name} exceeds total precision {column.precision} (got {total_digits} digits)"
        if decimals > column.scale:
            return f"{column.name} exceeds scale {column.scale} (got {decimals} decimal places)"
        return None

    def _format_error(self, name: str, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        lowered = name.lower()

        if "email" in lowered and not _EMAIL_RE.match(value):
            return f'{name} must be a valid email address (got "{value}")'

        if "url" in lowered:
            parsed = urlparse(value)
            if not parsed.scheme or not parsed.netloc:
                return f'{name} must be a valid URL (got "{value}")'

        if "phone" in lowered and not _PHONE_RE.match(re.sub(r"\s", "", value)):
            return f'{name} must be a valid French phone number (got "{value}")'

        if "postal_code" in lowered and not _POSTAL_CODE_RE.match(value):
            return f'{name} must be a valid French postal code (got "{value}")'

        if "status" in lowered and value.lower() not in self.known_statuses:
            return f'{name} must be one of: {", ".join(sorted(self.known_statuses))} (got "{value}")'

        return None

    def _dependency_error(self, name: str, value: Any, row: Mapping[str, Any]) -> str | None:
        lowered = name.lower()

        if "end_date" in lowered:
            start = row.get("start_date") or row.get("event_date")
            start_at, end_at = _temporal_value(start), _temporal_value(value)
            if start_at and end_at:
                try:
                    if end_at <= start_at:
                        return f"{name} must be after start_date"
                except TypeError:
                    return f"{name} and start_date mix naive and aware timestamps"

        number = _as_decimal(value)
        if number is None or not number.is_finite():
            return None

        if ("max_attendees" in lowered or "quantity" in lowered) and number <= 0:
            return f"{name} must be greater than 0"

        if ("price" in lowered or lowered == "amount") and number < 0:
            return f"{name} cannot be negative"

        return None

    def _constraint_errors(self, schema: TableSchema, row: Mapping[str, Any]) -> list[str]:
        errors = []
        for column in schema.primary:
            if not row.get(column):
                errors.append(f"Primary key {column} cannot be null")
        for column in schema.unique:
            if not row.get(column):
                errors.append(f"Unique column {column} cannot be null")
        for fk in schema.foreign:
            if not row.get(fk.column):
                errors.append(f"Foreign key {fk.column} cannot be null")
        return errors

    def _relation_errors(self, schema: TableSchema, row: Mapping[str, Any]) -> list[str]:
        errors = []
        for fk in schema.foreign:
            value = row.get(fk.column)
            if isinstance(value, int) and not isinstance(value, bool) and value <= 0:
                errors.append(f"Foreign key {fk.column} must be a positive ID (got {value})")
        return errors
