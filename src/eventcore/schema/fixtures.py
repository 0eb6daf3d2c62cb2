"""Fixture rows for the schema regression harness.

Each known table has a generator producing a row that satisfies the
harness DDL (tests/sql/harness_tables.sql). Tables without one fall back
to type-driven generation from their introspected columns.
"""

from __future__ import annotations

import itertools
import random
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

from .introspect import ColumnInfo, TableSchema

Row = dict[str, Any]
Generator = Callable[["FixtureFactory", int], Row]

CRITICAL_TABLES = ("users", "events", "guests", "tickets")


def _price(rng: random.Random, low: int = 0, high: int = 20000) -> Decimal:
    return (Decimal(rng.randint(low, high)) / 100).quantize(Decimal("0.01"))


def _phone(rng: random.Random) -> str:
    return "+336" + "".join(str(rng.randint(0, 9)) for _ in range(8))


def _users(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "email": factory.email(seq),
        "first_name": factory.rng.choice(["Alice", "Bruno", "Chloe", "David"]),
        "last_name": factory.rng.choice(["Martin", "Bernard", "Dubois", "Moreau"]),
        "password_hash": uuid.uuid4().hex,
        "phone": _phone(factory.rng),
        "role": "user",
        "status": "active",
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _events(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "title": f"Event {seq}",
        "description": "Generated event",
        "event_date": factory.now + timedelta(days=factory.rng.randint(1, 365)),
        "location": f"{factory.rng.randint(1, 200)} rue de Test, Paris",
        "max_attendees": factory.rng.randint(1, 1000),
        "organizer_id": factory.ref_id(),
        "status": factory.rng.choice(["draft", "published"]),
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _guests(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "first_name": "Guest",
        "last_name": f"Number{seq}",
        "email": factory.email(seq),
        "phone": _phone(factory.rng),
        "event_id": factory.ref_id(),
        "checked_in": False,
        "check_in_time": None,
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _ticket_types(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "event_id": factory.ref_id(),
        "name": f"Ticket type {seq}",
        "description": None,
        "type": factory.rng.choice(["standard", "vip"]),
        "quantity": factory.rng.randint(1, 500),
        "price": _price(factory.rng),
        "currency": "EUR",
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _tickets(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "ticket_code": f"TKT-{seq}-{uuid.uuid4().hex[:12].upper()}",
        "qr_code_data": uuid.uuid4().hex,
        "ticket_type_id": factory.ref_id(),
        "event_guest_id": factory.ref_id(),
        "price": _price(factory.rng),
        "currency": "EUR",
        "status": "active",
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _marketplace_designers(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "user_id": factory.ref_id(),
        "brand_name": f"Studio {seq}",
        "bio": None,
        "specialties": ["wedding", "corporate"],
        "email": factory.email(seq),
        "portfolio_url": f"https://portfolio.example.com/{seq}",
        "status": "active",
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _marketplace_templates(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "designer_id": factory.ref_id(),
        "name": f"Template {seq}",
        "description": "Generated template",
        "category": factory.rng.choice(["wedding", "birthday", "corporate"]),
        "price": _price(factory.rng, 100),
        "currency": "EUR",
        "preview_url": f"https://cdn.example.com/templates/{seq}/preview.png",
        "download_url": f"https://cdn.example.com/templates/{seq}/template.zip",
        "status": "active",
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _marketplace_purchases(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "user_id": factory.ref_id(),
        "template_id": factory.ref_id(),
        "payment_method": "stripe",
        "payment_details": {"transactionId": f"txn_{uuid.uuid4().hex[:16]}"},
        "status": factory.rng.choice(["pending", "completed"]),
        "created_at": factory.now,
        "updated_at": factory.now,
    }


def _system_backups(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": f"backup_{seq}_{uuid.uuid4().hex[:8]}",
        "type": factory.rng.choice(["full", "schema"]),
        "status": "started",
        "include_data": True,
        "created_by": factory.ref_id(),
        "created_at": factory.now,
        "updated_at": factory.now,
        "estimated_size": "120MB",
        "details": {"tables": 10},
    }


def _system_logs(factory: FixtureFactory, seq: int) -> Row:
    return {
        "id": seq,
        "level": factory.rng.choice(["info", "warn", "error"]),
        "message": f"Generated log line {seq}",
        "context": {"source": "fixtures"},
        "created_by": factory.ref_id(),
        "created_at": factory.now,
    }


GENERATORS: dict[str, Generator] = {
    "users": _users,
    "events": _events,
    "guests": _guests,
    "ticket_types": _ticket_types,
    "tickets": _tickets,
    "marketplace_designers": _marketplace_designers,
    "marketplace_templates": _marketplace_templates,
    "marketplace_purchases": _marketplace_purchases,
    "system_backups": _system_backups,
    "system_logs": _system_logs,
}


class FixtureFactory:
    """Produces rows for harness tables.

    Args:
        schemas: Introspected schemas by table name. Used to drop keys a live
            table does not have and to generate rows for tables without a
            dedicated generator.
        seed: Optional seed for reproducible rows.
    """

    def __init__(self, schemas: Mapping[str, TableSchema] | None = None, *, seed: int | None = None) -> None:
        self.schemas = dict(schemas or {})
        self.rng = random.Random(seed)
        self.now = datetime.now(timezone.utc)
        self._seq = itertools.count(self.rng.randint(1, 100_000))

    def has_generator(self, table: str) -> bool:
        return table in GENERATORS

    def email(self, seq: int) -> str:
        return f"test-{seq}-{uuid.uuid4().hex[:9]}@example.com"

    def ref_id(self) -> int:
        return self.rng.randint(1, 1_000_000)

    def generate(self, table: str, overrides: Mapping[str, Any] | None = None) -> Row:
        """A valid row for ``table`` with ``overrides`` applied last.

        Raises:
            LookupError: No generator and no schema for the table.
        """
        seq = next(self._seq)
        schema = self.schemas.get(table)

        if table in GENERATORS:
            row = GENERATORS[table](self, seq)
            if schema is not None:
                row = {k: v for k, v in row.items() if k in schema.columns}
        elif schema is not None:
            row = self._from_schema(schema, seq)
        else:
            raise LookupError(f"no generator or schema for table {table}")

        if overrides:
            row.update(overrides)
        return row

    def generate_invalid(self, table: str, invalidations: Mapping[str, Any]) -> Row:
        """A generated row with specific fields broken.

        ``invalidations`` maps a column to one of ``"null"``, ``"missing"``,
        ``"empty"``, ``"negative"``, ``"zero"``, ``("too_long", length)`` or
        ``("invalid_type", value)``.
        """
        row = self.generate(table)
        for column, invalidation in invalidations.items():
            kind, arg = (invalidation if isinstance(invalidation, tuple) else (invalidation, None))
            if kind == "null":
                row[column] = None
            elif kind == "missing":
                row.pop(column, None)
            elif kind == "empty":
                row[column] = ""
            elif kind == "too_long":
                row[column] = "x" * (arg or 1000)
            elif kind == "invalid_type":
                row[column] = arg
            elif kind == "negative":
                row[column] = -1
            elif kind == "zero":
                row[column] = 0
            else:
                raise ValueError(f"unknown invalidation {kind!r} for {column}")
        return row

    def _from_schema(self, schema: TableSchema, seq: int) -> Row:
        required = set(schema.primary) | set(schema.unique) | {fk.column for fk in schema.foreign}
        row: Row = {}
        for name, column in schema.columns.items():
            if column.nullable and column.has_default and name not in required:
                continue
            if schema.foreign_key_for(name) is not None:
                row[name] = self.ref_id()
            elif name in schema.primary and column.is_serial:
                row[name] = seq
            else:
                row[name] = self._value_for(column, seq)
        return row

    def _value_for(self, column: ColumnInfo, seq: int) -> Any:
        kind = column.type.lower()
        name = column.name.lower()

        if column.is_array:
            return []
        if kind in ("integer", "bigint", "smallint"):
            return self.rng.randint(1, 1000)
        if kind in ("numeric", "decimal"):
            return _price(self.rng)
        if kind == "boolean":
            return False
        if kind.startswith("timestamp"):
            return self.now
        if kind == "date":
            return self.now.date()
        if kind.startswith("time"):
            return self.now.time().replace(microsecond=0)
        if kind == "uuid" or column.udt_name == "uuid":
            return str(uuid.uuid4())
        if kind in ("json", "jsonb"):
            return {}

        if "email" in name:
            value = self.email(seq)
        elif "url" in name:
            value = f"https://example.com/{seq}"
        elif "phone" in name:
            value = _phone(self.rng)
        elif "status" in name:
            value = "pending"
        elif name == "currency":
            value = "EUR"
        else:
            value = f"{name}_{seq}"
        if column.max_length:
            value = value[: column.max_length]
        return value
