"""SQLAlchemy-backed machine and telemetry storage."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, MetaData, Numeric, String,
                        Table, create_engine, func, insert, select, text, update)
from sqlalchemy.engine import Engine

from simulators.machine_sim.lib.models import Machine, MachineSeed, TelemetryRecord

LOG = logging.getLogger("machine_sim.store")

METRIC_COLUMNS = ("temperature", "power", "speed", "uptime_minutes", "runtime_minutes")
RECORD_COLUMNS = ("temperature", "power", "speed", "uptime_minutes")


class StorageError(Exception):
    pass


class StorageRangeError(StorageError):
    """A value does not fit the column it is written to."""

    def __init__(self, column: str, value: Any):
        super().__init__(f"value {value!r} out of storage range for column {column}")
        self.column = column
        self.value = value


class MachineNotFoundError(StorageError):
    def __init__(self, name: str):
        super().__init__(f"machine {name!r} not found")
        self.name = name


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


class MachineStore:
    """Machines and their append-only telemetry records.

    Writes are checked against the precision of the numeric columns; a value
    that does not fit (or is not finite) raises :class:`StorageRangeError`
    instead of reaching the database.
    """

    def __init__(self, database_url: str = "sqlite:///machines.db", echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self._engine: Engine = create_engine(database_url, echo=echo, future=True,
                                             connect_args=connect_args)
        self._metadata = MetaData()
        self.machines = Table(
            "machines",
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("name", String(255), nullable=False, unique=True),
            Column("identification", String(255)),
            Column("last_maintenance", String(32)),
            Column("temperature", Numeric(6, 3, asdecimal=False)),
            Column("power", Numeric(6, 3, asdecimal=False)),
            Column("speed", Numeric(6, 3, asdecimal=False)),
            Column("uptime_minutes", Numeric(15, 3, asdecimal=False)),
            Column("runtime_minutes", Numeric(15, 3, asdecimal=False)),
        )
        self.telemetry = Table(
            "telemetry",
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("machine_id", Integer, ForeignKey("machines.id", ondelete="CASCADE"),
                   nullable=False, index=True),
            Column("temperature", Numeric(6, 3, asdecimal=False)),
            Column("power", Numeric(6, 3, asdecimal=False)),
            Column("speed", Numeric(6, 3, asdecimal=False)),
            Column("uptime_minutes", Numeric(15, 3, asdecimal=False)),
            Column("created_at", DateTime(timezone=True), nullable=False, index=True),
        )
        self._metadata.create_all(self._engine)
        LOG.info("Storage ready at %s", self._engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self._engine.dispose()

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            LOG.warning("Storage ping failed: %s", e)
            return False

    # range checks
    def _check_value(self, table: Table, column: str, value: Any) -> None:
        col_type = table.c[column].type
        if not isinstance(col_type, Numeric) or value is None:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            raise StorageRangeError(column, value)
        limit = 10.0 ** (col_type.precision - col_type.scale)
        if not math.isfinite(v) or abs(v) >= limit:
            raise StorageRangeError(column, value)

    def _checked(self, table: Table, values: Mapping[str, Any]) -> Dict[str, Any]:
        for column, value in values.items():
            if column not in table.c:
                raise KeyError(f"unknown column {column!r} for table {table.name}")
            self._check_value(table, column, value)
        return dict(values)

    def _machine_from_row(self, row) -> Machine:
        return Machine(
            id=row["id"],
            name=row["name"],
            identification=row["identification"],
            last_maintenance=row["last_maintenance"],
            temperature=_as_float(row["temperature"]),
            power=_as_float(row["power"]),
            speed=_as_float(row["speed"]),
            uptime_minutes=_as_float(row["uptime_minutes"]),
            runtime_minutes=_as_float(row["runtime_minutes"]),
        )

    def _record_from_row(self, row) -> TelemetryRecord:
        return TelemetryRecord(
            id=row["id"],
            machine_id=row["machine_id"],
            temperature=_as_float(row["temperature"]),
            power=_as_float(row["power"]),
            speed=_as_float(row["speed"]),
            uptime_minutes=_as_float(row["uptime_minutes"]),
            created_at=_as_utc(row["created_at"]),
        )

    # machines
    def count(self) -> int:
        with self._engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(self.machines)).scalar_one())

    def find_all(self) -> List[Machine]:
        with self._engine.connect() as conn:
            rows = conn.execute(select(self.machines).order_by(self.machines.c.name)).mappings().all()
        return [self._machine_from_row(r) for r in rows]

    def find_by_name(self, name: str) -> Optional[Machine]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self.machines).where(self.machines.c.name == name)
            ).mappings().first()
        return self._machine_from_row(row) if row else None

    def update_fields(self, name: str, fields: Mapping[str, Any]) -> Machine:
        """Update only the given columns of one machine and return the fresh row."""
        if not fields:
            raise ValueError("no fields to update")
        values = self._checked(self.machines, fields)
        if "name" in values or "id" in values:
            raise KeyError("machine identity columns cannot be updated")
        return self._update(name, values)

    def _update(self, name: str, values: Dict[str, Any]) -> Machine:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(self.machines).where(self.machines.c.name == name).values(**values)
            )
            if result.rowcount == 0:
                raise MachineNotFoundError(name)
            row = conn.execute(
                select(self.machines).where(self.machines.c.name == name)
            ).mappings().one()
        return self._machine_from_row(row)

    def seed_if_empty(self, seeds: Iterable[MachineSeed]) -> int:
        """Insert the seed machines only when the machine table is empty."""
        with self._engine.begin() as conn:
            existing = conn.execute(select(func.count()).select_from(self.machines)).scalar_one()
            if existing:
                LOG.info("Machine table holds %d rows; seeding skipped", existing)
                return 0
            rows = []
            for s in seeds:
                values = {"name": s.name, "identification": s.identification,
                          "last_maintenance": s.last_maintenance}
                values.update({c: getattr(s, c) for c in METRIC_COLUMNS})
                rows.append(self._checked(self.machines, values))
            if rows:
                conn.execute(insert(self.machines), rows)
        LOG.info("Seeded %d machine(s)", len(rows))
        return len(rows)

    # telemetry
    def append_record(self, record: TelemetryRecord) -> TelemetryRecord:
        """Append an immutable telemetry snapshot; the store assigns created_at."""
        created_at = _utcnow()
        values = self._checked(self.telemetry, {c: getattr(record, c) for c in RECORD_COLUMNS})
        values.update(machine_id=record.machine_id, created_at=created_at)
        with self._engine.begin() as conn:
            result = conn.execute(insert(self.telemetry).values(**values))
            new_id = result.inserted_primary_key[0]
        return TelemetryRecord(id=new_id, created_at=created_at, machine_id=record.machine_id,
                               **{c: getattr(record, c) for c in RECORD_COLUMNS})

    def records_for(self, name: str, since: Optional[datetime] = None,
                    limit: int = 500) -> List[TelemetryRecord]:
        """Most recent records of a machine in ascending time order."""
        machine = self.find_by_name(name)
        if machine is None:
            raise MachineNotFoundError(name)
        stmt = select(self.telemetry).where(self.telemetry.c.machine_id == machine.id)
        if since is not None:
            stmt = stmt.where(self.telemetry.c.created_at >= _as_utc(since))
        stmt = stmt.order_by(self.telemetry.c.created_at.desc(), self.telemetry.c.id.desc())
        stmt = stmt.limit(max(0, int(limit)))
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._record_from_row(r) for r in reversed(rows)]

    def record_count(self, name: Optional[str] = None) -> int:
        if name is None:
            stmt = select(func.count()).select_from(self.telemetry)
        else:
            joined = self.telemetry.join(self.machines,
                                         self.machines.c.id == self.telemetry.c.machine_id)
            stmt = select(func.count()).select_from(joined).where(self.machines.c.name == name)
        with self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())
