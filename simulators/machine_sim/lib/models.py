from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

from simulators.machine_sim.lib.enums import Metric

SENTINEL_DATE = "unknown"


@dataclass
class Machine:
    name: str
    identification: Optional[str] = None
    last_maintenance: Optional[str] = None
    temperature: Optional[float] = None
    power: Optional[float] = None
    speed: Optional[float] = None
    uptime_minutes: Optional[float] = None
    runtime_minutes: Optional[float] = None
    id: Optional[int] = None

    def metric(self, metric: Metric) -> Optional[float]:
        return getattr(self, metric.value)

    def with_values(self, values: Dict[str, Any]) -> "Machine":
        return replace(self, **values)


@dataclass
class MachineSeed:
    name: str
    identification: Optional[str]
    last_maintenance: Optional[str]
    temperature: float
    power: float
    speed: float
    uptime_minutes: float
    runtime_minutes: float


@dataclass
class TelemetryRecord:
    machine_id: int
    temperature: Optional[float]
    power: Optional[float]
    speed: Optional[float]
    uptime_minutes: Optional[float]
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_machine(cls, machine: Machine) -> "TelemetryRecord":
        if machine.id is None:
            raise ValueError(f"Machine {machine.name!r} has not been stored yet")
        return cls(
            machine_id=machine.id,
            temperature=machine.temperature,
            power=machine.power,
            speed=machine.speed,
            uptime_minutes=machine.uptime_minutes,
        )


@dataclass
class TickResult:
    """Outcome of one job run, mainly for logging and tests."""
    durable: int = 0
    broadcast_only: int = 0
    skipped: int = 0
    failed: list = field(default_factory=list)
