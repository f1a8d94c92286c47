"""Validation table for bounded machine metrics.

Every telemetry field has exactly one entry here: its bounds, the default
used to repair corrupted values and the random-walk step applied per tick.
The synthesizer, the sanitizer and the external write path all read from
this table.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from simulators.machine_sim.lib.enums import Metric

PRECISION = 3

# Upper bound of the cumulative minute counters.
MINUTES_CAP = 999_999_999.0


class TelemetryValidationError(ValueError):
    """Raised when an external telemetry write carries an invalid value."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


@dataclass(frozen=True)
class MetricSpec:
    metric: Metric
    lower: float
    upper: float
    default: float
    step_low: float
    step_high: float

    @property
    def key(self) -> str:
        return self.metric.value

    @property
    def fixed_step(self) -> bool:
        return self.step_low == self.step_high

    def is_valid(self, value: Any) -> bool:
        if value is None or isinstance(value, bool):
            return False
        try:
            v = float(value)
        except (TypeError, ValueError):
            return False
        return math.isfinite(v) and self.lower <= v <= self.upper


METRIC_SPECS: Dict[Metric, MetricSpec] = {
    Metric.TEMPERATURE: MetricSpec(Metric.TEMPERATURE, 10.0, 80.0, 40.0, -0.5, 0.5),
    Metric.POWER:       MetricSpec(Metric.POWER, 0.0, 100.0, 50.0, -1.0, 1.0),
    Metric.SPEED:       MetricSpec(Metric.SPEED, 0.0, 10.0, 2.0, -0.1, 0.1),
    # 20 s tick adds a third of a minute, 60 s tick adds one minute
    Metric.RUNTIME:     MetricSpec(Metric.RUNTIME, 0.0, MINUTES_CAP, 0.0, 20.0 / 60.0, 20.0 / 60.0),
    Metric.UPTIME:      MetricSpec(Metric.UPTIME, 0.0, MINUTES_CAP, 0.0, 1.0, 1.0),
}

# Fields an external request may write.
WRITABLE_METRICS = (Metric.TEMPERATURE, Metric.POWER, Metric.UPTIME, Metric.SPEED)


def spec_for(metric: Metric | str) -> MetricSpec:
    if isinstance(metric, str):
        metric = Metric.from_wire_key(metric)
    return METRIC_SPECS[metric]


def round3(value: float) -> float:
    return round(float(value), PRECISION)


def validate_telemetry_write(values: Mapping[str, Any]) -> Dict[str, float]:
    """Validate a one-off telemetry write and return rounded column values.

    Keys may be attribute names (``power``) or wire keys
    (``aktuelleLeistung``); ``None`` values are ignored. Values are never
    clamped: anything non-numeric, non-finite or out of bounds is rejected.

    Raises:
        TelemetryValidationError: on an unknown field, an invalid value or
            when no field is given at all.
    """
    out: Dict[str, float] = {}
    for key, raw in values.items():
        if raw is None:
            continue
        try:
            metric = Metric.from_wire_key(key)
        except ValueError:
            raise TelemetryValidationError(key, "unknown field")
        if metric not in WRITABLE_METRICS:
            raise TelemetryValidationError(key, "field is not writable")
        spec = METRIC_SPECS[metric]
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise TelemetryValidationError(key, "must be a number")
        if not math.isfinite(float(raw)):
            raise TelemetryValidationError(key, "must be finite")
        if not spec.lower <= float(raw) <= spec.upper:
            raise TelemetryValidationError(
                key, f"must be within [{spec.lower:g}, {spec.upper:g}]")
        out[metric.value] = round3(raw)
    if not out:
        raise TelemetryValidationError("body", "no telemetry field given")
    return out
