import math
import numpy as np

from typing import Optional

from simulators.machine_sim.lib.enums import Metric
from simulators.machine_sim.lib.metrics import METRIC_SPECS, MetricSpec, round3


def next_value(current: Optional[float], spec: MetricSpec, step: float) -> float:
    """
    Compute the next value of a bounded metric.

    Args:
        current: stored value, may be None or non-finite.
        spec: bounds and default of the metric.
        step: perturbation drawn for this tick.

    Returns:
        The clamped value rounded to the shared precision.
    """
    try:
        base = float(current) if current is not None else spec.default
    except (TypeError, ValueError):
        base = spec.default
    if not math.isfinite(base):
        base = spec.default

    v = min(spec.upper, max(spec.lower, base + step))
    if not math.isfinite(v):
        v = spec.default
    return round3(v)


class MetricSynth:
    """Draws per-tick steps and applies them with :func:`next_value`."""

    def __init__(self, seed: int | None = None) -> None:
        self._rng = np.random.default_rng(seed)

    @property
    def rng(self) -> np.random.Generator:
        return self._rng

    def step(self, metric: Metric) -> float:
        spec = METRIC_SPECS[metric]
        if spec.fixed_step:
            return spec.step_low
        return float(self._rng.uniform(spec.step_low, spec.step_high))

    def next(self, metric: Metric, current: Optional[float]) -> float:
        return next_value(current, METRIC_SPECS[metric], self.step(metric))
