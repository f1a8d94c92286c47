import math
import numpy as np
import pytest

from simulators.machine_sim.lib.enums import Metric
from simulators.machine_sim.lib.metric_synth import MetricSynth, next_value
from simulators.machine_sim.lib.metrics import METRIC_SPECS, round3, spec_for


TEMP = METRIC_SPECS[Metric.TEMPERATURE]
POWER = METRIC_SPECS[Metric.POWER]
SPEED = METRIC_SPECS[Metric.SPEED]


def test_nan_temperature_restarts_from_default():
    assert next_value(float("nan"), TEMP, 0.0) == 40.0
    assert next_value(float("inf"), TEMP, 0.25) == 40.25


def test_missing_value_restarts_from_default():
    assert next_value(None, POWER, 1.0) == 51.0
    assert next_value("garbage", SPEED, 0.0) == 2.0


def test_value_is_clamped_to_bounds():
    assert next_value(80.0, TEMP, 0.5) == 80.0
    assert next_value(10.2, TEMP, -0.5) == 10.0
    assert next_value(0.05, SPEED, -0.1) == 0.0
    assert next_value(99.7, POWER, 1.0) == 100.0


def test_result_is_rounded_to_three_decimals():
    v = next_value(42.0, TEMP, 0.123456)
    assert v == 42.123


def test_fixed_steps_for_minute_counters():
    synth = MetricSynth(seed=1)
    assert synth.next(Metric.RUNTIME, 315.0) == 315.333
    assert synth.next(Metric.UPTIME, 10.0) == 11.0
    assert synth.next(Metric.UPTIME, None) == 1.0


def test_random_walk_stays_within_bounds():
    """
    Long random walks from the edges never leave [lower, upper] and never
    produce more than three decimals.
    """
    synth = MetricSynth(seed=7)
    for metric in (Metric.TEMPERATURE, Metric.POWER, Metric.SPEED):
        spec = METRIC_SPECS[metric]
        for start in (spec.lower, spec.upper, spec.default):
            v = start
            for _ in range(2000):
                v = synth.next(metric, v)
                assert spec.lower <= v <= spec.upper
                assert math.isfinite(v)
                assert v == round3(v)


def test_steps_are_drawn_from_symmetric_range():
    synth = MetricSynth(seed=3)
    steps = np.array([synth.step(Metric.POWER) for _ in range(5000)])
    assert steps.min() >= -1.0 and steps.max() <= 1.0
    assert abs(steps.mean()) < 0.05


def test_same_seed_same_sequence():
    a, b = MetricSynth(seed=11), MetricSynth(seed=11)
    seq_a = [a.next(Metric.TEMPERATURE, 40.0) for _ in range(20)]
    seq_b = [b.next(Metric.TEMPERATURE, 40.0) for _ in range(20)]
    assert seq_a == seq_b


def test_spec_lookup_by_wire_key():
    assert spec_for("aktuelleLeistung") is POWER
    assert spec_for(Metric.SPEED) is SPEED
    with pytest.raises(ValueError):
        spec_for("drehzahl")
