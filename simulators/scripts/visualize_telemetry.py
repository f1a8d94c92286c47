# Visualize live vs. stored power/speed of one machine under write coalescing.

import numpy as np
import matplotlib.pyplot as plt

from simulators.machine_sim.lib.configparsers import SimConfig
from simulators.machine_sim.lib.engine import TelemetryEngine
from simulators.machine_sim.lib.metric_synth import MetricSynth
from simulators.machine_sim.lib.publisher import Publisher
from simulators.machine_sim.lib.seed import load_seed
from simulators.machine_sim.lib.store import MachineStore


class SimClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class Collector:
    def __init__(self, machine: str):
        self.machine = machine
        self.events = []

    def broadcast(self, topic, payload):
        if payload["name"] == self.machine:
            self.events.append(payload)


def run_and_plot(seed_path: str,
                 machine: str,
                 duration_s: int = 120,
                 persist_interval_ms: int = 5000,
                 seed: int | None = 1):
    """
    Runs the power/speed job once per simulated second against an in-memory
    store and plots what subscribers saw next to what was written durably.
    """
    clock = SimClock()
    collector = Collector(machine)
    synth = MetricSynth(seed)
    store = MachineStore("sqlite://")
    engine = TelemetryEngine(store, Publisher([collector]),
                             SimConfig(persist_interval_ms=persist_interval_ms, seed=seed),
                             synth=synth, clock=clock)
    engine.startup(load_seed(seed_path, rng=synth.rng))

    durable_t = []
    for k in range(duration_s + 1):
        clock.t = float(k)
        before = store.record_count(machine)
        engine.update_power_speed()
        if store.record_count(machine) > before:
            durable_t.append(k)

    t_arr = np.arange(duration_s + 1)
    power = np.array([e["aktuelleLeistung"] for e in collector.events])
    speed = np.array([e["geschwindigkeit"] for e in collector.events])
    records = store.records_for(machine, limit=len(durable_t))
    stored_power = np.array([r.power for r in records])
    stored_speed = np.array([r.speed for r in records])

    fig, (ax_p, ax_s) = plt.subplots(2, 1, figsize=(10, 7), sharex=True)
    ax_p.plot(t_arr, power, label="broadcast")
    ax_p.step(durable_t, stored_power, where="post", label="stored")
    ax_p.set_ylabel("Leistung [%]")
    ax_p.set_title(f"{machine}: {len(durable_t)} durable writes in {duration_s} s "
                   f"(interval {persist_interval_ms} ms)")
    ax_p.legend()
    ax_p.grid(True)

    ax_s.plot(t_arr, speed, label="broadcast")
    ax_s.step(durable_t, stored_speed, where="post", label="stored")
    ax_s.set_xlabel("Time [s]")
    ax_s.set_ylabel("Geschwindigkeit [m/s]")
    ax_s.legend()
    ax_s.grid(True)

    plt.tight_layout()
    plt.show()
    store.dispose()


if __name__ == "__main__":
    SEED_PATH   = "./simulators/machine_sim/seeds/initial-data.json"
    MACHINE     = "Fräse B2"
    DURATION_S  = 120           # simulated seconds, one tick each
    INTERVAL_MS = 5000          # minimum gap between durable writes
    SEED        = 1             # for reproducibility of the random walk

    run_and_plot(SEED_PATH, MACHINE, DURATION_S, INTERVAL_MS, SEED)
