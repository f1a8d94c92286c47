"""Telemetry synthesis engine.

Five periodic jobs drift the stored machine state. Power/speed and uptime
go through a :class:`CoalescingPolicy` so subscribers see every tick while
storage sees at most one write per persist interval; temperature, runtime
and the maintenance date are written on every tick of their own job. Each
job updates only the columns it owns.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from simulators.machine_sim.lib.coalescing import CoalescingPolicy
from simulators.machine_sim.lib.configparsers import SimConfig
from simulators.machine_sim.lib.enums import Metric
from simulators.machine_sim.lib.maintenance import advance_date
from simulators.machine_sim.lib.metric_synth import MetricSynth
from simulators.machine_sim.lib.metrics import validate_telemetry_write
from simulators.machine_sim.lib.models import Machine, MachineSeed, TelemetryRecord, TickResult
from simulators.machine_sim.lib.publisher import Publisher
from simulators.machine_sim.lib.sanitizer import Sanitizer
from simulators.machine_sim.lib.scheduler import Scheduler
from simulators.machine_sim.lib.store import (MachineNotFoundError, MachineStore, StorageError,
                                              StorageRangeError)

LOG = logging.getLogger("machine_sim.engine")

JOB_POWER_SPEED = "power_speed"
JOB_TEMPERATURE = "temperature"
JOB_RUNTIME = "runtime"
JOB_UPTIME = "uptime"
JOB_MAINTENANCE = "maintenance"


class TelemetryEngine:

    def __init__(self, store: MachineStore, publisher: Publisher, config: Optional[SimConfig] = None,
                 synth: Optional[MetricSynth] = None, clock: Callable[[], float] = time.monotonic,
                 scheduler: Optional[Scheduler] = None):
        self.store = store
        self.publisher = publisher
        self.config = config or SimConfig()
        self.synth = synth or MetricSynth(self.config.seed)
        self.fast_policy = CoalescingPolicy(self.config.persist_interval_ms, clock)
        self.uptime_policy = CoalescingPolicy(self.config.persist_interval_ms, clock)
        self.sanitizer = Sanitizer(store)
        self.scheduler = scheduler or Scheduler()
        self._sanitize_lock = threading.Lock()
        self._registered = False

    # lifecycle
    def startup(self, seeds: Iterable[MachineSeed] = ()) -> int:
        """Seed an empty store, then repair every stored machine. Returns the repair count."""
        self.store.seed_if_empty(seeds)
        return self.sanitize_all()

    def sanitize_all(self) -> int:
        with self._sanitize_lock:
            return self.sanitizer.run()

    def jobs(self) -> Dict[str, Tuple[Callable[[], Any], float]]:
        periods = self.config.job_periods()
        return {
            JOB_POWER_SPEED: (self.update_power_speed, periods["power_speed"]),
            JOB_TEMPERATURE: (self.update_temperature, periods["temperature"]),
            JOB_RUNTIME: (self.update_runtime, periods["runtime"]),
            JOB_UPTIME: (self.update_uptime, periods["uptime"]),
            JOB_MAINTENANCE: (self.advance_maintenance, periods["maintenance"]),
        }

    def register_jobs(self) -> None:
        if self._registered:
            return
        for name, (func, period) in self.jobs().items():
            self.scheduler.add_job(name, func, period)
        self._registered = True

    def start(self) -> None:
        self.register_jobs()
        self.scheduler.start()
        LOG.info("Telemetry engine started (persist interval %d ms)", self.config.persist_interval_ms)

    def stop(self, grace_s: Optional[float] = None) -> bool:
        grace = self.config.shutdown_grace_s if grace_s is None else grace_s
        finished = self.scheduler.stop(grace)
        LOG.info("Telemetry engine stopped%s", "" if finished else " with jobs still in flight")
        return finished

    # jobs
    def _for_each_machine(self, job: str, tick: Callable[[Machine], Optional[bool]]) -> TickResult:
        result = TickResult()
        for machine in self.store.find_all():
            try:
                durable = tick(machine)
            except StorageRangeError as e:
                LOG.warning("[job:%s] %s; running sanitizer", job, e)
                result.failed.append(machine.name)
                self.sanitize_all()
                continue
            except (StorageError, SQLAlchemyError) as e:
                LOG.error("[job:%s] machine %s: %s", job, machine.name, e)
                result.failed.append(machine.name)
                continue
            if durable is None:
                result.skipped += 1
            elif durable:
                result.durable += 1
            else:
                result.broadcast_only += 1
        LOG.debug("[job:%s] durable=%d broadcast_only=%d skipped=%d failed=%d", job,
                  result.durable, result.broadcast_only, result.skipped, len(result.failed))
        return result

    def _persist(self, name: str, values: Dict[str, Any]) -> Tuple[Machine, TelemetryRecord]:
        fresh = self.store.update_fields(name, values)
        record = self.store.append_record(TelemetryRecord.from_machine(fresh))
        return fresh, record

    def _live(self, machine: Machine) -> Machine:
        """Machine with the values both policies hold in memory applied."""
        return self.fast_policy.overlay(self.uptime_policy.overlay(machine))

    def _coalesce(self, policy: CoalescingPolicy, live: Machine, values: Dict[str, float]) -> bool:
        now = policy.now()
        if policy.due(live.name, now):
            fresh, record = self._persist(live.name, values)
            policy.commit(live.name, now)
            self.publisher.publish(self._live(fresh), record.created_at)
            return True
        policy.stage(live.name, values)
        self.publisher.publish(self._live(live))
        return False

    def _tick_power_speed(self, machine: Machine) -> bool:
        live = self.fast_policy.overlay(machine)
        values = {
            "power": self.synth.next(Metric.POWER, live.power),
            "speed": self.synth.next(Metric.SPEED, live.speed),
        }
        return self._coalesce(self.fast_policy, live, values)

    def _tick_temperature(self, machine: Machine) -> bool:
        t = self.synth.next(Metric.TEMPERATURE, machine.temperature)
        fresh, record = self._persist(machine.name, {"temperature": t})
        self.publisher.publish(self._live(fresh), record.created_at)
        return True

    def _tick_runtime(self, machine: Machine) -> bool:
        r = self.synth.next(Metric.RUNTIME, machine.runtime_minutes)
        self.store.update_fields(machine.name, {"runtime_minutes": r})
        return True

    def _tick_uptime(self, machine: Machine) -> bool:
        live = self.uptime_policy.overlay(machine)
        values = {"uptime_minutes": self.synth.next(Metric.UPTIME, live.uptime_minutes)}
        return self._coalesce(self.uptime_policy, live, values)

    def _tick_maintenance(self, machine: Machine) -> Optional[bool]:
        try:
            nxt = advance_date(machine.last_maintenance)
        except ValueError:
            LOG.warning("[job:%s] machine %s has unparseable maintenance date %r; skipped",
                        JOB_MAINTENANCE, machine.name, machine.last_maintenance)
            return None
        if nxt is None:
            return None
        self.store.update_fields(machine.name, {"last_maintenance": nxt})
        return True

    def update_power_speed(self) -> TickResult:
        return self._for_each_machine(JOB_POWER_SPEED, self._tick_power_speed)

    def update_temperature(self) -> TickResult:
        return self._for_each_machine(JOB_TEMPERATURE, self._tick_temperature)

    def update_runtime(self) -> TickResult:
        return self._for_each_machine(JOB_RUNTIME, self._tick_runtime)

    def update_uptime(self) -> TickResult:
        return self._for_each_machine(JOB_UPTIME, self._tick_uptime)

    def advance_maintenance(self) -> TickResult:
        return self._for_each_machine(JOB_MAINTENANCE, self._tick_maintenance)

    # external writes
    def write_telemetry(self, name: str, values: Mapping[str, Any]) -> Tuple[Machine, TelemetryRecord]:
        """
        Durably write externally supplied telemetry, bypassing coalescing.

        Raises:
            MachineNotFoundError: no machine with that name.
            TelemetryValidationError: a value is invalid; nothing is written.
        """
        if self.store.find_by_name(name) is None:
            raise MachineNotFoundError(name)
        clean = validate_telemetry_write(values)
        fresh, record = self._persist(name, clean)
        self.fast_policy.discard(name, clean)
        self.uptime_policy.discard(name, clean)
        self.publisher.publish(self._live(fresh), record.created_at)
        LOG.info("External telemetry write for %s: %s", name, clean)
        return fresh, record
