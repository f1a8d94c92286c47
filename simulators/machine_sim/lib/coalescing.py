"""Durable-write coalescing for fast-changing metrics."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Optional

from simulators.machine_sim.lib.models import Machine


class CoalescingPolicy:
    """Decides per machine whether a tick is written through or only broadcast.

    One instance covers one class of metrics (e.g. power and speed). It keeps
    the monotonic time of the last durable write per machine and the latest
    values computed since then, so a broadcast-only tick never loses its
    value: the next tick starts from it and the next durable write stores it.
    """

    def __init__(self, persist_interval_ms: int = 5000,
                 clock: Callable[[], float] = time.monotonic):
        if persist_interval_ms < 0:
            raise ValueError("persist_interval_ms must be non-negative")
        self.persist_interval_ms = persist_interval_ms
        self._clock = clock
        self._last_durable: Dict[str, float] = {}
        self._pending: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def due(self, name: str, now: Optional[float] = None) -> bool:
        now = self.now() if now is None else now
        with self._lock:
            last = self._last_durable.get(name)
        if last is None:
            return True
        return (now - last) * 1000.0 >= self.persist_interval_ms

    def stage(self, name: str, values: Dict[str, float]) -> None:
        with self._lock:
            self._pending.setdefault(name, {}).update(values)

    def pending(self, name: str) -> Dict[str, float]:
        with self._lock:
            return dict(self._pending.get(name, {}))

    def overlay(self, machine: Machine) -> Machine:
        values = self.pending(machine.name)
        return machine.with_values(values) if values else machine

    def commit(self, name: str, now: Optional[float] = None) -> None:
        now = self.now() if now is None else now
        with self._lock:
            self._last_durable[name] = now
            self._pending.pop(name, None)

    def discard(self, name: str, fields: Iterable[str]) -> None:
        with self._lock:
            pending = self._pending.get(name)
            if not pending:
                return
            for f in fields:
                pending.pop(f, None)
            if not pending:
                del self._pending[name]

    def last_durable(self, name: str) -> Optional[float]:
        with self._lock:
            return self._last_durable.get(name)
