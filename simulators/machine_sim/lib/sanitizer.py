"""Repair of corrupted machine telemetry."""

from __future__ import annotations

import logging
from typing import Dict, Tuple

from simulators.machine_sim.lib.metrics import METRIC_SPECS
from simulators.machine_sim.lib.models import Machine

LOG = logging.getLogger("machine_sim.sanitizer")


def repairs_for(machine: Machine) -> Dict[str, float]:
    """Map every invalid metric of ``machine`` to its default.

    A value is invalid when it is missing, not a finite number or outside the
    bounds of its metric.
    """
    return {spec.key: spec.default for metric, spec in METRIC_SPECS.items()
            if not spec.is_valid(machine.metric(metric))}


def sanitize(machine: Machine) -> Tuple[Machine, bool]:
    """Return ``(machine, repaired)`` with every invalid metric reset to its default.

    The input is not modified.
    """
    repairs = repairs_for(machine)
    if not repairs:
        return machine, False
    return machine.with_values(repairs), True


class Sanitizer:
    def __init__(self, store):
        self.store = store

    def run(self) -> int:
        """Reset invalid metrics of every stored machine.

        Only the repaired columns are written, so values other jobs commit
        meanwhile are kept.
        """
        repaired = 0
        for machine in self.store.find_all():
            repairs = repairs_for(machine)
            if not repairs:
                continue
            LOG.warning("Repairing machine %s: %s", machine.name,
                        ", ".join(f"{k}={getattr(machine, k)!r}->{v}" for k, v in repairs.items()))
            self.store.update_fields(machine.name, repairs)
            repaired += 1
        LOG.info("Sanitizer pass finished: %d machine(s) repaired", repaired)
        return repaired
