"""Periodic job runner with a per-job non-overlap guard."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from simulators.machine_sim.lib.enums import JobState

LOG = logging.getLogger("machine_sim.scheduler")


@dataclass
class Job:
    name: str
    func: Callable[[], None]
    period_s: float
    state: JobState = JobState.IDLE
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_error: Optional[BaseException] = None
    _thread: Optional[threading.Thread] = field(default=None, repr=False)


class Scheduler:
    """
    Runs named jobs at fixed periods, one daemon thread per execution.

    A tick that arrives while the previous execution of the same job is still
    running is skipped, not queued. Different jobs run concurrently.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._tickers: List[threading.Thread] = []
        self._accepting = True

    def add_job(self, name: str, func: Callable[[], None], period_s: float) -> Job:
        if not isinstance(name, str) or not name:
            raise TypeError("job name must be a non-empty string")
        if not isinstance(period_s, (int, float)) or period_s <= 0:
            raise ValueError(f"period of job {name!r} must be a positive number")
        with self._lock:
            if name in self._jobs:
                raise ValueError(f"job {name!r} already registered")
            job = Job(name=name, func=func, period_s=float(period_s))
            self._jobs[name] = job
        return job

    def job(self, name: str) -> Job:
        return self._jobs[name]

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def _acquire(self, name: str) -> Optional[Job]:
        job = self._jobs[name]
        with self._lock:
            if not self._accepting:
                return None
            if job.state is JobState.RUNNING:
                job.skipped += 1
                LOG.debug("[job:%s] previous run still in progress; tick skipped", name)
                return None
            job.state = JobState.RUNNING
        return job

    def _execute(self, job: Job) -> None:
        try:
            job.func()
        except Exception as e:
            job.failures += 1
            job.last_error = e
            LOG.exception("[job:%s] failed", job.name)
        finally:
            with self._lock:
                job.runs += 1
                job.state = JobState.IDLE

    def fire(self, name: str) -> bool:
        """Start one execution in the background. Returns False if skipped."""
        job = self._acquire(name)
        if job is None:
            return False
        t = threading.Thread(target=self._execute, args=(job,),
                             name=f"job-{name}", daemon=True)
        job._thread = t
        t.start()
        return True

    def run_now(self, name: str) -> bool:
        """Execute one run in the calling thread under the same guard."""
        job = self._acquire(name)
        if job is None:
            return False
        self._execute(job)
        return True

    def _ticker(self, job: Job) -> None:
        # Anchored schedule: tick k fires at t0 + k * period
        t0 = self._clock()
        k = 1
        while not self._stop.wait(timeout=max(0.0, t0 + k * job.period_s - self._clock())):
            self.fire(job.name)
            elapsed = self._clock() - t0
            k = max(k + 1, int(math.floor(elapsed / job.period_s)) + 1)

    def start(self) -> None:
        if self._tickers:
            raise RuntimeError("scheduler already started")
        self._stop.clear()
        self._accepting = True
        for job in self.jobs:
            t = threading.Thread(target=self._ticker, args=(job,),
                                 name=f"ticker-{job.name}", daemon=True)
            self._tickers.append(t)
            t.start()
            LOG.info("Scheduled job %s every %.1fs", job.name, job.period_s)

    def stop(self, grace_s: float = 10.0) -> bool:
        """
        Stop ticking and wait up to grace_s for in-flight executions.

        Returns True when every execution finished within the grace period.
        """
        with self._lock:
            self._accepting = False
        self._stop.set()
        for t in self._tickers:
            t.join(timeout=1.0)
        self._tickers = []

        deadline = self._clock() + max(0.0, grace_s)
        finished = True
        for job in self.jobs:
            t = job._thread
            if t is None or not t.is_alive():
                continue
            t.join(timeout=max(0.0, deadline - self._clock()))
            if t.is_alive():
                finished = False
                LOG.warning("[job:%s] still running after %.1fs grace period", job.name, grace_s)
        return finished
