"""Shared fixtures: a manually driven scheduler, a fake clock and wired components."""

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import pytest

from listening_tracker.config.database import MemoryBackend
from listening_tracker.core.aggregation import AggregationStore
from listening_tracker.core.kv_store import KeyValueStore
from listening_tracker.core.tracker import SessionTracker
from listening_tracker.utils.time import Clock


@dataclass
class ScheduledJob:
    func: Callable[[], Any]
    seconds: float
    repeat: bool


class ManualScheduler:
    """Drop-in for TimerScheduler whose jobs only run when a test fires them."""

    def __init__(self):
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self.fired = []

    def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False
        self.jobs.clear()

    def is_running(self) -> bool:
        return self.running

    def schedule_interval(self, job_id: str, func: Callable[[], Any], seconds: float) -> None:
        self.jobs[job_id] = ScheduledJob(func, seconds, repeat=True)

    def schedule_once(self, job_id, func, delay_seconds, replace_existing=False) -> bool:
        if not replace_existing and job_id in self.jobs:
            return False
        self.jobs[job_id] = ScheduledJob(func, delay_seconds, repeat=False)
        return True

    def cancel(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)

    def has_job(self, job_id: str) -> bool:
        return job_id in self.jobs

    def get_next_run_time(self, job_id: str) -> Optional[str]:
        return None

    async def fire(self, job_id: str) -> None:
        """Run one job now. One-shot jobs are removed before they run."""
        job = self.jobs[job_id]
        if not job.repeat:
            del self.jobs[job_id]
        self.fired.append(job_id)
        result = job.func()
        if inspect.isawaitable(result):
            await result

    async def run_pending(self, rounds: int = 10) -> None:
        """Run one-shot jobs, including ones they schedule, until none are left."""
        for _ in range(rounds):
            pending = [job_id for job_id, job in self.jobs.items() if not job.repeat]
            if not pending:
                return
            for job_id in pending:
                if job_id in self.jobs:
                    await self.fire(job_id)


class FakeClock(Clock):
    """Clock frozen until a test advances it; wall and monotonic time move together."""

    def __init__(self, start: datetime = datetime(2024, 3, 14, 10, 0, 0)):
        self.current = start
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds

    def set(self, moment: datetime) -> None:
        self.current = moment


@pytest.fixture
def logger():
    return logging.getLogger("listening_tracker.tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def backend(logger):
    return MemoryBackend(logger=logger)


@pytest.fixture
def kv(backend, scheduler, logger):
    return KeyValueStore(backend, scheduler, write_delay=1.0, logger=logger)


@pytest.fixture
def store(kv, scheduler, clock, logger):
    return AggregationStore(kv, scheduler, clock=clock, persist_delay=5.0, logger=logger)


@pytest.fixture
def tracker(store, kv, scheduler, clock, logger):
    return SessionTracker(store, kv, scheduler, clock=clock, logger=logger)


@pytest.fixture
def listen(tracker, clock):
    """Advance the clock and tick ``count`` times by ``step`` seconds."""

    def _listen(count: int, step: float = 1.0) -> None:
        for _ in range(count):
            clock.advance(step)
            tracker.tick()

    return _listen
