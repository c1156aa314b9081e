"""Bounded-concurrency execution of independent jobs.

``run_all`` awaits every job to settlement behind an ``asyncio.Semaphore``
and never raises because one job failed; the outcome of each job is
returned in input order.  What happens to jobs that have not started yet
after a failure is an explicit ``FailurePolicy``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

T = TypeVar("T")


class FailurePolicy(str, Enum):
    """What to do with pending jobs once one job has failed."""
    BEST_EFFORT = "best_effort"  # keep starting jobs
    FAIL_FAST = "fail_fast"  # start no new jobs; in-flight ones finish


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskOutcome(Generic[T]):
    """Settled state of one job."""

    name: str
    status: OutcomeStatus
    value: T | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED


async def run_all(
    jobs: Sequence[tuple[str, Callable[[], Awaitable[T]]]],
    concurrency: int = 1,
    policy: FailurePolicy = FailurePolicy.BEST_EFFORT,
) -> list[TaskOutcome[T]]:
    """Run ``(name, job)`` pairs with at most *concurrency* in flight.

    An exception raised by a job marks that job failed; it is not
    propagated.  Cancellation is.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)
    stop = asyncio.Event()

    async def _run(name: str, job: Callable[[], Awaitable[T]]) -> TaskOutcome[T]:
        async with semaphore:
            if stop.is_set():
                return TaskOutcome(name=name, status=OutcomeStatus.SKIPPED)
            try:
                value = await job()
            except Exception as exc:
                if policy is FailurePolicy.FAIL_FAST:
                    stop.set()
                return TaskOutcome(name=name, status=OutcomeStatus.FAILED, error=exc)
            return TaskOutcome(name=name, status=OutcomeStatus.SUCCEEDED, value=value)

    return list(await asyncio.gather(*(_run(name, job) for name, job in jobs)))
