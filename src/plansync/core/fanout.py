"""Concurrent fan-out with per-item failure isolation.

Queue batches and renewal pages are processed as N independent units of work.
One unit raising must never stop its siblings, and the caller needs to know
exactly which units failed so that only those are redelivered.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from plansync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QueueMessage:
    """One message of an at-least-once queue batch."""

    message_id: str
    body: str | dict[str, Any]


@dataclass
class FanoutResult(Generic[T]):
    """Per-task results and failures keyed by task id."""

    results: dict[str, T] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def failed_ids(self) -> list[str]:
        return list(self.failures)


@dataclass(frozen=True)
class BatchResult:
    """Partial batch failure report; only listed items are redelivered."""

    failed_ids: tuple[str, ...] = ()

    @classmethod
    def from_failures(cls, ids: Iterable[str]) -> BatchResult:
        return cls(failed_ids=tuple(ids))

    @property
    def batch_item_failures(self) -> list[dict[str, str]]:
        return [{"itemIdentifier": item_id} for item_id in self.failed_ids]

    def to_dict(self) -> dict[str, Any]:
        return {"batchItemFailures": self.batch_item_failures}


async def run_isolated(
    tasks: Mapping[str, Callable[[], Awaitable[T]]],
) -> FanoutResult[T]:
    """Run independent tasks concurrently and collect failures by task id.

    Args:
        tasks: Mapping of task id to a zero-argument coroutine factory.

    Returns:
        FanoutResult with successful results and captured exceptions.
    """
    task_ids = list(tasks)

    async def _run(task_id: str) -> T:
        return await tasks[task_id]()

    outcomes = await asyncio.gather(
        *(_run(task_id) for task_id in task_ids),
        return_exceptions=True,
    )

    result: FanoutResult[T] = FanoutResult()
    for task_id, outcome in zip(task_ids, outcomes, strict=True):
        if isinstance(outcome, Exception):
            result.failures[task_id] = outcome
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            result.results[task_id] = outcome

    if result.failures:
        logger.warning(
            "fanout_partial_failure",
            total=len(task_ids),
            failed=len(result.failures),
            failed_ids=result.failed_ids[:20],
        )

    return result
