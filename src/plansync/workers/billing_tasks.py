"""Celery tasks for subscription renewal and downgrade reconciliation."""

import asyncio
from collections.abc import Coroutine
from functools import lru_cache
from typing import Any, TypeVar

import structlog
from celery import shared_task

from plansync.billing.schemas import Continuation, RenewalCursor, RenewalStep
from plansync.core.exceptions import QueueSendError
from plansync.core.fanout import QueueMessage
from plansync.core.logging import clear_correlation_id, set_correlation_id
from plansync.integrations.base import MessageQueue
from plansync.runtime import Runtime, build_runtime
from plansync.workers.celery_app import RECONCILE_DOWNGRADES_TASK, RUN_RENEWAL_TASK

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_worker_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async function in sync context for Celery.

    The loop is kept for the life of the worker process so that cached
    clients and locks stay bound to a single loop.
    """
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
    return _worker_loop.run_until_complete(coro)


@lru_cache
def get_worker_runtime() -> Runtime:
    return build_runtime()


async def dispatch_renewal_step(
    step: RenewalStep,
    queue: MessageQueue,
    queue_ref: str,
) -> dict[str, Any]:
    """Send the continuation of a renewal run, if any, to the renewal queue."""
    result: dict[str, Any] = {
        "done": not isinstance(step, Continuation),
        **step.report.to_dict(),
    }
    if isinstance(step, Continuation):
        await queue.send(queue_ref, step.cursor.to_message())
        logger.info("renewal_continuation_sent", queue=queue_ref)
    return result


@shared_task(bind=True, name=RUN_RENEWAL_TASK)  # type: ignore[untyped-decorator]
def run_renewal(
    _self: Any,  # noqa: ARG001
    messages: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Charge one page of due paid subscriptions per tier."""
    return run_async(_run_renewal_async(messages or [], get_worker_runtime()))


async def _run_renewal_async(
    messages: list[dict[str, Any]],
    runtime: Runtime,
) -> dict[str, Any]:
    """Async implementation of a renewal run."""
    correlation_id = set_correlation_id()
    try:
        cursor = None
        body = messages[0].get("body") if messages else None
        if body:
            cursor = RenewalCursor.model_validate(body)

        logger.info(
            "renewal_run_started",
            correlation_id=correlation_id,
            cold_start=cursor is None,
        )
        step = await runtime.renewal.run(cursor)
        return await dispatch_renewal_step(step, runtime.queue, runtime.settings.renewal_queue)
    finally:
        clear_correlation_id()


@shared_task(bind=True, name=RECONCILE_DOWNGRADES_TASK)  # type: ignore[untyped-decorator]
def reconcile_downgrades(
    _self: Any,  # noqa: ARG001
    messages: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Demote or disable a batch of subscriptions whose renewal failed."""
    return run_async(_reconcile_downgrades_async(messages or [], get_worker_runtime()))


async def _reconcile_downgrades_async(
    messages: list[dict[str, Any]],
    runtime: Runtime,
) -> dict[str, Any]:
    """Async implementation of downgrade reconciliation.

    Failed messages are sent back to the downgrade queue after a delay until
    they reach the receive limit, then dropped with an error log.
    """
    set_correlation_id()
    try:
        batch = [QueueMessage(message_id=m["message_id"], body=m["body"]) for m in messages]
        receive_counts = {m["message_id"]: int(m.get("receive_count", 1)) for m in messages}

        result = await runtime.reconciler.handle_batch(batch)
        failed = set(result.failed_ids)
        settings = runtime.settings

        for message in batch:
            if message.message_id not in failed:
                continue

            receive_count = receive_counts[message.message_id]
            if receive_count >= settings.downgrade_max_receive_count:
                logger.error(
                    "downgrade_message_dead_lettered",
                    message_id=message.message_id,
                    receive_count=receive_count,
                )
                continue

            try:
                await runtime.queue.send(
                    settings.downgrade_queue,
                    message.body,
                    countdown=settings.downgrade_redelivery_delay_seconds,
                    message_id=message.message_id,
                    receive_count=receive_count + 1,
                )
            except QueueSendError as e:
                logger.error(
                    "downgrade_redelivery_failed",
                    message_id=message.message_id,
                    receive_count=receive_count,
                    error=str(e),
                )
                continue
            logger.info(
                "downgrade_message_redelivered",
                message_id=message.message_id,
                receive_count=receive_count + 1,
            )

        return result.to_dict()
    finally:
        clear_correlation_id()
