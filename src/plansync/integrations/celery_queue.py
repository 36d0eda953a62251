"""Message queue backed by Celery task dispatch."""

import asyncio
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from celery import Celery

from plansync.core.exceptions import QueueSendError
from plansync.core.logging import LoggerMixin
from plansync.integrations.base import MessageQueue


class CeleryMessageQueue(MessageQueue, LoggerMixin):
    """Sends each message as a one-item batch to the queue's consuming task.

    Every consumer task receives ``messages=[{"message_id": ..., "body": ...}]``,
    plus ``receive_count`` on redelivered messages.
    """

    def __init__(self, app: Celery, routes: Mapping[str, str]) -> None:
        """Initialize the queue.

        Args:
            app: Celery application
            routes: Queue name to consuming task name
        """
        self.app = app
        self.routes = dict(routes)

    async def send(
        self,
        queue_ref: str,
        body: dict[str, Any],
        countdown: float | None = None,
        *,
        message_id: str | None = None,
        receive_count: int | None = None,
    ) -> str:
        """Send one message and return its id.

        A redelivered message keeps its id and carries its receive count.

        Raises:
            QueueSendError: If the queue is unknown or the broker rejects it
        """
        task_name = self.routes.get(queue_ref)
        if task_name is None:
            raise QueueSendError(
                f"No consumer registered for queue {queue_ref}",
                service="celery",
                details={"queue": queue_ref},
            )

        message_id = message_id or str(uuid4())
        message: dict[str, Any] = {"message_id": message_id, "body": body}
        if receive_count is not None:
            message["receive_count"] = receive_count

        try:
            await asyncio.to_thread(
                self.app.send_task,
                task_name,
                kwargs={"messages": [message]},
                queue=queue_ref,
                countdown=countdown,
            )
        except Exception as e:
            raise QueueSendError(
                f"Failed to send message to {queue_ref}",
                service="celery",
                details={"queue": queue_ref, "error": str(e)},
            ) from e

        self.logger.debug("queue_message_sent", queue=queue_ref, message_id=message_id)
        return message_id
