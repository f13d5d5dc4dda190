"""Best-effort notifications to consumer owners about lifecycle actions."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from consumerauth.core.actor import Actor
from consumerauth.models.consumer import Consumer

logger = logging.getLogger(__name__)

NOTIFY_ACTIONS = ("propose", "update", "approve", "reject", "disable", "reenable")

Deliver = Callable[[dict[str, Any]], Awaitable[None] | None]

# Deliveries still running; held so the loop keeps a reference until they finish
_in_flight: set[asyncio.Task[None]] = set()


class Notifier(Protocol):
    async def notify(self, consumer: Consumer, action: str, performer: Actor, comment: str | None) -> None: ...


def build_notification(consumer: Consumer, action: str, performer: Actor, comment: str | None) -> dict[str, Any]:
    return {
        "type": f"oauth-app-{action}",
        "consumer_key": consumer.consumer_key,
        "consumer_name": consumer.name,
        "consumer_version": consumer.version,
        "owner_id": consumer.user_id,
        "performer_id": performer.id,
        "performer_name": performer.name,
        "comment": comment or "",
    }


class ConsumerNotifier:
    """Notifies the consumer owner through a pluggable delivery callable.

    Delivery runs in a background task so a slow or failing transport never
    delays or fails the lifecycle action. An action name outside
    ``NOTIFY_ACTIONS`` is a programming error and raises ValueError.
    """

    def __init__(self, deliver: Deliver | None = None):
        self._deliver = deliver

    async def notify(self, consumer: Consumer, action: str, performer: Actor, comment: str | None) -> None:
        if action not in NOTIFY_ACTIONS:
            raise ValueError(f"Invalid action type: {action}")
        if self._deliver is None:
            logger.debug("No notification transport configured; skipping %s for %s", action, consumer.consumer_key)
            return
        payload = build_notification(consumer, action, performer, comment)
        task = asyncio.create_task(self._send(payload), name=f"notify-{action}-{consumer.consumer_key}")
        _in_flight.add(task)
        task.add_done_callback(functools.partial(_delivery_finished, payload))

    async def _send(self, payload: dict[str, Any]) -> None:
        result = self._deliver(payload)
        if inspect.isawaitable(result):
            await result


def _delivery_finished(payload: dict[str, Any], task: asyncio.Task[None]) -> None:
    _in_flight.discard(task)
    if task.cancelled():
        logger.warning("Notification %s for consumer %s was cancelled", payload["type"], payload["consumer_key"])
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Failed to deliver %s notification for consumer %s",
            payload["type"], payload["consumer_key"], exc_info=exc,
        )


async def drain_notifications(timeout_seconds: float = 1.0) -> int:
    """Wait up to ``timeout_seconds`` for pending deliveries, then cancel the rest.

    Called at shutdown so deliveries are not cut off mid-flight by the loop
    closing. Returns how many deliveries were dropped.
    """
    pending = {task for task in _in_flight if not task.done()}
    if not pending:
        return 0

    _, late = await asyncio.wait(pending, timeout=timeout_seconds)
    for task in late:
        task.cancel()
    if late:
        await asyncio.gather(*late, return_exceptions=True)
        logger.warning("Dropped %d undelivered notifications", len(late))
    return len(late)
