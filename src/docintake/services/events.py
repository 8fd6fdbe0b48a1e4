"""Typed in-process event bus.

Producers publish typed events; each subscriber owns an asyncio.Queue and a
consumer task, so a slow or failing handler never blocks the producer or
other subscribers. Delivery is at-least-once within the process: a handler
that raises is retried with doubling backoff up to max_attempts, after which
the event is dead-lettered to the error log.

Topics:
    documents:completed           DocumentCompletionEvent
    profile:completed             ProfileCompletionEvent
    verification:adjudicated      AdjudicationSignal
    verification:status_changed   VerificationStatusChanged
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from docintake.db.models import PrincipalRole, VerificationState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class Topic(str, Enum):
    """Event bus topics."""

    DOCUMENTS_COMPLETED = "documents:completed"
    PROFILE_COMPLETED = "profile:completed"
    VERIFICATION_ADJUDICATED = "verification:adjudicated"
    VERIFICATION_STATUS_CHANGED = "verification:status_changed"


class Decision(str, Enum):
    """Adjudication decision."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class DocumentCompletionEvent:
    """Document completeness of an owner after a document change."""

    topic: ClassVar[Topic] = Topic.DOCUMENTS_COMPLETED

    owner_id: str
    role: PrincipalRole
    all_completed: bool
    completed_categories: list[str]
    required_categories: list[str]
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class ProfileCompletionEvent:
    """Profile completeness of an owner, published by the profile system."""

    topic: ClassVar[Topic] = Topic.PROFILE_COMPLETED

    owner_id: str
    role: PrincipalRole
    profile_completed: bool
    completion_percentage: int = 0
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class AdjudicationSignal:
    """An administrator's verification decision."""

    topic: ClassVar[Topic] = Topic.VERIFICATION_ADJUDICATED

    owner_id: str
    decision: Decision
    adjudicator_id: str
    notes: str | None = None
    role: PrincipalRole | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class VerificationStatusChanged:
    """A verification status transition that was applied."""

    topic: ClassVar[Topic] = Topic.VERIFICATION_STATUS_CHANGED

    owner_id: str
    old_status: VerificationState
    new_status: VerificationState
    reason: str
    timestamp: datetime = field(default_factory=_now)


Event = (
    DocumentCompletionEvent | ProfileCompletionEvent | AdjudicationSignal | VerificationStatusChanged
)


def event_to_dict(event: Event) -> dict[str, Any]:
    """Serialize an event for logs and dead letters."""
    payload: dict[str, Any] = {"topic": event.topic.value}
    for f in dataclasses.fields(event):
        value = getattr(event, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        payload[f.name] = value
    return payload


class _Subscription:
    """One subscriber: a queue plus the task consuming it."""

    def __init__(self, topic: Topic, handler: Callable[[Any], Awaitable[None]], name: str) -> None:
        self.topic = topic
        self.handler = handler
        self.name = name
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None


class EventBus:
    """Publish/subscribe bus with per-subscriber queues.

    Example:
        bus = EventBus()
        bus.subscribe(Topic.DOCUMENTS_COMPLETED, reconciler.on_documents_completed)
        bus.publish(DocumentCompletionEvent(owner_id="u1", role=PrincipalRole.CUSTOMER, ...))
        await bus.join()
    """

    def __init__(self, *, max_attempts: int = 3, retry_backoff_seconds: float = 0.5) -> None:
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._subscriptions: dict[Topic, list[_Subscription]] = {}
        self._closed = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def subscribe(
        self,
        topic: Topic,
        handler: Callable[[Any], Awaitable[None]],
        *,
        name: str | None = None,
    ) -> None:
        """Register a handler for a topic and start its consumer.

        Must be called from within a running event loop.
        """
        subscription = _Subscription(
            topic, handler, name or getattr(handler, "__qualname__", repr(handler))
        )
        subscription.task = asyncio.get_running_loop().create_task(
            self._consume(subscription), name=f"eventbus:{topic.value}:{subscription.name}"
        )
        self._subscriptions.setdefault(topic, []).append(subscription)
        logger.debug("Subscribed %s to %s", subscription.name, topic.value)

    def publish(self, event: Event) -> int:
        """Enqueue an event for every subscriber of its topic.

        Returns:
            Number of subscribers the event was queued for.
        """
        if self._closed:
            logger.warning("Event bus closed, dropping %s event", event.topic.value)
            return 0

        subscriptions = self._subscriptions.get(event.topic, [])
        for subscription in subscriptions:
            subscription.queue.put_nowait(event)
        if subscriptions:
            self._in_flight += len(subscriptions)
            self._idle.clear()
        logger.debug("Published %s to %d subscribers", event.topic.value, len(subscriptions))
        return len(subscriptions)

    async def join(self) -> None:
        """Wait until every queued event has been handled or dead-lettered."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop all consumers. Undelivered events are discarded."""
        self._closed = True
        tasks = [
            s.task for subs in self._subscriptions.values() for s in subs if s.task is not None
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscriptions.clear()
        self._in_flight = 0
        self._idle.set()

    async def _consume(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                await self._deliver(subscription, event)
            finally:
                subscription.queue.task_done()
                self._in_flight -= 1
                if self._in_flight <= 0:
                    self._in_flight = 0
                    self._idle.set()

    async def _deliver(self, subscription: _Subscription, event: Event) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                await subscription.handler(event)
                return
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (attempt %d/%d)",
                    subscription.name,
                    event.topic.value,
                    attempt,
                    self._max_attempts,
                )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_backoff * 2 ** (attempt - 1))

        logger.error(
            "Dead-lettered %s event for %s: %s",
            event.topic.value,
            subscription.name,
            event_to_dict(event),
        )
