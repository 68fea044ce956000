"""In-process job event broker.

The queue publishes status/progress/log events here; the SSE route drains
a per-subscriber asyncio.Queue. Publishing never raises into the caller and
never blocks: a subscriber whose buffer is full loses the event.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from taxqueue.models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class JobEvent:
    type: str
    job_id: str
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "jobId": self.job_id,
            "sessionId": self.session_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


@dataclass
class Subscription:
    id: str
    session_id: str | None
    queue: asyncio.Queue


class JobEventBroker:
    """Fan out job events to subscribers, optionally filtered by session."""

    def __init__(self, buffer_size: int = 100) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._buffer_size = buffer_size

    def subscribe(self, session_id: str | None = None) -> Subscription:
        sub = Subscription(
            id=str(uuid4()),
            session_id=session_id,
            queue=asyncio.Queue(maxsize=self._buffer_size),
        )
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: JobEvent) -> None:
        """Fire-and-forget delivery."""
        for sub in list(self._subscriptions.values()):
            if sub.session_id is not None and sub.session_id != event.session_id:
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.type} for subscriber {sub.id}: buffer full")
            except Exception as e:
                logger.error(f"Failed to deliver {event.type} to subscriber {sub.id}: {e}")
