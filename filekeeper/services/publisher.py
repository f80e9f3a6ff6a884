"""Lifecycle event publishers.

Two :class:`~filekeeper.core.interfaces.EventPublisher` implementations:

``LoggingEventPublisher``
    Writes one structured JSON log line per event.  Default when no
    downstream consumer is configured.

``WebhookEventPublisher``
    POSTs the batch as JSON to an HTTP endpoint with :mod:`httpx`.  A
    non-2xx reply raises, so the orchestrator leaves the events undelivered
    in the outbox and they can be replayed later.

Events are only handed to a publisher after the state change that raised
them has been committed.

Usage::

    publisher = WebhookEventPublisher("https://hooks.example.com/files")
    await publisher.publish(record.pending_events)
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

import httpx
from prometheus_client import Counter

from filekeeper.core.events import LifecycleEvent
from filekeeper.core.interfaces import EventPublisher

logger = logging.getLogger(__name__)

#: Labels: ``publisher`` ("logging" | "webhook"), ``event_type``.
events_published_total = Counter(
    "filekeeper_events_published_total",
    "Lifecycle events handed to a publisher",
    ["publisher", "event_type"],
)

#: Maximum seconds to wait for the webhook endpoint.
_HTTP_TIMEOUT = 10.0


class LoggingEventPublisher(EventPublisher):
    """Emit every event as a JSON log line on the ``filekeeper.events`` logger."""

    def __init__(self, logger_name: str = "filekeeper.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def publish(self, events: Sequence[LifecycleEvent]) -> None:
        for event in events:
            self._logger.info(json.dumps(event.to_dict()))
            events_published_total.labels(publisher="logging", event_type=event.event_type).inc()


class WebhookEventPublisher(EventPublisher):
    """POST events to an HTTP endpoint as ``{"events": [...]}``.

    Args:
        endpoint: Target URL.
        token: Optional bearer token sent as ``Authorization``.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a client is created per call.
    """

    def __init__(
        self,
        endpoint: str,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._token = token
        self._http_client = http_client

    async def publish(self, events: Sequence[LifecycleEvent]) -> None:
        if not events:
            return
        payload = {"events": [event.to_dict() for event in events]}
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        if self._http_client is not None:
            response = await self._http_client.post(
                self._endpoint, content=json.dumps(payload), headers=headers
            )
        else:
            async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
                response = await client.post(
                    self._endpoint, content=json.dumps(payload), headers=headers
                )
        response.raise_for_status()

        for event in events:
            events_published_total.labels(publisher="webhook", event_type=event.event_type).inc()
        logger.info(
            "Delivered %d lifecycle event(s) to %s status=%d",
            len(events),
            self._endpoint,
            response.status_code,
        )
