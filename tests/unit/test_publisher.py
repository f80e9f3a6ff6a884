"""Unit tests for the lifecycle event publishers."""

from __future__ import annotations

import json
import logging
import uuid

import httpx
import pytest

from filekeeper.core.events import FileRejected, FileUploaded
from filekeeper.services.publisher import LoggingEventPublisher, WebhookEventPublisher

ENDPOINT = "https://hooks.example.com/files"


def _events():
    file_id = uuid.uuid4()
    return [
        FileUploaded(file_id=file_id, storage_key="docs/report.pdf", file_name="report.pdf"),
        FileRejected(file_id=file_id, storage_key="docs/report.pdf", reason="size mismatch"),
    ]


# ---------------------------------------------------------------------------
# LoggingEventPublisher
# ---------------------------------------------------------------------------


class TestLoggingEventPublisher:
    async def test_one_json_line_per_event(self, caplog) -> None:
        events = _events()
        with caplog.at_level(logging.INFO, logger="filekeeper.events"):
            await LoggingEventPublisher().publish(events)

        lines = [json.loads(r.getMessage()) for r in caplog.records if r.name == "filekeeper.events"]
        assert [line["event_type"] for line in lines] == ["file.uploaded", "file.rejected"]
        assert lines[0]["event_id"] == str(events[0].event_id)
        assert lines[1]["reason"] == "size mismatch"


# ---------------------------------------------------------------------------
# WebhookEventPublisher
# ---------------------------------------------------------------------------


class TestWebhookEventPublisher:
    async def test_posts_batch_with_bearer_token(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            publisher = WebhookEventPublisher(ENDPOINT, token="s3cret", http_client=client)
            await publisher.publish(_events())

        (request,) = captured
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT
        assert request.headers["Authorization"] == "Bearer s3cret"
        body = json.loads(request.content)
        assert [e["event_type"] for e in body["events"]] == ["file.uploaded", "file.rejected"]

    async def test_no_token_no_auth_header(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await WebhookEventPublisher(ENDPOINT, http_client=client).publish(_events())

        assert "Authorization" not in captured[0].headers

    async def test_non_2xx_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(503))

        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await WebhookEventPublisher(ENDPOINT, http_client=client).publish(_events())

    async def test_empty_batch_not_sent(self) -> None:
        calls = []
        transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200))

        async with httpx.AsyncClient(transport=transport) as client:
            await WebhookEventPublisher(ENDPOINT, http_client=client).publish([])

        assert calls == []
