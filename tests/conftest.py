"""Shared fixtures: fake SSE transports built on httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest


def sse_data(payload: Any) -> str:
    """One SSE `data:` record."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


def sse_event(event_type: str, payload: dict[str, Any]) -> str:
    """An Anthropic-style record with an `event:` line."""
    return f"event: {event_type}\ndata: {json.dumps({'type': event_type, **payload})}\n\n"


class FakeSSEServer:
    """Records requests and replies with a scripted SSE body.

    `delay` sleeps between records; `stall_after` stops sending (but keeps
    the connection open) after that many records.
    """

    def __init__(
        self,
        records: list[str],
        status_code: int = 200,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
        delay: float = 0.0,
        stall_after: int | None = None,
    ) -> None:
        self.records = records
        self.status_code = status_code
        self.body = body
        self.headers = headers or {}
        self.delay = delay
        self.stall_after = stall_after
        self.requests: list[httpx.Request] = []

    @property
    def last_payload(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)

    async def _stream(self) -> AsyncIterator[bytes]:
        for i, record in enumerate(self.records):
            if self.stall_after is not None and i >= self.stall_after:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            yield record.encode()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(
                self.status_code,
                headers=self.headers,
                content=self.body or b"",
            )
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream", **self.headers},
            content=self._stream(),
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_server():
    """Factory for FakeSSEServer instances."""
    return FakeSSEServer
