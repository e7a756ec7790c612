"""Base provider interface.

Every vendor adapter turns a conversation plus tool catalog into one
streaming HTTP call and returns a CompletionResult. The base class owns the
pieces that are the same for every vendor: the httpx client, the single
in-flight call handle, abort wiring, and the inactivity timer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from conduit.errors import RequestCancelledError
from conduit.inactivity import InactivityTimer
from conduit.messages import CompletionResult, Message, ToolCallSegment, ToolSpec

logger = logging.getLogger(__name__)


class AbortSignal:
    """User-facing cancellation flag shared by every suspension point of a turn.

    abort() fires registered callbacks synchronously (adapters use this to
    cancel their in-flight request) and wakes anything awaiting wait()
    (retry backoff sleeps).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamOptions:
    """Live callbacks and cancellation for one call."""

    on_text_delta: Callable[[str], None] | None = None
    on_tool_use: Callable[[ToolCallSegment], None] | None = None
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class ProviderConfig:
    model: str
    api_key: str = ""
    max_tokens: int = 8192
    temperature: float = 1.0
    system_prompt: str = ""
    base_url: str = ""
    inactivity_timeout: float | None = 180.0  # seconds; None disables
    connect_timeout: float = 10.0


class _InflightCall:
    """Cancellation handle for the one request an adapter has in flight."""

    def __init__(self, task: asyncio.Task[Any]) -> None:
        self.task = task
        self.cancelled_by_user = False

    def cancel(self) -> None:
        if self.cancelled_by_user or self.task.done():
            return
        self.cancelled_by_user = True
        self.task.cancel()


class LLMProvider(ABC):
    """Streaming completion with tool calling, one call in flight at a time."""

    provider_name: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._inflight: _InflightCall | None = None
        self._http = httpx.AsyncClient(
            base_url=config.base_url or self.default_base_url,
            headers=self._build_headers(),
            # Read timeout disabled: stalls are handled by InactivityTimer
            timeout=httpx.Timeout(connect=config.connect_timeout, read=None, write=30.0, pool=10.0),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self.config.model

    def is_reasoning_model(self) -> bool:
        return False

    async def aclose(self) -> None:
        await self._http.aclose()

    def abort(self) -> None:
        """Abort the in-progress completion request, if any."""
        if self._inflight is not None:
            self._inflight.cancel()
            self._inflight = None

    async def stream_completion(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        options: StreamOptions | None = None,
    ) -> CompletionResult:
        """Stream one completion, invoking callbacks as deltas arrive.

        Raises InactivityTimeoutError when the stream stalls for longer than
        the configured window, RequestCancelledError when aborted, and lets
        transport and ProviderError failures propagate for classification.
        """
        options = options or StreamOptions()
        signal = options.abort_signal
        if signal is not None and signal.aborted:
            raise RequestCancelledError()

        task = asyncio.current_task()
        if task is None:
            raise RuntimeError("stream_completion must run inside an asyncio task")
        if self._inflight is not None:
            logger.warning(
                "%s: new call started while another is in flight; "
                "the previous handle is no longer abortable",
                self.provider_name,
            )
        call = _InflightCall(task)
        self._inflight = call
        remove_callback = signal.add_callback(call.cancel) if signal is not None else None

        try:
            async with InactivityTimer(self.config.inactivity_timeout) as timer:
                return await self._stream(messages, tools, options, timer)
        except asyncio.CancelledError:
            if call.cancelled_by_user:
                task.uncancel()
                raise RequestCancelledError() from None
            raise
        finally:
            if remove_callback is not None:
                remove_callback()
            if self._inflight is call:
                self._inflight = None

    @abstractmethod
    def _build_headers(self) -> dict[str, str]: ...

    @abstractmethod
    async def _stream(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        options: StreamOptions,
        timer: InactivityTimer,
    ) -> CompletionResult: ...


async def iter_sse_data(
    response: httpx.Response,
    timer: InactivityTimer,
) -> AsyncIterator[Any]:
    """Yield decoded JSON payloads of `data:` lines from an SSE response.

    Every received line (including `event:` lines and keepalives) resets the
    inactivity timer. `data: [DONE]` ends the iteration. Lines that are not
    valid JSON are logged and skipped.
    """
    async for line in response.aiter_lines():
        timer.touch()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE data line (%d chars)", len(data))
            continue
        yield payload
