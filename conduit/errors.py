"""Error taxonomy for the engine.

Transport failures are the raw httpx / OS exceptions and are not wrapped.
Everything the engine raises itself derives from ConduitError.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


class ConduitError(Exception):
    """Base class for engine-raised errors."""


class RetryableError(ConduitError):
    """An error the caller marks as safe to retry.

    retry_after (seconds) overrides the computed backoff when set.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RequestTimeoutError(RetryableError):
    """A provider call exceeded its hard timeout."""

    def __init__(self, message: str, timeout: float | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class InactivityTimeoutError(RequestTimeoutError):
    """No stream event arrived within the inactivity window."""

    def __init__(self, window: float) -> None:
        super().__init__(
            f"Operation timed out after {window:g}s of inactivity", timeout=window
        )
        self.window = window


class RequestCancelledError(ConduitError):
    """The request was aborted by the user. Never retried."""

    def __init__(self, message: str = "Request aborted by user") -> None:
        super().__init__(message)


class ToolArgumentsError(ConduitError):
    """A single tool call's argument payload could not be parsed.

    Raised and handled inside an adapter; the call is dropped and the rest of
    the stream continues.
    """

    def __init__(self, tool_name: str, call_id: str, raw_length: int) -> None:
        super().__init__(
            f"Malformed arguments for tool {tool_name!r} (call {call_id}, "
            f"{raw_length} chars)"
        )
        self.tool_name = tool_name
        self.call_id = call_id


class ProviderError(ConduitError):
    """A vendor API returned an error response (HTTP or in-stream)."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        error_type: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        status = f" ({status_code})" if status_code is not None else ""
        kind = f"{error_type} - " if error_type else ""
        super().__init__(f"{provider} API error{status}: {kind}{message}")
        self.provider = provider
        self.vendor_message = message
        self.status_code = status_code
        self.error_type = error_type
        self.retry_after = retry_after

    @classmethod
    def from_response(
        cls,
        provider: str,
        status_code: int,
        body: bytes | str,
        headers: Mapping[str, str] | None = None,
    ) -> ProviderError:
        """Build the right subclass from a non-2xx response.

        Parses {"error": {"type": ..., "message": ...}} bodies (Anthropic and
        OpenAI-compatible servers both use this shape) and Retry-After.
        """
        text = body.decode(errors="replace") if isinstance(body, bytes) else body
        error_type: str | None = None
        message = text[:500] or f"HTTP {status_code}"
        try:
            data: Any = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                error_type = error.get("type") or error.get("code")
                message = error.get("message") or message
            elif isinstance(error, str):
                message = error

        retry_after = parse_retry_after(headers.get("retry-after") if headers else None)

        if status_code in (401, 403):
            klass: type[ProviderError] = AuthenticationError
        elif status_code == 429:
            klass = RateLimitError
        else:
            klass = ProviderError
        return klass(
            provider,
            message,
            status_code=status_code,
            error_type=str(error_type) if error_type is not None else None,
            retry_after=retry_after,
        )


class RateLimitError(ProviderError):
    """HTTP 429 from the vendor."""


class AuthenticationError(ProviderError):
    """HTTP 401/403 from the vendor. Not retryable."""


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
