"""Reassembly of streamed tool calls.

Vendors stream a tool call as fragments: an id, a name, and argument JSON in
arbitrary pieces, tagged with a position index. Several calls can interleave,
so partial state is keyed by that index and only parsed once the stream says
the call is complete.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from conduit.errors import ToolArgumentsError
from conduit.messages import ToolCallSegment

logger = logging.getLogger(__name__)

# Best-effort fixer for truncated argument JSON; returns None when hopeless
JsonRepair = Callable[[str], dict[str, Any] | None]


@dataclass
class PartialToolCall:
    index: int
    id: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.parts)


class ToolCallAccumulator:
    """Per-call accumulator, local to one streaming request."""

    def __init__(self, repair: JsonRepair | None = None) -> None:
        self._partials: dict[int, PartialToolCall] = {}
        self._repair = repair

    def __len__(self) -> int:
        return len(self._partials)

    def __contains__(self, index: int) -> bool:
        return index in self._partials

    def add(
        self,
        index: int,
        id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        """Merge one fragment into the call at `index`."""
        partial = self._partials.get(index)
        if partial is None:
            partial = PartialToolCall(index=index)
            self._partials[index] = partial
        if id:
            partial.id = id
        if name:
            partial.name = name
        if arguments:
            partial.parts.append(arguments)

    def finish(self, index: int) -> ToolCallSegment | None:
        """Complete the call at `index`. Returns None if it had to be dropped."""
        partial = self._partials.pop(index, None)
        if partial is None:
            return None
        try:
            return self._complete(partial)
        except ToolArgumentsError as e:
            logger.warning("Dropping tool call: %s", e)
            return None

    def finish_all(self) -> list[ToolCallSegment]:
        """Complete every pending call in index order, dropping malformed ones."""
        calls = []
        for index in sorted(self._partials):
            call = self.finish(index)
            if call is not None:
                calls.append(call)
        return calls

    def _complete(self, partial: PartialToolCall) -> ToolCallSegment:
        raw = partial.arguments
        if not partial.id or not partial.name:
            raise ToolArgumentsError(partial.name or "?", partial.id or "?", len(raw))

        if not raw.strip():
            return ToolCallSegment(id=partial.id, name=partial.name, input={})

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = self._repair(raw) if self._repair else None
            if parsed is not None:
                logger.info(
                    "Repaired truncated arguments for tool %r (%d chars)",
                    partial.name,
                    len(raw),
                )

        if not isinstance(parsed, dict):
            raise ToolArgumentsError(partial.name, partial.id, len(raw))
        return ToolCallSegment(id=partial.id, name=partial.name, input=parsed)
