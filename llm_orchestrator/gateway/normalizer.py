"""Stream Normalizer — merges one adapter call's events for the caller.

Applied to the lazy event sequence of a single adapter call:
  - Text is forwarded immediately
  - Tool-call fragments are accumulated per call id, in arrival order,
    and a complete ToolCallEvent is emitted as soon as the accumulated
    arguments parse as a JSON object
  - Done flushes still-incomplete tool calls as MALFORMED_TOOL_CALL
    error events, then ends the stream successfully
  - An adapter ErrorEvent ends the stream by raising AdapterError, which
    the provider manager feeds into the retry policy
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from llm_orchestrator.gateway.errors import AdapterError, MalformedToolCallError
from llm_orchestrator.gateway.types import (
    DoneEvent,
    ErrorCode,
    ErrorEvent,
    MergedEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    @property
    def raw_arguments(self) -> str:
        return "".join(self.fragments)


def _parse_arguments(raw: str) -> dict | None:
    """Return the parsed arguments object, or None while still incomplete."""
    text = raw.strip()
    if not text.endswith("}"):
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments, keyed by call id."""

    def __init__(self):
        self._pending: dict[str, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, fragment: ToolCallFragment) -> ToolCallEvent | None:
        """Append a fragment; return the complete call once its JSON parses."""
        pending = self._pending.setdefault(fragment.id, _PendingCall())
        if fragment.name:
            pending.name = fragment.name
        if fragment.args_fragment:
            pending.fragments.append(fragment.args_fragment)

        arguments = _parse_arguments(pending.raw_arguments)
        if arguments is None or not pending.name:
            return None

        del self._pending[fragment.id]
        return ToolCallEvent(id=fragment.id, name=pending.name, arguments=arguments)

    def flush(self) -> tuple[list[ToolCallEvent], list[MalformedToolCallError]]:
        """Drain every pending call at end of stream.

        Calls with a name but no argument text at all are complete with
        empty arguments; anything else still pending is malformed.
        """
        completed: list[ToolCallEvent] = []
        malformed: list[MalformedToolCallError] = []
        for call_id, pending in self._pending.items():
            raw = pending.raw_arguments
            if pending.name and not raw.strip():
                completed.append(ToolCallEvent(id=call_id, name=pending.name, arguments={}))
            else:
                malformed.append(MalformedToolCallError(call_id, pending.name, raw))
        self._pending.clear()
        return completed, malformed


async def merge_stream(
    events: AsyncIterator[StreamEvent],
    provider_id: str,
) -> AsyncIterator[MergedEvent]:
    """Normalize one adapter call's events into the caller-visible sequence.

    Raises AdapterError when the adapter reports an error, or when the stream
    ends without a Done event.
    """
    accumulator = ToolCallAccumulator()

    async for event in events:
        if isinstance(event, TextEvent):
            if event.content:
                yield event

        elif isinstance(event, ToolCallFragment):
            complete = accumulator.add(event)
            if complete is not None:
                yield complete

        elif isinstance(event, DoneEvent):
            completed, malformed = accumulator.flush()
            for call in completed:
                yield call
            for error in malformed:
                logger.warning("Malformed tool call from %s: %s", provider_id, error)
                yield error.to_event()
            yield event
            return

        elif isinstance(event, ErrorEvent):
            raise AdapterError.from_event(event, provider_id)

        else:
            logger.debug("Ignoring unknown stream event from %s: %r", provider_id, event)

    raise AdapterError(
        ErrorCode.NETWORK_ERROR,
        provider_id,
        "Stream ended before completion",
        retryable=True,
    )
