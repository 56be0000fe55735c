"""Caller-facing stream events emitted by the agent turn loop.

Every event is one immutable unit; the transport writes each one whole.
Exactly one terminal event (``done`` or ``error``) ends a stream unless the
request was cancelled.

Event Types:
    - text: Text produced by the model
    - tool: The model requested a tool (sent before it runs)
    - tool_result: A tool finished, successfully or not
    - thinking: Model thinking content
    - done: The request completed
    - error: The request failed

Example:
    >>> event = text_event("Looking that up now.")
    >>> event.to_dict()
    {'type': 'text', 'content': 'Looking that up now.'}
    >>> event.to_sse()
    'event: text\\ndata: {"type": "text", "content": "Looking that up now."}\\n\\n'
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """Kinds of stream events."""

    TEXT = "text"
    TOOL = "tool"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.DONE, EventType.ERROR})


@dataclass(frozen=True)
class StreamEvent:
    """One event on the caller-facing stream.

    Attributes:
        event_type: Kind of event
        payload: Event fields
    """

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, **self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Server-Sent Events frame for this event."""
        return f"event: {self.event_type.value}\ndata: {self.to_json()}\n\n"


# =============================================================================
# Factory Functions
# =============================================================================


def text_event(content: str) -> StreamEvent:
    return StreamEvent(EventType.TEXT, {"content": content})


def thinking_event(content: str) -> StreamEvent:
    return StreamEvent(EventType.THINKING, {"content": content})


def tool_event(
    name: str,
    tool_use_id: str,
    input: Optional[dict[str, Any]] = None,
    param_summary: Optional[str] = None,
) -> StreamEvent:
    """Tool request notification; ``input`` is included only when given."""
    payload: dict[str, Any] = {"name": name, "id": tool_use_id}
    if input is not None:
        payload["input"] = input
    if param_summary:
        payload["param_summary"] = param_summary
    return StreamEvent(EventType.TOOL, payload)


def tool_result_event(
    name: str,
    tool_use_id: str,
    success: bool,
    preview: str,
    duration_ms: float = 0.0,
) -> StreamEvent:
    return StreamEvent(
        EventType.TOOL_RESULT,
        {
            "name": name,
            "id": tool_use_id,
            "success": success,
            "preview": preview,
            "duration_ms": round(duration_ms, 2),
        },
    )


def done_event(
    response: str,
    tool_calls: list[dict[str, Any]],
    iterations: int,
    reason: str = "done",
    conversation_id: Optional[str] = None,
    usage: Optional[dict[str, Any]] = None,
) -> StreamEvent:
    return StreamEvent(
        EventType.DONE,
        {
            "response": response,
            "tool_calls": tool_calls,
            "iterations": iterations,
            "reason": reason,
            "conversation_id": conversation_id,
            "usage": usage or {},
        },
    )


def error_event(message: str, code: Optional[str] = None) -> StreamEvent:
    payload: dict[str, Any] = {"message": message}
    if code:
        payload["code"] = code
    return StreamEvent(EventType.ERROR, payload)


__all__ = [
    "EventType",
    "StreamEvent",
    "TERMINAL_EVENTS",
    "text_event",
    "thinking_event",
    "tool_event",
    "tool_result_event",
    "done_event",
    "error_event",
]
