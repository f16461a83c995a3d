"""Canonical conversation types shared by both dialect translators.

Translators turn a request body into a Conversation, the LLM backend consumes
it and answers either with a Completion (single shot) or with a stream of
BackendEvent objects. Nothing in here knows about either wire dialect.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, ClassVar, Optional, Protocol, Union

from .errors import RequestAborted


# =============================================================================
# Conversation
# =============================================================================

@dataclass
class TextContent:
    text: str
    type: ClassVar[str] = "text"


@dataclass
class ImageContent:
    """Inline base64 image. Remote image URLs are never fetched."""
    data: str
    mime_type: str
    type: ClassVar[str] = "image"

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_call"


@dataclass
class ToolSpec:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserTurn:
    text: str = ""
    role: ClassVar[str] = "user"


@dataclass
class AssistantTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    role: ClassVar[str] = "assistant"


@dataclass
class ToolResultTurn:
    tool_call_id: str
    text: str
    role: ClassVar[str] = "tool_result"


Turn = Union[UserTurn, AssistantTurn, ToolResultTurn]


@dataclass
class Conversation:
    """Dialect-independent turn sequence handed to the LLM backend."""
    turns: list[Turn] = field(default_factory=list)
    system_prompt: Optional[str] = None
    tools: list[ToolSpec] = field(default_factory=list)

    def ensure_turn(self) -> None:
        """Backends require at least one turn; pad with an empty user turn."""
        if not self.turns:
            self.turns.append(UserTurn(""))


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """Parse a JSON-encoded argument string, wrapping anything unusable."""
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"_raw": raw}
    if not isinstance(parsed, dict):
        return {"_raw": raw}
    return parsed


# =============================================================================
# Usage
# =============================================================================

@dataclass
class Usage:
    """Token counts as reported by the backend (cumulative, not incremental)."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: Optional[int] = None

    @property
    def total(self) -> int:
        if self.total_tokens:
            return self.total_tokens
        return self.input_tokens + self.output_tokens


# =============================================================================
# Backend events and results
# =============================================================================

@dataclass
class TextDelta:
    delta: str
    type: ClassVar[str] = "text_delta"


@dataclass
class ToolCallStart:
    type: ClassVar[str] = "toolcall_start"


@dataclass
class ToolCallDelta:
    delta: str
    type: ClassVar[str] = "toolcall_delta"


@dataclass
class ToolCallEnd:
    tool_call: ToolCall
    type: ClassVar[str] = "toolcall_end"


@dataclass
class StreamDone:
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = "stop"
    type: ClassVar[str] = "done"


@dataclass
class StreamError:
    message: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    type: ClassVar[str] = "error"


BackendEvent = Union[TextDelta, ToolCallStart, ToolCallDelta, ToolCallEnd, StreamDone, StreamError]


@dataclass
class Completion:
    """Result of a single-shot completion.

    stop_reason is one of "stop", "length" or "tool_use".
    """
    content: list[Union[TextContent, ToolCall]] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = "stop"

    @property
    def text(self) -> str:
        return "".join(c.text for c in self.content if isinstance(c, TextContent))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [c for c in self.content if isinstance(c, ToolCall)]


@dataclass
class Credentials:
    api_key: Optional[str] = None


# =============================================================================
# Cancellation
# =============================================================================

class CancellationToken:
    """Cooperative abort signal threaded from the dispatcher to the backend."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def race(self, awaitable):
        """Await `awaitable`, raising RequestAborted as soon as the token fires."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestAborted(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise RequestAborted(self.reason)


# =============================================================================
# LLM capability
# =============================================================================

class LLMBackend(Protocol):
    """What the translators need from an LLM backend."""

    def stream(
        self,
        model: Any,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
        cancel: CancellationToken,
    ) -> AsyncIterator[BackendEvent]:
        ...

    async def complete(
        self,
        model: Any,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
        cancel: CancellationToken,
    ) -> Completion:
        ...
