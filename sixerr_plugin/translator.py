"""Shared translator contract and the streaming state machine.

A translator owns one wire dialect. It parses a request body into a canonical
Conversation, runs it against the LLM backend and re-encodes the result as
broker frames. The streaming loop lives here; dialects only decide how each
step is framed (see StreamWriter).

Streaming frame order is always:
    open frame(s) -> zero or more delta frames -> finalize frame(s) -> stream_end
"""

import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .conversation import (
    CancellationToken,
    Completion,
    Conversation,
    Credentials,
    ImageContent,
    LLMBackend,
    StreamDone,
    StreamError,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
    parse_tool_arguments,
)
from .errors import MalformedRequest
from .frames import ErrorFrame, OutboundFrame, ResponseFrame, StreamEndFrame, StreamEventFrame

if TYPE_CHECKING:
    from .model_resolver import InferenceConfig

logger = logging.getLogger(__name__)

Emit = Callable[[OutboundFrame], Awaitable[Any]]


def generate_id(prefix: str) -> str:
    """Generate a short random id like `chatcmpl-1a2b3c4d5e6f`."""
    return f"{prefix}{secrets.token_hex(6)}"


@dataclass
class RequestContext:
    """Everything a translator needs to serve one request."""
    request_id: str
    inference: "InferenceConfig"
    backend: LLMBackend
    cancel: CancellationToken
    emit: Emit
    created: int = field(default_factory=lambda: int(time.time()))

    @property
    def model_name(self) -> str:
        return f"{self.inference.provider}/{self.inference.model}"

    async def error(self, message: str) -> None:
        await self.emit(ErrorFrame(id=self.request_id, code="plugin_error", message=message))


# =============================================================================
# Accumulators
# =============================================================================

@dataclass
class FinishedToolCall:
    index: int
    id: str
    name: str
    arguments: dict[str, Any]
    arguments_json: str


@dataclass
class _PartialToolCall:
    index: int
    id: str = ""
    name: str = ""
    buffer: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Rebuilds tool calls from streamed argument deltas.

    Indexes are allocated in first-seen order and never reused. Deltas and
    the end event apply to the most recently started call, so one must be
    open before append() or finish().
    """

    def __init__(self):
        self._calls: dict[int, _PartialToolCall] = {}
        self._current: Optional[int] = None
        self.completed: list[FinishedToolCall] = []

    def start(self) -> int:
        index = len(self._calls)
        self._calls[index] = _PartialToolCall(index=index)
        self._current = index
        return index

    @property
    def has_open_call(self) -> bool:
        return self._current is not None

    def append(self, delta: str) -> int:
        self._calls[self._current].buffer.append(delta)
        return self._current

    def finish(self, tool_call: ToolCall) -> FinishedToolCall:
        partial = self._calls[self._current]
        raw = "".join(partial.buffer)

        if raw:
            arguments_json = raw
            arguments = parse_tool_arguments(raw)
        else:
            # Backend produced the call without streaming its arguments
            arguments = tool_call.arguments or {}
            arguments_json = json.dumps(arguments)

        finished = FinishedToolCall(
            index=partial.index,
            id=tool_call.id or partial.id,
            name=tool_call.name or partial.name,
            arguments=arguments,
            arguments_json=arguments_json,
        )
        self.completed.append(finished)
        self._current = None
        return finished


class UsageAccumulator:
    """Keeps the last usage the backend reported. Reports are cumulative."""

    def __init__(self):
        self.usage = Usage()

    def report(self, usage: Optional[Usage]) -> None:
        if usage is not None:
            self.usage = usage


# =============================================================================
# Streaming
# =============================================================================

class StreamState(Enum):
    ANNOUNCED = "announced"
    STREAMING = "streaming"
    FINALIZED = "finalized"


class StreamWriter:
    """Dialect-specific framing of the streaming state machine."""

    forwards_tool_calls = True

    def __init__(self, ctx: RequestContext):
        self.ctx = ctx
        self.state: Optional[StreamState] = None

    async def event(self, event: dict[str, Any]) -> None:
        if self.state is StreamState.FINALIZED:
            raise RuntimeError("stream already finalized")
        await self.ctx.emit(StreamEventFrame(id=self.ctx.request_id, event=event))

    async def open(self) -> None:
        raise NotImplementedError

    async def text_delta(self, delta: str) -> None:
        raise NotImplementedError

    async def tool_call_started(self, index: int) -> None:
        pass

    async def tool_call_delta(self, index: int, delta: str) -> None:
        pass

    async def tool_call_finished(self, call: FinishedToolCall) -> None:
        pass

    async def finalize(self, finish_reason: str, text: str, usage: Usage) -> None:
        raise NotImplementedError


class Translator(ABC):
    """Contract shared by the Chat-Completions and Responses dialects."""

    dialect = ""

    @abstractmethod
    def build_conversation(self, body: dict[str, Any]) -> tuple[Conversation, list[ImageContent]]:
        ...

    @abstractmethod
    def stream_writer(self, ctx: RequestContext) -> StreamWriter:
        ...

    @abstractmethod
    def build_response(self, ctx: RequestContext, completion: Completion) -> dict[str, Any]:
        ...

    @abstractmethod
    def usage_payload(self, usage: Usage) -> dict[str, int]:
        ...

    async def handle(self, ctx: RequestContext, body: Any) -> Optional[Usage]:
        """Serve one request end to end. Never raises request-scoped errors.

        Returns the final usage, or None if the request failed before the
        backend produced anything.
        """
        try:
            if not isinstance(body, dict):
                raise MalformedRequest("request body must be a JSON object")

            conversation, images = self.build_conversation(body)
            credentials = Credentials(api_key=await ctx.inference.get_api_key())

            if body.get("stream") is True:
                return await self.run_streaming(ctx, conversation, images, credentials)
            return await self.run_non_streaming(ctx, conversation, images, credentials)

        except Exception as e:
            logger.warning(f"[{ctx.request_id[:8]}] {self.dialect} request failed: {e}")
            await ctx.error(str(e) or type(e).__name__)
            return None

    async def run_streaming(
        self,
        ctx: RequestContext,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
    ) -> Usage:
        writer = self.stream_writer(ctx)
        tool_calls = ToolCallAccumulator()
        usage = UsageAccumulator()
        text_parts: list[str] = []

        await writer.open()
        writer.state = StreamState.ANNOUNCED

        try:
            events = ctx.backend.stream(
                ctx.inference.resolved_model, conversation, images, credentials, ctx.cancel
            )
            writer.state = StreamState.STREAMING

            async for event in events:
                if isinstance(event, TextDelta):
                    text_parts.append(event.delta)
                    await writer.text_delta(event.delta)

                elif isinstance(event, (ToolCallStart, ToolCallDelta, ToolCallEnd)):
                    if not writer.forwards_tool_calls:
                        continue
                    if isinstance(event, ToolCallStart):
                        index = tool_calls.start()
                        await writer.tool_call_started(index)
                        continue
                    if not tool_calls.has_open_call:
                        logger.debug(f"[{ctx.request_id[:8]}] {event.type} before toolcall_start")
                        await writer.tool_call_started(tool_calls.start())
                    if isinstance(event, ToolCallDelta):
                        index = tool_calls.append(event.delta)
                        await writer.tool_call_delta(index, event.delta)
                    else:
                        finished = tool_calls.finish(event.tool_call)
                        await writer.tool_call_finished(finished)

                elif isinstance(event, StreamDone):
                    usage.report(event.usage)

                elif isinstance(event, StreamError):
                    usage.report(event.usage)
                    if event.message:
                        await ctx.error(event.message)

        except Exception as e:
            logger.warning(f"[{ctx.request_id[:8]}] Stream error: {e}")
            await ctx.error(str(e) or type(e).__name__)

        finish_reason = "tool_calls" if tool_calls.completed else "stop"
        await writer.finalize(finish_reason, "".join(text_parts), usage.usage)
        writer.state = StreamState.FINALIZED

        await ctx.emit(StreamEndFrame(id=ctx.request_id, usage=self.usage_payload(usage.usage)))
        return usage.usage

    async def run_non_streaming(
        self,
        ctx: RequestContext,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
    ) -> Usage:
        completion = await ctx.backend.complete(
            ctx.inference.resolved_model, conversation, images, credentials, ctx.cancel
        )
        body = self.build_response(ctx, completion)
        await ctx.emit(ResponseFrame(id=ctx.request_id, body=body))
        return completion.usage


def finish_reason_for(completion: Completion) -> str:
    if completion.tool_calls:
        return "tool_calls"
    if completion.stop_reason == "length":
        return "length"
    return "stop"
