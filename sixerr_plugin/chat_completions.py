"""Chat-Completions dialect.

Request bodies look like OpenAI's /v1/chat/completions:
    {"model": ..., "messages": [...], "tools": [...], "stream": bool}

Streaming responses are `chat.completion.chunk` objects wrapped in
stream_event frames; non-streaming responses are a single `chat.completion`.
"""

import json
import logging
import re
from typing import Any

from .conversation import (
    AssistantTurn,
    Completion,
    Conversation,
    ImageContent,
    ToolCall,
    ToolResultTurn,
    Usage,
    UserTurn,
    parse_tool_arguments,
)
from .errors import MalformedRequest
from .tools import convert_tools
from .translator import (
    FinishedToolCall,
    RequestContext,
    StreamWriter,
    Translator,
    finish_reason_for,
    generate_id,
)

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(image/[^;]+);base64,(.+)$", re.DOTALL)


def extract_images(parts: list[Any]) -> list[ImageContent]:
    """Pull inline images out of multipart content. Remote URLs are dropped."""
    images = []
    for part in parts:
        if not isinstance(part, dict) or part.get("type") != "image_url":
            continue
        image_url = part.get("image_url") or {}
        url = image_url.get("url", "") if isinstance(image_url, dict) else ""
        match = DATA_URI_RE.match(url)
        if match:
            images.append(ImageContent(data=match.group(2), mime_type=match.group(1)))
        elif url:
            logger.debug("Dropping non-inline image URL")
    return images


def _text_of(content: Any, joiner: str = "\n") -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return joiner.join(
            p.get("text", "") for p in content
            if isinstance(p, dict) and p.get("type") == "text"
        )
    raise MalformedRequest(f"unsupported message content: {type(content).__name__}")


def to_chat_usage(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.input_tokens,
        "completion_tokens": usage.output_tokens,
        "total_tokens": usage.total,
    }


class ChatCompletionsStream(StreamWriter):
    """Frames the stream as chat.completion.chunk events."""

    def __init__(self, ctx: RequestContext):
        super().__init__(ctx)
        self.completion_id = generate_id("chatcmpl-")

    async def chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> None:
        await self.event({
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.ctx.created,
            "model": self.ctx.model_name,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        })

    async def open(self) -> None:
        await self.chunk({"role": "assistant"})

    async def text_delta(self, delta: str) -> None:
        await self.chunk({"content": delta})

    async def tool_call_started(self, index: int) -> None:
        await self.chunk({"tool_calls": [{
            "index": index,
            "id": "",
            "type": "function",
            "function": {"name": "", "arguments": ""},
        }]})

    async def tool_call_delta(self, index: int, delta: str) -> None:
        await self.chunk({"tool_calls": [{
            "index": index,
            "function": {"arguments": delta},
        }]})

    async def tool_call_finished(self, call: FinishedToolCall) -> None:
        await self.chunk({"tool_calls": [{
            "index": call.index,
            "id": call.id,
            "type": "function",
            "function": {"name": call.name, "arguments": call.arguments_json},
        }]})

    async def finalize(self, finish_reason: str, text: str, usage: Usage) -> None:
        await self.chunk({}, finish_reason)


class ChatCompletionsTranslator(Translator):
    dialect = "chat_completions"

    def build_conversation(self, body: dict[str, Any]) -> tuple[Conversation, list[ImageContent]]:
        messages = body.get("messages")
        if not isinstance(messages, list):
            raise MalformedRequest("messages must be a list")

        system_parts: list[str] = []
        conversation = Conversation(tools=convert_tools(body.get("tools")))
        images: list[ImageContent] = []

        for i, msg in enumerate(messages):
            if not isinstance(msg, dict):
                raise MalformedRequest(f"message {i} is not an object")
            role = msg.get("role")
            content = msg.get("content")

            if role in ("system", "developer"):
                system_parts.append(_text_of(content))

            elif role == "user":
                if isinstance(content, list):
                    images.extend(extract_images(content))
                conversation.turns.append(UserTurn(_text_of(content)))

            elif role == "assistant":
                tool_calls = []
                for tc in msg.get("tool_calls") or []:
                    fn = tc.get("function") or {}
                    tool_calls.append(ToolCall(
                        id=tc.get("id", ""),
                        name=fn.get("name", ""),
                        arguments=parse_tool_arguments(fn.get("arguments", "")),
                    ))
                conversation.turns.append(AssistantTurn(text=_text_of(content, ""), tool_calls=tool_calls))

            elif role == "tool":
                conversation.turns.append(ToolResultTurn(
                    tool_call_id=msg.get("tool_call_id", ""),
                    text=_text_of(content),
                ))

            else:
                logger.debug(f"Skipping message {i} with unknown role {role!r}")

        if system_parts:
            conversation.system_prompt = "\n\n".join(system_parts)
        conversation.ensure_turn()
        return conversation, images

    def stream_writer(self, ctx: RequestContext) -> StreamWriter:
        return ChatCompletionsStream(ctx)

    def usage_payload(self, usage: Usage) -> dict[str, int]:
        return to_chat_usage(usage)

    def build_response(self, ctx: RequestContext, completion: Completion) -> dict[str, Any]:
        message: dict[str, Any] = {
            "role": "assistant",
            "content": completion.text or None,
        }
        if completion.tool_calls:
            message["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in completion.tool_calls
            ]

        return {
            "id": generate_id("chatcmpl-"),
            "object": "chat.completion",
            "created": ctx.created,
            "model": ctx.model_name,
            "choices": [{
                "index": 0,
                "message": message,
                "finish_reason": finish_reason_for(completion),
            }],
            "usage": to_chat_usage(completion.usage),
        }
