"""Responses dialect.

Request bodies look like OpenAI's /v1/responses:
    {"model": ..., "input": "text" | [items...], "instructions": ..., "stream": bool}

Only text output is streamed in this dialect: tool-call events coming from the
backend are not forwarded (non-streaming responses do carry function_call
items).
"""

import json
import logging
from typing import Any

from .chat_completions import DATA_URI_RE
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
from .translator import RequestContext, StreamWriter, Translator, generate_id

logger = logging.getLogger(__name__)


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = []
    for part in content:
        if isinstance(part, dict) and part.get("type") in ("input_text", "output_text"):
            text = part.get("text")
            if text:
                texts.append(text)
    return "\n".join(texts)


def extract_images(content: Any) -> list[ImageContent]:
    """Inline images from `input_image` parts. URL sources are dropped."""
    if not isinstance(content, list):
        return []
    images = []
    for part in content:
        if not isinstance(part, dict) or part.get("type") != "input_image":
            continue
        source = part.get("source")
        if isinstance(source, dict) and source.get("type") == "base64":
            images.append(ImageContent(data=source.get("data", ""), mime_type=source.get("media_type", "")))
            continue
        match = DATA_URI_RE.match(part.get("image_url") or "")
        if match:
            images.append(ImageContent(data=match.group(2), mime_type=match.group(1)))
    return images


def to_responses_usage(usage: Usage) -> dict[str, int]:
    return {
        "input_tokens": usage.input_tokens,
        "output_tokens": usage.output_tokens,
        "total_tokens": usage.total,
    }


def build_response_resource(
    response_id: str,
    model: str,
    created_at: int,
    text: str,
    usage: Usage,
    status: str = "completed",
) -> dict[str, Any]:
    return {
        "id": response_id,
        "object": "response",
        "created_at": created_at,
        "status": status,
        "model": model,
        "output": [{
            "type": "message",
            "id": generate_id("msg_"),
            "role": "assistant",
            "content": [{"type": "output_text", "text": text}],
            "status": "completed",
        }],
        "usage": to_responses_usage(usage),
    }


class ResponsesStream(StreamWriter):
    """Frames the stream as response.* events on a single output_text part."""

    forwards_tool_calls = False

    def __init__(self, ctx: RequestContext):
        super().__init__(ctx)
        self.response_id = generate_id("resp_")
        self.item_id = generate_id("msg_")

    async def open(self) -> None:
        initial = build_response_resource(
            self.response_id, self.ctx.model_name, self.ctx.created, "", Usage()
        )
        initial["status"] = "in_progress"
        initial["output"] = []
        await self.event({"type": "response.created", "response": initial})

        await self.event({
            "type": "response.output_item.added",
            "output_index": 0,
            "item": {
                "type": "message",
                "id": self.item_id,
                "role": "assistant",
                "content": [],
                "status": "in_progress",
            },
        })

        await self.event({
            "type": "response.content_part.added",
            "item_id": self.item_id,
            "output_index": 0,
            "content_index": 0,
            "part": {"type": "output_text", "text": ""},
        })

    async def text_delta(self, delta: str) -> None:
        await self.event({
            "type": "response.output_text.delta",
            "item_id": self.item_id,
            "output_index": 0,
            "content_index": 0,
            "delta": delta,
        })

    async def finalize(self, finish_reason: str, text: str, usage: Usage) -> None:
        await self.event({
            "type": "response.output_text.done",
            "item_id": self.item_id,
            "output_index": 0,
            "content_index": 0,
            "text": text,
        })
        final = build_response_resource(
            self.response_id, self.ctx.model_name, self.ctx.created, text, usage
        )
        await self.event({"type": "response.completed", "response": final})


class ResponsesTranslator(Translator):
    dialect = "responses"

    def build_conversation(self, body: dict[str, Any]) -> tuple[Conversation, list[ImageContent]]:
        input_ = body.get("input")
        instructions = body.get("instructions")

        system_parts: list[str] = []
        conversation = Conversation()
        images: list[ImageContent] = []

        if isinstance(instructions, str) and instructions:
            system_parts.append(instructions)

        if isinstance(input_, str):
            conversation.turns.append(UserTurn(input_))
        elif isinstance(input_, list):
            for item in input_:
                if not isinstance(item, dict):
                    raise MalformedRequest("input items must be objects")
                self._add_item(item, conversation, system_parts, images)
        elif input_ is not None:
            raise MalformedRequest("input must be a string or a list of items")

        if system_parts:
            conversation.system_prompt = "\n\n".join(system_parts)
        conversation.ensure_turn()
        return conversation, images

    def _add_item(
        self,
        item: dict[str, Any],
        conversation: Conversation,
        system_parts: list[str],
        images: list[ImageContent],
    ) -> None:
        item_type = item.get("type", "message" if "role" in item else None)

        if item_type == "message":
            content = item.get("content")
            text = extract_text(content).strip()
            if not text:
                return

            role = item.get("role")
            if role in ("system", "developer"):
                system_parts.append(text)
            elif role == "user":
                images.extend(extract_images(content))
                conversation.turns.append(UserTurn(text))
            elif role == "assistant":
                conversation.turns.append(AssistantTurn(text=text))
            else:
                logger.debug(f"Skipping message item with role {role!r}")

        elif item_type == "function_call_output":
            output = item.get("output", "")
            conversation.turns.append(ToolResultTurn(
                tool_call_id=item.get("call_id", ""),
                text=output if isinstance(output, str) else json.dumps(output),
            ))

        elif item_type == "function_call":
            conversation.turns.append(AssistantTurn(tool_calls=[ToolCall(
                id=item.get("call_id", ""),
                name=item.get("name", ""),
                arguments=parse_tool_arguments(item.get("arguments", "")),
            )]))

        elif item_type != "reasoning":
            logger.debug(f"Skipping unsupported input item {item_type!r}")

    def stream_writer(self, ctx: RequestContext) -> StreamWriter:
        return ResponsesStream(ctx)

    def usage_payload(self, usage: Usage) -> dict[str, int]:
        return to_responses_usage(usage)

    def build_response(self, ctx: RequestContext, completion: Completion) -> dict[str, Any]:
        response = build_response_resource(
            generate_id("resp_"), ctx.model_name, ctx.created, completion.text, completion.usage
        )

        for tc in completion.tool_calls:
            response["output"].append({
                "type": "function_call",
                "id": generate_id("fc_"),
                "call_id": tc.id,
                "name": tc.name,
                "arguments": json.dumps(tc.arguments),
                "status": "completed",
            })

        if not completion.tool_calls and completion.stop_reason == "length":
            response["status"] = "incomplete"
            response["incomplete_details"] = {"reason": "max_output_tokens"}

        return response
