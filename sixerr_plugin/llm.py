"""LLM backend for OpenAI-compatible chat completion servers.

Implements the backend capability used by the translators:
- complete(): one POST to {base_url}/chat/completions
- stream():   the same request with stream=true, parsed from SSE into
              text_delta / toolcall_* / done / error events

Both observe the request's cancellation token while waiting on the network.
"""

import json
import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from .conversation import (
    AssistantTurn,
    CancellationToken,
    Completion,
    Conversation,
    Credentials,
    ImageContent,
    StreamDone,
    StreamError,
    TextContent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolResultTurn,
    Usage,
    UserTurn,
    parse_tool_arguments,
)
from .errors import BackendError
from .model_resolver import ResolvedModel

logger = logging.getLogger(__name__)

STOP_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
}


def _usage_from(data: Optional[dict]) -> Usage:
    if not data:
        return Usage()
    return Usage(
        input_tokens=data.get("prompt_tokens", 0) or 0,
        output_tokens=data.get("completion_tokens", 0) or 0,
        total_tokens=data.get("total_tokens"),
    )


def build_messages(conversation: Conversation, images: list[ImageContent]) -> list[dict[str, Any]]:
    """Convert a canonical conversation to OpenAI chat messages.

    Images are attached to the last user message.
    """
    messages: list[dict[str, Any]] = []
    if conversation.system_prompt:
        messages.append({"role": "system", "content": conversation.system_prompt})

    last_user = None
    for turn in conversation.turns:
        if isinstance(turn, UserTurn):
            last_user = len(messages)
            messages.append({"role": "user", "content": turn.text})
        elif isinstance(turn, AssistantTurn):
            msg: dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            if turn.tool_calls:
                msg["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in turn.tool_calls
                ]
            messages.append(msg)
        elif isinstance(turn, ToolResultTurn):
            messages.append({"role": "tool", "tool_call_id": turn.tool_call_id, "content": turn.text})

    if images and last_user is not None:
        text = messages[last_user]["content"]
        parts: list[dict[str, Any]] = [{"type": "text", "text": text}] if text else []
        parts.extend({"type": "image_url", "image_url": {"url": img.to_data_uri()}} for img in images)
        messages[last_user]["content"] = parts

    return messages


class OpenAICompatibleBackend:
    """Talks to any server exposing the OpenAI /chat/completions API."""

    def __init__(self, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.default_timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    def _payload(self, model: ResolvedModel, conversation: Conversation,
                 images: list[ImageContent], stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model.id,
            "messages": build_messages(conversation, images),
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if model.max_tokens:
            payload["max_tokens"] = model.max_tokens
        if conversation.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in conversation.tools
            ]
        return payload

    def _headers(self, credentials: Credentials) -> dict[str, str]:
        if credentials.api_key:
            return {"Authorization": f"Bearer {credentials.api_key}"}
        return {}

    def _url(self, model: ResolvedModel) -> str:
        return f"{model.base_url.rstrip('/')}/chat/completions"

    async def complete(
        self,
        model: ResolvedModel,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
        cancel: CancellationToken,
    ) -> Completion:
        payload = self._payload(model, conversation, images, stream=False)
        logger.debug(f"LLM request: {len(payload['messages'])} messages to {model.provider}/{model.id}")

        try:
            response = await cancel.race(
                self.client.post(self._url(model), json=payload, headers=self._headers(credentials))
            )
        except httpx.TimeoutException:
            raise BackendError("LLM request timed out")
        except httpx.ConnectError:
            raise BackendError(f"Could not connect to LLM server at {model.base_url}")

        if response.status_code != 200:
            logger.warning(f"LLM server returned {response.status_code}: {response.text[:500]}")
            raise BackendError(f"LLM server error ({response.status_code})")

        try:
            data = response.json()
            choice = data["choices"][0]
        except (ValueError, KeyError, IndexError):
            raise BackendError("LLM server returned an unexpected response")

        message = choice.get("message") or {}
        content: list[TextContent | ToolCall] = []
        if message.get("content"):
            content.append(TextContent(message["content"]))
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            content.append(ToolCall(
                id=tc.get("id", ""),
                name=fn.get("name", ""),
                arguments=parse_tool_arguments(fn.get("arguments", "")),
            ))

        return Completion(
            content=content,
            usage=_usage_from(data.get("usage")),
            stop_reason=STOP_REASONS.get(choice.get("finish_reason") or "stop", "stop"),
        )

    async def stream(
        self,
        model: ResolvedModel,
        conversation: Conversation,
        images: list[ImageContent],
        credentials: Credentials,
        cancel: CancellationToken,
    ) -> AsyncGenerator:
        """Yield backend events parsed from the server's SSE stream."""
        payload = self._payload(model, conversation, images, stream=True)

        # connect fails fast; read bounds the gap between two chunks
        stream_timeout = httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=10.0)

        usage = Usage()
        stop_reason = "stop"
        open_calls: dict[int, dict[str, Any]] = {}
        current: Optional[int] = None
        line_count = 0

        def end_call(index: int) -> ToolCallEnd:
            call = open_calls.pop(index)
            raw = "".join(call["arguments"])
            return ToolCallEnd(ToolCall(
                id=call["id"],
                name=call["name"],
                arguments=parse_tool_arguments(raw) if raw else {},
            ))

        request = self.client.build_request(
            "POST",
            self._url(model),
            json=payload,
            headers=self._headers(credentials),
            timeout=stream_timeout,
        )

        try:
            # Headers are awaited under the abort token too
            response = await cancel.race(self.client.send(request, stream=True))
            try:
                if response.status_code != 200:
                    error_text = (await response.aread()).decode(errors="ignore")[:500]
                    logger.warning(f"LLM streaming returned {response.status_code}: {error_text}")
                    yield StreamError(f"LLM server error ({response.status_code})")
                    return

                lines = response.aiter_lines()
                while True:
                    line = await cancel.race(_next_line(lines))
                    if line is None:
                        break
                    line_count += 1

                    # SSE format: "data: {...}" or "data: [DONE]"
                    if not line.startswith("data:"):
                        continue
                    data_str = line[5:].strip()
                    if data_str == "[DONE]":
                        break

                    try:
                        chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.warning(f"Failed to parse SSE chunk: {data_str[:100]}")
                        continue

                    if chunk.get("usage"):
                        usage = _usage_from(chunk["usage"])

                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}

                    if delta.get("content"):
                        yield TextDelta(delta["content"])

                    for tc in delta.get("tool_calls") or []:
                        index = tc.get("index", 0)
                        fn = tc.get("function") or {}
                        if index not in open_calls:
                            if current is not None and current in open_calls:
                                yield end_call(current)
                            open_calls[index] = {"id": "", "name": "", "arguments": []}
                            current = index
                            yield ToolCallStart()
                        call = open_calls[index]
                        if tc.get("id"):
                            call["id"] = tc["id"]
                        if fn.get("name"):
                            call["name"] = fn["name"]
                        if fn.get("arguments"):
                            call["arguments"].append(fn["arguments"])
                            yield ToolCallDelta(fn["arguments"])

                    finish_reason = choices[0].get("finish_reason")
                    if finish_reason:
                        stop_reason = STOP_REASONS.get(finish_reason, "stop")
            finally:
                await response.aclose()

        except httpx.TimeoutException as e:
            logger.warning(f"STREAMING TIMEOUT after {line_count} lines: {e}")
            yield StreamError("LLM streaming timed out", usage)
            return
        except httpx.ConnectError:
            logger.warning(f"Could not connect to LLM server at {model.base_url}")
            yield StreamError("Could not connect to LLM server", usage)
            return

        for index in list(open_calls):
            yield end_call(index)

        logger.debug(f"LLM streaming complete: {line_count} lines, stop_reason={stop_reason}")
        yield StreamDone(usage=usage, stop_reason=stop_reason)


async def _next_line(lines) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None
