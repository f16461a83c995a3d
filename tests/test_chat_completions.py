"""
Tests for the Chat-Completions dialect.

Request parsing into the canonical conversation, the single-shot response
body and the chat.completion.chunk stream, including tool-call
reconstruction from streamed argument deltas.
"""

import pytest

from sixerr_plugin.chat_completions import ChatCompletionsTranslator
from sixerr_plugin.conversation import (
    AssistantTurn,
    CancellationToken,
    Completion,
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
)
from sixerr_plugin.errors import MalformedRequest
from sixerr_plugin.translator import RequestContext

from conftest import ScriptedBackend


def make_ctx(collector, inference, backend, request_id="req-1"):
    return RequestContext(
        request_id=request_id,
        inference=inference,
        backend=backend,
        cancel=CancellationToken(),
        emit=collector,
    )


def chunks(collector):
    return [f["event"] for f in collector.of_type("stream_event")]


class TestBuildConversation:

    def setup_method(self):
        self.translator = ChatCompletionsTranslator()

    def test_system_and_developer_are_joined_with_blank_line(self):
        conversation, _ = self.translator.build_conversation({"messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "developer", "content": "Answer in English."},
            {"role": "user", "content": "hi"},
        ]})

        assert conversation.system_prompt == "Be brief.\n\nAnswer in English."
        assert conversation.turns == [UserTurn("hi")]

    def test_multipart_user_content_splits_text_and_inline_images(self):
        conversation, images = self.translator.build_conversation({"messages": [{
            "role": "user",
            "content": [
                {"type": "text", "text": "What is"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw0KGgo="}},
                {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
                {"type": "text", "text": "in this picture?"},
            ],
        }]})

        assert conversation.turns == [UserTurn("What is\nin this picture?")]
        assert len(images) == 1
        assert images[0].mime_type == "image/png"
        assert images[0].data == "iVBORw0KGgo="

    def test_assistant_tool_calls_are_parsed(self):
        conversation, _ = self.translator.build_conversation({"messages": [
            {"role": "user", "content": "weather?"},
            {"role": "assistant", "content": None, "tool_calls": [
                {"id": "call_1", "type": "function",
                 "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}},
                {"id": "call_2", "type": "function",
                 "function": {"name": "broken", "arguments": "{not json"}},
            ]},
            {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
        ]})

        assistant = conversation.turns[1]
        assert isinstance(assistant, AssistantTurn)
        assert assistant.tool_calls[0] == ToolCall("call_1", "get_weather", {"city": "Paris"})
        assert assistant.tool_calls[1].arguments == {"_raw": "{not json"}
        assert conversation.turns[2] == ToolResultTurn(tool_call_id="call_1", text="sunny")

    def test_empty_messages_get_one_empty_user_turn(self):
        conversation, images = self.translator.build_conversation({"messages": []})

        assert conversation.turns == [UserTurn("")]
        assert images == []

    def test_only_system_messages_still_produce_a_turn(self):
        conversation, _ = self.translator.build_conversation({"messages": [
            {"role": "system", "content": "Be brief."},
        ]})

        assert conversation.system_prompt == "Be brief."
        assert conversation.turns == [UserTurn("")]

    def test_unknown_role_is_skipped(self):
        conversation, _ = self.translator.build_conversation({"messages": [
            {"role": "function", "name": "lookup", "content": "42"},
            {"role": "user", "content": "hi"},
        ]})

        assert conversation.turns == [UserTurn("hi")]

    def test_missing_messages_is_rejected(self):
        with pytest.raises(MalformedRequest):
            self.translator.build_conversation({"model": "x"})

    def test_tools_are_sanitized(self):
        conversation, _ = self.translator.build_conversation({
            "messages": [{"role": "user", "content": "hi"}],
            "tools": [
                {"type": "function", "function": {"name": "lookup", "parameters": {"type": "object"},
                                                  "strict": True}},
                {"type": "retrieval"},
            ],
        })

        assert [t.name for t in conversation.tools] == ["lookup"]
        assert conversation.tools[0].parameters == {"type": "object"}


class TestNonStreaming:

    @pytest.mark.asyncio
    async def test_two_plus_two(self, collector, inference):
        """The canonical single-shot example."""
        backend = ScriptedBackend(completion=Completion(
            content=[TextContent("4")],
            usage=Usage(input_tokens=5, output_tokens=1),
        ))
        ctx = make_ctx(collector, inference, backend)

        usage = await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "2+2?"}]}
        )

        assert len(collector.frames) == 1
        frame = collector.frames[0]
        assert frame["type"] == "response"
        assert frame["id"] == "req-1"
        body = frame["body"]
        assert body["object"] == "chat.completion"
        assert body["model"] == "openai/gpt-4o-mini"
        assert body["choices"] == [{
            "index": 0,
            "message": {"role": "assistant", "content": "4"},
            "finish_reason": "stop",
        }]
        assert body["usage"] == {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6}
        assert usage.total == 6

    @pytest.mark.asyncio
    async def test_tool_calls_in_completion(self, collector, inference):
        backend = ScriptedBackend(completion=Completion(
            content=[ToolCall("call_1", "lookup", {"q": "x"})],
            stop_reason="tool_use",
        ))
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(ctx, {"messages": [{"role": "user", "content": "hi"}]})

        choice = collector.frames[0]["body"]["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["content"] is None
        assert choice["message"]["tool_calls"] == [{
            "id": "call_1",
            "type": "function",
            "function": {"name": "lookup", "arguments": '{"q": "x"}'},
        }]

    @pytest.mark.asyncio
    async def test_length_stop_reason(self, collector, inference):
        backend = ScriptedBackend(completion=Completion(content=[TextContent("trunc")], stop_reason="length"))
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(ctx, {"messages": [{"role": "user", "content": "hi"}]})

        assert collector.frames[0]["body"]["choices"][0]["finish_reason"] == "length"

    @pytest.mark.asyncio
    async def test_backend_failure_becomes_single_error_frame(self, collector, inference):
        backend = ScriptedBackend(error=RuntimeError("upstream exploded"))
        ctx = make_ctx(collector, inference, backend)

        usage = await ChatCompletionsTranslator().handle(ctx, {"messages": [{"role": "user", "content": "hi"}]})

        assert usage is None
        assert collector.frames == [
            {"type": "error", "id": "req-1", "code": "plugin_error", "message": "upstream exploded"},
        ]

    @pytest.mark.asyncio
    async def test_api_key_is_passed_to_backend(self, collector, inference):
        backend = ScriptedBackend()
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(ctx, {"messages": [{"role": "user", "content": "hi"}]})

        assert backend.calls[0]["credentials"].api_key == "sk-test"


class TestStreaming:

    @pytest.mark.asyncio
    async def test_frame_order_and_last_usage_wins(self, collector, inference):
        backend = ScriptedBackend(events=[
            TextDelta("Hel"),
            TextDelta("lo"),
            StreamDone(usage=Usage(input_tokens=3, output_tokens=1)),
            StreamDone(usage=Usage(input_tokens=3, output_tokens=2)),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        events = chunks(collector)
        assert events[0]["choices"][0]["delta"] == {"role": "assistant"}
        assert [e["choices"][0]["delta"].get("content") for e in events[1:3]] == ["Hel", "lo"]
        assert events[-1]["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "stop"}
        assert all(e["object"] == "chat.completion.chunk" for e in events)
        assert len({e["id"] for e in events}) == 1

        assert collector.frames[-1] == {
            "type": "stream_end",
            "id": "req-1",
            "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
        }
        assert len(collector.of_type("stream_end")) == 1

    @pytest.mark.asyncio
    async def test_tool_call_reconstruction(self, collector, inference):
        backend = ScriptedBackend(events=[
            ToolCallStart(),
            ToolCallDelta("a"),
            ToolCallDelta("b"),
            ToolCallEnd(ToolCall("call_1", "lookup", {})),
            StreamDone(),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        deltas = [e["choices"][0]["delta"] for e in chunks(collector)]
        assert deltas[1] == {"tool_calls": [{
            "index": 0, "id": "", "type": "function", "function": {"name": "", "arguments": ""},
        }]}
        assert deltas[2] == {"tool_calls": [{"index": 0, "function": {"arguments": "a"}}]}
        assert deltas[3] == {"tool_calls": [{"index": 0, "function": {"arguments": "b"}}]}
        assert deltas[4] == {"tool_calls": [{
            "index": 0, "id": "call_1", "type": "function",
            "function": {"name": "lookup", "arguments": "ab"},
        }]}
        assert chunks(collector)[-1]["choices"][0]["finish_reason"] == "tool_calls"

    @pytest.mark.asyncio
    async def test_tool_call_without_deltas_uses_end_arguments(self, collector, inference):
        backend = ScriptedBackend(events=[
            ToolCallStart(),
            ToolCallEnd(ToolCall("call_1", "lookup", {"q": 1})),
            ToolCallStart(),
            ToolCallDelta('{"q": 2}'),
            ToolCallEnd(ToolCall("call_2", "lookup", {"q": 2})),
            StreamDone(),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        finished = [
            e["choices"][0]["delta"]["tool_calls"][0] for e in chunks(collector)
            if e["choices"][0]["delta"].get("tool_calls", [{}])[0].get("id")
        ]
        assert [(c["index"], c["id"], c["function"]["arguments"]) for c in finished] == [
            (0, "call_1", '{"q": 1}'),
            (1, "call_2", '{"q": 2}'),
        ]

    @pytest.mark.asyncio
    async def test_delta_without_start_still_announces_the_call(self, collector, inference):
        backend = ScriptedBackend(events=[
            ToolCallDelta("{}"),
            ToolCallEnd(ToolCall("call_1", "lookup", {})),
            StreamDone(),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        deltas = [e["choices"][0]["delta"] for e in chunks(collector)]
        assert deltas[1] == {"tool_calls": [{
            "index": 0, "id": "", "type": "function", "function": {"name": "", "arguments": ""},
        }]}
        assert deltas[2] == {"tool_calls": [{"index": 0, "function": {"arguments": "{}"}}]}
        assert deltas[3]["tool_calls"][0]["id"] == "call_1"

    @pytest.mark.asyncio
    async def test_end_without_start_gets_its_own_index(self, collector, inference):
        backend = ScriptedBackend(events=[
            ToolCallStart(),
            ToolCallEnd(ToolCall("call_1", "lookup", {"q": 1})),
            ToolCallEnd(ToolCall("call_2", "lookup", {"q": 2})),
            StreamDone(),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        calls = [
            e["choices"][0]["delta"]["tool_calls"][0] for e in chunks(collector)
            if "tool_calls" in e["choices"][0]["delta"]
        ]
        assert [(c["index"], c["id"]) for c in calls] == [(0, ""), (0, "call_1"), (1, ""), (1, "call_2")]

    @pytest.mark.asyncio
    async def test_error_event_emits_error_and_still_finalizes(self, collector, inference):
        backend = ScriptedBackend(events=[
            TextDelta("par"),
            StreamError("rate limited", Usage(input_tokens=4, output_tokens=1)),
        ])
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        types = [f["type"] for f in collector.frames]
        assert types.count("error") == 1
        assert collector.of_type("error")[0]["message"] == "rate limited"
        assert types[-1] == "stream_end"
        assert collector.frames[-1]["usage"]["total_tokens"] == 5

    @pytest.mark.asyncio
    async def test_exception_from_backend_is_reported_then_finalized(self, collector, inference):
        backend = ScriptedBackend(error=RuntimeError("socket reset"))
        ctx = make_ctx(collector, inference, backend)

        await ChatCompletionsTranslator().handle(
            ctx, {"messages": [{"role": "user", "content": "hi"}], "stream": True}
        )

        types = [f["type"] for f in collector.frames]
        assert types == ["stream_event", "error", "stream_event", "stream_end"]
        assert collector.frames[-1]["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_assistant_text_survives_a_round_trip(self, collector, inference):
        translator = ChatCompletionsTranslator()
        original = "Multi-line\nanswer with ünïcode and `code`."
        conversation, _ = translator.build_conversation({"messages": [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": original},
        ]})
        text = conversation.turns[-1].text

        backend = ScriptedBackend(completion=Completion(content=[TextContent(text)]))
        ctx = make_ctx(collector, inference, backend)
        await translator.handle(ctx, {"messages": [{"role": "user", "content": "again"}]})

        assert collector.frames[0]["body"]["choices"][0]["message"]["content"] == original
