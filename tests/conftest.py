"""Shared fakes for the broker socket and the LLM backend."""

import asyncio
import json
from pathlib import Path

import pytest
from websockets.exceptions import ConnectionClosedOK

from sixerr_plugin.conversation import Completion, StreamDone, TextContent, TextDelta, Usage
from sixerr_plugin.model_resolver import InferenceConfig, ResolvedModel

_CLOSE = object()


class MockWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, block_time: float = 0):
        """
        Args:
            block_time: How long send() should block (0 = instant, >0 = simulate slow send)
        """
        self.block_time = block_time
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, message: str):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        if self.block_time > 0:
            await asyncio.sleep(self.block_time)
        self.sent.append(json.loads(message))

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSE:
            self.inbox.put_nowait(_CLOSE)
            raise ConnectionClosedOK(None, None)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLOSE:
            self.inbox.put_nowait(_CLOSE)
            raise StopAsyncIteration
        return item

    async def close(self):
        self.drop()

    def feed(self, frame: dict):
        """Queue an inbound frame from the broker."""
        self.inbox.put_nowait(json.dumps(frame))

    def feed_raw(self, message: str):
        self.inbox.put_nowait(message)

    def drop(self):
        """Simulate the broker closing the connection."""
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSE)

    def sent_of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f.get("type") == frame_type]


class MockConnector:
    """Replaces websockets.connect; hands out a fresh MockWebSocket per call."""

    def __init__(self, auth_reply: dict | None = None):
        self.auth_reply = auth_reply if auth_reply is not None else {
            "type": "auth_ok", "pluginId": "plugin-1", "protocol": 2,
        }
        self.sockets: list[MockWebSocket] = []
        self.urls: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.sockets)

    async def __call__(self, url: str, **kwargs):
        ws = MockWebSocket()
        if self.auth_reply:
            ws.feed(self.auth_reply)
        self.urls.append(url)
        self.sockets.append(ws)
        return ws


class ScriptedBackend:
    """LLM backend that replays a fixed event list or completion."""

    def __init__(
        self,
        events: list | None = None,
        completion: Completion | None = None,
        delay: float = 0,
        hang: bool = False,
        honor_cancel: bool = True,
        error: Exception | None = None,
    ):
        self.events = events if events is not None else [
            TextDelta("Hello"),
            StreamDone(usage=Usage(input_tokens=3, output_tokens=1)),
        ]
        self.completion = completion or Completion(
            content=[TextContent("Hello")],
            usage=Usage(input_tokens=3, output_tokens=1),
        )
        self.delay = delay
        self.hang = hang
        self.honor_cancel = honor_cancel
        self.error = error
        self.calls: list[dict] = []

    async def _maybe_hang(self, cancel):
        if not self.hang:
            return
        if self.honor_cancel:
            await cancel.race(asyncio.sleep(3600))
        else:
            await asyncio.sleep(3600)

    async def stream(self, model, conversation, images, credentials, cancel):
        self.calls.append({"conversation": conversation, "images": images, "credentials": credentials})
        await self._maybe_hang(cancel)
        if self.error:
            raise self.error
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event

    async def complete(self, model, conversation, images, credentials, cancel):
        self.calls.append({"conversation": conversation, "images": images, "credentials": credentials})
        await self._maybe_hang(cancel)
        if self.error:
            raise self.error
        return self.completion


class FrameCollector:
    """Async emit callable that records every frame in wire form."""

    def __init__(self):
        self.frames: list[dict] = []

    async def __call__(self, frame):
        self.frames.append(frame.to_wire())
        return True

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == frame_type]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll `predicate` until true; fail the test if it never is."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def inference():
    model = ResolvedModel(provider="openai", id="gpt-4o-mini", base_url="http://llm.test/v1")
    return InferenceConfig(
        agent_dir=Path("/nonexistent"),
        provider="openai",
        model="gpt-4o-mini",
        resolved_model=model,
        key_resolver=lambda m: "sk-test",
    )


@pytest.fixture
def collector():
    return FrameCollector()


@pytest.fixture
def connector():
    return MockConnector()
