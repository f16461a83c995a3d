"""Request dispatcher: correlates broker requests with their responses.

Each request id gets one PendingRequest for as long as its unit of work runs.
The dispatcher owns the deadline: when it passes, the request's cancellation
token fires, and if the backend still has not returned after a grace period
the dispatcher answers with a timeout error itself and frees the slot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .chat_completions import ChatCompletionsTranslator
from .conversation import CancellationToken, LLMBackend, Usage
from .frames import TERMINAL_FRAME_TYPES, ErrorFrame, OutboundFrame
from .model_resolver import InferenceConfig
from .responses import ResponsesTranslator
from .translator import RequestContext, Translator

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_GRACE_PERIOD = 5.0


def detect_dialect(body: Any) -> str:
    """Responses bodies carry `input`; everything else is Chat-Completions."""
    if isinstance(body, dict) and "input" in body and "messages" not in body:
        return ResponsesTranslator.dialect
    return ChatCompletionsTranslator.dialect


@dataclass
class PendingRequest:
    """Bookkeeping for one in-flight request id."""
    request_id: str
    dialect: str
    deadline: float
    cancel: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.monotonic)
    open: bool = True

    def gate(self, sink: Callable[[OutboundFrame], Awaitable[Any]]) -> Callable[[OutboundFrame], Awaitable[Any]]:
        """Wrap the emitter so nothing is sent for this id once it is closed."""

        async def emit(frame: OutboundFrame) -> Any:
            if not self.open:
                logger.debug(f"Dropping late {frame.type} frame for {self.request_id[:8]}...")
                return False
            if frame.type in TERMINAL_FRAME_TYPES:
                self.open = False
            return await sink(frame)

        return emit


class RequestDispatcher:
    """Runs each request as its own task and enforces its deadline."""

    def __init__(
        self,
        emit: Callable[[OutboundFrame], Awaitable[Any]],
        inference: InferenceConfig,
        backend: LLMBackend,
        request_timeout: Optional[float] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        translators: Optional[dict[str, Translator]] = None,
    ):
        self._emit = emit
        self.inference = inference
        self.backend = backend
        self.request_timeout = request_timeout or inference.timeout or DEFAULT_REQUEST_TIMEOUT
        self.grace_period = grace_period
        self.translators = translators or {
            ChatCompletionsTranslator.dialect: ChatCompletionsTranslator(),
            ResponsesTranslator.dialect: ResponsesTranslator(),
        }
        self._pending: dict[str, PendingRequest] = {}

        # Called after each request completes
        # Signature: (request_id: str, dialect: str, usage: Usage | None, elapsed_ms: float) -> None
        self.on_request_complete: Callable[[str, str, Optional[Usage], float], None] | None = None

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    async def dispatch(self, request_id: str, body: Any) -> Optional[asyncio.Task]:
        """Start serving a request. Returns immediately with the unit's task.

        A request id that is already pending is rejected with a
        duplicate_request error; the original request is left alone.
        """
        if request_id in self._pending:
            logger.warning(f"Duplicate request id {request_id[:8]}... rejected")
            await self._emit(ErrorFrame(
                id=request_id,
                code="duplicate_request",
                message=f"Request {request_id} is already in progress",
            ))
            return None

        dialect = detect_dialect(body)
        pending = PendingRequest(
            request_id=request_id,
            dialect=dialect,
            deadline=time.monotonic() + self.request_timeout,
        )
        self._pending[request_id] = pending
        pending.task = asyncio.create_task(self._run(pending, self.translators[dialect], body))
        logger.info(f"Request {request_id[:8]}... dispatched ({dialect})")
        return pending.task

    async def _run(self, pending: PendingRequest, translator: Translator, body: Any) -> None:
        emit = pending.gate(self._emit)
        ctx = RequestContext(
            request_id=pending.request_id,
            inference=self.inference,
            backend=self.backend,
            cancel=pending.cancel,
            emit=emit,
        )
        work = asyncio.create_task(translator.handle(ctx, body))
        usage: Optional[Usage] = None

        try:
            done, _ = await asyncio.wait({work}, timeout=max(pending.deadline - time.monotonic(), 0))
            if not done:
                logger.warning(f"Request {pending.request_id[:8]}... hit its deadline, aborting")
                pending.cancel.cancel("timed out")
                done, _ = await asyncio.wait({work}, timeout=self.grace_period)

            if not done:
                # Backend ignored the abort; answer for it and free the slot
                logger.error(f"Request {pending.request_id[:8]}... did not stop after abort, releasing")
                pending.open = False
                work.cancel()
                await self._emit(ErrorFrame(id=pending.request_id, code="plugin_error", message="timed out"))
            elif work.cancelled():
                pass
            elif work.exception() is not None:
                logger.error(f"Request {pending.request_id[:8]}... crashed: {work.exception()!r}")
                await emit(ErrorFrame(id=pending.request_id, code="plugin_error", message=str(work.exception())))
            else:
                usage = work.result()

        except asyncio.CancelledError:
            work.cancel()
            raise

        finally:
            if self._pending.get(pending.request_id) is pending:
                del self._pending[pending.request_id]
            pending.open = False

        elapsed_ms = (time.monotonic() - pending.started_at) * 1000
        if self.on_request_complete:
            self.on_request_complete(pending.request_id, pending.dialect, usage, elapsed_ms)

    def cancel_all(self, reason: str = "cancelled") -> int:
        """Discard every pending request without emitting anything for them."""
        count = len(self._pending)
        for pending in list(self._pending.values()):
            pending.open = False
            pending.cancel.cancel(reason)
            if pending.task and not pending.task.done():
                pending.task.cancel()
        self._pending.clear()
        if count:
            logger.info(f"Discarded {count} pending request(s): {reason}")
        return count
