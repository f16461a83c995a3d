"""WebSocket session with the Sixerr broker.

This is the core of the plugin. It:
1. Maintains a persistent WebSocket connection to the broker
2. Authenticates with the supplier JWT
3. Answers heartbeats straight from the receive loop
4. Hands inference requests to the RequestDispatcher
5. Reconnects with exponential backoff when the connection drops
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import websockets
from rich.console import Console

from .conversation import LLMBackend, Usage
from .dispatcher import DEFAULT_GRACE_PERIOD, RequestDispatcher
from .emitter import FrameEmitter
from .errors import AuthRejected, ProtocolViolation
from .frames import (
    AuthErrorFrame,
    AuthFrame,
    AuthOkFrame,
    JwtRefreshFrame,
    PingFrame,
    PongFrame,
    Pricing,
    RequestFrame,
    UnrecognizedFrame,
    parse_inbound,
)
from .model_resolver import InferenceConfig

logger = logging.getLogger(__name__)
console = Console()


class SessionState(Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({
        SessionState.AUTHENTICATING, SessionState.RECONNECTING, SessionState.CLOSED,
    }),
    SessionState.AUTHENTICATING: frozenset({
        SessionState.READY, SessionState.RECONNECTING, SessionState.CLOSED,
    }),
    SessionState.READY: frozenset({
        SessionState.DEGRADED, SessionState.RECONNECTING, SessionState.CLOSED,
    }),
    SessionState.DEGRADED: frozenset({SessionState.RECONNECTING, SessionState.CLOSED}),
    SessionState.RECONNECTING: frozenset({SessionState.CONNECTING, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass
class Session:
    """One physical connection. A reconnect creates a new Session."""
    ws: Any
    jwt: str
    auth_state: str = "unauthenticated"  # unauthenticated | authenticating | authenticated
    reconnect_attempts: int = 0
    plugin_id: str = ""
    protocol: int = 0
    ready_since: Optional[float] = None
    last_heartbeat: Optional[float] = None


@dataclass
class Backoff:
    """Exponential reconnect delay with +/- jitter."""
    min_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.2
    delay: float = field(init=False)

    def __post_init__(self):
        self.delay = self.min_delay

    def next(self) -> float:
        wait = self.delay * random.uniform(1 - self.jitter, 1 + self.jitter)
        self.delay = min(self.delay * 2, self.max_delay)
        return wait

    def reset(self) -> None:
        self.delay = self.min_delay


class BrokerTunnel:
    """
    Manages the WebSocket connection to the Sixerr broker.

    The broker sends inference requests through this tunnel and we serve them
    from the local agent's model. Only one Session exists at a time; pending
    requests never survive a reconnect.
    """

    def __init__(
        self,
        server_url: str,
        jwt: str,
        inference: InferenceConfig,
        backend: LLMBackend,
        *,
        request_timeout: Optional[float] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        min_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.2,
        stable_after: float = 30.0,
        auth_timeout: float = 10.0,
        send_timeout: float = 5.0,
        max_retries: int = -1,  # -1 = infinite retries, 0 = no retries (single try)
        pricing: Optional[Pricing] = None,
        agent_name: Optional[str] = None,
        agent_description: Optional[str] = None,
        connector: Callable[..., Any] = websockets.connect,
        log_callback: Callable[[str, str], None] | None = None,
        on_status_change: Callable[[SessionState], None] | None = None,
        on_jwt_refresh: Callable[[str], None] | None = None,
    ):
        self.server_url = server_url
        self.jwt = jwt
        self.inference = inference
        self.backend = backend
        self.stable_after = stable_after
        self.auth_timeout = auth_timeout
        self.max_retries = max_retries
        self.pricing = pricing
        self.agent_name = agent_name
        self.agent_description = agent_description
        self.connector = connector
        self.log_callback = log_callback
        self.on_status_change = on_status_change
        self.on_jwt_refresh = on_jwt_refresh

        self.state = SessionState.CONNECTING
        self.session: Session | None = None
        self.backoff = Backoff(min_delay, max_delay, jitter)
        self.connect_attempts = 0
        # Consecutive failed attempts; carried into each new Session
        self._retry_count = 0
        self._stop_event = asyncio.Event()
        self._close_task: asyncio.Task | None = None

        self.emitter = FrameEmitter(send_timeout=send_timeout, on_send_failure=self._on_send_failure)
        self.dispatcher = RequestDispatcher(
            self.emitter.send,
            inference,
            backend,
            request_timeout=request_timeout,
            grace_period=grace_period,
        )

    @property
    def on_request_complete(self) -> Callable[[str, str, Optional[Usage], float], None] | None:
        return self.dispatcher.on_request_complete

    @on_request_complete.setter
    def on_request_complete(self, callback: Callable[[str, str, Optional[Usage], float], None] | None):
        self.dispatcher.on_request_complete = callback

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to console."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            color_map = {
                "info": "cyan",
                "success": "green",
                "error": "red",
                "warn": "yellow",
            }
            color = color_map.get(level, "white")
            console.print(f"[{color}]{message}[/{color}]")

    def _set_state(self, new: SessionState) -> bool:
        """Move to `new`. Returns False once the session is CLOSED."""
        old = self.state
        if new is old:
            return True
        if old is SessionState.CLOSED:
            return False
        if new not in TRANSITIONS[old]:
            raise RuntimeError(f"Illegal session transition {old.value} -> {new.value}")
        self.state = new
        logger.debug(f"Session state {old.value} -> {new.value}")
        if self.on_status_change:
            self.on_status_change(new)
        return True

    # -------------------------------------------------------------------------
    # Connection loop
    # -------------------------------------------------------------------------

    async def run(self):
        """Establish and maintain connection to the broker with auto-reconnect."""
        if not self.server_url or not self.jwt:
            self._log("Error: server URL and JWT are required", "error")
            self._set_state(SessionState.CLOSED)
            return

        last_error = ""

        while not self.stopped:
            try:
                await self._connect_once()
                last_error = ""
            except AuthRejected as e:
                self._log(f"Authentication rejected: {e}", "error")
                self._log("Check your Sixerr JWT - not retrying", "warn")
                self._close()
                break
            except ProtocolViolation as e:
                logger.error("Protocol violation: %s", e)
                last_error = str(e)
                self._log(last_error, "error")
            except websockets.exceptions.InvalidStatus as e:
                # Server rejected the upgrade (e.g. 401, 500)
                status = e.response.status_code
                logger.error("WebSocket connection rejected: HTTP %s", status)
                if status == 401:
                    last_error = "HTTP 401: Invalid or expired token"
                elif status >= 500:
                    last_error = f"HTTP {status}: Server error"
                else:
                    last_error = f"HTTP {status}"
                self._log(last_error, "error")
            except websockets.exceptions.InvalidURI as e:
                logger.error("Invalid WebSocket URI: %s", e)
                last_error = f"Invalid server URL: {e}"
                self._log(last_error, "error")
            except websockets.exceptions.InvalidHandshake as e:
                logger.error("WebSocket handshake failed: %s", e)
                last_error = f"Handshake failed: {e}"
                self._log(last_error, "error")
            except websockets.exceptions.ConnectionClosed as e:
                last_error = f"Connection closed: {e}"
                self._log(last_error, "warn")
            except ConnectionRefusedError as e:
                logger.error("Connection refused: %s", e)
                last_error = "Connection refused - broker unreachable"
                self._log(last_error, "error")
            except OSError as e:
                logger.error("Network error: %s", e)
                last_error = f"Network error: {e}"
                self._log(last_error, "error")
            except Exception as e:
                logger.error("Connection error: %s (%s)", e, type(e).__name__)
                last_error = f"{type(e).__name__}: {e}"
                self._log(last_error, "error")

            if self.stopped:
                break

            # Check retry limit
            self._retry_count += 1
            if self.max_retries >= 0 and self._retry_count > self.max_retries:
                if last_error:
                    self._log(f"Connection failed: {last_error}", "error")
                else:
                    self._log("Connection failed", "error")
                self._close()
                break

            if not self._set_state(SessionState.RECONNECTING):
                break
            delay = self.backoff.next()
            suffix = f" ({last_error})" if last_error else ""
            self._log(f"Reconnecting in {delay:.1f}s...{suffix}", "warn")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if not self._set_state(SessionState.CONNECTING):
                break

    async def _connect_once(self):
        """Single connection attempt: connect, authenticate, serve until the socket drops."""
        self._log(f"Connecting to {self.server_url}...", "warn")
        self.connect_attempts += 1

        ws = await self.connector(self.server_url, ping_interval=30, ping_timeout=10)
        session = Session(ws=ws, jwt=self.jwt, reconnect_attempts=self._retry_count)
        self.session = session

        if self.stopped:
            await ws.close()
            return

        self._log("Connected to broker!", "success")
        self.emitter.attach(ws)

        try:
            self._set_state(SessionState.AUTHENTICATING)
            await self._authenticate(session)

            if not self._set_state(SessionState.READY):
                return
            session.ready_since = time.monotonic()
            self._retry_count = 0

            await self._handle_messages(session)
        finally:
            # Only reset backoff once READY lasted long enough; an immediate
            # drop after auth keeps escalating
            if session.ready_since and time.monotonic() - session.ready_since > self.stable_after:
                self.backoff.reset()

            self.emitter.detach()
            self.dispatcher.cancel_all("connection lost")
            await self._close_socket(ws)

    async def _authenticate(self, session: Session):
        """Send the auth frame and wait for auth_ok / auth_error.

        Raises:
            AuthRejected: broker answered auth_error
            ProtocolViolation: any other frame, or no answer within auth_timeout
        """
        session.auth_state = "authenticating"
        auth = AuthFrame(
            jwt=session.jwt,
            pricing=self.pricing,
            agent_name=self.agent_name,
            agent_description=self.agent_description,
        )
        if not await self.emitter.send(auth):
            raise ProtocolViolation("Could not send auth frame")
        self._log("Auth sent, waiting for reply...", "info")

        deadline = time.monotonic() + self.auth_timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                message = await asyncio.wait_for(session.ws.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                raise ProtocolViolation("Authentication timeout (no response from server)")

            frame = parse_inbound(message)

            if isinstance(frame, JwtRefreshFrame):
                self._apply_jwt_refresh(session, frame)
                continue

            if isinstance(frame, AuthOkFrame):
                session.auth_state = "authenticated"
                session.reconnect_attempts = 0
                session.plugin_id = frame.plugin_id
                session.protocol = frame.protocol
                self._log(f"Authenticated as plugin: {frame.plugin_id}", "success")
                return

            if isinstance(frame, AuthErrorFrame):
                session.auth_state = "unauthenticated"
                raise AuthRejected(frame.message)

            raise ProtocolViolation(f"Unexpected {frame.type!r} frame during authentication")

    async def _handle_messages(self, session: Session):
        """Handle incoming frames until the socket closes."""
        try:
            async for message in session.ws:
                if self.stopped:
                    break
                try:
                    await self._process_frame(session, parse_inbound(message))
                except Exception as e:
                    logger.exception("Error processing frame")
                    self._log(f"Error processing frame: {e}", "error")

        except asyncio.CancelledError:
            logger.info("Message handler cancelled")
            raise
        except websockets.exceptions.ConnectionClosed as e:
            self._log(f"Connection closed: {e.reason or 'no reason'}", "warn")

    async def _process_frame(self, session: Session, frame: Any):
        """Process one frame from the broker while READY."""
        if isinstance(frame, PingFrame):
            # Answered inline; requests run as their own tasks
            session.last_heartbeat = time.monotonic()
            await self.emitter.send(PongFrame(ts=frame.ts))

        elif isinstance(frame, RequestFrame):
            await self.dispatcher.dispatch(frame.id, frame.body)

        elif isinstance(frame, JwtRefreshFrame):
            self._apply_jwt_refresh(session, frame)

        elif isinstance(frame, UnrecognizedFrame):
            logger.warning(f"Dropping malformed frame: {frame.reason}")

        else:
            logger.warning(f"Ignoring unexpected {frame.type!r} frame while {self.state.value}")

    def _apply_jwt_refresh(self, session: Session, frame: JwtRefreshFrame):
        """Store the new credential for later reconnects. Auth state is untouched."""
        self.jwt = frame.jwt
        session.jwt = frame.jwt
        self._log("JWT refreshed by broker", "info")
        if self.on_jwt_refresh:
            self.on_jwt_refresh(frame.jwt)

    def _on_send_failure(self, error: Exception):
        """A send timed out or failed: the socket is unusable, drop it."""
        session = self.session
        if self.state is SessionState.READY:
            self._set_state(SessionState.DEGRADED)
            self._log("Connection degraded - reconnecting", "warn")
        if session is not None:
            self._close_task = asyncio.ensure_future(self._close_socket(session.ws))

    async def _close_socket(self, ws):
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing socket: {e}")

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def _close(self):
        self._stop_event.set()
        self._set_state(SessionState.CLOSED)

    async def stop(self):
        """Close the session for good. Safe to call more than once."""
        if self.stopped and self.state is SessionState.CLOSED:
            return

        self._close()
        discarded = self.dispatcher.cancel_all("plugin stopped")
        self.emitter.detach()

        if self.session is not None:
            await self._close_socket(self.session.ws)

        if discarded:
            self._log(f"Discarded {discarded} in-flight request(s)", "warn")
        self._log("Disconnected from broker", "warn")
