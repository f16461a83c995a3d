"""Single outbound path to the broker socket.

Heartbeat pongs, stream events and terminal frames from every in-flight
request all go through FrameEmitter.send(), which holds a lock for the
duration of one websocket send so frames are never interleaved.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Union

from .frames import OutboundFrame

logger = logging.getLogger(__name__)


class FrameEmitter:
    """Serializes frames onto whichever socket is currently attached."""

    def __init__(
        self,
        send_timeout: float = 5.0,
        on_send_failure: Optional[Callable[[Exception], None]] = None,
    ):
        self.send_timeout = send_timeout
        self.on_send_failure = on_send_failure
        self._ws = None
        self._lock = asyncio.Lock()

    @property
    def attached(self) -> bool:
        return self._ws is not None

    def attach(self, ws) -> None:
        self._ws = ws

    def detach(self) -> None:
        self._ws = None

    async def send(self, frame: Union[OutboundFrame, dict[str, Any]]) -> bool:
        """Send one frame. Returns False if it was dropped or the send failed.

        The send is bounded by send_timeout: a blocked socket must not stall
        every request streaming through it.
        """
        data = frame.to_wire() if hasattr(frame, "to_wire") else frame
        message = json.dumps(data)

        async with self._lock:
            # Capture reference to avoid racing a concurrent detach
            ws = self._ws
            if ws is None:
                logger.warning("Cannot send %s frame - not connected", data.get("type"))
                return False

            try:
                await asyncio.wait_for(ws.send(message), timeout=self.send_timeout)
                return True
            except asyncio.TimeoutError as e:
                logger.error(f"WebSocket send timed out after {self.send_timeout}s - connection may be blocked")
                self._fail(e)
            except Exception as e:
                logger.error(f"Send error: {e}")
                self._fail(e)
            return False

    def _fail(self, error: Exception) -> None:
        self._ws = None
        if self.on_send_failure:
            self.on_send_failure(error)
