"""Embedding entry point: start the plugin from another asyncio program.

    handle = start_plugin(PluginConfig(server_url=..., jwt=..., inference=...))
    ...
    await handle.stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from rich.console import Console

from .conversation import LLMBackend
from .dispatcher import DEFAULT_GRACE_PERIOD
from .frames import Pricing
from .llm import OpenAICompatibleBackend
from .model_resolver import InferenceConfig
from .tunnel import BrokerTunnel, SessionState

logger = logging.getLogger(__name__)
console = Console()

STATUS_STYLES = {
    SessionState.CONNECTING: ("Connecting", "yellow"),
    SessionState.AUTHENTICATING: ("Authenticating", "yellow"),
    SessionState.READY: ("Connected - waiting for requests", "green"),
    SessionState.DEGRADED: ("Connection degraded", "yellow"),
    SessionState.RECONNECTING: ("Disconnected - reconnecting", "yellow"),
    SessionState.CLOSED: ("Stopped", "red"),
}


def print_status(state: SessionState) -> None:
    """Default status display: one line per session state change."""
    label, color = STATUS_STYLES[state]
    console.print(f"[{color}]Sixerr: {label}[/{color}]")


@dataclass
class PluginConfig:
    server_url: str
    jwt: str
    inference: InferenceConfig
    pricing: Optional[Pricing] = None
    agent_name: Optional[str] = None
    agent_description: Optional[str] = None
    backend: Optional[LLMBackend] = None
    request_timeout: Optional[float] = None
    grace_period: float = DEFAULT_GRACE_PERIOD
    min_delay: float = 1.0
    max_delay: float = 60.0
    stable_after: float = 30.0
    send_timeout: float = 5.0
    on_status_change: Optional[Callable[[SessionState], None]] = field(default=print_status, repr=False)
    log_callback: Optional[Callable[[str, str], None]] = field(default=None, repr=False)


@dataclass
class PluginHandle:
    tunnel: BrokerTunnel
    task: asyncio.Task
    backend: LLMBackend

    async def stop(self) -> None:
        """Stop the session and release the backend. Safe to call twice."""
        await self.tunnel.stop()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()


def start_plugin(config: PluginConfig) -> PluginHandle:
    """Build the tunnel and start it as a background task.

    Must be called from a running event loop.
    """
    if not config.server_url or not isinstance(config.server_url, str):
        raise ValueError("server_url must be a non-empty string")
    if not config.jwt or not isinstance(config.jwt, str):
        raise ValueError("jwt must be a non-empty string")

    backend = config.backend or OpenAICompatibleBackend(timeout=config.inference.timeout)

    tunnel = BrokerTunnel(
        server_url=config.server_url,
        jwt=config.jwt,
        inference=config.inference,
        backend=backend,
        request_timeout=config.request_timeout,
        grace_period=config.grace_period,
        min_delay=config.min_delay,
        max_delay=config.max_delay,
        stable_after=config.stable_after,
        send_timeout=config.send_timeout,
        pricing=config.pricing,
        agent_name=config.agent_name,
        agent_description=config.agent_description,
        log_callback=config.log_callback,
        on_status_change=config.on_status_change,
    )

    task = asyncio.create_task(tunnel.run())
    logger.info(f"Plugin started for {config.inference.provider}/{config.inference.model}")
    return PluginHandle(tunnel=tunnel, task=task, backend=backend)
