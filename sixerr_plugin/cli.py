"""Sixerr CLI - serve the local agent's model on the Sixerr marketplace.

Usage:
    sixerr start --jwt eyJ... --server wss://host/ws
    sixerr start --provider openai --model gpt-4o-mini

Environment variables (alternative to args, .env is loaded too):
    SIXERR_SERVER_URL   Broker WebSocket URL
    SIXERR_JWT          Supplier JWT
    OPENCLAW_AGENT_DIR  Agent directory holding openclaw.json / models.json
    SIXERR_PROVIDER     Provider override
    SIXERR_MODEL        Model override
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .config import get_config_value, load_config
from .conversation import Usage
from .errors import ModelResolutionError
from .frames import Pricing
from .model_resolver import resolve_inference_config
from .plugin import PluginConfig, PluginHandle, start_plugin
from .tunnel import SessionState

log = logging.getLogger("sixerr")


class SixerrCLI:
    """Headless supplier session."""

    def __init__(
        self,
        server_url: str,
        jwt: str,
        agent_dir: Optional[Path] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.server_url = server_url
        self.jwt = jwt
        self.agent_dir = agent_dir
        self.provider = provider
        self.model = model
        self.timeout = timeout

        self._handle: Optional[PluginHandle] = None
        self._running = False
        self._closed = asyncio.Event()

        # Metrics
        self._requests = 0
        self._failed = 0
        self._tokens = 0
        self._start_time = None

    async def run(self) -> int:
        """Run the plugin. Returns exit code."""
        self._start_time = datetime.now()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))

        log.info("=" * 50)
        log.info("Sixerr plugin - Starting")
        log.info("=" * 50)

        try:
            try:
                inference = resolve_inference_config(
                    agent_dir=self.agent_dir,
                    provider=self.provider,
                    model=self.model,
                    timeout=self.timeout,
                )
            except ModelResolutionError as e:
                log.error(str(e))
                return 1

            log.info(f"Serving model: {inference.provider}/{inference.model}")
            log.info(f"Endpoint: {inference.resolved_model.base_url}")

            self._handle = start_plugin(PluginConfig(
                server_url=self.server_url,
                jwt=self.jwt,
                inference=inference,
                pricing=_pricing_from_config(),
                agent_name=get_config_value("AGENT_NAME") or None,
                agent_description=get_config_value("AGENT_DESCRIPTION") or None,
                request_timeout=self.timeout,
                grace_period=get_config_value("TIMEOUT_GRACE"),
                min_delay=get_config_value("RECONNECT_MIN"),
                max_delay=get_config_value("RECONNECT_MAX"),
                stable_after=get_config_value("STABLE_AFTER"),
                send_timeout=get_config_value("SEND_TIMEOUT"),
                on_status_change=self._on_status_change,
            ))
            self._handle.tunnel.on_request_complete = self._on_request_complete

            self._running = True
            log.info("Press Ctrl+C to stop")

            # Keep running until shutdown or the session closes on its own
            while self._running and not self._closed.is_set():
                try:
                    await asyncio.wait_for(self._closed.wait(), timeout=1)
                except asyncio.TimeoutError:
                    pass
                self._log_stats()

            # Session closed without a shutdown request: auth rejected or retries exhausted
            return 0 if not self._running else 1

        except Exception as e:
            log.error(f"Fatal error: {e}")
            return 1
        finally:
            await self._cleanup()

    def _on_status_change(self, state: SessionState) -> None:
        if state is SessionState.READY:
            log.info("Ready! Waiting for inference requests...")
        elif state is SessionState.RECONNECTING:
            log.warning("Disconnected from broker")
        elif state is SessionState.CLOSED:
            self._closed.set()

    def _on_request_complete(
        self, request_id: str, dialect: str, usage: Optional[Usage], elapsed_ms: float
    ) -> None:
        """Called when a request completes."""
        self._requests += 1
        if usage is None:
            self._failed += 1
            log.info(f"Request #{self._requests}: {request_id[:8]} | {dialect} | failed | {elapsed_ms/1000:.1f}s")
            return

        self._tokens += usage.total
        tps = (usage.output_tokens / elapsed_ms * 1000) if elapsed_ms > 0 else 0
        log.info(
            f"Request #{self._requests}: {request_id[:8]} | {dialect} | "
            f"{usage.input_tokens} in / {usage.output_tokens} out | "
            f"{elapsed_ms/1000:.1f}s total | {tps:.1f} tk/s"
        )

    def _log_stats(self) -> None:
        """Log periodic stats (every 60 seconds)."""
        if not self._start_time:
            return

        elapsed = (datetime.now() - self._start_time).total_seconds()
        if int(elapsed) % 60 == 0 and int(elapsed) > 0:
            mins = int(elapsed // 60)
            log.info(
                f"Stats: {mins}m uptime | "
                f"{self._requests} requests ({self._failed} failed) | "
                f"{self._tokens:,} tokens"
            )

    async def _shutdown(self) -> None:
        """Graceful shutdown."""
        if not self._running:
            return

        log.info("Shutting down...")
        self._running = False
        self._closed.set()

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        if self._handle:
            await self._handle.stop()
        log.info("Goodbye!")


def _pricing_from_config() -> Optional[Pricing]:
    input_price = get_config_value("INPUT_TOKEN_PRICE")
    output_price = get_config_value("OUTPUT_TOKEN_PRICE")
    if not input_price or not output_price:
        return None
    return Pricing(input_token_price=input_price, output_token_price=output_price)


def build_parser() -> argparse.ArgumentParser:
    config = load_config()

    parser = argparse.ArgumentParser(
        prog="sixerr",
        description="Sixerr plugin - sell your agent's LLM on the Sixerr marketplace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sixerr start --server wss://host/ws --jwt eyJ...
  sixerr start --provider openai --model gpt-4o-mini
  sixerr start --agent-dir ~/.openclaw/agents/work/agent -v
        """,
    )
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", help="Connect to the Sixerr server")
    start.add_argument(
        "--server",
        default=config["SERVER_URL"],
        help="Broker WebSocket URL (or set SIXERR_SERVER_URL)",
    )
    start.add_argument(
        "--jwt",
        default=config["JWT"],
        help="Supplier JWT (or set SIXERR_JWT)",
    )
    start.add_argument(
        "--agent-dir",
        type=Path,
        default=config["AGENT_DIR"] or None,
        help="Agent directory (default: ~/.openclaw/agents/default/agent)",
    )
    start.add_argument(
        "--provider",
        default=config["PROVIDER"] or None,
        help="Provider override (default: from openclaw.json)",
    )
    start.add_argument(
        "--model",
        default=config["MODEL"] or None,
        help="Model override (default: from openclaw.json)",
    )
    start.add_argument(
        "--timeout",
        type=float,
        default=config["REQUEST_TIMEOUT"],
        help="Per-request timeout in seconds (default: 120)",
    )
    start.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    load_dotenv()
    load_config.cache_clear()

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "start":
        parser.print_help()
        sys.exit(1)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.server:
        log.error("Server URL required. Use --server or set SIXERR_SERVER_URL")
        sys.exit(1)
    if not args.jwt:
        log.error("JWT required. Use --jwt or set SIXERR_JWT")
        sys.exit(1)

    cli = SixerrCLI(
        server_url=args.server,
        jwt=args.jwt,
        agent_dir=args.agent_dir,
        provider=args.provider,
        model=args.model,
        timeout=args.timeout,
    )

    exit_code = asyncio.run(cli.run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
