"""Configuration for the Sixerr plugin.

Simple configuration loader from environment variables. The CLI loads a
.env file first (python-dotenv), so either works.
"""

import os
from functools import lru_cache
from typing import Any, Optional


def _float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    return {
        # Broker connection
        "SERVER_URL": os.getenv("SIXERR_SERVER_URL", ""),
        # Supplier credential issued by the marketplace
        "JWT": os.getenv("SIXERR_JWT", ""),

        # Model selection (empty = read from the agent directory)
        "AGENT_DIR": os.getenv("OPENCLAW_AGENT_DIR", ""),
        "PROVIDER": os.getenv("SIXERR_PROVIDER", ""),
        "MODEL": os.getenv("SIXERR_MODEL", ""),

        # Timeouts (seconds)
        "REQUEST_TIMEOUT": _float("SIXERR_REQUEST_TIMEOUT", "120.0"),
        "TIMEOUT_GRACE": _float("SIXERR_TIMEOUT_GRACE", "5.0"),
        "SEND_TIMEOUT": _float("SIXERR_SEND_TIMEOUT", "5.0"),

        # Reconnect backoff (seconds). Backoff resets after READY lasts STABLE_AFTER
        "RECONNECT_MIN": _float("SIXERR_RECONNECT_MIN", "1.0"),
        "RECONNECT_MAX": _float("SIXERR_RECONNECT_MAX", "60.0"),
        "STABLE_AFTER": _float("SIXERR_STABLE_AFTER", "30.0"),

        # Marketplace listing, sent with the auth frame when set
        "INPUT_TOKEN_PRICE": os.getenv("SIXERR_INPUT_TOKEN_PRICE", ""),
        "OUTPUT_TOKEN_PRICE": os.getenv("SIXERR_OUTPUT_TOKEN_PRICE", ""),
        "AGENT_NAME": os.getenv("SIXERR_AGENT_NAME", ""),
        "AGENT_DESCRIPTION": os.getenv("SIXERR_AGENT_DESCRIPTION", ""),
    }


def get_config_value(key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)
