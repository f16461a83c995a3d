"""Sixerr supplier plugin.

Connects a local agent's LLM to the Sixerr marketplace broker and serves
Chat-Completions and Responses requests over a single WebSocket.
"""

from functools import lru_cache

from .plugin import PluginConfig, PluginHandle, start_plugin


@lru_cache(maxsize=1)
def get_version() -> str:
    """Get the installed package version."""
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version("sixerr-plugin")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = ["PluginConfig", "PluginHandle", "start_plugin", "get_version"]
