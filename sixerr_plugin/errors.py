"""Exception types for the Sixerr plugin.

Failures fall into four groups:
- fatal-session: the broker rejected our credential (AuthRejected)
- transient-session: the connection broke or the broker misbehaved during
  the handshake (ProtocolViolation, plus socket/network errors)
- request-scoped: anything that goes wrong while serving one request
  (MalformedRequest, RequestAborted, BackendError). These are reported as an
  `error` frame on that request id and never reach the session loop.
- startup-fatal: the configured model cannot be resolved (ModelResolutionError)
"""


class PluginError(Exception):
    """Base class for all plugin errors."""


class AuthRejected(PluginError):
    """Broker answered the auth frame with auth_error. Not retried."""


class ProtocolViolation(PluginError):
    """Broker sent something we did not expect. The session reconnects."""


class MalformedRequest(PluginError):
    """Request body cannot be turned into a conversation."""


class RequestAborted(PluginError):
    """The request's cancellation token fired while the backend was working."""


class BackendError(PluginError):
    """The LLM backend failed to produce a completion."""


class ModelResolutionError(PluginError):
    """Configured provider/model could not be found at startup."""
