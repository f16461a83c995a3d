"""Wire frames exchanged with the Sixerr broker.

Every frame is one JSON object tagged by `type`. Inbound frames are validated
into a discriminated union; anything unparseable or carrying an unknown type
comes back as UnrecognizedFrame so the session can log and drop it.
"""

import json
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 2


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Inbound (server -> plugin)
# =============================================================================

class RequestFrame(_Frame):
    type: Literal["request"]
    id: str = Field(min_length=1)
    # Not validated here: a bad body still gets an error reply for its id
    body: Any = None


class PingFrame(_Frame):
    type: Literal["ping"]
    ts: Union[int, float]


class AuthOkFrame(_Frame):
    type: Literal["auth_ok"]
    plugin_id: str = Field(alias="pluginId")
    protocol: int


class AuthErrorFrame(_Frame):
    type: Literal["auth_error"]
    message: str


class JwtRefreshFrame(_Frame):
    type: Literal["jwt_refresh"]
    jwt: str = Field(min_length=1)


class UnrecognizedFrame(BaseModel):
    """Anything we could not validate. Routed to the malformed-frame path."""
    raw: Any = None
    reason: str = ""
    type: Literal["unrecognized"] = "unrecognized"


InboundFrame = Annotated[
    Union[RequestFrame, PingFrame, AuthOkFrame, AuthErrorFrame, JwtRefreshFrame],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundFrame)


def parse_inbound(message: Union[str, bytes]) -> Union[RequestFrame, PingFrame, AuthOkFrame,
                                                       AuthErrorFrame, JwtRefreshFrame, UnrecognizedFrame]:
    """Decode and validate one inbound message. Never raises."""
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return UnrecognizedFrame(raw=message, reason="invalid JSON")

    if not isinstance(data, dict):
        return UnrecognizedFrame(raw=data, reason="frame is not an object")

    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        return UnrecognizedFrame(raw=data, reason=f"invalid {data.get('type')!r} frame: {e.error_count()} error(s)")


# =============================================================================
# Outbound (plugin -> server)
# =============================================================================

class Pricing(_Frame):
    input_token_price: str = Field(alias="inputTokenPrice")
    output_token_price: str = Field(alias="outputTokenPrice")


class AuthFrame(_Frame):
    type: Literal["auth"] = "auth"
    jwt: str
    protocol: Literal[2] = PROTOCOL_VERSION
    pricing: Optional[Pricing] = None
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    agent_description: Optional[str] = Field(default=None, alias="agentDescription")


class PongFrame(_Frame):
    type: Literal["pong"] = "pong"
    ts: Union[int, float]


class ResponseFrame(_Frame):
    type: Literal["response"] = "response"
    id: str
    body: dict[str, Any]


class StreamEventFrame(_Frame):
    type: Literal["stream_event"] = "stream_event"
    id: str
    event: dict[str, Any]


class StreamEndFrame(_Frame):
    type: Literal["stream_end"] = "stream_end"
    id: str
    usage: dict[str, int]


class ErrorFrame(_Frame):
    type: Literal["error"] = "error"
    id: str
    code: Literal["plugin_error", "duplicate_request"] = "plugin_error"
    message: str = ""


OutboundFrame = Union[AuthFrame, PongFrame, ResponseFrame, StreamEventFrame, StreamEndFrame, ErrorFrame]

TERMINAL_FRAME_TYPES = frozenset({"response", "stream_end"})
