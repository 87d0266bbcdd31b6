"""Websocket envelope types.

Outgoing envelopes carry ``type`` + ``channel`` + ``channel_param``;
incoming ones are tagged by ``_ws_type`` and carry ``_channel`` /
``_channel_param`` for demultiplexing.

    outgoing: join_channel | disconnect_channel | data
    incoming: join_result | server_broadcast | heartbeat | exclusive_kickoff

``parse_incoming`` turns a decoded JSON object into one of the incoming
dataclasses, or ``None`` when the object is not a well-formed envelope
(callers drop those).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outgoing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JoinChannel:
    channel: str
    channel_param: str = ""
    exclusive_key: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "join_channel",
            "channel": self.channel,
            "channel_param": self.channel_param,
            "exclusive_key": self.exclusive_key,
        }


@dataclass(frozen=True)
class DisconnectChannel:
    channel: str
    channel_param: str = ""
    exclusive_key: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "disconnect_channel",
            "channel": self.channel,
            "channel_param": self.channel_param,
            "exclusive_key": self.exclusive_key,
        }


@dataclass(frozen=True)
class ChannelData:
    channel: str
    channel_param: str
    data: Any

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "data",
            "channel": self.channel,
            "channel_param": self.channel_param,
            "data": self.data,
        }


OutgoingEnvelope = Union[JoinChannel, DisconnectChannel, ChannelData]


def encode(envelope: OutgoingEnvelope) -> str:
    """Serialize an outgoing envelope to JSON text."""
    return json.dumps(envelope.to_wire(), separators=(",", ":"))


# ---------------------------------------------------------------------------
# Incoming
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JoinResult:
    channel: str
    channel_param: str
    welcome_message: Any = None
    client_number: int | None = None


@dataclass(frozen=True)
class ServerBroadcast:
    """Channel data pushed by the server.

    ``payload`` is the envelope minus the underscore-prefixed routing keys.
    """

    channel: str
    channel_param: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Heartbeat:
    channel: str
    channel_param: str
    client_number: int | None = None


@dataclass(frozen=True)
class ExclusiveKickoff:
    channel: str
    channel_param: str
    payload: dict[str, Any] = field(default_factory=dict)


IncomingEnvelope = Union[JoinResult, ServerBroadcast, Heartbeat, ExclusiveKickoff]


def _payload(obj: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in obj.items() if not k.startswith("_")}


def parse_incoming(obj: Any) -> IncomingEnvelope | None:
    """Build the incoming envelope for a decoded JSON object."""
    if not isinstance(obj, dict):
        return None
    channel = obj.get("_channel")
    param = obj.get("_channel_param", "")
    if not isinstance(channel, str) or not isinstance(param, str):
        return None

    ws_type = obj.get("_ws_type")
    if ws_type == "join_result":
        return JoinResult(
            channel, param,
            welcome_message=obj.get("welcome_message"),
            client_number=obj.get("client_number"),
        )
    if ws_type == "server_broadcast":
        return ServerBroadcast(channel, param, _payload(obj))
    if ws_type == "heartbeat":
        return Heartbeat(channel, param, client_number=obj.get("client_number"))
    if ws_type == "exclusive_kickoff":
        return ExclusiveKickoff(channel, param, _payload(obj))
    logger.debug("Dropping envelope with unknown _ws_type %r", ws_type)
    return None


def decode(text: str | bytes) -> IncomingEnvelope | None:
    """Parse wire text; malformed JSON yields ``None``."""
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug("Dropping malformed socket message: %s", exc)
        return None
    return parse_incoming(obj)
