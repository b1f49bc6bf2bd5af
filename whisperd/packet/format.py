"""
Whisper Packet Wire Format

Defines the immutable envelope exchanged between nodes.

Wire Format (UTF-8 JSON object):
    id          - UUID4 string, unique per packet
    from        - Sender node ID
    to          - Recipient node ID or "*" (broadcast)
    ttl         - Remaining hop budget (non-negative integer)
    timestamp   - Creation time (ms since epoch)
    type        - Packet type name (TEXT, VOICE_START, VOICE_END)
    payload     - JSON value, carried unchanged

Design Principles:
- Packets are frozen; relaying builds a new value with ttl - 1
- Unknown extra fields are ignored so the schema can grow additively
- Anything else malformed is a PacketError
"""

import json
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from .. import BROADCAST, DEFAULT_TTL
from ..crypto.primitives import generate_packet_id


# Fields every packet must carry on the wire
WIRE_FIELDS = ("id", "from", "to", "ttl", "timestamp", "type", "payload")


class PacketError(Exception):
    """Exception raised for malformed packets."""
    pass


class PacketType(str, Enum):
    """Packet type identifiers."""
    TEXT = "TEXT"
    VOICE_START = "VOICE_START"
    VOICE_END = "VOICE_END"


@dataclass(frozen=True)
class Packet:
    """
    Mesh packet.

    ``from`` is a Python keyword, so the sender lives in ``from_id``
    and is mapped to "from" on the wire.
    """
    id: str
    from_id: str
    to: str
    ttl: int
    timestamp: int
    type: PacketType
    payload: Any

    @property
    def is_broadcast(self) -> bool:
        return self.to == BROADCAST

    def is_for(self, node_id: str) -> bool:
        """True if the packet should be delivered on node_id."""
        return self.to == node_id or self.is_broadcast

    def decrement_ttl(self) -> 'Packet':
        """
        Copy of this packet for relay.

        Raises:
            ValueError: If ttl is already 0
        """
        if self.ttl <= 0:
            raise ValueError("Cannot relay packet with ttl 0")
        return replace(self, ttl=self.ttl - 1)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.from_id,
            "to": self.to,
            "ttl": self.ttl,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "payload": self.payload,
        }

    def to_bytes(self) -> bytes:
        """Serialize to wire format."""
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> 'Packet':
        """
        Build packet from a decoded wire object.

        Raises:
            PacketError: If a field is missing, has the wrong type,
                or holds an invalid value
        """
        if not isinstance(data, dict):
            raise PacketError("Packet is not a JSON object")

        missing = [name for name in WIRE_FIELDS if name not in data]
        if missing:
            raise PacketError(f"Packet missing fields: {', '.join(missing)}")

        for name in ("id", "from", "to", "type"):
            if not isinstance(data[name], str) or not data[name]:
                raise PacketError(f"Packet field '{name}' must be a non-empty string")

        for name in ("ttl", "timestamp"):
            value = data[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise PacketError(f"Packet field '{name}' must be an integer")

        if data["ttl"] < 0:
            raise PacketError(f"Negative ttl: {data['ttl']}")

        try:
            packet_type = PacketType(data["type"])
        except ValueError:
            raise PacketError(f"Unknown packet type: {data['type']}")

        return cls(
            id=data["id"],
            from_id=data["from"],
            to=data["to"],
            ttl=data["ttl"],
            timestamp=data["timestamp"],
            type=packet_type,
            payload=data["payload"],
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Packet':
        """
        Parse packet from wire format.

        Raises:
            PacketError: If data is not valid UTF-8 JSON or not a packet
        """
        try:
            decoded = json.loads(data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data)
        except (UnicodeDecodeError, ValueError) as e:
            raise PacketError(f"Invalid packet encoding: {e}")
        return cls.from_dict(decoded)


def create_packet(
    from_id: str,
    to: str,
    packet_type: PacketType,
    payload: Any,
    ttl: int = DEFAULT_TTL,
    timestamp: Optional[int] = None,
) -> Packet:
    """
    Create a new packet with a fresh id.

    Args:
        from_id: Local node ID
        to: Recipient node ID or BROADCAST
        packet_type: Packet type
        payload: JSON-serializable payload
        ttl: Hop budget
        timestamp: Creation time in ms (default: now)

    Returns:
        Packet: New packet

    Raises:
        ValueError: If ttl is negative or from_id is empty
    """
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 0:
        raise ValueError(f"ttl must be a non-negative integer, got {ttl!r}")
    if not from_id:
        raise ValueError("Cannot create packet without a local identity")
    if not to:
        raise ValueError("Packet recipient must not be empty")

    return Packet(
        id=generate_packet_id(),
        from_id=from_id,
        to=to,
        ttl=ttl,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        type=PacketType(packet_type),
        payload=payload,
    )


def parse_packet(data: bytes) -> Packet:
    """Parse packet bytes (alias of Packet.from_bytes)."""
    return Packet.from_bytes(data)
