"""
Whisper Handshake

Small greeting exchanged when two nodes link, announcing the node id
and (optionally) the public key used for payload encryption.

Format: base64 of the JSON object
    {"protocol": "whisper/1", "id": <node id>, "ts": <ms>, "publicKey": <hex>}
"""

import json
import time
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from .. import PROTOCOL


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Handshake:
    """Decoded handshake."""
    id: str
    timestamp: int
    public_key: Optional[str] = None
    protocol: str = PROTOCOL


def encode_handshake(identity_id: str, public_key: Optional[str] = None) -> str:
    """
    Encode a handshake for this node.

    Args:
        identity_id: Local node ID
        public_key: Hex public key to announce

    Returns:
        str: Base64 handshake
    """
    record = {
        "protocol": PROTOCOL,
        "id": identity_id,
        "ts": int(time.time() * 1000),
    }
    if public_key:
        record["publicKey"] = public_key
    return base64.b64encode(json.dumps(record).encode("utf-8")).decode("ascii")


def decode_handshake(encoded: str) -> Optional[Handshake]:
    """
    Decode a handshake.

    Returns:
        Handshake, or None if the input is malformed or speaks another
        protocol
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
        record = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, TypeError) as e:
        logger.debug(f"Ignoring malformed handshake: {e}")
        return None

    if not isinstance(record, dict) or record.get("protocol") != PROTOCOL:
        return None

    node_id = record.get("id")
    if not isinstance(node_id, str) or not node_id:
        return None

    timestamp = record.get("ts", 0)
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        timestamp = 0

    public_key = record.get("publicKey")
    if public_key is not None and not isinstance(public_key, str):
        return None

    return Handshake(id=node_id, timestamp=timestamp, public_key=public_key)
