"""
Tests for the packet wire format

Tests cover:
- Packet creation
- Wire field names and JSON encoding
- Validation of malformed frames
- Relay copies (ttl decrement)
"""

import json

import pytest

from whisperd import BROADCAST, DEFAULT_TTL
from whisperd.packet.format import (
    Packet,
    PacketError,
    PacketType,
    WIRE_FIELDS,
    create_packet,
    parse_packet,
)


def wire(**overrides) -> dict:
    data = {
        "id": "p1",
        "from": "aaa111",
        "to": "bbb222",
        "ttl": 4,
        "timestamp": 1700000000000,
        "type": "TEXT",
        "payload": {"text": "hi"},
    }
    data.update(overrides)
    return data


# ===== Creation Tests =====

class TestCreatePacket:

    def test_defaults(self):
        packet = create_packet("aaa111", "bbb222", PacketType.TEXT, {"text": "hi"})
        assert packet.ttl == DEFAULT_TTL
        assert packet.from_id == "aaa111"
        assert packet.to == "bbb222"
        assert packet.timestamp > 0
        assert packet.type is PacketType.TEXT

    def test_fresh_ids(self):
        ids = {create_packet("a", "b", PacketType.TEXT, None).id for _ in range(50)}
        assert len(ids) == 50

    def test_type_from_string(self):
        packet = create_packet("a", BROADCAST, "VOICE_START", None)
        assert packet.type is PacketType.VOICE_START
        assert packet.is_broadcast

    def test_explicit_ttl_and_timestamp(self):
        packet = create_packet("a", "b", PacketType.TEXT, None, ttl=0, timestamp=42)
        assert packet.ttl == 0
        assert packet.timestamp == 42

    @pytest.mark.parametrize("ttl", [-1, 1.5, True])
    def test_invalid_ttl(self, ttl):
        with pytest.raises(ValueError):
            create_packet("a", "b", PacketType.TEXT, None, ttl=ttl)

    def test_missing_identity(self):
        with pytest.raises(ValueError):
            create_packet("", "b", PacketType.TEXT, None)

    def test_missing_recipient(self):
        with pytest.raises(ValueError):
            create_packet("a", "", PacketType.TEXT, None)


# ===== Wire Format Tests =====

class TestWireFormat:

    def test_field_names(self):
        packet = create_packet("aaa111", "bbb222", PacketType.TEXT, {"text": "hi"})
        data = json.loads(packet.to_bytes())
        assert set(data) == set(WIRE_FIELDS)
        assert data["from"] == "aaa111"
        assert data["type"] == "TEXT"

    def test_parse_wire_object(self):
        packet = parse_packet(json.dumps(wire()).encode())
        assert packet.id == "p1"
        assert packet.from_id == "aaa111"
        assert packet.payload == {"text": "hi"}

    def test_payload_carried_unchanged(self):
        payload = {"envelope": {"ciphertext": "QUJD", "iv": "00" * 16}, "list": [1, None, "ü"]}
        packet = create_packet("a", "b", PacketType.TEXT, payload)
        assert Packet.from_bytes(packet.to_bytes()).payload == payload

    def test_non_ascii_encoded_as_utf8(self):
        packet = create_packet("a", "b", PacketType.TEXT, {"text": "grüße"})
        assert "grüße".encode("utf-8") in packet.to_bytes()

    def test_extra_fields_ignored(self):
        packet = Packet.from_dict(wire(hops=["x"], version=2))
        assert packet.id == "p1"

    def test_null_payload_allowed(self):
        assert Packet.from_dict(wire(payload=None)).payload is None


# ===== Validation Tests =====

class TestPacketValidation:

    @pytest.mark.parametrize("field", WIRE_FIELDS)
    def test_missing_field(self, field):
        data = wire()
        del data[field]
        with pytest.raises(PacketError):
            Packet.from_dict(data)

    @pytest.mark.parametrize("field", ["id", "from", "to", "type"])
    def test_empty_string_field(self, field):
        with pytest.raises(PacketError):
            Packet.from_dict(wire(**{field: ""}))

    @pytest.mark.parametrize("value", ["4", 4.0, True, None])
    def test_ttl_must_be_integer(self, value):
        with pytest.raises(PacketError):
            Packet.from_dict(wire(ttl=value))

    def test_negative_ttl(self):
        with pytest.raises(PacketError):
            Packet.from_dict(wire(ttl=-1))

    def test_unknown_type(self):
        with pytest.raises(PacketError):
            Packet.from_dict(wire(type="PING"))

    def test_not_an_object(self):
        with pytest.raises(PacketError):
            parse_packet(b"[1, 2, 3]")

    def test_not_json(self):
        with pytest.raises(PacketError):
            parse_packet(b"{garbage")

    def test_not_utf8(self):
        with pytest.raises(PacketError):
            parse_packet(b"\xff\xfe\x00")


# ===== Relay Copy Tests =====

class TestRelayCopy:

    def test_decrement_returns_new_packet(self):
        packet = Packet.from_dict(wire(ttl=3))
        relayed = packet.decrement_ttl()

        assert relayed.ttl == 2
        assert packet.ttl == 3
        assert relayed.id == packet.id
        assert relayed.payload == packet.payload

    def test_decrement_at_zero(self):
        with pytest.raises(ValueError):
            Packet.from_dict(wire(ttl=0)).decrement_ttl()

    def test_packet_is_frozen(self):
        packet = Packet.from_dict(wire())
        with pytest.raises(AttributeError):
            packet.ttl = 9

    def test_is_for(self):
        direct = Packet.from_dict(wire())
        assert direct.is_for("bbb222")
        assert not direct.is_for("ccc333")

        broadcast = Packet.from_dict(wire(to=BROADCAST))
        assert broadcast.is_for("ccc333")
