"""
Tests for the assembled node

Tests cover:
- Lifecycle and restart persistence
- Handshakes and the peer key directory
- Encrypted and plaintext messaging across nodes
- Multi-hop relay and broadcast
- Pending / delivered tracking
- Non-text packet handlers
- Hung storage backends
"""

import asyncio
from dataclasses import replace

import pytest

from conftest import HungKeyValueStore

from whisperd import BROADCAST
from whisperd.config import Config
from whisperd.crypto.cipher import AuthenticationError, CipherError
from whisperd.crypto.keys import generate_key_pair
from whisperd.node import PEERS_STORAGE_KEY, WhisperNode
from whisperd.packet.format import PacketType
from whisperd.packet.handshake import encode_handshake
from whisperd.packet.store import conversation_key
from whisperd.storage.kv import MemoryKeyValueStore


def _flip_hex(value: str) -> str:
    raw = bytearray(bytes.fromhex(value))
    raw[0] ^= 0x01
    return bytes(raw).hex()


# ===== Lifecycle Tests =====

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_not_started(self, medium, kv):
        node = WhisperNode(Config(), kv, medium.create_transport("x" * 32))

        assert not node.running
        with pytest.raises(ValueError):
            node.store
        with pytest.raises(ValueError):
            await node.send_text("b" * 32, "hi")

    @pytest.mark.asyncio
    async def test_context_manager(self, medium, kv):
        node = WhisperNode(Config(), kv, medium.create_transport("x" * 32))

        async with node:
            assert node.running
            assert len(node.id) == 32
            assert len(node.public_key) == 64

        assert not node.running

    @pytest.mark.asyncio
    async def test_invalid_config_refuses_to_start(self, medium, kv):
        config = Config()
        config.mesh.default_ttl = -1
        node = WhisperNode(config, kv, medium.create_transport("x" * 32))

        with pytest.raises(ValueError):
            await node.start()
        assert not node.running

    @pytest.mark.asyncio
    async def test_restart_keeps_identity_keys_and_history(self, node_factory, handshake_all):
        kv = MemoryKeyValueStore()
        alice = await node_factory(kv=kv)
        bob = await node_factory()
        await handshake_all(alice, bob)

        message = await alice.send_text(bob.id, "before restart")
        old_id, old_key = alice.id, alice.public_key

        await alice.stop()
        await alice.transport.close()

        revived = await node_factory(kv=kv)
        assert revived.id == old_id
        assert revived.public_key == old_key
        assert revived.peer_public_key(bob.id) == bob.public_key
        assert revived.store.get_messages(bob.id) == [message]
        assert revived.read_text(message) == "before restart"

    @pytest.mark.asyncio
    async def test_stats(self, node_factory):
        node = await node_factory()
        stats = node.get_stats()

        assert stats["node_id"] == node.id
        assert stats["known_peers"] == 0
        assert stats["router"]["received"] == 0
        assert stats["store"]["conversations"] == 0
        assert stats["transport"]["links"] == 0


# ===== Handshake Tests =====

class TestHandshakes:

    @pytest.mark.asyncio
    async def test_exchange_learns_keys(self, node_factory, kv):
        alice = await node_factory(kv=kv)
        bob = await node_factory()

        handshake = await alice.accept_handshake(bob.handshake())

        assert handshake.id == bob.id
        assert alice.peer_public_key(bob.id) == bob.public_key
        assert bob.id in (await kv.get(PEERS_STORAGE_KEY))

    @pytest.mark.asyncio
    async def test_own_handshake_ignored(self, node_factory):
        alice = await node_factory()
        assert await alice.accept_handshake(alice.handshake()) is None

    @pytest.mark.asyncio
    async def test_bad_key_not_stored(self, node_factory):
        alice = await node_factory()
        peer = "d" * 32

        handshake = await alice.accept_handshake(encode_handshake(peer, "zz" * 32))

        assert handshake.id == peer
        assert alice.peer_public_key(peer) is None

    @pytest.mark.asyncio
    async def test_garbage_handshake(self, node_factory):
        alice = await node_factory()
        assert await alice.accept_handshake("not a handshake") is None


# ===== Messaging Tests =====

class TestMessaging:

    @pytest.mark.asyncio
    async def test_encrypted_message_between_neighbours(self, node_factory, handshake_all, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)
        await handshake_all(alice, bob)

        sent = await alice.send_text(bob.id, "meet at the ridge")
        await medium.drain()

        assert sent.encrypted
        assert "text" not in sent.payload

        [received] = bob.store.get_messages(alice.id)
        assert received.id == sent.id
        assert received.encrypted
        assert bob.read_text(received) == "meet at the ridge"
        assert alice.read_text(sent) == "meet at the ridge"

    @pytest.mark.asyncio
    async def test_aead_cipher(self, node_factory, handshake_all, medium):
        config = Config()
        config.security.cipher = "chacha20-poly1305"
        alice = await node_factory(config=config)
        bob = await node_factory(config=config)
        medium.link(alice.id, bob.id)
        await handshake_all(alice, bob)

        await alice.send_text(bob.id, "sealed")
        await medium.drain()

        [received] = bob.store.get_messages(alice.id)
        assert received.payload["envelope"]["algorithm"] == "chacha20-poly1305"
        assert bob.read_text(received) == "sealed"

    @pytest.mark.asyncio
    async def test_plaintext_without_known_key(self, node_factory, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)

        sent = await alice.send_text(bob.id, "hello?")
        await medium.drain()

        assert not sent.encrypted
        [received] = bob.store.get_messages(alice.id)
        assert received.payload == {"text": "hello?"}
        assert bob.read_text(received) == "hello?"

    @pytest.mark.asyncio
    async def test_plaintext_on_request(self, node_factory, handshake_all):
        alice = await node_factory()
        bob = await node_factory()
        await handshake_all(alice, bob)

        sent = await alice.send_text(bob.id, "open", encrypt=False)
        assert sent.payload == {"text": "open"}

    @pytest.mark.asyncio
    async def test_read_without_sender_key(self, node_factory, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)
        # Only alice knows bob's key
        await alice.accept_handshake(bob.handshake())

        await alice.send_text(bob.id, "secret")
        await medium.drain()

        [received] = bob.store.get_messages(alice.id)
        with pytest.raises(CipherError):
            bob.read_text(received)

    @pytest.mark.asyncio
    async def test_tampered_message_rejected(self, node_factory, handshake_all, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)
        await handshake_all(alice, bob)

        await alice.send_text(bob.id, "untouched")
        await medium.drain()

        [received] = bob.store.get_messages(alice.id)
        envelope = dict(received.payload["envelope"])
        envelope["iv"] = _flip_hex(envelope["iv"])
        tampered = replace(received, payload={"envelope": envelope})

        with pytest.raises(AuthenticationError):
            bob.read_text(tampered)

    @pytest.mark.asyncio
    async def test_rotated_sender_key_fails_authentication(self, node_factory, handshake_all, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)
        await handshake_all(alice, bob)

        await alice.send_text(bob.id, "hi")
        await medium.drain()

        # Bob now holds a stale key for alice
        await bob.add_peer_key(alice.id, generate_key_pair().public_key)
        [received] = bob.store.get_messages(alice.id)
        with pytest.raises(AuthenticationError):
            bob.read_text(received)


# ===== Multi-hop Tests =====

class TestMeshDelivery:

    @pytest.mark.asyncio
    async def test_relay_through_middle_node(self, node_factory, handshake_all, medium):
        alice = await node_factory()
        relay = await node_factory()
        carol = await node_factory()
        medium.link(alice.id, relay.id)
        medium.link(relay.id, carol.id)
        await handshake_all(alice, carol)

        sent = await alice.send_text(carol.id, "two hops")
        await medium.drain()

        [received] = carol.store.get_messages(alice.id)
        assert received.id == sent.id
        assert carol.read_text(received) == "two hops"

        # The relay forwards but does not keep a copy
        assert relay.store.get_conversations() == []
        assert relay.router.get_stats()["relayed"] >= 1

    @pytest.mark.asyncio
    async def test_message_stored_once_despite_echoes(self, node_factory, medium):
        a = await node_factory()
        b = await node_factory()
        c = await node_factory()
        # Triangle: every frame is echoed back at least once
        medium.link(a.id, b.id)
        medium.link(b.id, c.id)
        medium.link(a.id, c.id)

        await a.send_text(c.id, "loop")
        await medium.drain()

        assert len(c.store.get_messages(a.id)) == 1
        assert len(a.store.get_messages(c.id)) == 1

    @pytest.mark.asyncio
    async def test_ttl_limits_reach(self, node_factory, medium):
        config = Config()
        config.mesh.default_ttl = 0
        nodes = [await node_factory(config=config) for _ in range(3)]
        medium.link(nodes[0].id, nodes[1].id)
        medium.link(nodes[1].id, nodes[2].id)

        await nodes[0].send_text(nodes[2].id, "too far")
        await medium.drain()

        assert nodes[2].store.get_conversations() == []

    @pytest.mark.asyncio
    async def test_broadcast_reaches_everyone(self, node_factory, medium):
        a = await node_factory()
        b = await node_factory()
        c = await node_factory()
        medium.link(a.id, b.id)
        medium.link(b.id, c.id)

        sent = await a.broadcast_text("all hands")
        await medium.drain()

        key = conversation_key(a.id, BROADCAST)
        for node in (b, c):
            [received] = node.store.get_messages(key)
            assert received.id == sent.id
            assert node.read_text(received) == "all hands"

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, node_factory):
        node = await node_factory()

        assert await node.on_frame(b"\x00\x01 garbage") is None
        assert node.router.get_stats()["malformed"] == 1


# ===== Delivery Tracking Tests =====

class TestDeliveryTracking:

    @pytest.mark.asyncio
    async def test_pending_until_delivered(self, node_factory):
        alice = await node_factory()
        sent = await alice.send_text("b" * 32, "queued")

        assert alice.store.get_pending_messages() == [sent]

        await alice.mark_delivered(sent.id)
        assert alice.store.get_pending_messages() == []
        assert alice.store.is_message_delivered(sent.id)

    @pytest.mark.asyncio
    async def test_sent_message_stored_even_without_links(self, node_factory):
        alice = await node_factory()
        sent = await alice.send_text("b" * 32, "nobody hears")

        assert alice.store.get_messages("b" * 32) == [sent]
        assert alice.router.get_stats()["originated"] == 1


# ===== Handler Tests =====

class TestHandlers:

    @pytest.mark.asyncio
    async def test_voice_packets_reach_handlers(self, node_factory, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)

        seen_sync = []
        seen_async = []

        async def async_handler(packet):
            seen_async.append(packet.type)

        bob.register_handler(PacketType.VOICE_START, seen_sync.append)
        bob.register_handler("VOICE_END", async_handler)

        await alice.send_packet(bob.id, PacketType.VOICE_START, {"session": 1})
        await alice.send_packet(bob.id, PacketType.VOICE_END, {"session": 1})
        await medium.drain()

        assert [p.payload for p in seen_sync] == [{"session": 1}]
        assert seen_async == [PacketType.VOICE_END]
        # Voice control packets are not stored as messages
        assert bob.store.get_conversations() == []

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, node_factory, medium):
        alice = await node_factory()
        bob = await node_factory()
        medium.link(alice.id, bob.id)

        calls = []

        def broken(packet):
            raise RuntimeError("speaker unplugged")

        bob.register_handler(PacketType.TEXT, broken)
        bob.register_handler(PacketType.TEXT, calls.append)

        await alice.send_text(bob.id, "hi", encrypt=False)
        await medium.drain()

        assert len(calls) == 1
        assert len(bob.store.get_messages(alice.id)) == 1


# ===== Hung Storage Tests =====

class TestHungStorage:

    @pytest.mark.asyncio
    async def test_send_and_learn_keys_return_when_writes_hang(self, node_factory):
        config = Config()
        config.storage.timeout = 0.05
        kv = HungKeyValueStore()
        alice = await node_factory(config, kv)
        kv.hang_writes = True

        peer = generate_key_pair()
        await asyncio.wait_for(alice.add_peer_key("b" * 32, peer.public_key), timeout=5)
        sent = await asyncio.wait_for(alice.send_text("b" * 32, "still here"), timeout=5)

        assert alice.peer_public_key("b" * 32) == peer.public_key
        assert alice.store.get_messages("b" * 32) == [sent]
        assert alice.store.degraded
