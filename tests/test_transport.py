"""
Tests for the transport layer

Tests cover:
- Loopback topology (link / unlink / detach)
- Best-effort fan-out with per-neighbour failures and timeouts
- Frame loss and draining
"""

import asyncio
from typing import List, Tuple

import pytest

from whisperd.transport.base import TransportError
from whisperd.transport.loopback import (
    LoopbackConfig,
    LoopbackMedium,
    LoopbackTransport,
)


class Inbox:
    """Receiver that collects frames."""

    def __init__(self):
        self.frames: List[Tuple[bytes, str]] = []

    async def __call__(self, data: bytes, sender: str) -> None:
        self.frames.append((data, sender))


class SlowTransport(LoopbackTransport):
    """Transport whose sends to one peer never complete."""

    def __init__(self, medium, node_id, slow_peer, send_timeout=0.05):
        super().__init__(medium, node_id, send_timeout)
        self.slow_peer = slow_peer

    async def send_to(self, peer_id: str, data: bytes) -> None:
        if peer_id == self.slow_peer:
            await asyncio.sleep(10)
        await super().send_to(peer_id, data)


# ===== Topology Tests =====

class TestLoopbackTopology:

    def test_link_is_bidirectional(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        medium.link("a", "b")

        assert a.links() == ["b"]
        assert b.links() == ["a"]

    def test_unlink(self, medium):
        a = medium.create_transport("a")
        medium.create_transport("b")
        medium.link("a", "b")
        medium.unlink("a", "b")
        medium.unlink("a", "b")

        assert a.links() == []

    def test_self_link_rejected(self, medium):
        medium.create_transport("a")
        with pytest.raises(ValueError):
            medium.link("a", "a")

    def test_duplicate_attach_rejected(self, medium):
        medium.create_transport("a")
        with pytest.raises(ValueError):
            medium.create_transport("a")

    @pytest.mark.asyncio
    async def test_close_detaches(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        medium.link("a", "b")

        await b.close()

        assert a.links() == []
        assert medium.get_stats()["nodes"] == 1
        # The id can be reused after detaching
        medium.create_transport("b")


# ===== Delivery Tests =====

class TestLoopbackDelivery:

    @pytest.mark.asyncio
    async def test_frame_delivered_on_drain(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        inbox = Inbox()
        b.set_receiver(inbox)
        medium.link("a", "b")

        assert await a.send_packet(b"frame") == 1
        assert inbox.frames == []
        assert medium.pending() == 1

        assert await medium.drain() == 1
        assert inbox.frames == [(b"frame", "a")]
        assert medium.pending() == 0

    @pytest.mark.asyncio
    async def test_send_without_link_raises(self, medium):
        a = medium.create_transport("a")
        medium.create_transport("b")

        with pytest.raises(TransportError):
            await a.send_to("b", b"frame")

    @pytest.mark.asyncio
    async def test_no_neighbours_reaches_nobody(self, medium):
        a = medium.create_transport("a")
        assert await a.send_packet(b"frame") == 0

    @pytest.mark.asyncio
    async def test_exclude(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        c = medium.create_transport("c")
        medium.link("a", "b")
        medium.link("a", "c")

        assert await a.send_packet(b"frame", exclude=["b"]) == 1
        assert b.queue_depth == 0
        assert c.queue_depth == 1

    @pytest.mark.asyncio
    async def test_down_peer_does_not_block_others(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        c = medium.create_transport("c")
        medium.link("a", "b")
        medium.link("a", "c")
        b.down = True

        assert await a.send_packet(b"frame") == 1
        assert c.queue_depth == 1

        stats = a.get_stats()
        assert stats["frames_sent"] == 1
        assert stats["send_failures"] == 1

    @pytest.mark.asyncio
    async def test_down_sender_fails_everywhere(self, medium):
        a = medium.create_transport("a")
        medium.create_transport("b")
        medium.link("a", "b")
        a.down = True

        assert await a.send_packet(b"frame") == 0

    @pytest.mark.asyncio
    async def test_slow_neighbour_times_out(self, medium):
        a = SlowTransport(medium, "a", slow_peer="b")
        medium.attach(a)
        medium.create_transport("b")
        c = medium.create_transport("c")
        medium.link("a", "b")
        medium.link("a", "c")

        assert await a.send_packet(b"frame") == 1
        assert c.queue_depth == 1
        assert a.get_stats()["send_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_total_loss(self):
        medium = LoopbackMedium(LoopbackConfig(loss_probability=1.0), seed=3)
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        medium.link("a", "b")

        # A lost frame still counts as written by the sender
        assert await a.send_packet(b"frame") == 1
        assert b.queue_depth == 0
        assert medium.get_stats()["frames_lost"] == 1

    @pytest.mark.asyncio
    async def test_latency(self):
        medium = LoopbackMedium(LoopbackConfig(latency_ms=5))
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        medium.link("a", "b")

        assert await a.send_packet(b"frame") == 1
        assert b.queue_depth == 1

    @pytest.mark.asyncio
    async def test_frames_without_receiver_are_dropped(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        medium.link("a", "b")

        await a.send_packet(b"frame")
        assert await medium.drain() == 1
        assert b.get_stats()["frames_received"] == 1

    @pytest.mark.asyncio
    async def test_drain_delivers_frames_sent_while_draining(self, medium):
        a = medium.create_transport("a")
        b = medium.create_transport("b")
        c = medium.create_transport("c")
        medium.link("a", "b")
        medium.link("b", "c")

        inbox = Inbox()
        c.set_receiver(inbox)

        async def forward(data: bytes, sender: str) -> None:
            await b.send_packet(data, exclude=[sender])

        b.set_receiver(forward)

        await a.send_packet(b"frame")
        assert await medium.drain() == 2
        assert inbox.frames == [(b"frame", "b")]

    def test_stats(self, medium):
        medium.create_transport("a")
        medium.create_transport("b")
        medium.link("a", "b")

        stats = medium.get_stats()
        assert stats["nodes"] == 2
        assert stats["links"] == 1
        assert stats["pending"] == 0
