"""
Whisper Loopback Transport

A virtual link layer connecting transports inside one process.

Useful for:
- Unit testing
- Multi-node simulation (whisperctl simulate)
- Development without radios

Features:
- Explicit link topology (link / unlink)
- Configurable latency
- Configurable frame loss
- Per-receiver queues drained deterministically
"""

import asyncio
import random
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Set, Tuple

from .base import Transport, TransportError, DEFAULT_SEND_TIMEOUT


logger = logging.getLogger(__name__)

# Upper bound on frames processed by a single drain()
MAX_DRAIN_FRAMES = 100000


@dataclass
class LoopbackConfig:
    """Configuration for the virtual medium."""

    # Simulated transmission latency (milliseconds)
    latency_ms: int = 0

    # Frame loss probability (0.0 - 1.0)
    loss_probability: float = 0.0


class LoopbackMedium:
    """
    Shared virtual medium.

    Frames are only carried between transports that are linked.
    Each transport has its own inbox; drain() hands queued frames to
    receivers until every inbox is empty.

    Usage:
        medium = LoopbackMedium()
        a = medium.create_transport("aaa111")
        b = medium.create_transport("bbb222")
        medium.link("aaa111", "bbb222")

        await a.send_packet(b"...")
        await medium.drain()
    """

    def __init__(self, config: Optional[LoopbackConfig] = None, seed: Optional[int] = None):
        """
        Initialize medium.

        Args:
            config: Latency and loss settings
            seed: Seed for the loss RNG (deterministic simulations)
        """
        self._config = config or LoopbackConfig()
        self._rng = random.Random(seed)
        self._transports: Dict[str, 'LoopbackTransport'] = {}
        self._links: Dict[str, Set[str]] = {}
        self._running = False

        # Statistics
        self._frames_carried = 0
        self._frames_lost = 0

    @property
    def config(self) -> LoopbackConfig:
        return self._config

    def create_transport(
        self,
        node_id: str,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> 'LoopbackTransport':
        """Create and attach a transport for node_id."""
        transport = LoopbackTransport(self, node_id, send_timeout)
        self.attach(transport)
        return transport

    def attach(self, transport: 'LoopbackTransport') -> None:
        if transport.node_id in self._transports:
            raise ValueError(f"Node already attached: {transport.node_id}")
        self._transports[transport.node_id] = transport
        self._links.setdefault(transport.node_id, set())

    def detach(self, node_id: str) -> None:
        """Remove a transport and all its links."""
        self._transports.pop(node_id, None)
        for peer in self._links.pop(node_id, set()):
            self._links.get(peer, set()).discard(node_id)

    def link(self, a: str, b: str) -> None:
        """Create a bidirectional direct link."""
        if a == b:
            raise ValueError("Cannot link a node to itself")
        self._links.setdefault(a, set()).add(b)
        self._links.setdefault(b, set()).add(a)

    def unlink(self, a: str, b: str) -> None:
        """Remove a direct link (no-op if absent)."""
        self._links.get(a, set()).discard(b)
        self._links.get(b, set()).discard(a)

    def neighbours(self, node_id: str) -> List[str]:
        return sorted(self._links.get(node_id, set()))

    async def carry(self, sender: str, receiver: str, data: bytes) -> None:
        """
        Carry one frame across a link.

        Raises:
            TransportError: If there is no link or the receiver is down
        """
        if receiver not in self._links.get(sender, set()):
            raise TransportError(f"No link {sender} -> {receiver}")

        target = self._transports.get(receiver)
        if target is None or target.down:
            raise TransportError(f"Peer unreachable: {receiver}")

        if self._config.latency_ms > 0:
            await asyncio.sleep(self._config.latency_ms / 1000.0)

        if self._config.loss_probability > 0 and self._rng.random() < self._config.loss_probability:
            self._frames_lost += 1
            logger.debug(f"Frame {sender} -> {receiver} lost")
            return

        target._enqueue(data, sender)
        self._frames_carried += 1

    def pending(self) -> int:
        """Number of frames waiting in all inboxes."""
        return sum(t.queue_depth for t in self._transports.values())

    async def drain(self, max_frames: int = MAX_DRAIN_FRAMES) -> int:
        """
        Deliver queued frames until every inbox is empty.

        Frames sent while draining are delivered in the same call.

        Returns:
            int: Number of frames delivered
        """
        delivered = 0
        while delivered < max_frames:
            progressed = False
            for transport in list(self._transports.values()):
                if await transport.process_one():
                    delivered += 1
                    progressed = True
            if not progressed:
                break
        return delivered

    async def run(self, interval: float = 0.01) -> None:
        """Drain continuously until stop() is called."""
        self._running = True
        while self._running:
            await self.drain()
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self._running = False

    def get_stats(self) -> dict:
        return {
            "nodes": len(self._transports),
            "links": sum(len(peers) for peers in self._links.values()) // 2,
            "frames_carried": self._frames_carried,
            "frames_lost": self._frames_lost,
            "pending": self.pending(),
        }


class LoopbackTransport(Transport):
    """
    Transport attached to a LoopbackMedium.

    Set ``down`` to make the node unreachable: frames sent to it fail
    with TransportError.
    """

    def __init__(
        self,
        medium: LoopbackMedium,
        node_id: str,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ):
        super().__init__(node_id, send_timeout)
        self._medium = medium
        self._inbox: Deque[Tuple[bytes, str]] = deque()
        self.down = False

    @property
    def queue_depth(self) -> int:
        return len(self._inbox)

    def links(self) -> List[str]:
        return self._medium.neighbours(self._node_id)

    async def send_to(self, peer_id: str, data: bytes) -> None:
        if self.down:
            raise TransportError(f"Transport {self._node_id} is down")
        await self._medium.carry(self._node_id, peer_id, bytes(data))

    def _enqueue(self, data: bytes, sender: str) -> None:
        self._inbox.append((data, sender))

    async def process_one(self) -> bool:
        """
        Deliver the oldest queued frame to the receiver.

        Returns:
            bool: False if the inbox was empty
        """
        if not self._inbox:
            return False
        data, sender = self._inbox.popleft()
        await self._deliver(data, sender)
        return True

    async def close(self) -> None:
        self._inbox.clear()
        self._medium.detach(self._node_id)
