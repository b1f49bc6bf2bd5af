"""
Whisper Transport Base Class

Defines the link-layer interface the mesh runs over.

A transport knows which peers are directly linked right now and can
write a raw frame to one of them. Scanning, advertising and connection
management belong to the concrete link layer.

Design Principles:
- Best effort: send_packet() never raises
- Every neighbour send has its own timeout and failure boundary
- Received frames are handed to one async receiver callback
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)

# Default per-neighbour send timeout (seconds)
DEFAULT_SEND_TIMEOUT = 5.0

# Receiver callback: (frame bytes, sending neighbour id)
FrameReceiver = Callable[[bytes, str], Awaitable[None]]


class TransportError(Exception):
    """Exception raised when a frame cannot be written to a neighbour."""
    pass


class Transport(ABC):
    """
    Abstract base class for link layers.

    Usage:
        transport = ConcreteTransport("aaa111")
        transport.set_receiver(node.on_frame)

        # Flood a frame to every linked neighbour
        reached = await transport.send_packet(packet.to_bytes())
    """

    def __init__(self, node_id: str, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        """
        Initialize transport.

        Args:
            node_id: Local node ID
            send_timeout: Per-neighbour send timeout in seconds
        """
        self._node_id = node_id
        self._send_timeout = send_timeout
        self._receiver: Optional[FrameReceiver] = None

        # Statistics
        self._frames_sent = 0
        self._frames_received = 0
        self._send_failures = 0
        self._send_timeouts = 0

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def send_timeout(self) -> float:
        return self._send_timeout

    @abstractmethod
    def links(self) -> List[str]:
        """IDs of currently linked neighbours."""
        pass

    @abstractmethod
    async def send_to(self, peer_id: str, data: bytes) -> None:
        """
        Write one frame to one neighbour.

        Raises:
            TransportError: If the frame cannot be written
        """
        pass

    def set_receiver(self, receiver: Optional[FrameReceiver]) -> None:
        """Register the async callback for received frames."""
        self._receiver = receiver

    async def _deliver(self, data: bytes, sender: str) -> None:
        """Hand a received frame to the receiver."""
        self._frames_received += 1
        if self._receiver is None:
            logger.debug(f"No receiver on {self._node_id}, dropping frame from {sender}")
            return
        await self._receiver(data, sender)

    async def _send_one(self, peer_id: str, data: bytes) -> bool:
        try:
            await asyncio.wait_for(self.send_to(peer_id, data), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            self._send_timeouts += 1
            logger.warning(f"Send to {peer_id} timed out after {self._send_timeout}s")
            return False
        except TransportError as e:
            self._send_failures += 1
            logger.warning(f"Send to {peer_id} failed: {e}")
            return False
        except Exception as e:
            self._send_failures += 1
            logger.error(f"Unexpected error sending to {peer_id}: {e}")
            return False

        self._frames_sent += 1
        return True

    async def send_packet(self, data: bytes, exclude: Optional[Iterable[str]] = None) -> int:
        """
        Send a frame to every linked neighbour concurrently.

        Failures and timeouts are logged and counted, never raised.

        Args:
            data: Serialized packet
            exclude: Neighbour IDs to skip

        Returns:
            int: Number of neighbours the frame was written to
        """
        skip = set(exclude or ())
        targets = [peer for peer in self.links() if peer not in skip]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._send_one(peer, data) for peer in targets)
        )
        return sum(1 for ok in results if ok)

    async def close(self) -> None:
        """Release link resources."""
        pass

    def get_stats(self) -> dict:
        """Get transport statistics."""
        return {
            "links": len(self.links()),
            "frames_sent": self._frames_sent,
            "frames_received": self._frames_received,
            "send_failures": self._send_failures,
            "send_timeouts": self._send_timeouts,
        }
