"""
Whisper Flood Routing

Handles packet delivery and relay across the mesh by flooding.

Design:
- Every packet id is processed at most once (seen-set)
- Packets for this node or broadcast are delivered locally
- Packets with ttl > 0 are relayed to all neighbours with ttl - 1
- Relay failures never fail the routing call
"""

import json
import asyncio
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from .. import DEFAULT_TTL
from ..packet.format import Packet, PacketError, PacketType, create_packet
from ..packet.dedup import SeenCache
from ..storage.kv import (
    DEFAULT_STORAGE_TIMEOUT, KeyValueStore, StorageError, storage_key, with_timeout,
)
from ..transport.base import Transport


logger = logging.getLogger(__name__)

SEEN_STORAGE_KEY = storage_key("seen")


class RoutingDecision(IntEnum):
    """Routing decision for a packet."""
    DUPLICATE = 0            # Already handled, no side effect
    DELIVER = 1              # Deliver locally only
    FORWARD = 2              # Relay only
    DELIVER_AND_FORWARD = 3  # Deliver locally and relay
    DROP = 4                 # Neither (ttl exhausted, not for us)


@dataclass(frozen=True)
class RoutingResult:
    """
    Outcome of handling one packet.

    Attributes:
        decision: What the router did
        delivered: Packet to hand to the local layer, or None
        relayed: Packet handed to the transport (ttl - 1), or None
        reached: Neighbours the relay was written to
    """
    decision: RoutingDecision
    delivered: Optional[Packet] = None
    relayed: Optional[Packet] = None
    reached: int = 0

    @property
    def is_delivered(self) -> bool:
        return self.delivered is not None


class Router:
    """
    Flood router.

    Usage:
        router = Router(identity.id, transport, kv=kv)
        await router.start()

        result = await router.handle_frame(data)
        if result.delivered:
            store_message(result.delivered)
    """

    def __init__(
        self,
        local_id: str,
        transport: Transport,
        seen: Optional[SeenCache] = None,
        relay_addressed: bool = True,
        kv: Optional[KeyValueStore] = None,
        default_ttl: int = DEFAULT_TTL,
        storage_timeout: Optional[float] = DEFAULT_STORAGE_TIMEOUT,
    ):
        """
        Initialize router.

        Args:
            local_id: Our node ID
            transport: Link layer used for relay and sends
            seen: Seen-set (a fresh SeenCache if not given)
            relay_addressed: Relay packets addressed to this node after
                delivering them (flood semantics)
            kv: Persistence for the seen-set (optional)
            default_ttl: Hop budget for packets created here
            storage_timeout: Limit for each seen-set read or write in seconds
        """
        if not local_id:
            raise ValueError("Router requires a local node ID")

        self._local_id = local_id
        self._transport = transport
        self._seen = seen if seen is not None else SeenCache()
        self._relay_addressed = relay_addressed
        self._kv = kv
        self._default_ttl = default_ttl
        self._storage_timeout = storage_timeout

        self._persist_task: Optional[asyncio.Task] = None
        self._seen_dirty = False

        # Statistics
        self._received = 0
        self._duplicates = 0
        self._delivered = 0
        self._relayed = 0
        self._dropped = 0
        self._relay_failures = 0
        self._malformed = 0
        self._originated = 0

    @property
    def local_id(self) -> str:
        return self._local_id

    @property
    def relay_addressed(self) -> bool:
        return self._relay_addressed

    def has_seen(self, packet_id: str) -> bool:
        return packet_id in self._seen

    async def start(self) -> None:
        """Restore the persisted seen-set (best effort)."""
        if self._kv is None:
            return

        try:
            raw = await with_timeout(
                self._kv.get(SEEN_STORAGE_KEY), self._storage_timeout, "Seen-set read"
            )
        except StorageError as e:
            logger.warning(f"Could not load seen-set, starting empty: {e}")
            return

        if raw is None:
            return

        try:
            ids = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Persisted seen-set is corrupt, starting empty: {e}")
            return

        if not isinstance(ids, list):
            logger.warning("Persisted seen-set is not a list, starting empty")
            return

        count = self._seen.load(ids)
        logger.info(f"Restored {count} seen packet ids")

    async def stop(self) -> None:
        """Flush the seen-set to persistence."""
        await self.flush()

    def create_packet(
        self,
        to: str,
        packet_type: PacketType,
        payload: Any,
        ttl: Optional[int] = None,
    ) -> Packet:
        """
        Create a packet from this node.

        Raises:
            ValueError: If ttl is negative
        """
        return create_packet(
            self._local_id,
            to,
            packet_type,
            payload,
            self._default_ttl if ttl is None else ttl,
        )

    async def send(self, packet: Packet) -> int:
        """
        Send a packet originated by this node.

        The id is marked seen first so echoes from neighbours are dropped.

        Returns:
            int: Number of neighbours reached
        """
        self._seen.add(packet.id)
        self._schedule_persist()
        self._originated += 1
        return await self._transmit(packet)

    async def _transmit(self, packet: Packet) -> int:
        try:
            return await self._transport.send_packet(packet.to_bytes())
        except Exception as e:
            self._relay_failures += 1
            logger.warning(f"Transport failed for packet {packet.id}: {e}")
            return 0

    async def handle_incoming(self, packet: Packet) -> RoutingResult:
        """
        Route one packet.

        Args:
            packet: Parsed packet

        Returns:
            RoutingResult: Decision plus delivered/relayed packets
        """
        self._received += 1

        # Checked and marked before the first await
        if self._seen.check_and_add(packet.id):
            self._duplicates += 1
            logger.debug(f"Duplicate packet {packet.id} ignored")
            return RoutingResult(RoutingDecision.DUPLICATE)

        self._schedule_persist()

        deliver = packet.is_for(self._local_id)
        addressed = packet.to == self._local_id
        relay = packet.ttl > 0 and (self._relay_addressed or not addressed)

        delivered = packet if deliver else None
        relayed = None
        reached = 0

        if deliver:
            self._delivered += 1

        if relay:
            relayed = packet.decrement_ttl()
            reached = await self._transmit(relayed)
            self._relayed += 1
            logger.debug(f"Relayed {packet.id} with ttl {relayed.ttl} to {reached} neighbours")

        if deliver and relay:
            decision = RoutingDecision.DELIVER_AND_FORWARD
        elif deliver:
            decision = RoutingDecision.DELIVER
        elif relay:
            decision = RoutingDecision.FORWARD
        else:
            decision = RoutingDecision.DROP
            self._dropped += 1
            logger.debug(f"Dropped {packet.id} (ttl exhausted, addressed to {packet.to})")

        return RoutingResult(decision, delivered=delivered, relayed=relayed, reached=reached)

    async def handle_frame(self, data: bytes) -> RoutingResult:
        """
        Parse and route a raw frame.

        Raises:
            PacketError: If the frame is not a valid packet (the
                seen-set is left untouched)
        """
        try:
            packet = Packet.from_bytes(data)
        except PacketError as e:
            self._malformed += 1
            logger.warning(f"Rejected malformed frame: {e}")
            raise

        return await self.handle_incoming(packet)

    def _schedule_persist(self) -> None:
        if self._kv is None:
            return
        self._seen_dirty = True
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.ensure_future(self._persist_seen())

    async def _persist_seen(self) -> None:
        # Coalesces bursts of inserts into as few writes as possible
        while self._seen_dirty:
            self._seen_dirty = False
            try:
                await with_timeout(
                    self._kv.set(SEEN_STORAGE_KEY, json.dumps(self._seen.to_list())),
                    self._storage_timeout,
                    "Seen-set write",
                )
            except StorageError as e:
                logger.warning(f"Failed to persist seen-set: {e}")
                return

    async def flush(self) -> None:
        """Wait for pending seen-set writes to finish."""
        if self._persist_task is not None:
            await self._persist_task
            self._persist_task = None

    def get_stats(self) -> dict:
        """
        Get routing statistics.

        Returns:
            dict: Packet counters and seen-set stats
        """
        return {
            "local_id": self._local_id,
            "received": self._received,
            "duplicates": self._duplicates,
            "delivered": self._delivered,
            "relayed": self._relayed,
            "dropped": self._dropped,
            "relay_failures": self._relay_failures,
            "malformed": self._malformed,
            "originated": self._originated,
            "seen": self._seen.get_stats(),
        }
