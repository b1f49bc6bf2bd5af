"""
Shared pytest fixtures for Whisper tests.

Provides:
- In-memory and SQLite persistence, plus a backend that never answers
- Key pairs for two parties
- A recording transport for router tests
- A loopback medium and a node factory for multi-node tests
"""

import json
import asyncio
from typing import List, Optional, Tuple

import pytest

from whisperd.config import Config
from whisperd.crypto.keys import generate_key_pair
from whisperd.identity import IdentityProvider
from whisperd.node import WhisperNode
from whisperd.packet.format import Packet
from whisperd.storage.kv import MemoryKeyValueStore, SqliteKeyValueStore
from whisperd.transport.base import Transport, TransportError
from whisperd.transport.loopback import LoopbackMedium


# ============================================================================
# Fakes
# ============================================================================

class RecordingTransport(Transport):
    """Transport that records frames instead of sending them."""

    def __init__(self, node_id: str = "local", peers=("n1", "n2"), failing=()):
        super().__init__(node_id, send_timeout=1.0)
        self.peers = list(peers)
        self.failing = set(failing)
        self.sent: List[Tuple[str, bytes]] = []

    def links(self) -> List[str]:
        return list(self.peers)

    async def send_to(self, peer_id: str, data: bytes) -> None:
        if peer_id in self.failing:
            raise TransportError(f"link to {peer_id} broken")
        self.sent.append((peer_id, data))

    def packets_to(self, peer_id: str) -> List[Packet]:
        return [Packet.from_bytes(data) for peer, data in self.sent if peer == peer_id]

    def frames(self) -> List[dict]:
        return [json.loads(data) for _, data in self.sent]


class HungKeyValueStore(MemoryKeyValueStore):
    """In-memory store whose reads or writes can be made to never return."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.hang_reads = False
        self.hang_writes = False
        self._never = asyncio.Event()

    async def get(self, key: str) -> Optional[str]:
        if self.hang_reads:
            await self._never.wait()
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.hang_writes:
            await self._never.wait()
        await super().set(key, value)

    async def remove(self, key: str) -> None:
        if self.hang_writes:
            await self._never.wait()
        await super().remove(key)


class BrokenTransport(Transport):
    """Transport whose fan-out itself raises."""

    def links(self) -> List[str]:
        return ["n1"]

    async def send_to(self, peer_id: str, data: bytes) -> None:
        raise TransportError("unreachable")

    async def send_packet(self, data: bytes, exclude=None) -> int:
        raise RuntimeError("radio exploded")


# ============================================================================
# Persistence Fixtures
# ============================================================================

@pytest.fixture
def kv() -> MemoryKeyValueStore:
    """Fresh in-memory key/value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def sqlite_kv(tmp_path) -> SqliteKeyValueStore:
    """SQLite key/value store in a temporary directory."""
    return SqliteKeyValueStore(tmp_path / "whisper.db")


# ============================================================================
# Crypto Fixtures
# ============================================================================

@pytest.fixture
def alice_keys():
    return generate_key_pair()


@pytest.fixture
def bob_keys():
    return generate_key_pair()


# ============================================================================
# Transport / Node Fixtures
# ============================================================================

@pytest.fixture
def recording_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def medium() -> LoopbackMedium:
    """Loopback medium with deterministic loss RNG."""
    return LoopbackMedium(seed=1)


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
async def node_factory(medium):
    """
    Factory starting WhisperNodes attached to the shared medium.

    All nodes are stopped at teardown.
    """
    nodes: List[WhisperNode] = []

    async def factory(
        config: Optional[Config] = None,
        kv: Optional[MemoryKeyValueStore] = None,
    ) -> WhisperNode:
        kv = kv if kv is not None else MemoryKeyValueStore()
        identity = await IdentityProvider(kv).get_or_create_identity()
        transport = medium.create_transport(identity.id)
        node = WhisperNode(config or Config(), kv, transport)
        await node.start()
        nodes.append(node)
        return node

    yield factory

    for node in nodes:
        await node.stop()


async def exchange_handshakes(*nodes: WhisperNode) -> None:
    """Make every node learn every other node's public key."""
    for node in nodes:
        for other in nodes:
            if other is not node:
                await node.accept_handshake(other.handshake())


@pytest.fixture
def handshake_all():
    return exchange_handshakes
