"""
Whisper Node

Wires identity, keys, cipher, router, store and transport into one
running node with an explicit lifecycle.

Outgoing: encrypt -> packet -> store (optimistic) -> transport
Incoming: transport -> router -> store / handlers -> subscribers
"""

import json
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from . import BROADCAST, __version__
from .config import Config
from .identity import Identity, IdentityProvider
from .crypto.keys import KeyManager, KeyPair, KeyStoreError, public_key_from_hex
from .crypto.cipher import CipherEngine, CipherError, EncryptedEnvelope, create_cipher
from .packet.format import Packet, PacketError, PacketType
from .packet.dedup import SeenCache
from .packet.store import Message, MessageStore
from .packet.handshake import Handshake, decode_handshake, encode_handshake
from .mesh.routing import Router, RoutingResult
from .storage.kv import KeyValueStore, StorageError, storage_key, with_timeout
from .transport.base import Transport


logger = logging.getLogger(__name__)

PEERS_STORAGE_KEY = storage_key("peers")

# Handler for delivered packets (sync or async)
PacketHandler = Callable[[Packet], Any]


class WhisperNode:
    """
    A single mesh node.

    Usage:
        async with WhisperNode(config, kv, transport) as node:
            node.accept_handshake(peer_handshake)
            await node.send_text(peer_id, "hello")
    """

    def __init__(self, config: Config, kv: KeyValueStore, transport: Transport):
        """
        Initialize node with configuration.

        Args:
            config: Loaded configuration
            kv: Persistence backend
            transport: Link layer
        """
        self.config = config
        self._kv = kv
        self._transport = transport
        self._running = False

        # Core components (initialized in start())
        self._identity: Optional[Identity] = None
        self._keys: Optional[KeyManager] = None
        self._key_pair: Optional[KeyPair] = None
        self._cipher: Optional[CipherEngine] = None
        self._store: Optional[MessageStore] = None
        self._router: Optional[Router] = None

        # Peer node id -> hex public key
        self._peer_keys: Dict[str, str] = {}

        self._handlers: Dict[PacketType, List[PacketHandler]] = {}

    async def __aenter__(self) -> 'WhisperNode':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def identity(self) -> Identity:
        self._require_started()
        return self._identity

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def public_key(self) -> str:
        self._require_started()
        return self._key_pair.public_key

    @property
    def store(self) -> MessageStore:
        self._require_started()
        return self._store

    @property
    def router(self) -> Router:
        self._require_started()
        return self._router

    @property
    def cipher(self) -> CipherEngine:
        self._require_started()
        return self._cipher

    @property
    def transport(self) -> Transport:
        return self._transport

    def _require_started(self) -> None:
        if not self._running:
            raise ValueError("Node is not started")

    async def start(self) -> None:
        """
        Start the node.

        Raises:
            IdentityError: If the stored identity is unreadable
            KeyStoreError: If the stored keys are unreadable or corrupt
        """
        if self._running:
            return

        logger.info(f"Starting Whisper node v{__version__}")
        self.config.validate()

        timeout = self.config.storage.timeout
        provider = IdentityProvider(self._kv, self.config.node_name or None, timeout=timeout)
        self._identity = await provider.get_or_create_identity()
        logger.info(f"Node ID: {self._identity.id} ({self._identity.name})")

        self._keys = KeyManager(self._kv, self.config.security.key_size, timeout=timeout)
        self._key_pair = await self._keys.get_or_create_key_pair()
        self._cipher = create_cipher(self.config.security.cipher, self._key_pair)

        self._store = MessageStore(self._kv, local_id=self._identity.id, timeout=timeout)
        await self._store.load()

        self._router = Router(
            self._identity.id,
            self._transport,
            seen=SeenCache(self.config.mesh.seen_cache_size),
            relay_addressed=self.config.mesh.relay_addressed,
            kv=self._kv,
            default_ttl=self.config.mesh.default_ttl,
            storage_timeout=timeout,
        )
        await self._router.start()

        await self._load_peers()

        if self._transport.node_id != self._identity.id:
            logger.warning(
                f"Transport bound to {self._transport.node_id}, "
                f"node identity is {self._identity.id}"
            )
        self._transport.set_receiver(self.on_frame)

        self._running = True
        logger.info("Whisper node started")

    async def stop(self) -> None:
        """Stop the node and flush state."""
        if not self._running:
            return

        logger.info("Stopping Whisper node...")
        self._transport.set_receiver(None)
        await self._router.stop()
        self._running = False
        logger.info("Whisper node stopped")

    # Peer directory

    async def _load_peers(self) -> None:
        try:
            raw = await with_timeout(
                self._kv.get(PEERS_STORAGE_KEY), self.config.storage.timeout, "Peer keys read"
            )
        except StorageError as e:
            logger.warning(f"Could not load peer keys: {e}")
            return

        if not raw:
            return

        try:
            peers = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Stored peer keys are corrupt, ignoring: {e}")
            return

        if isinstance(peers, dict):
            self._peer_keys = {
                k: v for k, v in peers.items()
                if isinstance(k, str) and isinstance(v, str)
            }

    async def _save_peers(self) -> None:
        try:
            await with_timeout(
                self._kv.set(PEERS_STORAGE_KEY, json.dumps(self._peer_keys)),
                self.config.storage.timeout,
                "Peer keys write",
            )
        except StorageError as e:
            logger.warning(f"Failed to persist peer keys: {e}")

    def peer_public_key(self, peer_id: str) -> Optional[str]:
        return self._peer_keys.get(peer_id)

    async def add_peer_key(self, peer_id: str, public_key: str) -> None:
        """
        Remember a peer's public key.

        Raises:
            KeyStoreError: If the key is malformed
        """
        public_key_from_hex(public_key)
        if self._peer_keys.get(peer_id) == public_key.lower():
            return
        self._peer_keys[peer_id] = public_key.lower()
        await self._save_peers()
        logger.info(f"Learned public key for {peer_id}")

    def handshake(self) -> str:
        """Encoded handshake announcing our id and public key."""
        return encode_handshake(self.id, self.public_key)

    async def accept_handshake(self, encoded: str) -> Optional[Handshake]:
        """
        Process a peer's handshake.

        Returns:
            The decoded handshake, or None if it was not a valid
            handshake from another node
        """
        handshake = decode_handshake(encoded)
        if handshake is None or handshake.id == self.id:
            return None

        if handshake.public_key:
            try:
                await self.add_peer_key(handshake.id, handshake.public_key)
            except KeyStoreError as e:
                logger.warning(f"Ignoring bad public key from {handshake.id}: {e}")

        return handshake

    # Sending

    async def send_text(self, peer_id: str, text: str, encrypt: bool = True) -> Message:
        """
        Send a text message to a peer.

        The message is stored before it is sent; sending is best effort.

        Args:
            peer_id: Recipient node ID
            text: Message text
            encrypt: Encrypt when the peer's public key is known

        Returns:
            Message: The stored message (id = packet id)
        """
        self._require_started()

        payload: Dict[str, Any] = {"text": text}
        encrypted = False

        if encrypt:
            peer_key = self._peer_keys.get(peer_id)
            if peer_key:
                envelope = self._cipher.encrypt(text, peer_key)
                payload = {"envelope": envelope.to_dict()}
                encrypted = True
            else:
                logger.warning(f"No public key for {peer_id}, sending in clear")

        return await self._send(peer_id, payload, encrypted)

    async def broadcast_text(self, text: str) -> Message:
        """Send a plaintext message to every node."""
        self._require_started()
        return await self._send(BROADCAST, {"text": text}, False)

    async def _send(self, to: str, payload: dict, encrypted: bool) -> Message:
        packet = self._router.create_packet(to, PacketType.TEXT, payload)

        message = await self._store.add_message(
            packet.from_id,
            packet.to,
            payload,
            encrypted,
            message_id=packet.id,
            timestamp=packet.timestamp,
            ttl=packet.ttl,
        )
        self._store.add_pending_message(message)

        reached = await self._router.send(packet)
        logger.debug(f"Sent {packet.id} to {reached} neighbours")
        return message

    async def send_packet(self, to: str, packet_type: PacketType, payload: Any) -> Packet:
        """Send a non-text packet (e.g. VOICE_START) without storing it."""
        self._require_started()
        packet = self._router.create_packet(to, packet_type, payload)
        await self._router.send(packet)
        return packet

    # Receiving

    def register_handler(self, packet_type: PacketType, handler: PacketHandler) -> None:
        """Call handler for every delivered packet of this type."""
        self._handlers.setdefault(PacketType(packet_type), []).append(handler)

    async def on_frame(self, data: bytes, sender: Optional[str] = None) -> Optional[RoutingResult]:
        """
        Transport receive hook.

        Malformed frames are logged and dropped here.
        """
        if not self._running:
            return None

        try:
            result = await self._router.handle_frame(data)
        except PacketError:
            return None

        if result.delivered is not None:
            await self._dispatch(result.delivered)

        return result

    async def _dispatch(self, packet: Packet) -> None:
        if packet.type == PacketType.TEXT:
            payload = packet.payload
            encrypted = isinstance(payload, dict) and "envelope" in payload
            await self._store.add_message(
                packet.from_id,
                packet.to,
                payload,
                encrypted,
                message_id=packet.id,
                timestamp=packet.timestamp,
                ttl=packet.ttl,
            )
            logger.info(f"Received message {packet.id} from {packet.from_id}")

        for handler in self._handlers.get(packet.type, []):
            try:
                result = handler(packet)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for {packet.type.value} failed: {e}")

    def read_text(self, message: Message) -> str:
        """
        Text of a stored message, decrypting if needed.

        Raises:
            CipherError: If the counterparty's public key is unknown
            EnvelopeFormatError: If the envelope is malformed
            AuthenticationError: If the envelope fails verification
        """
        self._require_started()
        payload = message.payload if isinstance(message.payload, dict) else {}

        if not message.encrypted:
            text = payload.get("text")
            return text if isinstance(text, str) else ""

        counterparty = message.to if message.from_id == self.id else message.from_id
        peer_key = self._peer_keys.get(counterparty)
        if peer_key is None:
            raise CipherError(f"No public key for {counterparty}")

        envelope = EncryptedEnvelope.from_dict(payload.get("envelope"))
        return self._cipher.decrypt(envelope, peer_key).plaintext

    async def mark_delivered(self, message_id: str) -> None:
        """Record that a sent message was acknowledged."""
        self._require_started()
        await self._store.mark_message_as_delivered(message_id)

    def get_stats(self) -> dict:
        """Node status summary."""
        self._require_started()
        return {
            "node_id": self._identity.id,
            "name": self._identity.name,
            "known_peers": len(self._peer_keys),
            "router": self._router.get_stats(),
            "store": self._store.get_stats(),
            "transport": self._transport.get_stats(),
        }
