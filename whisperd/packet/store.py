"""
Whisper Message Storage

Per-conversation message log persisted through the key/value backend.

Features:
- Conversations keyed by the unordered pair of participants
- Idempotent appends (by message id)
- Delivered-set and pending (unacknowledged) outgoing messages
- Read markers for unread counts
- Change notification to subscribers

Design:
- In-memory index, written through to persistence after each mutation
- Mutations serialized by an asyncio.Lock
- Conversation values are immutable and swapped whole, so subscribers
  never see a message without the matching last_updated
- Persistence failures leave the store running in memory (degraded)
"""

import json
import time
import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .. import DEFAULT_TTL
from ..crypto.primitives import generate_packet_id
from ..storage.kv import (
    DEFAULT_STORAGE_TIMEOUT, KeyValueStore, StorageError, record_int, storage_key, with_timeout,
)


logger = logging.getLogger(__name__)

CONVERSATIONS_STORAGE_KEY = storage_key("conversations")
DELIVERED_STORAGE_KEY = storage_key("delivered")


def conversation_key(a: str, b: str) -> str:
    """Canonical conversation id for the unordered pair {a, b}."""
    return ":".join(sorted([a, b]))


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """
    Stored message.

    Attributes:
        id: Message id (the packet id for mesh traffic)
        from_id: Sender node ID
        to: Recipient node ID or "*"
        payload: JSON payload as sent
        timestamp: Creation time (ms since epoch)
        ttl: Hop budget at creation
        encrypted: Payload carries an encrypted envelope
    """
    id: str
    from_id: str
    to: str
    payload: Any
    timestamp: int
    ttl: int = DEFAULT_TTL
    encrypted: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.from_id,
            "to": self.to,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
            "encrypted": self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Message':
        """
        Load a stored message. Unknown fields are ignored.

        Raises:
            ValueError: If a required field is missing or invalid
        """
        if not isinstance(data, dict):
            raise ValueError("Message record is not an object")
        for name in ("id", "from", "to"):
            if not isinstance(data.get(name), str) or not data[name]:
                raise ValueError(f"Message record has no valid '{name}'")
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValueError("Message record has no valid 'timestamp'")
        ttl = data.get("ttl", DEFAULT_TTL)
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 0:
            raise ValueError("Message record has no valid 'ttl'")

        return cls(
            id=data["id"],
            from_id=data["from"],
            to=data["to"],
            payload=data.get("payload"),
            timestamp=timestamp,
            ttl=ttl,
            encrypted=bool(data.get("encrypted", False)),
        )


@dataclass(frozen=True)
class Conversation:
    """
    Message history between two participants.

    Messages are kept in insertion order.
    """
    id: str
    participants: Tuple[str, str]
    messages: Tuple[Message, ...] = ()
    last_updated: int = 0
    last_read: int = 0

    def peer_id(self, local_id: Optional[str]) -> str:
        """The participant that is not local_id."""
        a, b = self.participants
        if local_id == a:
            return b
        if local_id == b:
            return a
        return b

    def sorted_messages(self) -> List[Message]:
        # Stable sort keeps insertion order for equal timestamps
        return sorted(self.messages, key=lambda m: m.timestamp)

    def with_message(self, message: Message) -> 'Conversation':
        return replace(
            self,
            messages=self.messages + (message,),
            last_updated=max(self.last_updated, message.timestamp),
        )

    def unread_count(self, local_id: Optional[str]) -> int:
        return sum(
            1 for m in self.messages
            if m.timestamp > self.last_read and m.from_id != local_id
        )

    def to_dict(self) -> dict:
        return {
            "participants": list(self.participants),
            "messages": [m.to_dict() for m in self.messages],
            "lastUpdated": self.last_updated,
            "lastRead": self.last_read,
        }

    @classmethod
    def from_dict(cls, conversation_id: str, data: dict) -> 'Conversation':
        """
        Load a stored conversation. Invalid messages are skipped, and
        invalid lastUpdated or lastRead values fall back to defaults.

        Raises:
            ValueError: If the record itself is malformed
        """
        if not isinstance(data, dict):
            raise ValueError(f"Conversation {conversation_id} is not an object")

        participants = data.get("participants")
        if not isinstance(participants, (list, tuple)) or not participants:
            participants = conversation_id.split(":", 1)
        if len(participants) != 2:
            raise ValueError(f"Conversation {conversation_id} has no valid participants")

        raw_messages = data.get("messages", [])
        if not isinstance(raw_messages, list):
            raise ValueError(f"Conversation {conversation_id} has no message list")

        messages = []
        for raw in raw_messages:
            try:
                messages.append(Message.from_dict(raw))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid message in {conversation_id}: {e}")

        last_updated = max((m.timestamp for m in messages), default=0)
        return cls(
            id=conversation_id,
            participants=(str(participants[0]), str(participants[1])),
            messages=tuple(messages),
            last_updated=record_int(data.get("lastUpdated"), last_updated),
            last_read=record_int(data.get("lastRead")),
        )


@dataclass(frozen=True)
class ConversationSummary:
    """Derived view of one conversation."""
    conversation_id: str
    peer_id: str
    last_message: Optional[Message]
    last_updated: int
    unread_count: int


@dataclass(frozen=True)
class StoreState:
    """Snapshot handed to subscribers."""
    conversations: Dict[str, Conversation] = field(default_factory=dict)
    pending: Tuple[Message, ...] = ()
    delivered: frozenset = frozenset()
    degraded: bool = False


Listener = Callable[[StoreState], None]


class MessageStore:
    """
    Conversation message store.

    Usage:
        store = MessageStore(kv, local_id=identity.id)
        await store.load()

        unsubscribe = store.subscribe(lambda state: render(state))
        await store.add_message("aaa111", "bbb222", {"text": "hello"})

        for message in store.get_messages("bbb222"):
            print(message.payload)
    """

    def __init__(
        self,
        kv: KeyValueStore,
        local_id: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_STORAGE_TIMEOUT,
    ):
        """
        Initialize message store.

        Args:
            kv: Persistence backend
            local_id: Local node ID (used to resolve peers and unread state)
            timeout: Limit for each backend call in seconds
        """
        self._kv = kv
        self._local_id = local_id
        self._timeout = timeout
        self._lock = asyncio.Lock()

        self._conversations: Dict[str, Conversation] = {}
        self._message_index: Dict[str, str] = {}  # message id -> conversation id
        self._delivered: set = set()
        self._pending: Dict[str, Message] = {}

        self._listeners: List[Tuple[int, Listener]] = []
        self._next_token = 0
        self._degraded = False

    @property
    def local_id(self) -> Optional[str]:
        return self._local_id

    @local_id.setter
    def local_id(self, value: str) -> None:
        self._local_id = value

    @property
    def degraded(self) -> bool:
        """True after a persistence failure; state lives in memory only."""
        return self._degraded

    # Loading and persistence

    async def load(self) -> None:
        """
        Restore conversations and the delivered-set.

        Invalid conversations are logged and skipped. An unreadable
        backend leaves the store empty and degraded.
        """
        async with self._lock:
            self._conversations = {}
            self._message_index = {}
            self._delivered = set()

            try:
                raw_conversations = await with_timeout(
                    self._kv.get(CONVERSATIONS_STORAGE_KEY), self._timeout, "Conversations read"
                )
                raw_delivered = await with_timeout(
                    self._kv.get(DELIVERED_STORAGE_KEY), self._timeout, "Delivered-set read"
                )
            except StorageError as e:
                logger.error(f"Failed to load message store, starting empty: {e}")
                self._degraded = True
                return

            if raw_conversations:
                try:
                    self._restore_conversations(json.loads(raw_conversations))
                except (TypeError, ValueError) as e:
                    logger.error(f"Stored conversations are corrupt, starting empty: {e}")
                    self._conversations = {}
                    self._message_index = {}

            if raw_delivered:
                try:
                    delivered = json.loads(raw_delivered)
                    if not isinstance(delivered, list):
                        raise ValueError("delivered-set is not a list")
                    self._delivered = {d for d in delivered if isinstance(d, str)}
                except ValueError as e:
                    logger.error(f"Stored delivered-set is corrupt, starting empty: {e}")

            logger.info(
                f"Loaded {len(self._conversations)} conversations, "
                f"{len(self._message_index)} messages"
            )

        self._notify()

    def _restore_conversations(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValueError("conversations record is not an object")

        for conversation_id, record in data.items():
            try:
                conversation = Conversation.from_dict(conversation_id, record)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid conversation {conversation_id}: {e}")
                continue
            self._conversations[conversation_id] = conversation
            for message in conversation.messages:
                self._message_index[message.id] = conversation_id

    async def _persist_conversations(self) -> None:
        data = {cid: conv.to_dict() for cid, conv in self._conversations.items()}
        try:
            await with_timeout(
                self._kv.set(CONVERSATIONS_STORAGE_KEY, json.dumps(data, ensure_ascii=False)),
                self._timeout,
                "Conversations write",
            )
        except StorageError as e:
            self._mark_degraded(e)

    async def _persist_delivered(self) -> None:
        try:
            await with_timeout(
                self._kv.set(DELIVERED_STORAGE_KEY, json.dumps(sorted(self._delivered))),
                self._timeout,
                "Delivered-set write",
            )
        except StorageError as e:
            self._mark_degraded(e)

    def _mark_degraded(self, error: Exception) -> None:
        if not self._degraded:
            logger.error(f"Persistence failed, continuing in memory: {error}")
        else:
            logger.warning(f"Persistence still failing: {error}")
        self._degraded = True

    # Subscribers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a state listener.

        Returns:
            Callable that removes the listener (safe to call from inside
            a notification, and more than once)
        """
        token = self._next_token
        self._next_token += 1
        self._listeners.append((token, listener))

        def unsubscribe() -> None:
            self._listeners = [(t, l) for t, l in self._listeners if t != token]

        return unsubscribe

    def get_state(self) -> StoreState:
        return StoreState(
            conversations=dict(self._conversations),
            pending=tuple(self._pending.values()),
            delivered=frozenset(self._delivered),
            degraded=self._degraded,
        )

    def _notify(self) -> None:
        state = self.get_state()
        for token, listener in list(self._listeners):
            # Skip listeners removed earlier in this pass
            if not any(t == token for t, _ in self._listeners):
                continue
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Store listener failed: {e}")

    # Messages

    def _resolve(self, peer_or_conversation_id: str) -> Optional[str]:
        if peer_or_conversation_id in self._conversations:
            return peer_or_conversation_id

        if self._local_id:
            key = conversation_key(self._local_id, peer_or_conversation_id)
            return key if key in self._conversations else None

        # Without a local id, pick the most recent conversation with this peer
        matches = [
            conv for conv in self._conversations.values()
            if peer_or_conversation_id in conv.participants
        ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.last_updated).id

    def resolve_conversation_id(self, peer_or_conversation_id: str) -> Optional[str]:
        """Conversation id for a peer id or conversation id, if it exists."""
        return self._resolve(peer_or_conversation_id)

    async def add_message(
        self,
        from_id: str,
        to: str,
        payload: Any,
        encrypted: bool = False,
        *,
        message_id: Optional[str] = None,
        timestamp: Optional[int] = None,
        ttl: int = DEFAULT_TTL,
    ) -> Message:
        """
        Append a message to the conversation between from_id and to.

        Subscribers are notified before this returns. A message_id that
        is already stored returns the stored message and changes nothing.

        Raises:
            ValueError: If from_id or to is empty
        """
        if not from_id or not to:
            raise ValueError("Message requires both sender and recipient")

        async with self._lock:
            if message_id is not None and message_id in self._message_index:
                existing = self._conversations[self._message_index[message_id]]
                for message in existing.messages:
                    if message.id == message_id:
                        return message

            message = Message(
                id=message_id or generate_packet_id(),
                from_id=from_id,
                to=to,
                payload=payload,
                timestamp=timestamp if timestamp is not None else _now_ms(),
                ttl=ttl,
                encrypted=encrypted,
            )

            key = conversation_key(from_id, to)
            conversation = self._conversations.get(key)
            if conversation is None:
                a, b = sorted([from_id, to])
                conversation = Conversation(id=key, participants=(a, b))

            self._conversations[key] = conversation.with_message(message)
            self._message_index[message.id] = key

            await self._persist_conversations()

        self._notify()
        return message

    def get_messages(self, peer_or_conversation_id: str) -> List[Message]:
        """
        Messages with a peer, ascending by timestamp.

        Returns an empty list for unknown peers.
        """
        key = self._resolve(peer_or_conversation_id)
        if key is None:
            return []
        return self._conversations[key].sorted_messages()

    def get_message(self, message_id: str) -> Optional[Message]:
        key = self._message_index.get(message_id)
        if key is None:
            return None
        for message in self._conversations[key].messages:
            if message.id == message_id:
                return message
        return None

    def get_conversation(self, peer_or_conversation_id: str) -> Optional[Conversation]:
        key = self._resolve(peer_or_conversation_id)
        return self._conversations.get(key) if key else None

    def get_conversations(self, allowed_peers: Optional[Iterable[str]] = None) -> List[ConversationSummary]:
        """
        Summaries of all conversations.

        Args:
            allowed_peers: If given, only conversations with these peers

        Returns:
            List of summaries in no particular order
        """
        allowed = set(allowed_peers) if allowed_peers is not None else None
        summaries = []

        for conversation in self._conversations.values():
            peer_id = conversation.peer_id(self._local_id)
            if allowed is not None and peer_id not in allowed:
                continue

            ordered = conversation.sorted_messages()
            summaries.append(ConversationSummary(
                conversation_id=conversation.id,
                peer_id=peer_id,
                last_message=ordered[-1] if ordered else None,
                last_updated=conversation.last_updated,
                unread_count=conversation.unread_count(self._local_id),
            ))

        return summaries

    async def mark_conversation_read(self, peer_or_conversation_id: str) -> bool:
        """
        Mark every message in a conversation as read.

        Returns:
            False if there is no such conversation
        """
        async with self._lock:
            key = self._resolve(peer_or_conversation_id)
            if key is None:
                return False

            conversation = self._conversations[key]
            if conversation.last_read >= conversation.last_updated:
                return True

            self._conversations[key] = replace(conversation, last_read=conversation.last_updated)
            await self._persist_conversations()

        self._notify()
        return True

    # Delivered-set

    async def mark_message_as_delivered(self, message_id: str) -> None:
        """Record a delivery acknowledgement (also clears it from pending)."""
        async with self._lock:
            if message_id in self._delivered:
                return
            self._delivered.add(message_id)
            self._pending.pop(message_id, None)
            await self._persist_delivered()

        self._notify()

    def is_message_delivered(self, message_id: str) -> bool:
        return message_id in self._delivered

    # Pending outgoing messages (memory only)

    def add_pending_message(self, message: Message) -> None:
        if message.id in self._delivered:
            return
        self._pending[message.id] = message
        self._notify()

    def remove_pending_message(self, message_id: str) -> bool:
        if self._pending.pop(message_id, None) is None:
            return False
        self._notify()
        return True

    def get_pending_messages(self) -> List[Message]:
        return list(self._pending.values())

    # Destructive operations

    async def clear_conversation(self, peer_or_conversation_id: str) -> bool:
        """
        Delete one conversation.

        Returns:
            False if there is no such conversation
        """
        async with self._lock:
            key = self._resolve(peer_or_conversation_id)
            if key is None:
                return False

            conversation = self._conversations.pop(key)
            for message in conversation.messages:
                self._message_index.pop(message.id, None)
                self._pending.pop(message.id, None)

            await self._persist_conversations()

        logger.info(f"Cleared conversation {key}")
        self._notify()
        return True

    async def clear_all(self) -> None:
        """Delete all conversations, the delivered-set and pending messages."""
        async with self._lock:
            self._conversations = {}
            self._message_index = {}
            self._delivered = set()
            self._pending = {}

            for key in (CONVERSATIONS_STORAGE_KEY, DELIVERED_STORAGE_KEY):
                try:
                    await with_timeout(self._kv.remove(key), self._timeout, f"Remove {key}")
                except StorageError as e:
                    self._mark_degraded(e)

        logger.info("Cleared all conversations")
        self._notify()

    def get_stats(self) -> dict:
        return {
            "conversations": len(self._conversations),
            "messages": len(self._message_index),
            "delivered": len(self._delivered),
            "pending": len(self._pending),
            "degraded": self._degraded,
        }
