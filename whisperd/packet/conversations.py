"""
Whisper Conversation Queries

Read-side helpers for listing conversations and their messages.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from .format import PacketType
from .store import Message, MessageStore


# Preview shown for messages whose payload is encrypted
ENCRYPTED_PREVIEW = "[encrypted]"

SHORT_ID_LENGTH = 8


@dataclass(frozen=True)
class ConversationListItem:
    """One row of the conversation list."""
    conversation_id: str
    peer_id: str
    short_id: str
    preview: str
    last_updated: int
    last_from_me: bool
    unread_count: int


def short_id(peer_id: str) -> str:
    """Display label: the last 8 characters of the id."""
    return peer_id[-SHORT_ID_LENGTH:]


def is_text(message: Message) -> bool:
    payload = message.payload
    if not isinstance(payload, dict):
        return False
    kind = payload.get("type", PacketType.TEXT.value)
    return kind == PacketType.TEXT.value and (message.encrypted or "text" in payload)


def preview(message: Optional[Message]) -> str:
    """Text shown for the latest message of a conversation."""
    if message is None:
        return ""
    if message.encrypted:
        return ENCRYPTED_PREVIEW
    if isinstance(message.payload, dict):
        text = message.payload.get("text")
        if isinstance(text, str):
            return text
    return ""


def messages_with_peer(store: MessageStore, peer_id: str, *, text_only: bool = True) -> List[Message]:
    """Messages exchanged with a peer, oldest first."""
    messages = store.get_messages(peer_id)
    if text_only:
        messages = [m for m in messages if is_text(m)]
    return messages


def list_conversations(
    store: MessageStore,
    allowed_peers: Optional[Iterable[str]] = None,
    *,
    text_only: bool = True,
) -> List[ConversationListItem]:
    """
    Conversation list, most recently updated first.

    Args:
        store: Message store
        allowed_peers: Currently reachable peers; None means no filter
        text_only: Ignore non-text messages when picking the preview

    Returns:
        List of ConversationListItem (conversations with nothing to
        show under text_only are omitted)
    """
    items = []

    for summary in store.get_conversations(allowed_peers):
        last = summary.last_message
        if text_only:
            texts = messages_with_peer(store, summary.conversation_id, text_only=True)
            if not texts:
                continue
            last = texts[-1]

        items.append(ConversationListItem(
            conversation_id=summary.conversation_id,
            peer_id=summary.peer_id,
            short_id=short_id(summary.peer_id),
            preview=preview(last),
            last_updated=summary.last_updated,
            last_from_me=last is not None and last.from_id == store.local_id,
            unread_count=summary.unread_count,
        ))

    items.sort(key=lambda item: item.last_updated, reverse=True)
    return items
