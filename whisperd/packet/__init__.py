"""
Whisper Packet Module

Handles packet serialization, deduplication, message storage and
conversation queries.
"""

from .format import (
    Packet,
    PacketType,
    PacketError,
    create_packet,
    parse_packet,
)

from .dedup import SeenCache

from .store import (
    Message,
    Conversation,
    ConversationSummary,
    StoreState,
    MessageStore,
    conversation_key,
)

from .conversations import (
    ConversationListItem,
    list_conversations,
    messages_with_peer,
    short_id,
)

from .handshake import (
    Handshake,
    encode_handshake,
    decode_handshake,
)

__all__ = [
    'Packet',
    'PacketType',
    'PacketError',
    'create_packet',
    'parse_packet',
    'SeenCache',
    'Message',
    'Conversation',
    'ConversationSummary',
    'StoreState',
    'MessageStore',
    'conversation_key',
    'ConversationListItem',
    'list_conversations',
    'messages_with_peer',
    'short_id',
    'Handshake',
    'encode_handshake',
    'decode_handshake',
]
