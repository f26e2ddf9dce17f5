"""
Conversation persistence: one JSON record per conversation plus an index.
"""
from chatline.storage.models import Conversation, IndexEntry, LatencyMeta, Message
from chatline.storage.session_store import ConversationNotFound, SessionStore

__all__ = [
    "Conversation",
    "ConversationNotFound",
    "IndexEntry",
    "LatencyMeta",
    "Message",
    "SessionStore",
]
