"""Storage interfaces for the LexiChat application."""

from .database import (
    BaseRepository,
    ConversationRecord,
    ConversationRepository,
    ConversationStore,
    DatabaseError,
    DatabaseManager,
    StoredMessage,
)

__all__ = [
    "BaseRepository",
    "ConversationRecord",
    "ConversationRepository",
    "ConversationStore",
    "DatabaseError",
    "DatabaseManager",
    "StoredMessage",
]
