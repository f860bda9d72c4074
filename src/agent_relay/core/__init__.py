"""Core runtime primitives."""

from .config import RelayConfig, load_config
from .conversation_store import ConversationStore, TaskRecord, TokenUsage
from .coordination import ConversationLeases, MessageClaims
from .exceptions import RelayError
from .locks import MarkerFileLock
from .slots import SlotLimiter

__all__ = [
    "ConversationLeases",
    "ConversationStore",
    "MarkerFileLock",
    "MessageClaims",
    "RelayConfig",
    "RelayError",
    "SlotLimiter",
    "TaskRecord",
    "TokenUsage",
    "load_config",
]
