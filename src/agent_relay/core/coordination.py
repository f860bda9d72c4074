from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .logging_utils import log_event
from .shared_state import SharedStateStore

DEFAULT_LEASE_TTL_SECONDS = 10 * 60
DEFAULT_CLAIM_TTL_SECONDS = 60 * 60

logger = logging.getLogger(__name__)


def _entry_age(entry: Any, now: float) -> float:
    if not isinstance(entry, dict):
        return float("inf")
    try:
        return now - float(entry.get("timestamp"))
    except (TypeError, ValueError):
        return float("inf")


class ConversationLeases:
    """Time-bounded per-conversation claims stored in the shared document.

    A lease older than the TTL is free for anyone to take, including its
    previous owner. ``release`` does not check ownership.
    """

    def __init__(
        self,
        store: SharedStateStore,
        *,
        owner_id: str,
        ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._owner_id = owner_id
        self._ttl = float(ttl_seconds)
        self._clock = clock

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def acquire(self, conversation_id: str) -> bool:
        now = self._clock()

        def mutate(state: dict[str, Any]) -> bool:
            locks = state.setdefault("locks", {})
            current = locks.get(conversation_id)
            if current is not None and _entry_age(current, now) < self._ttl:
                return False
            locks[conversation_id] = {"timestamp": now, "owner": self._owner_id}
            return True

        acquired = bool(self._store.update(mutate))
        log_event(
            logger,
            logging.DEBUG if acquired else logging.INFO,
            "lease.acquired" if acquired else "lease.busy",
            conversation_id=conversation_id,
            owner=self._owner_id,
        )
        return acquired

    def renew(self, conversation_id: str) -> bool:
        """Refresh the timestamp of a lease this instance still owns."""
        now = self._clock()

        def mutate(state: dict[str, Any]) -> bool:
            locks = state.setdefault("locks", {})
            current = locks.get(conversation_id)
            if not isinstance(current, dict) or current.get("owner") != self._owner_id:
                return False
            current["timestamp"] = now
            return True

        renewed = bool(self._store.update(mutate))
        if not renewed:
            log_event(
                logger,
                logging.WARNING,
                "lease.renew_lost",
                conversation_id=conversation_id,
                owner=self._owner_id,
            )
        return renewed

    def release(self, conversation_id: str) -> None:
        def mutate(state: dict[str, Any]) -> None:
            state.setdefault("locks", {}).pop(conversation_id, None)

        self._store.update(mutate)

    def holder(self, conversation_id: str) -> Any:
        entry = self._store.read_section("locks", conversation_id)
        if entry is None or _entry_age(entry, self._clock()) >= self._ttl:
            return None
        return entry.get("owner")


class MessageClaims:
    def __init__(
        self,
        store: SharedStateStore,
        *,
        owner_id: str,
        ttl_seconds: float = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._owner_id = owner_id
        self._ttl = float(ttl_seconds)
        self._clock = clock

    def claim(self, message_id: str) -> bool:
        """Return True when this caller is the first to see ``message_id``."""
        now = self._clock()

        def mutate(state: dict[str, Any]) -> bool:
            claims = state.setdefault("claimed_messages", {})
            expired = [
                key for key, entry in claims.items() if _entry_age(entry, now) > self._ttl
            ]
            for key in expired:
                del claims[key]
            if message_id in claims:
                return False
            claims[message_id] = {"owner": self._owner_id, "timestamp": now}
            return True

        claimed = bool(self._store.update(mutate))
        if not claimed:
            log_event(
                logger,
                logging.INFO,
                "message.duplicate_skipped",
                message_id=message_id,
            )
        return claimed


__all__ = [
    "DEFAULT_CLAIM_TTL_SECONDS",
    "DEFAULT_LEASE_TTL_SECONDS",
    "ConversationLeases",
    "MessageClaims",
]
