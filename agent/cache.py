"""
In-memory stores backing the context window: a count-bounded hot message store
and a scored TTL cache for derived artifacts (summaries, tool results).

Neither store awaits anything internally, so on a single event loop every
operation is atomic and no lock is needed.
"""

import hashlib
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .history import Message

logger = logging.getLogger(__name__)

TOOL_RESULT_TTL = 30 * 60
SUMMARY_TTL = 10 * 60


class HotMessageStore:
    """Hard cap on in-memory messages, independent of token usage.

    Once the store grows past max_size, the oldest messages are evicted until
    only 80% of max_size remain.
    """

    def __init__(self, max_size: int = 1000, retain_ratio: float = 0.8):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.retain_ratio = retain_ratio
        self._messages: Deque[Message] = deque()
        self.evicted = 0

    def add(self, message: Message) -> int:
        """Store a message. Returns the number of messages evicted."""
        self._messages.append(message)
        if len(self._messages) <= self.max_size:
            return 0
        target = int(self.max_size * self.retain_ratio)
        dropped = 0
        while len(self._messages) > target:
            self._messages.popleft()
            dropped += 1
        self.evicted += dropped
        logger.debug(f"Hot store evicted {dropped} messages ({len(self._messages)} retained)")
        return dropped

    def extend(self, messages: Iterable[Message]) -> int:
        return sum(self.add(m) for m in messages)

    def recent(self, n: Optional[int] = None) -> List[Message]:
        items = list(self._messages)
        return items if n is None else items[-n:] if n > 0 else []

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


@dataclass
class _CacheEntry:
    value: Any
    created_at: float
    last_access: float
    ttl: float
    access_count: int = 0


class ResultCache:
    """TTL cache evicting the lowest recency x frequency score when full.

    recency = 1 / (now - last_access + 1), frequency = access count.
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_least_used(now)
        self._entries[key] = _CacheEntry(
            value=value,
            created_at=now,
            last_access=now,
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        if entry is None:
            self.misses += 1
            return None
        entry.access_count += 1
        entry.last_access = self._clock()
        self.hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def set_ttl(self, key: str, ttl: float) -> bool:
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.ttl = ttl
        return True

    def remaining_ttl(self, key: str) -> float:
        entry = self._live_entry(key)
        if entry is None:
            return 0.0
        return max(0.0, entry.ttl - (self._clock() - entry.created_at))

    def cleanup(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.created_at > e.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        top = sorted(self._entries.items(), key=lambda kv: kv[1].access_count, reverse=True)[:10]
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "top_keys": [
                {"key": k, "access_count": e.access_count, "last_access": e.last_access}
                for k, e in top
            ],
        }

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    @staticmethod
    def tool_key(tool_name: str, params: Dict[str, Any]) -> str:
        digest = hashlib.sha256(
            json.dumps(params, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()[:16]
        return f"tool:{tool_name}:{digest}"

    def cache_tool_result(self, tool_name: str, params: Dict[str, Any], result: Any) -> None:
        self.set(self.tool_key(tool_name, params), result, TOOL_RESULT_TTL)

    def get_tool_result(self, tool_name: str, params: Dict[str, Any]) -> Optional[Any]:
        return self.get(self.tool_key(tool_name, params))

    @staticmethod
    def summary_key(session_id: str, messages: List[Message]) -> str:
        """Key a summary by the exact messages it covers, not just their count."""
        digest = hashlib.sha256(
            json.dumps([m.to_dict() for m in messages], sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()[:16]
        return f"summary:{session_id}:{len(messages)}:{digest}"

    def cache_summary(self, session_id: str, messages: List[Message], summary: Any) -> None:
        self.set(self.summary_key(session_id, messages), summary, SUMMARY_TTL)

    def get_summary(self, session_id: str, messages: List[Message]) -> Optional[Any]:
        return self.get(self.summary_key(session_id, messages))

    # ------------------------------------------------------------------

    def _live_entry(self, key: str) -> Optional[_CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.created_at > entry.ttl:
            del self._entries[key]
            return None
        return entry

    def _evict_least_used(self, now: float) -> None:
        least_key = None
        least_score = float("inf")
        for key, entry in self._entries.items():
            recency = 1.0 / (now - entry.last_access + 1)
            score = recency * entry.access_count
            if score < least_score:
                least_score = score
                least_key = key
        if least_key is not None:
            del self._entries[least_key]
            logger.debug(f"Result cache evicted {least_key} (score {least_score:.4f})")
