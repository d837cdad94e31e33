"""In-process conversation threads with idle expiry and an LRU cap."""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Literal, Mapping, Optional

from app.smart_logger import SmartLogger


Role = Literal["user", "assistant", "system"]
CONTEXT_ROLES = frozenset({"user", "assistant"})


@dataclass(frozen=True)
class Message:
    role: str
    content: Any
    id: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Message":
        """Build from an inbound prompt dict; unknown keys go to ``extra``."""
        data = dict(payload or {})
        role = str(data.pop("role", "user") or "user")
        content = data.pop("content", "")
        msg_id = data.pop("id", None)
        return cls(role=role, content=content, id=msg_id, extra=data)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {**self.extra, "role": self.role, "content": self.content}
        if self.id is not None:
            out["id"] = self.id
        return out


class _Thread:
    __slots__ = ("thread_id", "messages", "last_access")

    def __init__(self, thread_id: str, now: float):
        self.thread_id = thread_id
        self.messages: List[Message] = []
        self.last_access = now


class ThreadHandle:
    """View onto one thread. Appends go through the owning store's lock."""

    def __init__(self, store: "ThreadStore", thread: _Thread):
        self._store = store
        self._thread = thread

    @property
    def thread_id(self) -> str:
        return self._thread.thread_id

    def append(self, message: Message) -> None:
        self._store._append(self._thread, message)

    def history(self) -> List[Message]:
        with self._store._lock:
            return list(self._thread.messages)

    def context_view(self) -> Iterator[Dict[str, str]]:
        """LLM-facing projection: user/assistant only, role+content only."""
        for message in self.history():
            if message.role not in CONTEXT_ROLES:
                continue
            content = message.content if isinstance(message.content, str) else ""
            yield {"role": message.role, "content": content}

    def __len__(self) -> int:
        with self._store._lock:
            return len(self._thread.messages)


class ThreadStore:
    """
    Thread id -> ordered message log.

    Threads idle longer than ``ttl_seconds`` are dropped, and at most
    ``max_threads`` are kept (least recently used goes first). A handle that
    outlives its thread's eviction keeps working on the detached log.
    """

    def __init__(
        self,
        *,
        ttl_seconds: Optional[float] = None,
        max_threads: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_threads = max_threads
        self._clock = clock
        self._threads: "OrderedDict[str, _Thread]" = OrderedDict()
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings) -> "ThreadStore":
        return cls(
            ttl_seconds=settings.thread_ttl_seconds,
            max_threads=settings.thread_max_count,
        )

    def get_or_create(self, thread_id: str) -> ThreadHandle:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            thread = self._threads.get(thread_id)
            if thread is None:
                thread = _Thread(thread_id, now)
                self._threads[thread_id] = thread
                self._evict_overflow()
            self._touch(thread, now)
            return ThreadHandle(self, thread)

    def get(self, thread_id: str) -> Optional[ThreadHandle]:
        with self._lock:
            self._evict_expired(self._clock())
            thread = self._threads.get(thread_id)
            return ThreadHandle(self, thread) if thread is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        with self._lock:
            return thread_id in self._threads

    def _append(self, thread: _Thread, message: Message) -> None:
        with self._lock:
            thread.messages.append(message)
            if self._threads.get(thread.thread_id) is thread:
                self._touch(thread, self._clock())

    def _touch(self, thread: _Thread, now: float) -> None:
        thread.last_access = now
        self._threads.move_to_end(thread.thread_id)

    def _evict_expired(self, now: float) -> None:
        if not self.ttl_seconds:
            return
        # OrderedDict is in access order, oldest first
        while self._threads:
            oldest_id, oldest = next(iter(self._threads.items()))
            if now - oldest.last_access <= self.ttl_seconds:
                break
            del self._threads[oldest_id]
            SmartLogger.log(
                "DEBUG",
                "thread_store.evicted.expired",
                category="thread_store.evict",
                params={"thread_id": oldest_id},
            )

    def _evict_overflow(self) -> None:
        if not self.max_threads:
            return
        while len(self._threads) > self.max_threads:
            evicted_id, _ = self._threads.popitem(last=False)
            SmartLogger.log(
                "DEBUG",
                "thread_store.evicted.overflow",
                category="thread_store.evict",
                params={"thread_id": evicted_id},
            )
