"""
History Store
=============
Keyed storage for HealingHistory records, one per query hash.

Concurrency:
    - The store hands out one asyncio.Lock per query hash via lock()
    - Callers doing read-modify-write (record, rollback) hold that lock
    - Different hashes never contend
    - A lock lives only while some caller holds a reference to it

Bounds (FIFO, oldest query hash evicted first):
    - max_queries  — distinct query hashes kept (default: HISTORY_MAX_QUERIES)
    - max_entries  — entries kept per history, oldest dropped (default: HISTORY_MAX_ENTRIES)
    Counters and learned pattern sets are never trimmed, only entries.

Backends:
    InMemoryHistoryStore   — process lifetime only
    JsonFileHistoryStore   — same semantics, rewritten to a JSON file on every put
"""
import asyncio
import json
import logging
import os
import weakref
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import List, Optional

from sqlheal.core.config import HISTORY_MAX_ENTRIES, HISTORY_MAX_QUERIES
from sqlheal.models.history import HealingHistory

logger = logging.getLogger(__name__)


class HistoryStore(ABC):
    """Interface for pluggable history persistence."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock(self, query_hash: str) -> asyncio.Lock:
        """Per-hash lock; the same object is returned while any caller still holds it."""
        lock = self._locks.get(query_hash)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[query_hash] = lock
        return lock

    @abstractmethod
    async def get(self, query_hash: str) -> Optional[HealingHistory]:
        ...

    @abstractmethod
    async def put(self, history: HealingHistory) -> None:
        ...

    @abstractmethod
    async def delete(self, query_hash: str) -> bool:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        ...


class InMemoryHistoryStore(HistoryStore):
    """
    Bounded in-memory history store.

    Usage:
        store = InMemoryHistoryStore()
        async with store.lock(h):
            history = await store.get(h) or HealingHistory(query_hash=h)
            ...
            await store.put(history)
    """

    def __init__(
        self,
        max_queries: int = HISTORY_MAX_QUERIES,
        max_entries: int = HISTORY_MAX_ENTRIES,
    ) -> None:
        super().__init__()
        self._store: "OrderedDict[str, HealingHistory]" = OrderedDict()
        self._max_queries = max_queries
        self._max_entries = max_entries

    async def get(self, query_hash: str) -> Optional[HealingHistory]:
        history = self._store.get(query_hash)
        return history.model_copy(deep=True) if history else None

    async def put(self, history: HealingHistory) -> None:
        self._put(history)

    async def delete(self, query_hash: str) -> bool:
        return self._store.pop(query_hash, None) is not None

    async def keys(self) -> List[str]:
        return list(self._store.keys())

    def _put(self, history: HealingHistory) -> None:
        stored = history.model_copy(deep=True)
        if self._max_entries and len(stored.entries) > self._max_entries:
            stored.entries = stored.entries[-self._max_entries:]

        if stored.query_hash not in self._store:
            while self._max_queries and len(self._store) >= self._max_queries:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("History for %s evicted (cap %d)", evicted, self._max_queries)
        self._store[stored.query_hash] = stored

    def __len__(self) -> int:
        return len(self._store)


class JsonFileHistoryStore(InMemoryHistoryStore):
    """
    In-memory store mirrored to a JSON file.

    The file is loaded once at construction and rewritten (write to a
    temporary file, then atomic replace) after every put or delete.
    """

    def __init__(
        self,
        path: str,
        max_queries: int = HISTORY_MAX_QUERIES,
        max_entries: int = HISTORY_MAX_ENTRIES,
    ) -> None:
        super().__init__(max_queries=max_queries, max_entries=max_entries)
        self.path = os.path.abspath(path)
        self._load()

    async def put(self, history: HealingHistory) -> None:
        self._put(history)
        self._flush()

    async def delete(self, query_hash: str) -> bool:
        removed = await super().delete(query_hash)
        if removed:
            self._flush()
        return removed

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for item in data.get("histories", []):
            self._put(HealingHistory.model_validate(item))
        logger.info("Loaded %d healing histories from %s", len(self), self.path)

    def _flush(self) -> None:
        data = {"histories": [h.model_dump(mode="json") for h in self._store.values()]}
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)
