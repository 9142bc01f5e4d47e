"""Size-budgeted LRU cache for derived image renditions."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Iterator, NamedTuple, Optional

DEFAULT_CACHE_SIZE = 2 * 1024 * 1024

KIND_THUMBNAIL = "thumbnail"
KIND_ROTATED = "rotated"

logger = logging.getLogger(__name__)


class ContentKey(NamedTuple):
    path: str
    kind: str
    param: int


def thumbnail_key(path: str, width: int) -> ContentKey:
    return ContentKey(path, KIND_THUMBNAIL, width)


def rotated_key(path: str, degrees: int) -> ContentKey:
    return ContentKey(path, KIND_ROTATED, degrees)


class ByteContentCache:
    """LRU cache bounded by the total byte size of its values.

    Entries are kept in recency order, least recently used first. Items at
    least as large as the whole budget are never admitted, and a ``put`` for a
    key that is already cached keeps the existing value.
    """

    def __init__(self, maximum_size: int = DEFAULT_CACHE_SIZE):
        if maximum_size <= 0:
            raise ValueError("Cache size must be positive")
        self._entries: OrderedDict[ContentKey, bytes] = OrderedDict()
        self._maximum_size = maximum_size
        self._current_size = 0
        self._lock = threading.Lock()

    @property
    def maximum_size(self) -> int:
        return self._maximum_size

    @property
    def current_size(self) -> int:
        with self._lock:
            return self._current_size

    def get(self, key: ContentKey) -> Optional[bytes]:
        with self._lock:
            data = self._entries.get(key)
            if data is not None:
                self._entries.move_to_end(key)
            return data

    def put(self, key: ContentKey, data: bytes) -> None:
        size = len(data)
        with self._lock:
            if size >= self._maximum_size:
                logger.debug("Not caching %s (%d bytes exceeds budget of %d)", key, size, self._maximum_size)
                return
            if key in self._entries:
                return
            while self._current_size + size > self._maximum_size:
                evicted_key, evicted = self._entries.popitem(last=False)
                self._current_size -= len(evicted)
                logger.debug("Evicted %s (%d bytes)", evicted_key, len(evicted))
            self._entries[key] = bytes(data)
            self._current_size += size

    def keys(self) -> Iterator[ContentKey]:
        """Cached keys, least recently used first."""
        with self._lock:
            return iter(list(self._entries))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
