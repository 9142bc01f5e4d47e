"""In-memory mirror of the photo directory tree.

Every directory and media file that is touched by a request is represented
by exactly one ``DirectoryEntry`` or ``FileEntry``, looked up through a shared
``EntityRegistry``. Child lists are only read from disk when first asked for
and are kept for the lifetime of the process.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from photo_cache import DEFAULT_CACHE_SIZE, ByteContentCache, ContentKey

if TYPE_CHECKING:
    from photo_imaging import ImageOrientation

MEDIA_EXTENSIONS = {".jpg", ".png", ".gif"}
IGNORED_DIRECTORIES = {".Trash-1000"}
INTERNAL_PATH_FRAGMENTS = ("/data/data/", "/Android/data/")

logger = logging.getLogger(__name__)


def canonical_path(path: str) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


def has_media_extension(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in MEDIA_EXTENSIONS


def is_ignored_directory(path: str) -> bool:
    name = os.path.basename(path)
    if name.startswith(".") or name in IGNORED_DIRECTORIES:
        return True
    probe = path.replace(os.sep, "/") + "/"
    return any(fragment in probe for fragment in INTERNAL_PATH_FRAGMENTS)


def _scan(path: str) -> List[os.DirEntry]:
    try:
        with os.scandir(path) as iterator:
            return list(iterator)
    except (FileNotFoundError, NotADirectoryError):
        return []
    except PermissionError:
        logger.warning("Permission denied listing %s", path)
        return []


def _is_media_file(entry: os.DirEntry) -> bool:
    try:
        return entry.is_file() and has_media_extension(entry.name)
    except OSError:
        return False


def _is_visible_directory(entry: os.DirEntry) -> bool:
    try:
        is_dir = entry.is_dir(follow_symlinks=False)
    except OSError:
        return False
    return is_dir and not is_ignored_directory(entry.path)


class FileEntry:
    """A media file, plus metadata memoized on first use."""

    def __init__(self, path: str):
        self.path = canonical_path(path)
        self.name = os.path.basename(self.path)
        try:
            self.last_modified = os.stat(self.path).st_mtime
        except OSError:
            self.last_modified = 0.0
        self.thumbnail_path: Optional[str] = None
        self.thumbnail_checked = False
        self.width: Optional[int] = None
        self.height: Optional[int] = None
        self.orientation: Optional[ImageOrientation] = None

    def mark_thumbnail_checked(self, thumbnail_path: Optional[str]) -> None:
        self.thumbnail_path = thumbnail_path
        self.thumbnail_checked = True

    def set_dimensions(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def set_orientation(self, orientation: ImageOrientation) -> None:
        self.orientation = orientation

    @property
    def has_dimensions(self) -> bool:
        return self.width is not None and self.height is not None

    def __repr__(self) -> str:
        return f"FileEntry({self.path!r})"


class DirectoryEntry:
    """A directory; subdirectories and files are listed lazily, once."""

    def __init__(self, path: str, registry: "EntityRegistry"):
        self.path = canonical_path(path)
        self.name = os.path.basename(self.path) or self.path
        self._registry = registry
        self._lock = threading.Lock()
        self._subdirectories: Optional[List[DirectoryEntry]] = None
        self._files: Optional[List[FileEntry]] = None
        self.media_file_count = sum(1 for entry in _scan(self.path) if _is_media_file(entry))

    def subdirectories(self) -> List["DirectoryEntry"]:
        if self._subdirectories is None:
            with self._lock:
                if self._subdirectories is None:
                    children = [
                        self._registry.get_or_create_directory(entry.path)
                        for entry in _scan(self.path)
                        if _is_visible_directory(entry)
                    ]
                    children.sort(key=lambda child: child.name)
                    self._subdirectories = children
        return list(self._subdirectories)

    def files(self) -> List[FileEntry]:
        if self._files is None:
            with self._lock:
                if self._files is None:
                    files = [
                        self._registry.get_or_create_file(entry.path)
                        for entry in _scan(self.path)
                        if _is_media_file(entry)
                    ]
                    files.sort(key=lambda item: item.last_modified, reverse=True)
                    self._files = files
        return list(self._files)

    def has_media(self) -> bool:
        """True when this directory or any directory below it holds media files."""
        pending = [self]
        while pending:
            directory = pending.pop()
            if directory.media_file_count:
                return True
            pending.extend(directory.subdirectories())
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return self.path == other.path and self.name == other.name

    def __hash__(self) -> int:
        return hash((self.path, self.name))

    def __repr__(self) -> str:
        return f"DirectoryEntry({self.path!r}, media_file_count={self.media_file_count})"


class EntityRegistry:
    """Shared path-to-entry maps plus the byte cache for derived content.

    One registry is created at server startup and handed to every request
    handler. Lookups that create entries are atomic per map, so racing
    callers always observe the same instance for a path.
    """

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE):
        self._directories: Dict[str, DirectoryEntry] = {}
        self._files: Dict[str, FileEntry] = {}
        self._directory_lock = threading.Lock()
        self._file_lock = threading.Lock()
        self.content_cache = ByteContentCache(cache_size)

    def get_directory(self, path: str) -> Optional[DirectoryEntry]:
        with self._directory_lock:
            return self._directories.get(canonical_path(path))

    def get_file(self, path: str) -> Optional[FileEntry]:
        with self._file_lock:
            return self._files.get(canonical_path(path))

    def get_or_create_directory(self, path: str) -> DirectoryEntry:
        key = canonical_path(path)
        with self._directory_lock:
            entry = self._directories.get(key)
            if entry is None:
                entry = DirectoryEntry(key, self)
                self._directories[key] = entry
                logger.debug("Cached directory %s (%d media files)", key, entry.media_file_count)
            return entry

    def get_or_create_file(self, path: str) -> FileEntry:
        key = canonical_path(path)
        with self._file_lock:
            entry = self._files.get(key)
            if entry is None:
                entry = FileEntry(key)
                self._files[key] = entry
            return entry

    def register_directory(self, entry: DirectoryEntry) -> DirectoryEntry:
        with self._directory_lock:
            return self._directories.setdefault(entry.path, entry)

    def register_file(self, entry: FileEntry) -> FileEntry:
        with self._file_lock:
            return self._files.setdefault(entry.path, entry)

    def get_cached_bytes(self, key: ContentKey) -> Optional[bytes]:
        return self.content_cache.get(key)

    def put_cached_bytes(self, key: ContentKey, data: bytes) -> None:
        self.content_cache.put(key, data)

    @property
    def directory_count(self) -> int:
        with self._directory_lock:
            return len(self._directories)

    @property
    def file_count(self) -> int:
        with self._file_lock:
            return len(self._files)
