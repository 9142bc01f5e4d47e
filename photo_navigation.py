"""Per-request navigation state: which directory, image and thumbnail page to show."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from photo_tree import DirectoryEntry, EntityRegistry, FileEntry, canonical_path

STATE_EMPTY = "empty"
STATE_DIRECTORY = "directory"
STATE_DIRECTORY_WITH_IMAGE = "directory_with_image"


@dataclass(frozen=True)
class NavigationState:
    current_directory_path: Optional[str] = None
    current_image_path: Optional[str] = None
    # None means no page was requested or derivable; 0 is an explicit first page.
    current_thumbnail_page: Optional[int] = None
    force_show_directory_tree: bool = False

    @property
    def kind(self) -> str:
        if self.current_directory_path is None:
            return STATE_EMPTY
        if self.current_image_path is None:
            return STATE_DIRECTORY
        return STATE_DIRECTORY_WITH_IMAGE


def page_count(total: int, page_size: int) -> int:
    if total <= 0:
        return 0
    return (total + page_size - 1) // page_size


def clamp_page(page: Optional[int], total: int, page_size: int) -> int:
    last = max(page_count(total, page_size) - 1, 0)
    return min(max(page or 0, 0), last)


def page_slice(files: Sequence[FileEntry], page: int, page_size: int) -> List[FileEntry]:
    start = page * page_size
    return list(files[start : start + page_size])


def index_of(files: Sequence[FileEntry], image_path: str) -> int:
    target = canonical_path(image_path)
    for index, entry in enumerate(files):
        if entry.path == target:
            return index
    return -1


def page_for_image(directory: DirectoryEntry, image_path: str, page_size: int) -> Optional[int]:
    index = index_of(directory.files(), image_path)
    if index < 0:
        return None
    return index // page_size


def resolve_navigation_state(
    registry: EntityRegistry,
    path: Optional[str],
    page: Optional[int],
    is_directory_request: bool,
    page_size: int,
    force_show_directory_tree: bool = False,
) -> NavigationState:
    if page_size <= 0:
        raise ValueError("Page size must be positive")
    if page is not None and page < 0:
        raise ValueError("Page must not be negative")
    if path is None:
        return NavigationState(force_show_directory_tree=force_show_directory_tree)

    path = canonical_path(path)
    if is_directory_request:
        return NavigationState(
            current_directory_path=path,
            current_thumbnail_page=page,
            force_show_directory_tree=force_show_directory_tree,
        )

    directory_path = os.path.dirname(path)
    if page is None:
        directory = registry.get_or_create_directory(directory_path)
        page = page_for_image(directory, path, page_size)
    return NavigationState(
        current_directory_path=directory_path,
        current_image_path=path,
        current_thumbnail_page=page,
        force_show_directory_tree=force_show_directory_tree,
    )


def select_default_image(state: NavigationState, directory: DirectoryEntry, page_size: int) -> NavigationState:
    """Pick the first thumbnail of the displayed page when no image is selected.

    This is applied by the thumbnail grid after resolution, so the main image
    panel always has something to show for a non-empty directory.
    """
    if state.current_image_path is not None:
        return state
    files = directory.files()
    if not files:
        return state
    page = clamp_page(state.current_thumbnail_page, len(files), page_size)
    first = page_slice(files, page, page_size)[0]
    return replace(state, current_image_path=first.path, current_thumbnail_page=page)


def sibling_paths(directory: DirectoryEntry, image_path: str) -> Tuple[Optional[str], Optional[str]]:
    files = directory.files()
    index = index_of(files, image_path)
    if index < 0:
        return None, None
    previous_path = files[index - 1].path if index > 0 else None
    next_path = files[index + 1].path if index + 1 < len(files) else None
    return previous_path, next_path
