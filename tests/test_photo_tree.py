from __future__ import annotations

import os
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from photo_tree import DirectoryEntry, EntityRegistry, FileEntry, canonical_path, is_ignored_directory


def test_media_count_is_computed_without_listing_files(tmp_path, make_image):
    make_image(tmp_path / "one.jpg")
    make_image(tmp_path / "TWO.JPG")
    make_image(tmp_path / "three.png")
    make_image(tmp_path / "four.gif")
    (tmp_path / "notes.txt").write_text("not an image")
    (tmp_path / "sub.jpg").mkdir()
    registry = EntityRegistry()

    directory = registry.get_or_create_directory(str(tmp_path))

    assert directory.media_file_count == 4
    assert registry.file_count == 0


def test_files_are_sorted_newest_first(tmp_path, make_image):
    make_image(tmp_path / "a.jpg", mtime=100)
    make_image(tmp_path / "b.jpg", mtime=300)
    make_image(tmp_path / "c.jpg", mtime=300)
    make_image(tmp_path / "d.jpg", mtime=50)
    registry = EntityRegistry()

    files = registry.get_or_create_directory(str(tmp_path)).files()

    assert [entry.last_modified for entry in files] == [300, 300, 100, 50]
    assert {entry.name for entry in files[:2]} == {"b.jpg", "c.jpg"}
    assert [entry.name for entry in files[2:]] == ["a.jpg", "d.jpg"]


def test_files_are_shared_registry_instances(tmp_path, make_image):
    make_image(tmp_path / "a.jpg")
    registry = EntityRegistry()

    listed = registry.get_or_create_directory(str(tmp_path)).files()[0]

    assert registry.get_file(str(tmp_path / "a.jpg")) is listed
    assert registry.get_or_create_file(str(tmp_path / "a.jpg")) is listed


def test_child_lists_are_memoized(tmp_path, make_image):
    make_image(tmp_path / "a.jpg")
    registry = EntityRegistry()
    directory = registry.get_or_create_directory(str(tmp_path))
    first = directory.files()
    assert directory.subdirectories() == []

    make_image(tmp_path / "late.jpg")
    (tmp_path / "late_dir").mkdir()

    assert directory.files() == first
    assert directory.subdirectories() == []


def test_subdirectories_are_sorted_and_exclude_hidden_and_internal(tmp_path):
    for name in ("zebra", "albums", ".thumbnails", ".Trash-1000", "data/data/x", "Android/data/com.app"):
        (tmp_path / name).mkdir(parents=True)
    registry = EntityRegistry()

    root = registry.get_or_create_directory(str(tmp_path))
    names = [child.name for child in root.subdirectories()]

    assert names == ["Android", "albums", "data", "zebra"]
    data = registry.get_directory(str(tmp_path / "data"))
    assert data.subdirectories() == []
    assert registry.get_directory(str(tmp_path / "Android")).subdirectories() == []


def test_ignored_directory_rules():
    assert is_ignored_directory("/photos/.hidden")
    assert is_ignored_directory("/photos/.Trash-1000")
    assert is_ignored_directory("/storage/data/data")
    assert is_ignored_directory("/storage/data/data/com.example")
    assert is_ignored_directory("/sdcard/Android/data/com.example")
    assert not is_ignored_directory("/photos/data")
    assert is_ignored_directory("/sdcard/Android/data")


def test_subdirectories_reuse_previously_created_entries(tmp_path):
    (tmp_path / "child").mkdir()
    registry = EntityRegistry()
    existing = registry.get_or_create_directory(str(tmp_path / "child"))

    children = registry.get_or_create_directory(str(tmp_path)).subdirectories()

    assert children[0] is existing


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlinked_directories_are_not_followed(tmp_path):
    (tmp_path / "real").mkdir()
    try:
        os.symlink(tmp_path, tmp_path / "real" / "loop")
    except OSError:
        pytest.skip("cannot create symlinks here")
    registry = EntityRegistry()

    real = registry.get_or_create_directory(str(tmp_path / "real"))

    assert real.subdirectories() == []


def test_missing_directory_is_empty_not_an_error(tmp_path):
    registry = EntityRegistry()

    directory = registry.get_or_create_directory(str(tmp_path / "gone"))

    assert directory.media_file_count == 0
    assert directory.files() == []
    assert directory.subdirectories() == []
    assert not directory.has_media()


def test_missing_file_has_zero_timestamp(tmp_path):
    entry = EntityRegistry().get_or_create_file(str(tmp_path / "gone.jpg"))

    assert entry.last_modified == 0.0
    assert not entry.thumbnail_checked
    assert entry.thumbnail_path is None


def test_has_media_looks_through_descendants(tmp_path, make_image):
    make_image(tmp_path / "outer" / "inner" / "deep" / "photo.jpg")
    (tmp_path / "barren" / "still_barren").mkdir(parents=True)
    registry = EntityRegistry()

    assert registry.get_or_create_directory(str(tmp_path / "outer")).has_media()
    assert not registry.get_or_create_directory(str(tmp_path / "barren")).has_media()


def test_paths_are_canonicalized(tmp_path):
    registry = EntityRegistry()
    first = registry.get_or_create_directory(str(tmp_path / "a" / ".." / "b"))

    assert first.path == canonical_path(str(tmp_path / "b"))
    assert registry.get_or_create_directory(str(tmp_path / "b") + os.sep) is first


def test_directory_equality_uses_path_and_name(tmp_path):
    registry_one = EntityRegistry()
    registry_two = EntityRegistry()

    one = registry_one.get_or_create_directory(str(tmp_path))
    two = registry_two.get_or_create_directory(str(tmp_path))

    assert one is not two
    assert one == two
    assert hash(one) == hash(two)
    assert one != registry_one.get_or_create_directory(str(tmp_path / "other"))


def test_register_is_idempotent(tmp_path):
    registry = EntityRegistry()
    original = registry.get_or_create_directory(str(tmp_path))

    returned = registry.register_directory(DirectoryEntry(str(tmp_path), registry))
    file_entry = registry.register_file(FileEntry(str(tmp_path / "x.jpg")))

    assert returned is original
    assert registry.register_file(FileEntry(str(tmp_path / "x.jpg"))) is file_entry
    assert registry.directory_count == 1
    assert registry.file_count == 1


def test_concurrent_get_or_create_returns_single_instance(tmp_path, make_image):
    for index in range(5):
        make_image(tmp_path / f"{index}.jpg")
    registry = EntityRegistry()
    workers = 16
    barrier = threading.Barrier(workers)
    directories = []
    files = []

    def worker() -> None:
        barrier.wait()
        directories.append(registry.get_or_create_directory(str(tmp_path)))
        files.append(registry.get_or_create_file(str(tmp_path / "0.jpg")))

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(entry) for entry in directories}) == 1
    assert len({id(entry) for entry in files}) == 1
    assert registry.directory_count == 1


def test_concurrent_child_listing_builds_one_tree(tmp_path, make_image):
    for name in ("a", "b", "c"):
        make_image(tmp_path / name / "photo.jpg")
    registry = EntityRegistry()
    root = registry.get_or_create_directory(str(tmp_path))
    workers = 8
    barrier = threading.Barrier(workers)
    results = []

    def worker() -> None:
        barrier.wait()
        results.append([id(child) for child in root.subdirectories()])
        for child in root.subdirectories():
            child.files()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(ids == results[0] for ids in results)
    assert registry.directory_count == 4
    assert registry.file_count == 3


def test_tree_and_navigation_import_without_pillow():
    code = "import sys, photo_tree, photo_navigation; sys.exit(1 if 'PIL' in sys.modules else 0)"

    result = subprocess.run([sys.executable, "-c", code], cwd=Path(__file__).resolve().parent.parent)

    assert result.returncode == 0
