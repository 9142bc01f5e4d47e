#!/usr/bin/env python3
"""Simple Photo Web Server application."""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from http import HTTPStatus
import http.server
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from photo_cache import DEFAULT_CACHE_SIZE, rotated_key, thumbnail_key
from photo_imaging import (
    ConversionError,
    ImageOrientation,
    decode_dimensions,
    lookup_external_thumbnail,
    read_orientation,
    render_rotated,
    render_thumbnail,
)
from photo_navigation import (
    NavigationState,
    clamp_page,
    page_count,
    page_slice,
    resolve_navigation_state,
    select_default_image,
    sibling_paths,
)
from photo_tree import DirectoryEntry, EntityRegistry, FileEntry, has_media_extension

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9009
DEFAULT_ROOT = Path.home() / "Pictures"
DEFAULT_ROWS = 4
DEFAULT_COLUMNS = 5
THUMBNAIL_WIDTH = 120
THUMBNAIL_MIN_WIDTH = 32
THUMBNAIL_MAX_WIDTH = 1024
TRUE_VALUES = {"1", "true", "yes", "on"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerSettings:
    root_path: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    rows: int = DEFAULT_ROWS
    columns: int = DEFAULT_COLUMNS
    thumbnail_width: int = THUMBNAIL_WIDTH
    cache_size: int = DEFAULT_CACHE_SIZE

    @property
    def page_size(self) -> int:
        return self.rows * self.columns


def resolve_relative_path(root: Path, relative: str) -> Path:
    relative_path = Path(relative)
    if relative_path.is_absolute():
        raise ValueError("Absolute paths are not permitted")
    full_path = Path(os.path.normpath(root / relative_path))
    resolved_root = root.resolve()
    resolved_path = full_path.resolve()
    if resolved_root != resolved_path and resolved_root not in resolved_path.parents:
        raise ValueError("Requested path escapes the image root")
    return full_path


def relative_to_root(root: Path, path: Optional[str]) -> Optional[str]:
    if path is None:
        return None
    target = Path(path)
    if target == root:
        return ""
    return target.relative_to(root).as_posix()


def build_breadcrumbs(root: Path, target: Path) -> List[Dict[str, str]]:
    breadcrumbs = [{"name": "Home", "path": ""}]
    if target == root:
        return breadcrumbs
    relative = target.relative_to(root)
    accumulated = Path()
    for segment in relative.parts:
        accumulated = accumulated / segment
        breadcrumbs.append({
            "name": segment,
            "path": accumulated.as_posix(),
        })
    return breadcrumbs


def sanitize_filename(component: str, fallback: str = "image") -> str:
    cleaned = re.sub(r"[\\/:*?\"<>|]+", "_", component).strip()
    cleaned = cleaned.replace("\0", "_")
    if not cleaned:
        return fallback
    return cleaned


def is_on_current_branch(directory: DirectoryEntry, current_path: Optional[str]) -> bool:
    if current_path is None:
        return False
    return os.path.commonpath([directory.path, current_path]) == directory.path


def directory_tree(
    root: Path,
    directory: DirectoryEntry,
    current_path: Optional[str],
    expand_all: bool,
) -> Dict[str, object]:
    """Tree node for ``directory``; branches without any media are left out."""
    expanded = expand_all or is_on_current_branch(directory, current_path)
    children: List[Dict[str, object]] = []
    if expanded:
        for child in directory.subdirectories():
            if child.has_media():
                children.append(directory_tree(root, child, current_path, expand_all))
    return {
        "name": directory.name,
        "path": relative_to_root(root, directory.path),
        "mediaFileCount": directory.media_file_count,
        "current": directory.path == current_path,
        "expanded": expanded,
        "children": children,
    }


def ensure_image_metadata(entry: FileEntry) -> None:
    if entry.orientation is None:
        entry.set_orientation(read_orientation(entry.path))
    if not entry.has_dimensions:
        width, height = decode_dimensions(entry.path)
        entry.set_dimensions(width, height)


def image_payload(root: Path, entry: FileEntry) -> Dict[str, object]:
    try:
        ensure_image_metadata(entry)
    except ConversionError as exc:
        logger.warning("No metadata for %s: %s", entry.path, exc.reason)
    width, height = entry.width, entry.height
    if entry.orientation is not None and entry.orientation.swaps_dimensions:
        width, height = height, width
    return {
        "name": entry.name,
        "path": relative_to_root(root, entry.path),
        "width": width,
        "height": height,
        "rotation": entry.orientation.degrees if entry.orientation is not None else None,
    }


def navigation_payload(
    root: Path,
    registry: EntityRegistry,
    state: NavigationState,
    page_size: int,
) -> Dict[str, object]:
    directory = registry.get_or_create_directory(state.current_directory_path)
    state = select_default_image(state, directory, page_size)

    files = directory.files()
    page = clamp_page(state.current_thumbnail_page, len(files), page_size)
    thumbnails = [
        {
            "name": entry.name,
            "path": relative_to_root(root, entry.path),
            "selected": entry.path == state.current_image_path,
        }
        for entry in page_slice(files, page, page_size)
    ]

    image = None
    previous_path = next_path = None
    if state.current_image_path is not None:
        image = image_payload(root, registry.get_or_create_file(state.current_image_path))
        previous_path, next_path = sibling_paths(directory, state.current_image_path)

    root_entry = registry.get_or_create_directory(str(root))
    return {
        "state": {
            "kind": state.kind,
            "currentDirectory": relative_to_root(root, state.current_directory_path),
            "currentImage": relative_to_root(root, state.current_image_path),
            "currentThumbnailPage": state.current_thumbnail_page,
            "forceShowDirectoryTree": state.force_show_directory_tree,
        },
        "breadcrumbs": build_breadcrumbs(root, Path(directory.path)),
        "tree": directory_tree(root, root_entry, directory.path, state.force_show_directory_tree),
        "directory": {
            "name": directory.name,
            "path": relative_to_root(root, directory.path),
            "mediaFileCount": directory.media_file_count,
        },
        "page": page,
        "pageCount": page_count(len(files), page_size),
        "thumbnails": thumbnails,
        "image": image,
        "previousImage": relative_to_root(root, previous_path),
        "nextImage": relative_to_root(root, next_path),
    }


def thumbnail_bytes(registry: EntityRegistry, entry: FileEntry, width: int) -> bytes:
    key = thumbnail_key(entry.path, width)
    data = registry.get_cached_bytes(key)
    if data is None:
        data = render_thumbnail(entry.path, width)
        registry.put_cached_bytes(key, data)
    return data


def rotated_bytes(registry: EntityRegistry, entry: FileEntry, orientation: ImageOrientation) -> bytes:
    key = rotated_key(entry.path, orientation.degrees)
    data = registry.get_cached_bytes(key)
    if data is None:
        data = render_rotated(entry.path, orientation)
        registry.put_cached_bytes(key, data)
    return data


class PhotoServer(http.server.ThreadingHTTPServer):
    """Threaded server carrying the state shared by all request handlers."""

    daemon_threads = True

    def __init__(self, settings: ServerSettings, registry: Optional[EntityRegistry] = None):
        self.settings = settings
        self.root_path = Path(os.path.normpath(os.path.abspath(settings.root_path)))
        self.registry = registry if registry is not None else EntityRegistry(settings.cache_size)
        super().__init__((settings.host, settings.port), PhotoRequestHandler)


class PhotoRequestHandler(http.server.BaseHTTPRequestHandler):
    server: PhotoServer

    def do_GET(self) -> None:  # noqa: N802 - standard library signature
        parsed = urlparse(self.path)
        if parsed.path in {"", "/"} or parsed.path.startswith("/api/"):
            self.handle_api(parsed)
            return
        self.send_json({"error": "Unknown endpoint"}, status=HTTPStatus.NOT_FOUND)

    # API handlers
    def handle_api(self, parsed) -> None:
        route = parsed.path
        params = parse_qs(parsed.query or "")
        try:
            if route in {"", "/", "/api/list"}:
                self.api_list(params)
            elif route == "/api/view":
                self.api_view(params)
            elif route == "/api/thumbnail":
                self.api_thumbnail(params)
            elif route == "/api/image":
                self.api_image(params)
            elif route == "/api/download":
                self.api_download(params)
            else:
                self.send_json({"error": "Unknown endpoint"}, status=HTTPStatus.NOT_FOUND)
        except ValueError as exc:
            self.send_json({"error": str(exc)}, status=HTTPStatus.BAD_REQUEST)
        except FileNotFoundError:
            self.send_json({"error": "Not found"}, status=HTTPStatus.NOT_FOUND)
        except ConversionError as exc:
            self.send_json({"error": f"Image conversion failed: {exc.reason}"}, status=HTTPStatus.INTERNAL_SERVER_ERROR)
        except Exception as exc:  # noqa: BLE001 - report unexpected errors
            logger.exception("Unexpected error handling %s", self.path)
            self.send_json({"error": f"Unexpected server error: {exc}"}, status=HTTPStatus.INTERNAL_SERVER_ERROR)

    def api_list(self, params: Dict[str, List[str]]) -> None:
        target = self.resolve_param(params, required=False)
        if not target.exists():
            raise FileNotFoundError
        if not target.is_dir():
            raise ValueError("Requested path is not a directory")
        state = resolve_navigation_state(
            self.server.registry,
            str(target),
            self.page_param(params),
            is_directory_request=True,
            page_size=self.server.settings.page_size,
            force_show_directory_tree=self.flag_param(params, "tree"),
        )
        self.send_navigation(state)

    def api_view(self, params: Dict[str, List[str]]) -> None:
        target = self.resolve_media_file(params)
        state = resolve_navigation_state(
            self.server.registry,
            str(target),
            self.page_param(params),
            is_directory_request=False,
            page_size=self.server.settings.page_size,
            force_show_directory_tree=self.flag_param(params, "tree"),
        )
        self.send_navigation(state)

    def api_thumbnail(self, params: Dict[str, List[str]]) -> None:
        size_param = params.get("size", [""])[0]
        try:
            width = int(size_param) if size_param else self.server.settings.thumbnail_width
        except ValueError as exc:
            raise ValueError("Invalid thumbnail size") from exc
        width = max(THUMBNAIL_MIN_WIDTH, min(THUMBNAIL_MAX_WIDTH, width))

        target = self.resolve_media_file(params)
        entry = self.server.registry.get_or_create_file(str(target))
        if not entry.thumbnail_checked:
            entry.mark_thumbnail_checked(lookup_external_thumbnail(entry.path))
        if entry.thumbnail_path is not None and not size_param:
            external = Path(entry.thumbnail_path)
            if external.is_file():
                self.send_file(external, cache_seconds=86400)
                return

        self.send_binary(thumbnail_bytes(self.server.registry, entry, width), "image/jpeg")

    def api_image(self, params: Dict[str, List[str]]) -> None:
        target = self.resolve_media_file(params)
        entry = self.server.registry.get_or_create_file(str(target))
        if entry.orientation is None:
            entry.set_orientation(read_orientation(entry.path))
        if entry.orientation is ImageOrientation.ROTATE_NONE:
            self.send_file(target)
            return
        self.send_binary(rotated_bytes(self.server.registry, entry, entry.orientation), "image/jpeg")

    def api_download(self, params: Dict[str, List[str]]) -> None:
        target = self.resolve_media_file(params)
        filename = sanitize_filename(target.name)
        self.send_file(target, disposition=f'attachment; filename="{filename}"')

    # Helpers
    def resolve_param(self, params: Dict[str, List[str]], required: bool = True) -> Path:
        relative = params.get("path", [""])[0]
        if not relative and required:
            raise ValueError("Missing image path")
        return resolve_relative_path(self.server.root_path, unquote(relative))

    def resolve_media_file(self, params: Dict[str, List[str]]) -> Path:
        target = self.resolve_param(params)
        if not target.is_file():
            raise FileNotFoundError
        if not has_media_extension(target.name):
            raise ValueError(f"Unsupported file type: {target.name}")
        return target

    def page_param(self, params: Dict[str, List[str]]) -> Optional[int]:
        value = params.get("page", [""])[0]
        if not value:
            return None
        try:
            page = int(value)
        except ValueError as exc:
            raise ValueError("Invalid page") from exc
        if page < 0:
            raise ValueError("Invalid page")
        return page

    def flag_param(self, params: Dict[str, List[str]], name: str) -> bool:
        return params.get(name, [""])[0].lower() in TRUE_VALUES

    def send_navigation(self, state: NavigationState) -> None:
        payload = navigation_payload(
            self.server.root_path,
            self.server.registry,
            state,
            self.server.settings.page_size,
        )
        self.send_json(payload)

    def send_json(self, payload: Dict[str, object], status: HTTPStatus = HTTPStatus.OK) -> None:
        data = json.dumps(payload).encode("utf-8")
        try:
            self.send_response(status)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            self.wfile.write(data)
        except BrokenPipeError:
            self.log_message("Client closed connection while sending JSON response")

    def send_binary(self, data: bytes, content_type: str) -> None:
        try:
            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            self.send_header("Cache-Control", "max-age=86400")
            self.end_headers()
            self.wfile.write(data)
        except BrokenPipeError:
            self.log_message("Client closed connection while sending binary response")

    def send_file(self, path: Path, disposition: Optional[str] = None, cache_seconds: Optional[int] = None) -> None:
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        size = path.stat().st_size
        try:
            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(size))
            if disposition:
                self.send_header("Content-Disposition", disposition)
            if cache_seconds:
                self.send_header("Cache-Control", f"max-age={cache_seconds}")
            self.end_headers()
            with path.open("rb") as file_obj:
                while True:
                    chunk = file_obj.read(64_000)
                    if not chunk:
                        break
                    self.wfile.write(chunk)
        except BrokenPipeError:
            self.log_message("Client closed connection while streaming file %s", path)

    def log_message(self, format: str, *args) -> None:  # noqa: A003 - match base signature
        logger.info("%s - %s", self.address_string(), format % args)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Simple Photo Web Server.")
    parser.add_argument(
        "--root",
        type=Path,
        default=DEFAULT_ROOT,
        help=f"Root directory containing images (default: {DEFAULT_ROOT})",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Host to bind (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port to listen on (default: {DEFAULT_PORT})")
    parser.add_argument("--rows", type=int, default=DEFAULT_ROWS, help=f"Thumbnail rows per page (default: {DEFAULT_ROWS})")
    parser.add_argument(
        "--columns",
        type=int,
        default=DEFAULT_COLUMNS,
        help=f"Thumbnail columns per page (default: {DEFAULT_COLUMNS})",
    )
    parser.add_argument(
        "--thumbnail-width",
        type=int,
        default=THUMBNAIL_WIDTH,
        help=f"Thumbnail width in pixels (default: {THUMBNAIL_WIDTH})",
    )
    parser.add_argument(
        "--cache-size",
        type=int,
        default=DEFAULT_CACHE_SIZE,
        help=f"Bytes of generated image data kept in memory (default: {DEFAULT_CACHE_SIZE})",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging output.")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> ServerSettings:
    if args.rows <= 0 or args.columns <= 0:
        raise ValueError("Rows and columns must be positive")
    if args.cache_size <= 0:
        raise ValueError("Cache size must be positive")
    return ServerSettings(
        root_path=args.root.expanduser().resolve(),
        host=args.host,
        port=args.port,
        rows=args.rows,
        columns=args.columns,
        thumbnail_width=max(THUMBNAIL_MIN_WIDTH, min(THUMBNAIL_MAX_WIDTH, args.thumbnail_width)),
        cache_size=args.cache_size,
    )


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")

    settings = settings_from_args(args)
    if not settings.root_path.is_dir():
        raise FileNotFoundError(f"Image directory not found: {settings.root_path}")

    server = PhotoServer(settings)
    logger.info("Serving images from %s", settings.root_path)
    logger.info("Open http://%s:%d in your browser", settings.host, server.server_address[1])
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down server")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
