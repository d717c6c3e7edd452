from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

IMAGE_DIR = "img"
FILE_MODE = 0o640
DIR_MODE = 0o750

_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}


_SAFE_BYTES = frozenset(
    b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789._-"
)
MAX_EXTENSION_LENGTH = 8


def sanitize_filename(name: str) -> str:
    """Replace every byte outside [A-Za-z0-9._-] with an underscore."""
    return "".join(
        chr(byte) if byte in _SAFE_BYTES else "_" for byte in name.encode("utf-8")
    )


def _path_component(value: str) -> str:
    safe = sanitize_filename(value)
    if safe in {"", ".", ".."}:
        return "_" * max(len(safe), 1)
    return safe


def file_extension(name: str) -> str:
    """Text after the last dot, dropped entirely when longer than 8 characters."""
    _, dot, ext = name.rpartition(".")
    if not dot or len(ext) > MAX_EXTENSION_LENGTH:
        return ""
    return ext


def guess_mime(path: str | Path) -> str:
    """Map a file extension to the image MIME types the gallery serves."""
    suffix = Path(path).suffix.lower().lstrip(".")
    return _MIME_TYPES.get(suffix, "application/octet-stream")


@dataclass
class StorageLayout:
    """Paths under the storage root.

    ``img/<id>.<ext>`` holds originals, ``img/<id>.thumb.jpg`` thumbnails and
    ``shared/<date>/`` or ``personal/<owner>/<date>/`` the JSON sidecars.
    """

    root: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root)

    @property
    def image_dir(self) -> Path:
        return self.root / IMAGE_DIR

    def ensure_base_dirs(self) -> None:
        for sub in ("", "shared", "personal", IMAGE_DIR):
            (self.root / sub).mkdir(mode=DIR_MODE, parents=True, exist_ok=True)

    def image_path(self, photo_id: str, ext: str) -> Path:
        name = f"{photo_id}.{ext}" if ext else photo_id
        return self.image_dir / name

    def thumb_path(self, photo_id: str) -> Path:
        return self.image_dir / f"{photo_id}.thumb.jpg"

    def sidecar_dir(self, scope: str, owner: str, date: str) -> Path:
        if scope == "personal":
            return self.root / "personal" / _path_component(owner) / date
        return self.root / "shared" / date

    def sidecar_path(self, scope: str, owner: str, date: str, photo_id: str) -> Path:
        return self.sidecar_dir(scope, owner, date) / f"{photo_id}.json"

    def relative(self, path: Optional[Path]) -> Optional[str]:
        if path is None:
            return None
        return Path(path).relative_to(self.root).as_posix()


def write_bytes(path: Path, data: bytes) -> None:
    """Create path exclusively; an existing file is an error, never overwritten."""
    with open(path, "xb") as handle:
        handle.write(data)
    os.chmod(path, FILE_MODE)


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    write_bytes(path, json.dumps(payload).encode("utf-8"))


def read_json(path: Optional[str | Path]) -> Optional[Dict[str, Any]]:
    """Return a parsed sidecar, or None when it is missing or unreadable."""
    if not path:
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            parsed = json.load(handle)
    except (OSError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def read_bytes(path: Optional[str | Path]) -> Optional[bytes]:
    if not path:
        return None
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError:
        return None


def remove_if_exists(path: Optional[str | Path]) -> None:
    """Delete a file, treating an already missing file as success."""
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        return


def discard(path: Optional[str | Path]) -> bool:
    """Best-effort removal: failures are logged and reported, never raised."""
    try:
        remove_if_exists(path)
    except OSError:
        logger.exception("file removal failed path=%s", path)
        return False
    return True
