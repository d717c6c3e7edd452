"""Upload and delete: the only writes that touch both disk and database.

An upload writes, in order, the original image, an optional thumbnail, the
JSON sidecar and finally the database row. Each durable write registers a
compensating action; when a later step fails the actions run in reverse so no
database row ever points at files that are not there. Files without a row may
be left behind if a compensating action itself fails.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiosqlite

import multipart
from access import PERSONAL, authorize_delete, authorize_upload, validate_scope
from auth import TokenService, resolve_caller
from blocks import photo_urls
from config import Settings
from database import Database, PhotoRecord
from errors import (
    DbDeleteFailed,
    DbFailed,
    MetaWriteFailed,
    NoFile,
    NotFound,
    PayloadTooLarge,
    PhotoError,
    WriteFail,
)
from storage import (
    StorageLayout,
    discard,
    file_extension,
    read_json,
    remove_if_exists,
    sanitize_filename,
    write_bytes,
    write_json,
)
from thumbnails import Thumbnailer, generate_thumbnail

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_SCOPE = PERSONAL
FALLBACK_FILENAME = "file"


class Stage(enum.Enum):
    AUTHENTICATING = "authenticating"
    AUTHORIZING = "authorizing"
    DECODING = "decoding"
    WRITING_IMAGE = "writing_image"
    THUMBNAILING = "thumbnailing"
    WRITING_METADATA = "writing_metadata"
    WRITING_RECORD = "writing_record"
    ROLLING_BACK = "rolling_back"
    DONE = "done"


class Rollback:
    """Compensating actions, executed newest first."""

    def __init__(self, photo_id: str) -> None:
        self.photo_id = photo_id
        self._actions: List[Tuple[str, Callable[[], None]]] = []

    def push(self, label: str, action: Callable[[], None]) -> None:
        self._actions.append((label, action))

    def unwind(self) -> List[str]:
        """Run every action; returns the labels whose action failed."""
        failed: List[str] = []
        while self._actions:
            label, action = self._actions.pop()
            try:
                action()
            except Exception:
                logger.exception(
                    "rollback step failed photo_id=%s step=%s", self.photo_id, label
                )
                failed.append(label)
        return failed


@dataclass
class DecodedUpload:
    filename: str
    data: bytes


@dataclass
class UploadResult:
    id: str
    owner: str
    scope: str
    thumb_url: str
    full_url: str

    def payload(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "id": self.id,
            "thumbUrl": self.thumb_url,
            "fullUrl": self.full_url,
        }


def _json_upload(body: bytes) -> Optional[DecodedUpload]:
    """Decode ``{"filename": ..., "data": <base64>}``; None when it does not apply."""
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    filename = parsed.get("filename")
    encoded = parsed.get("data")
    if not isinstance(filename, str) or not isinstance(encoded, str):
        return None
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    return DecodedUpload(filename=filename, data=data) if data else None


def decode_upload(content_type: Optional[str], body: bytes) -> DecodedUpload:
    """Multipart first, then JSON with base64 data; NoFile if neither has bytes."""
    part = multipart.extract_file(content_type, body)
    if part is not None and part.data:
        return DecodedUpload(filename=part.filename, data=part.data)
    decoded = _json_upload(body)
    if decoded is not None:
        return decoded
    raise NoFile("request carried no file")


def _write_image(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_bytes(path, data)


def _remove_files(paths: List[Path]) -> List[str]:
    """Best-effort removal; returns the paths that could not be removed."""
    return [str(path) for path in dict.fromkeys(paths) if not discard(path)]


class IngestionPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        db: Database,
        layout: StorageLayout,
        tokens: TokenService,
        thumbnailer: Thumbnailer,
        tz: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.layout = layout
        self.tokens = tokens
        self.thumbnailer = thumbnailer
        self.clock = clock or (lambda: datetime.now(tz))

    async def ingest(
        self,
        *,
        authorization: Optional[str],
        scope: Optional[str],
        content_type: Optional[str],
        body: bytes,
        decoded: Optional[DecodedUpload] = None,
    ) -> UploadResult:
        """Authenticate, authorize, decode and persist one uploaded image.

        decoded carries a file the web framework already pulled out of a
        multipart body; body is only parsed when it is absent or empty.
        """
        stage = Stage.AUTHENTICATING
        try:
            caller = resolve_caller(self.tokens, authorization)
            stage = Stage.AUTHORIZING
            scope = validate_scope(scope or DEFAULT_UPLOAD_SCOPE)
            owner = authorize_upload(
                scope,
                caller,
                allow_anonymous_shared=self.settings.allow_anonymous_shared,
            )
            stage = Stage.DECODING
            size = max(len(body), len(decoded.data) if decoded else 0)
            if size > self.settings.max_upload_bytes:
                raise PayloadTooLarge(f"body of {size} bytes exceeds the limit")
            if decoded is not None and decoded.data:
                upload = decoded
            else:
                upload = decode_upload(content_type, body)
        except PhotoError as exc:
            logger.warning(
                "upload rejected stage=%s reason=%s", stage.value, exc.code
            )
            raise

        photo_id = str(uuid.uuid4())
        orig_name = sanitize_filename(upload.filename) or FALLBACK_FILENAME
        ext = file_extension(orig_name)
        created = self.clock()
        created_at = created.strftime("%Y-%m-%dT%H:%M:%S")
        date = created_at[:10]
        logger.info(
            "upload started owner=%s scope=%s photo_id=%s filename=%s bytes=%s",
            owner or "-",
            scope,
            photo_id,
            orig_name,
            len(upload.data),
        )

        rollback = Rollback(photo_id)
        stage = Stage.WRITING_IMAGE
        image_path = self.layout.image_path(photo_id, ext)
        try:
            await asyncio.to_thread(_write_image, image_path, upload.data)
        except OSError as exc:
            discard(image_path)
            self._abort(stage, rollback, exc)
            raise WriteFail(str(exc)) from exc
        rollback.push("image", lambda: remove_if_exists(image_path))

        stage = Stage.THUMBNAILING
        thumb_path: Optional[Path] = None
        thumb = await generate_thumbnail(
            self.thumbnailer,
            upload.data,
            self.settings.thumbnail_size,
            timeout=self.settings.thumbnail_timeout,
        )
        if thumb:
            candidate = self.layout.thumb_path(photo_id)
            try:
                await asyncio.to_thread(write_bytes, candidate, thumb)
            except OSError:
                logger.exception("thumbnail write failed photo_id=%s", photo_id)
                discard(candidate)
            else:
                thumb_path = candidate
                rollback.push("thumbnail", lambda: remove_if_exists(candidate))

        stage = Stage.WRITING_METADATA
        meta_path = self.layout.sidecar_path(scope, owner, date, photo_id)
        sidecar = {
            "id": photo_id,
            "img": self.layout.relative(image_path),
            "thumb": self.layout.relative(thumb_path),
            "orig_name": orig_name,
            "owner": owner,
            "scope": scope,
            "time": created_at[:16],
        }
        try:
            await asyncio.to_thread(write_json, meta_path, sidecar)
        except OSError as exc:
            discard(meta_path)
            self._abort(stage, rollback, exc)
            raise MetaWriteFailed(str(exc)) from exc
        rollback.push("sidecar", lambda: remove_if_exists(meta_path))

        stage = Stage.WRITING_RECORD
        record = PhotoRecord(
            id=photo_id,
            owner=owner,
            scope=scope,
            date=date,
            orig_filename=orig_name,
            storage_path=str(image_path),
            thumb_path=str(thumb_path) if thumb_path else None,
            meta_path=str(meta_path),
            created_at=created_at,
        )
        try:
            await self.db.insert_photo(record)
        except aiosqlite.Error as exc:
            self._abort(stage, rollback, exc)
            raise DbFailed(str(exc)) from exc

        thumb_url, full_url = photo_urls(photo_id)
        logger.info(
            "upload stage=%s owner=%s scope=%s photo_id=%s thumbnail=%s",
            Stage.DONE.value,
            owner or "-",
            scope,
            photo_id,
            thumb_path is not None,
        )
        return UploadResult(
            id=photo_id,
            owner=owner,
            scope=scope,
            thumb_url=thumb_url,
            full_url=full_url,
        )

    @staticmethod
    def _abort(stage: Stage, rollback: Rollback, exc: BaseException) -> None:
        """Log the failed stage, then undo every durable write made so far."""
        logger.error(
            "upload failed stage=%s photo_id=%s reason=%s",
            stage.value,
            rollback.photo_id,
            exc,
        )
        failed = rollback.unwind()
        logger.info(
            "upload stage=%s photo_id=%s leftover_steps=%s",
            Stage.ROLLING_BACK.value,
            rollback.photo_id,
            ",".join(failed) or "-",
        )

    def _sidecar_paths(self, meta_path: Optional[str]) -> List[Path]:
        """Image/thumbnail paths named by a sidecar, restricted to the storage root."""
        sidecar = read_json(meta_path)
        if not sidecar:
            return []
        root = self.layout.root.resolve()
        paths: List[Path] = []
        for key in ("img", "thumb"):
            rel = sidecar.get(key)
            if not isinstance(rel, str) or not rel:
                continue
            candidate = (self.layout.root / rel).resolve()
            if candidate.is_relative_to(root):
                paths.append(candidate)
        return paths

    async def delete(self, photo_id: str, *, authorization: Optional[str]) -> None:
        """Remove the row, then the image, thumbnail and sidecar it names."""
        caller = resolve_caller(self.tokens, authorization)
        record = await self.db.fetch_photo(photo_id)
        if record is None:
            raise NotFound(photo_id)
        authorize_delete(record.scope, record.owner, caller)
        files: List[Path] = await asyncio.to_thread(
            self._sidecar_paths, record.meta_path
        )
        try:
            deleted = await self.db.delete_photo(photo_id)
        except aiosqlite.Error as exc:
            logger.error("delete failed photo_id=%s reason=db_error %s", photo_id, exc)
            raise DbDeleteFailed(str(exc)) from exc
        if not deleted:
            raise NotFound(photo_id)
        for path in (record.storage_path, record.thumb_path, record.meta_path):
            if path:
                files.append(Path(path))
        leftovers = await asyncio.to_thread(_remove_files, files)
        logger.info(
            "delete completed owner=%s photo_id=%s leftovers=%s",
            caller.subject,
            photo_id,
            len(leftovers),
        )
