"""Endpoint logic, independent of the web framework that delivers requests.

Each public coroutine on PhotoApi takes an InboundRequest and returns an
ApiResponse. Every failure becomes a ``{"error": code}`` JSON body.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from access import SHARED, authorize_read
from auth import (
    Caller,
    TokenService,
    resolve_caller,
    resolve_media_caller,
    verify_password,
)
from blocks import DEFAULT_BLOCK_COUNT, photo_urls
from database import PhotoRecord
from ingest import DecodedUpload
from errors import (
    AuthRequired,
    BadRequest,
    Forbidden,
    InternalError,
    InvalidCredentials,
    MissingCredentials,
    NotFound,
    PhotoError,
)
from state import AppState
from storage import guess_mime, read_bytes, read_json

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
IMAGE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: blob:;",
}


@dataclass
class InboundRequest:
    """The parts of an HTTP request the endpoints look at.

    Header names are stored lower-cased. upload holds a file part the web
    framework already split out of a multipart body, if any.
    """

    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    upload: Optional[DecodedUpload] = None

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class ApiResponse:
    status: int
    body: Union[bytes, str]
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, payload: Any, *, status: int = 200) -> "ApiResponse":
        return cls(
            status=status,
            body=json.dumps(payload),
            headers={"content-type": JSON_CONTENT_TYPE},
        )


Handler = Callable[..., Awaitable[ApiResponse]]


def json_errors(handler: Handler) -> Handler:
    """Turn PhotoError into its JSON body; anything else becomes a bare 500."""

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> ApiResponse:
        try:
            return await handler(*args, **kwargs)
        except PhotoError as exc:
            return ApiResponse.json(exc.payload(), status=exc.status)
        except Exception:
            logger.exception("request failed handler=%s", handler.__name__)
            return ApiResponse.json(InternalError().payload(), status=500)

    return wrapper


def _int_param(query: Dict[str, str], name: str, default: int) -> int:
    raw = query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"{name} must be an integer") from None


class PhotoApi:
    def __init__(self, state: AppState) -> None:
        self.state = state

    @property
    def tokens(self) -> TokenService:
        return self.state.tokens

    async def _record(self, photo_id: str) -> PhotoRecord:
        record = await self.state.db.fetch_photo(photo_id)
        if record is None:
            raise NotFound(photo_id)
        return record

    @staticmethod
    def _authorize_read(record: PhotoRecord, caller: Caller) -> None:
        # Absent and wrong callers look the same to a reader.
        try:
            authorize_read(record.scope, record.owner, caller)
        except (AuthRequired, Forbidden) as exc:
            logger.info(
                "read rejected photo_id=%s caller=%s reason=%s",
                record.id,
                caller.subject or "-",
                exc.code,
            )
            raise Forbidden(exc.detail) from None

    def _media_caller(self, request: InboundRequest) -> Caller:
        return resolve_media_caller(
            self.tokens,
            authorization=request.header("authorization"),
            query_token=request.query.get("t"),
            cookie_header=request.header("cookie"),
            allow_query_token=self.state.settings.allow_query_token,
        )

    @json_errors
    async def health(self, request: InboundRequest) -> ApiResponse:
        return ApiResponse.json({"status": "ok"})

    @json_errors
    async def login(self, request: InboundRequest) -> ApiResponse:
        try:
            payload = json.loads(request.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise BadRequest("login body is not JSON") from None
        if not isinstance(payload, dict):
            raise BadRequest("login body must be an object")
        username = payload.get("username") or ""
        password = payload.get("password") or ""
        if not isinstance(username, str) or not isinstance(password, str):
            raise BadRequest("username and password must be strings")
        if not username or not password:
            raise MissingCredentials()
        credential = await self.state.db.fetch_credential(username)
        if credential is None or not await asyncio.to_thread(
            verify_password, password, credential.pass_hash
        ):
            logger.warning("login rejected username=%s", username)
            raise InvalidCredentials()
        ttl = self.state.settings.token_ttl
        token = self.tokens.issue(username, ttl_seconds=ttl)
        logger.info("login succeeded username=%s", username)
        return ApiResponse.json({"token": token, "expiresIn": ttl})

    @json_errors
    async def upload(self, request: InboundRequest) -> ApiResponse:
        result = await self.state.pipeline.ingest(
            authorization=request.header("authorization"),
            scope=request.query.get("scope"),
            content_type=request.header("content-type"),
            body=request.body,
            decoded=request.upload,
        )
        return ApiResponse.json(result.payload())

    @json_errors
    async def blocks(self, request: InboundRequest) -> ApiResponse:
        scope = request.query.get("scope") or SHARED
        start = _int_param(request.query, "start", 0)
        count = _int_param(request.query, "count", DEFAULT_BLOCK_COUNT)
        # Listings accept the header or ?t=, not cookies.
        caller = resolve_media_caller(
            self.tokens,
            authorization=request.header("authorization"),
            query_token=request.query.get("t"),
            cookie_header=None,
            allow_query_token=self.state.settings.allow_query_token,
        )
        blocks = await self.state.blocks.build(
            scope, caller, start=start, count=count
        )
        return ApiResponse.json(blocks)

    def _modified_minute(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        try:
            mtime = os.stat(path).st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, self.state.tz).strftime("%Y-%m-%dT%H:%M")

    @json_errors
    async def photo(self, photo_id: str, request: InboundRequest) -> ApiResponse:
        record = await self._record(photo_id)
        caller = resolve_caller(self.tokens, request.header("authorization"))
        self._authorize_read(record, caller)
        thumb_url, full_url = photo_urls(record.id)
        out: Dict[str, Any] = {
            "id": record.id,
            "fullUrl": full_url,
            "thumbUrl": thumb_url,
            "owner": record.owner,
            "scope": record.scope,
        }
        sidecar = await asyncio.to_thread(read_json, record.meta_path) or {}
        if "time" in sidecar:
            out["time"] = sidecar["time"]
        if "orig_name" in sidecar:
            out["origName"] = sidecar["orig_name"]
        if "time" not in out:
            modified = await asyncio.to_thread(
                self._modified_minute, record.storage_path
            )
            if modified:
                out["time"] = modified
        return ApiResponse.json(out)

    @json_errors
    async def delete(self, photo_id: str, request: InboundRequest) -> ApiResponse:
        await self.state.pipeline.delete(
            photo_id, authorization=request.header("authorization")
        )
        return ApiResponse.json({"status": "ok"})

    async def _serve_file(
        self,
        photo_id: str,
        request: InboundRequest,
        *,
        prefer_thumbnail: bool,
    ) -> ApiResponse:
        record = await self._record(photo_id)
        self._authorize_read(record, self._media_caller(request))
        candidates = [record.storage_path, record.thumb_path]
        if prefer_thumbnail:
            candidates.reverse()
        for path in candidates:
            if not path:
                continue
            data = await asyncio.to_thread(read_bytes, path)
            if data is None:
                continue
            if not data:
                raise InternalError(f"empty file for photo {photo_id}")
            headers = {"content-type": guess_mime(path)}
            if not prefer_thumbnail:
                headers.update(IMAGE_HEADERS)
            return ApiResponse(status=200, body=data, headers=headers)
        raise NotFound(photo_id)

    @json_errors
    async def thumbnail(self, photo_id: str, request: InboundRequest) -> ApiResponse:
        """Thumbnail bytes, or the original when no thumbnail was made."""
        return await self._serve_file(photo_id, request, prefer_thumbnail=True)

    @json_errors
    async def image(self, photo_id: str, request: InboundRequest) -> ApiResponse:
        return await self._serve_file(photo_id, request, prefer_thumbnail=False)
