from typing import Any, Dict, Optional
import logging

from robyn import Request, Response, Robyn

from config import configure_logging, load_settings
from handlers import ApiResponse, InboundRequest, PhotoApi
from ingest import DecodedUpload
from state import build_state

# Author: Daniel Neugent

app = Robyn(__file__)
logger = logging.getLogger(__name__)

# Built once; every route shares the same state object
settings = load_settings()
configure_logging(settings.log_level)
state = build_state(settings)
api = PhotoApi(state)

FORWARDED_HEADERS = ("authorization", "content-type", "cookie")
FORWARDED_QUERY = ("scope", "start", "count", "t")


async def _prepare_storage() -> None:
    """Create the storage tree and the sqlite schema before the first request."""
    await state.startup()


app.startup_handler(_prepare_storage)


def _as_bytes(raw_body: Any) -> bytes:
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _raw_body_bytes(request: Request) -> bytes:
    return _as_bytes(request.body)


def _native_file(request: Request) -> Optional[DecodedUpload]:
    """First non-empty file Robyn already parsed out of a multipart body."""
    files = getattr(request, "files", None) or {}
    for filename, content in files.items():
        data = _as_bytes(content)
        if data:
            return DecodedUpload(filename=str(filename or ""), data=data)
    return None


def _inbound(request: Request, *, with_body: bool = False) -> InboundRequest:
    headers: Dict[str, str] = {}
    for name in FORWARDED_HEADERS:
        value = request.headers.get(name)
        if value:
            headers[name] = value
    query: Dict[str, str] = {}
    for name in FORWARDED_QUERY:
        value = request.query_params.get(name, None)
        if value is not None:
            query[name] = str(value)
    body = _raw_body_bytes(request) if with_body else b""
    upload = _native_file(request) if with_body else None
    return InboundRequest(headers=headers, query=query, body=body, upload=upload)


def _photo_id(request: Request) -> str:
    return str(request.path_params.get("id", "")).strip()


def _to_response(reply: ApiResponse) -> Response:
    return Response(
        status_code=reply.status,
        headers=reply.headers,
        description=reply.body,
    )


@app.get("/health")
async def health(request: Request) -> Response:
    return _to_response(await api.health(_inbound(request)))


@app.post("/api/login")
async def login(request: Request) -> Response:
    return _to_response(await api.login(_inbound(request, with_body=True)))


@app.post("/api/upload")
async def upload(request: Request) -> Response:
    return _to_response(await api.upload(_inbound(request, with_body=True)))


@app.get("/api/blocks")
async def blocks(request: Request) -> Response:
    return _to_response(await api.blocks(_inbound(request)))


@app.get("/api/photo/:id")
async def photo(request: Request) -> Response:
    return _to_response(await api.photo(_photo_id(request), _inbound(request)))


@app.delete("/api/photo/:id")
async def delete_photo(request: Request) -> Response:
    return _to_response(await api.delete(_photo_id(request), _inbound(request)))


@app.get("/thumbs/:id")
async def thumbnail(request: Request) -> Response:
    return _to_response(await api.thumbnail(_photo_id(request), _inbound(request)))


@app.get("/images/:id")
async def image(request: Request) -> Response:
    return _to_response(await api.image(_photo_id(request), _inbound(request)))


if __name__ == "__main__":
    logger.info("starting server host=%s port=%s", settings.host, settings.port)
    app.start(host=settings.host, port=settings.port, _check_port=False)
