from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import io
import json
import os
from pathlib import Path
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.request

from PIL import Image
import pytest

from config import Settings
from state import AppState, build_state

SECRET = "test-secret"


def make_png(size: tuple[int, int] = (64, 48), color: str = "orange") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def multipart_body(
    filename: str,
    data: bytes,
    *,
    boundary: str = "----localphotos-boundary",
    field: str = "file",
) -> tuple[str, bytes]:
    """Return (content type, body) for a single-file form upload."""
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode("utf-8") + data + f"\r\n--{boundary}--\r\n".encode("utf-8")
    return f"multipart/form-data; boundary={boundary}", body


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_root=tmp_path / "storage",
        secret=SECRET,
        thumbnail_size=32,
        thumbnail_timeout=5.0,
    )


@pytest.fixture
def app_state(settings) -> AppState:
    return build_state(settings)


@dataclass
class TestResponse:
    status: int
    headers: Message
    body: bytes

    def json(self):
        return json.loads(self.body.decode("utf-8"))


class TestClient:
    __test__ = False
    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.opener = urllib.request.build_opener()

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        req_headers = headers.copy() if headers else {}
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = self.opener.open(request, timeout=5)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read()
        return TestResponse(status=response.code, headers=response.headers, body=content)


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path
    storage_root: Path


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 10
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/health", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    pytest.importorskip("robyn")
    repo_root = Path(__file__).resolve().parents[1]
    storage_root = tmp_path_factory.mktemp("storage")
    db_path = storage_root / "metadata.db"
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    env.update(
        {
            "LOCALPHOTOS_HOST": "127.0.0.1",
            "LOCALPHOTOS_PORT": str(port),
            "LOCALPHOTOS_STORAGE_ROOT": str(storage_root),
            "LOCALPHOTOS_DB_PATH": str(db_path),
            "LOCALPHOTOS_SECRET": SECRET,
            "LOCALPHOTOS_LOG_LEVEL": "ERROR",
        }
    )
    proc = subprocess.Popen(
        [sys.executable, "app.py"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_server(f"http://127.0.0.1:{port}", proc)
        yield ServerInfo(
            base_url=f"http://127.0.0.1:{port}",
            db_path=db_path,
            storage_root=storage_root,
        )
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()
