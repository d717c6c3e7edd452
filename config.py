from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOCALPHOTOS_"
DEFAULT_STORAGE_ROOT = Path("/var/lib/localphotos")

# Keys accepted in the JSON config file, mapped to Settings attributes.
_FILE_KEYS = {
    "server_host": "host",
    "server_port": "port",
    "storage_root": "storage_root",
    "db_path": "db_path",
    "jwt_secret": "secret",
    "timezone": "timezone",
    "max_upload_mb": "max_upload_mb",
    "thumbnail_size": "thumbnail_size",
    "thumbnail_timeout": "thumbnail_timeout",
    "token_ttl": "token_ttl",
    "allow_anonymous_shared": "allow_anonymous_shared",
    "allow_query_token": "allow_query_token",
    "log_level": "log_level",
}


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    storage_root: Path = DEFAULT_STORAGE_ROOT
    db_path: Optional[Path] = None
    secret: str = ""
    timezone: str = ""
    max_upload_mb: int = 20
    thumbnail_size: int = 300
    thumbnail_timeout: float = 5.0
    token_ttl: int = 3600
    allow_anonymous_shared: bool = False
    allow_query_token: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.storage_root = Path(self.storage_root)
        if self.db_path is None:
            self.db_path = self.storage_root / "metadata.db"
        else:
            self.db_path = Path(self.db_path)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw file/env value into the type declared on Settings."""
    kinds = {f.name: f.type for f in fields(Settings)}
    kind = kinds.get(name, "str")
    if kind == "bool":
        return _parse_bool(raw)
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind in {"Path", "Optional[Path]"}:
        return Path(str(raw))
    return str(raw)


def _read_config_file(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    if not isinstance(raw, dict):
        raise ValueError(f"config file {path} must contain a JSON object")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        target = _FILE_KEYS.get(key)
        if target is None:
            logger.warning("ignoring unknown config key=%s file=%s", key, path)
            continue
        values[target] = _coerce(target, value)
    return values


def _read_environment() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for target in set(_FILE_KEYS.values()):
        raw = os.getenv(ENV_PREFIX + target.upper())
        if raw is not None and raw != "":
            values[target] = _coerce(target, raw)
    return values


def load_settings(config_path: Optional[Path | str] = None) -> Settings:
    """Build settings from .env, an optional JSON file and LOCALPHOTOS_* variables.

    Environment variables win over the file so deployments can override a
    checked-in config without editing it.
    """
    load_dotenv()
    values: Dict[str, Any] = {}
    path = config_path or os.getenv(ENV_PREFIX + "CONFIG")
    if path:
        values.update(_read_config_file(Path(path)))
    values.update(_read_environment())
    settings = Settings(**values)
    if not settings.secret:
        settings.secret = secrets.token_urlsafe(32)
        logger.warning(
            "Using a randomly generated signing secret. Tokens will break when the process restarts. Set %sSECRET to a fixed value.",
            ENV_PREFIX,
        )
    return settings


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the application loggers."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s: %(name)s: %(message)s")
    )
    root.addHandler(handler)
    root.setLevel(level.upper())
