from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from auth import TokenService
from blocks import BlockListBuilder
from config import Settings
from database import Database
from ingest import IngestionPipeline
from storage import StorageLayout
from thumbnails import Thumbnailer, render_thumbnail

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Everything a request handler needs, built once at startup."""

    settings: Settings
    db: Database
    layout: StorageLayout
    tokens: TokenService
    pipeline: IngestionPipeline
    blocks: BlockListBuilder
    tz: Optional[tzinfo] = None

    async def startup(self) -> None:
        self.layout.ensure_base_dirs()
        await self.db.initialize()
        logger.info(
            "storage ready root=%s db=%s", self.layout.root, self.settings.db_path
        )


def _timezone(name: str) -> Optional[tzinfo]:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone=%s, falling back to local time", name)
        return None


def build_state(
    settings: Settings, thumbnailer: Thumbnailer = render_thumbnail
) -> AppState:
    db = Database(settings.db_path)
    layout = StorageLayout(settings.storage_root)
    tokens = TokenService(settings.secret)
    tz = _timezone(settings.timezone)
    pipeline = IngestionPipeline(
        settings=settings,
        db=db,
        layout=layout,
        tokens=tokens,
        thumbnailer=thumbnailer,
        tz=tz,
    )
    return AppState(
        settings=settings,
        db=db,
        layout=layout,
        tokens=tokens,
        pipeline=pipeline,
        blocks=BlockListBuilder(db),
        tz=tz,
    )
