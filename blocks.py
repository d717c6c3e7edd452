from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from access import PERSONAL, validate_scope
from auth import Caller
from database import Database, PhotoRecord
from errors import AuthRequired

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_COUNT = 5
MAX_BLOCK_COUNT = 100


def photo_urls(photo_id: str, token: Optional[str] = None) -> Tuple[str, str]:
    """Return (thumbUrl, fullUrl), carrying token as ``?t=`` when given.

    Image tags cannot send an Authorization header, so personal listings embed
    the caller's token in the URL. Such URLs show up in access logs and
    referrers for as long as the token lives.
    """
    suffix = f"?{urlencode({'t': token})}" if token else ""
    return f"/thumbs/{photo_id}{suffix}", f"/images/{photo_id}{suffix}"


def photo_summary(record: PhotoRecord, token: Optional[str] = None) -> Dict[str, Any]:
    thumb_url, full_url = photo_urls(record.id, token)
    return {
        "id": record.id,
        "owner": record.owner,
        "scope": record.scope,
        "thumbUrl": thumb_url,
        "fullUrl": full_url,
        "origName": record.orig_filename,
        "createdAt": record.created_at,
    }


class BlockListBuilder:
    """Turns stored rows into date-grouped blocks for the gallery listing."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def build(
        self,
        scope: str,
        caller: Caller,
        *,
        start: int = 0,
        count: int = DEFAULT_BLOCK_COUNT,
    ) -> List[Dict[str, Any]]:
        validate_scope(scope)
        start = max(start, 0)
        count = min(max(count, 0), MAX_BLOCK_COUNT)
        token: Optional[str] = None
        owner = ""
        if scope == PERSONAL:
            if not caller.authenticated:
                raise AuthRequired("personal listing requires authentication")
            owner = caller.subject or ""
            token = caller.token
        blocks: List[Dict[str, Any]] = []
        for date in await self.db.list_dates(scope, owner, start, count):
            records = await self.db.list_photos_for_date(date, scope, owner)
            blocks.append(
                {
                    "date": date,
                    "photos": [photo_summary(record, token) for record in records],
                }
            )
        logger.info(
            "blocks listed scope=%s owner=%s start=%s count=%s blocks=%s",
            scope,
            owner or "-",
            start,
            count,
            len(blocks),
        )
        return blocks
