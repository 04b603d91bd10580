"""Durable key-value storage for small JSON documents."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import KeyValueEntry

logger = logging.getLogger("blackbox.storage")


class KeyValueStore:
    """JSON values keyed by string, kept in the ``kv_entries`` table.

    Write errors propagate to the caller. Reading a value that is no longer
    valid JSON is logged and reported as missing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        async with self._session_factory() as db:
            await db.merge(KeyValueEntry(key=key, value=payload))
            await db.commit()

    async def get(self, key: str) -> Any:
        async with self._session_factory() as db:
            entry = await db.get(KeyValueEntry, key)
        if entry is None:
            return None
        try:
            return json.loads(entry.value)
        except ValueError:
            logger.error("Stored value for key=%s is not valid JSON", key)
            return None

    async def remove(self, key: str) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await db.commit()
