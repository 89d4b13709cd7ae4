from __future__ import annotations

import asyncio
import logging
from typing import Any

from unified_gateway.errors import ConfigError
from unified_gateway.utils.persistence import FileStore

logger = logging.getLogger("uvicorn.error")


class ChatHistoryStore:
    """Opaque storage for the chat list a client UI keeps between sessions."""

    def __init__(self, store: FileStore):
        self.store = store

    async def read(self) -> list[Any]:
        return await asyncio.to_thread(self._read_sync)

    async def write(self, chats: Any) -> None:
        await asyncio.to_thread(self.store.write, chats)

    def _read_sync(self) -> list[Any]:
        try:
            payload = self.store.load(default=[])
        except ConfigError as exc:
            logger.warning("history_load_failed path=%s error=%s", self.store.path, exc)
            return []
        return payload if isinstance(payload, list) else []
