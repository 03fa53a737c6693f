"""Config store service - durable key/value map backed by SQLite."""
import json
import logging
import os
from typing import Any, Iterable, Optional

from sqlalchemy import select, delete

from ..database import create_engine, create_session_factory, init_db, close_db
from ..models import ConfigEntry, DEFAULT_CONFIG
from ..utils.db_utils import retry_on_lock

logger = logging.getLogger(__name__)

_MISSING = object()


class ConfigStore:
    """Persistent key/value map surviving process restarts.

    Every ``set``/``delete`` is its own committed transaction, so a reader never
    observes a half-written logical update. ``set_exclusive`` writes one key and
    removes others in the same transaction (used for credential swaps).
    """

    def __init__(self, database_path: str, defaults: Optional[dict] = None):
        self.database_path = database_path
        self.defaults = dict(DEFAULT_CONFIG)
        if defaults:
            self.defaults.update(defaults)
        self._engine = create_engine(f"sqlite+aiosqlite:///{database_path}")
        self._session_factory = create_session_factory(self._engine)

    async def open(self):
        """Create the backing table (and directory) if needed."""
        await init_db(self._engine, self.database_path)

    async def close(self):
        await close_db(self._engine)

    async def get(self, key: str, default: Any = _MISSING) -> Any:
        """Get a value; falls back to the given default, then the built-in defaults."""
        async with self._session_factory() as session:
            result = await session.execute(select(ConfigEntry).where(ConfigEntry.key == key))
            entry = result.scalar_one_or_none()

        if entry is not None:
            return json.loads(entry.value)
        if default is not _MISSING:
            return default
        return self.defaults.get(key)

    async def has(self, key: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(ConfigEntry.key).where(ConfigEntry.key == key))
            return result.scalar_one_or_none() is not None

    async def set(self, key: str, value: Any):
        """Persist a single key (last writer wins)."""
        await retry_on_lock(lambda: self._write({key: value}, ()))
        logger.debug(f"Config set: {key}")

    async def set_many(self, values: dict):
        """Persist several independent keys in one transaction."""
        if values:
            await retry_on_lock(lambda: self._write(values, ()))

    async def delete(self, key: str):
        await retry_on_lock(lambda: self._write({}, (key,)))
        logger.debug(f"Config deleted: {key}")

    async def set_exclusive(self, key: str, value: Any, remove: Iterable[str]):
        """Set ``key`` and delete ``remove`` atomically."""
        remove = tuple(k for k in remove if k != key)
        await retry_on_lock(lambda: self._write({key: value}, remove))

    async def get_all(self) -> dict:
        """All values, defaults first and stored values on top."""
        async with self._session_factory() as session:
            result = await session.execute(select(ConfigEntry))
            entries = result.scalars().all()

        values = {k: v for k, v in self.defaults.items() if v is not None}
        for entry in entries:
            values[entry.key] = json.loads(entry.value)
        return values

    async def _write(self, values: dict, remove: Iterable[str]):
        async with self._session_factory() as session:
            async with session.begin():
                for key in remove:
                    await session.execute(delete(ConfigEntry).where(ConfigEntry.key == key))
                for key, value in values.items():
                    encoded = json.dumps(value, default=str)
                    entry = await session.get(ConfigEntry, key)
                    if entry is None:
                        session.add(ConfigEntry(key=key, value=encoded))
                    else:
                        entry.value = encoded


def default_store_path(data_path: str) -> str:
    return os.path.join(data_path, "agent-config.db")
