"""Key-value persistence port for registry snapshots.

Registries write their whole state as one JSON blob per key after every
mutation. Two adapters are provided: an in-memory dict (tests, ephemeral
deployments) and a SQL table through SQLAlchemy's async engine.
"""

import copy
import logging
from typing import Protocol

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deploygate.models.schema import StateSnapshot

logger = logging.getLogger(__name__)


class PersistencePort(Protocol):
    async def load(self, key: str) -> dict | None: ...

    async def save(self, key: str, blob: dict) -> None: ...

    async def ping(self) -> bool: ...


class MemoryPersistence:
    def __init__(self, initial: dict[str, dict] | None = None):
        self._blobs: dict[str, dict] = copy.deepcopy(initial or {})

    async def load(self, key: str) -> dict | None:
        blob = self._blobs.get(key)
        return copy.deepcopy(blob) if blob is not None else None

    async def save(self, key: str, blob: dict) -> None:
        self._blobs[key] = copy.deepcopy(blob)

    async def ping(self) -> bool:
        return True

    def keys(self) -> list[str]:
        return list(self._blobs)


class SqlPersistence:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def load(self, key: str) -> dict | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(StateSnapshot).where(StateSnapshot.key == key)
            )
            row = result.scalar_one_or_none()
            return row.blob if row else None

    async def save(self, key: str, blob: dict) -> None:
        async with self._session_maker() as db:
            row = await db.get(StateSnapshot, key)
            if row is None:
                db.add(StateSnapshot(key=key, blob=blob))
            else:
                row.blob = blob
            await db.commit()

    async def ping(self) -> bool:
        try:
            async with self._session_maker() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Persistence ping failed", exc_info=True)
            return False


async def save_snapshot(port: PersistencePort, key: str, blob: dict) -> None:
    """Write a snapshot, logging instead of raising on failure."""
    try:
        await port.save(key, blob)
    except Exception:
        logger.exception("Failed to persist snapshot", extra={"state_key": key})
