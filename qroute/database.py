from pathlib import Path

import aiosqlite
import numpy as np


def serialize_embedding(embedding: np.ndarray | list[float] | None) -> bytes | None:
    if embedding is None:
        return None
    arr = embedding if isinstance(embedding, np.ndarray) else np.array(embedding)
    return arr.astype(np.float32).tobytes()


def deserialize_embedding(data: bytes | None) -> np.ndarray | None:
    if data is None:
        return None
    arr = np.frombuffer(data, dtype=np.float32).copy()
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


class Database:
    def __init__(self, db_path: Path, read_only: bool = False):
        self.db_path = db_path
        self.read_only = read_only
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self.read_only:
            self._conn = await aiosqlite.connect(f"file:{self.db_path}?mode=ro", uri=True)
        else:
            self._conn = await aiosqlite.connect(self.db_path)
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA busy_timeout=30000;")

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected")
        return self._conn
