import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


class TTLStore:
    """Expiring key/value blobs with a per-key version for compare-and-swap writes.

    Expired rows are invisible to every read and are physically removed by
    purge_expired(). A key that is absent or expired has version 0.
    """

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock

    async def _fetch_live(self, db: aiosqlite.Connection, key: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute(
            "SELECT value_json, version, expires_at FROM kv_entries "
            "WHERE key=? AND (expires_at IS NULL OR expires_at > ?)",
            (key, self.clock()),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def get_versioned(self, key: str) -> Optional[Tuple[Any, int]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_live(db, key)
        if not row:
            return None
        return _json_loads(row["value_json"], None), int(row["version"] or 0)

    async def get(self, key: str) -> Any:
        found = await self.get_versioned(key)
        return found[0] if found else None

    async def exists(self, key: str) -> bool:
        return await self.get_versioned(key) is not None

    async def ttl(self, key: str) -> Optional[float]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch_live(db, key)
        if not row or row["expires_at"] is None:
            return None
        return float(row["expires_at"]) - self.clock()

    async def _write(self, key: str, value: Any, ttl_s: Optional[float], expected_version: Optional[int]) -> Optional[int]:
        expires_at = self.clock() + ttl_s if ttl_s else None
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            row = await self._fetch_live(db, key)
            current = int(row["version"] or 0) if row else 0
            if expected_version is not None and current != expected_version:
                await db.execute("ROLLBACK")
                return None
            new_version = current + 1
            await db.execute(
                "INSERT OR REPLACE INTO kv_entries(key, value_json, version, expires_at, updated_at) "
                "VALUES (?,?,?,?,?)",
                (key, _json_dumps(value), new_version, expires_at, utc_now()),
            )
            await db.commit()
        return new_version

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> int:
        version = await self._write(key, value, ttl_s, expected_version=None)
        return int(version or 0)

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        ttl_s: Optional[float] = None,
    ) -> Optional[int]:
        """Write only if the live version still equals expected_version.

        Returns the new version, or None when another writer got there first.
        """
        return await self._write(key, value, ttl_s, expected_version=expected_version)

    async def delete(self, key: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM kv_entries WHERE key=?", (key,))
            deleted = cursor.rowcount
            await cursor.close()
            await db.commit()
        return bool(deleted)

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        placeholders = ",".join("?" for _ in keys)
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(f"DELETE FROM kv_entries WHERE key IN ({placeholders})", tuple(keys))
            deleted = cursor.rowcount
            await cursor.close()
            await db.commit()
        return int(deleted or 0)

    async def keys(self, prefix: str = "") -> List[str]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT key FROM kv_entries WHERE substr(key, 1, ?)=? AND (expires_at IS NULL OR expires_at > ?) "
                "ORDER BY key ASC",
                (len(prefix), prefix, self.clock()),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row["key"] for row in rows]

    async def purge_expired(self) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self.clock(),),
            )
            purged = cursor.rowcount
            await cursor.close()
            await db.commit()
        return int(purged or 0)
