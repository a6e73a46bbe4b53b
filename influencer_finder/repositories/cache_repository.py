from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from influencer_finder.repositories.database import Database
from influencer_finder.services.result_cache import CacheEntry, build_entry


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SqliteCacheStore:
    """`CacheStore` persisted in SQLite so cached searches survive restarts."""

    def __init__(self, db: Database, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._db = db
        self._clock = clock

    def get(self, key: str) -> CacheEntry | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT cache_key, payload_text, created_at, expires_at
                FROM cache_entries
                WHERE cache_key = ?
                """,
                (key,),
            ).fetchone()

        if row is None:
            return None

        created_at = _parse_timestamp(row["created_at"])
        expires_at = _parse_timestamp(row["expires_at"])
        if created_at is None or expires_at is None:
            self.delete(key)
            return None

        entry = CacheEntry(
            key=str(row["cache_key"]),
            payload=str(row["payload_text"]),
            created_at=created_at,
            expires_at=expires_at,
        )
        if entry.is_expired(self._clock()):
            self.delete(key)
            return None
        return entry

    def set(self, key: str, payload: str, *, ttl_seconds: int) -> CacheEntry:
        entry = build_entry(key, payload, ttl_seconds=ttl_seconds, now=self._clock())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO cache_entries (cache_key, payload_text, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    payload_text = excluded.payload_text,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (
                    entry.key,
                    entry.payload,
                    entry.created_at.isoformat(),
                    entry.expires_at.isoformat(),
                ),
            )
        return entry

    def delete(self, key: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
            return cursor.rowcount > 0

    def delete_prefix(self, prefix: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE substr(cache_key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            return cursor.rowcount

    def count(self, prefix: str = "") -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total
                FROM cache_entries
                WHERE substr(cache_key, 1, ?) = ? AND expires_at > ?
                """,
                (len(prefix), prefix, self._clock().isoformat()),
            ).fetchone()
        return int(row["total"]) if row is not None else 0

    def purge_expired(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?",
                (self._clock().isoformat(),),
            )
            return cursor.rowcount


def _parse_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw_value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
