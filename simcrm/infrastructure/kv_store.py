"""
Fast expiring key-value store shared by all workers.

Rate buckets, circuit state, budgets, idempotency markers, segment metadata
and dead-letter entries live here rather than in process memory, because
workers are independent processes. Every operation is atomic on its own
(set-if-absent, increment, conditional decrement), which is what the
scheduling invariants rely on.

Two backends implement ``KeyValueStore``:

- ``InMemoryKeyValueStore``: a thread-safe single-process store for local runs
  and tests. Expiry is driven by an injectable clock.
- ``PostgresKeyValueStore``: one ``kv_store`` table (see ``db/init.sql``) with
  ``INSERT ... ON CONFLICT`` / ``UPDATE ... RETURNING`` for atomicity.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from psycopg_pool import ConnectionPool

from simcrm.infrastructure.db_factory import transient_retry
from simcrm.utils.clock import Clock, system_clock


@runtime_checkable
class KeyValueStore(Protocol):
    """Atomic primitives required by the scheduling engine. TTLs are in ms."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool: ...

    def delete(self, *keys: str) -> int: ...

    def incr(self, key: str, amount: int = 1, ttl_ms: Optional[int] = None) -> int: ...

    def decrement_if_positive(self, key: str) -> bool: ...

    def expire(self, key: str, ttl_ms: int) -> bool: ...

    def pttl(self, key: str) -> Optional[int]: ...

    def hset(self, key: str, mapping: Mapping[str, Any]) -> None: ...

    def hgetall(self, key: str) -> Dict[str, str]: ...

    def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    def zadd(self, key: str, member: str, score: float) -> None: ...

    def zrem(self, key: str, member: str) -> bool: ...

    def zremrangebyscore(self, key: str, max_score: float) -> int: ...

    def zcard(self, key: str) -> int: ...

    def zrange(self, key: str) -> List[Tuple[str, float]]: ...

    def sadd(self, key: str, member: str) -> bool: ...

    def sismember(self, key: str, member: str) -> bool: ...

    def lpush_trim(self, key: str, value: str, max_len: int) -> None: ...

    def lrange(self, key: str, count: int) -> List[str]: ...

    def scan(self, prefix: str) -> List[str]: ...


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[int] = None


class InMemoryKeyValueStore:
    """Thread-safe, process-local implementation of ``KeyValueStore``."""

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _deadline(self, ttl_ms: Optional[int]) -> Optional[int]:
        return self._clock() + ttl_ms if ttl_ms is not None else None

    def _container(self, key: str, factory: type) -> Any:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(factory())
            self._data[key] = entry
        return entry.value

    # strings / counters

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return None if entry is None else str(entry.value)

    def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = _Entry(str(value), self._deadline(ttl_ms))

    def set_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _Entry(str(value), self._deadline(ttl_ms))
            return True

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    def incr(self, key: str, amount: int = 1, ttl_ms: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry("0", self._deadline(ttl_ms))
                self._data[key] = entry
            new_value = int(entry.value) + amount
            entry.value = str(new_value)
            return new_value

    def decrement_if_positive(self, key: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or int(entry.value) <= 0:
                return False
            entry.value = str(int(entry.value) - 1)
            return True

    def expire(self, key: str, ttl_ms: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + ttl_ms
            return True

    def pttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self._clock()

    # hashes

    def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        with self._lock:
            target = self._container(key, dict)
            target.update({k: str(v) for k, v in mapping.items()})

    def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            entry = self._live(key)
            return dict(entry.value) if entry is not None else {}

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            target = self._container(key, dict)
            new_value = int(target.get(field, 0)) + amount
            target[field] = str(new_value)
            return new_value

    # sorted sets

    def zadd(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._container(key, dict)[member] = float(score)

    def zrem(self, key: str, member: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or member not in entry.value:
                return False
            del entry.value[member]
            return True

    def zremrangebyscore(self, key: str, max_score: float) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            stale = [m for m, s in entry.value.items() if s <= max_score]
            for member in stale:
                del entry.value[member]
            return len(stale)

    def zcard(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            return len(entry.value) if entry is not None else 0

    def zrange(self, key: str) -> List[Tuple[str, float]]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return []
            return sorted(entry.value.items(), key=lambda item: (item[1], item[0]))

    # sets

    def sadd(self, key: str, member: str) -> bool:
        with self._lock:
            target = self._container(key, set)
            if member in target:
                return False
            target.add(member)
            return True

    def sismember(self, key: str, member: str) -> bool:
        with self._lock:
            entry = self._live(key)
            return entry is not None and member in entry.value

    # bounded lists (newest first)

    def lpush_trim(self, key: str, value: str, max_len: int) -> None:
        with self._lock:
            target = self._container(key, list)
            target.insert(0, value)
            del target[max_len:]

    def lrange(self, key: str, count: int) -> List[str]:
        with self._lock:
            entry = self._live(key)
            return list(entry.value[:count]) if entry is not None else []

    def scan(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))


class PostgresKeyValueStore:
    """
    ``KeyValueStore`` backed by the ``kv_store`` table.

    Rows are keyed by (key, field): plain values use the empty field, hashes,
    sets and sorted sets use one row per field/member, and list items use a
    sequence-ordered field. Expired rows are treated as absent and purged lazily.
    """

    def __init__(self, pool: ConnectionPool, clock: Clock = system_clock) -> None:
        self._pool = pool
        self._clock = clock

    def _deadline(self, ttl_ms: Optional[int]) -> Optional[int]:
        return self._clock() + ttl_ms if ttl_ms is not None else None

    @transient_retry
    def _fetchall(self, sql: str, params: Mapping[str, Any]) -> List[tuple]:
        with self._pool.connection() as conn:
            cur = conn.execute(sql, {"now": self._clock(), **params})
            return cur.fetchall() if cur.description else []

    @transient_retry
    def _rowcount(self, sql: str, params: Mapping[str, Any]) -> int:
        with self._pool.connection() as conn:
            cur = conn.execute(sql, {"now": self._clock(), **params})
            return cur.rowcount

    def _upsert(self, key: str, fld: str, value: str, score: Optional[float], ttl_ms: Optional[int]) -> None:
        self._rowcount(
            """
            INSERT INTO kv_store (key, field, value, score, expires_at)
            VALUES (%(key)s, %(field)s, %(value)s, %(score)s, %(exp)s)
            ON CONFLICT (key, field) DO UPDATE
               SET value = EXCLUDED.value, score = EXCLUDED.score,
                   expires_at = CASE WHEN kv_store.expires_at IS NOT NULL
                                      AND kv_store.expires_at <= %(now)s
                                     THEN EXCLUDED.expires_at
                                     ELSE COALESCE(EXCLUDED.expires_at, kv_store.expires_at) END
            """,
            {"key": key, "field": fld, "value": value, "score": score, "exp": self._deadline(ttl_ms)},
        )

    def _insert_if_absent(self, key: str, fld: str, value: str, ttl_ms: Optional[int]) -> bool:
        rows = self._fetchall(
            """
            INSERT INTO kv_store (key, field, value, expires_at)
            VALUES (%(key)s, %(field)s, %(value)s, %(exp)s)
            ON CONFLICT (key, field) DO UPDATE
               SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
             WHERE kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= %(now)s
            RETURNING 1
            """,
            {"key": key, "field": fld, "value": value, "exp": self._deadline(ttl_ms)},
        )
        return bool(rows)

    def _increment(self, key: str, fld: str, amount: int, ttl_ms: Optional[int]) -> int:
        rows = self._fetchall(
            """
            INSERT INTO kv_store (key, field, value, expires_at)
            VALUES (%(key)s, %(field)s, %(amount)s::text, %(exp)s)
            ON CONFLICT (key, field) DO UPDATE
               SET value = (CASE WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= %(now)s
                                 THEN 0 ELSE kv_store.value::bigint END + %(amount)s)::text,
                   expires_at = CASE WHEN kv_store.expires_at IS NOT NULL AND kv_store.expires_at <= %(now)s
                                     THEN EXCLUDED.expires_at ELSE kv_store.expires_at END
            RETURNING value
            """,
            {"key": key, "field": fld, "amount": amount, "exp": self._deadline(ttl_ms)},
        )
        return int(rows[0][0])

    _LIVE = "(expires_at IS NULL OR expires_at > %(now)s)"

    def get(self, key: str) -> Optional[str]:
        rows = self._fetchall(
            f"SELECT value FROM kv_store WHERE key = %(key)s AND field = '' AND {self._LIVE}",
            {"key": key},
        )
        return rows[0][0] if rows else None

    def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        self._rowcount(
            """
            INSERT INTO kv_store (key, field, value, expires_at)
            VALUES (%(key)s, '', %(value)s, %(exp)s)
            ON CONFLICT (key, field) DO UPDATE
               SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
            """,
            {"key": key, "value": str(value), "exp": self._deadline(ttl_ms)},
        )

    def set_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        return self._insert_if_absent(key, "", str(value), ttl_ms)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        rows = self._fetchall(
            f"""
            WITH gone AS (DELETE FROM kv_store WHERE key = ANY(%(keys)s) RETURNING key, expires_at)
            SELECT DISTINCT key FROM gone WHERE {self._LIVE}
            """,
            {"keys": list(keys)},
        )
        return len(rows)

    def incr(self, key: str, amount: int = 1, ttl_ms: Optional[int] = None) -> int:
        return self._increment(key, "", amount, ttl_ms)

    def decrement_if_positive(self, key: str) -> bool:
        return bool(
            self._rowcount(
                f"""
                UPDATE kv_store SET value = (value::bigint - 1)::text
                 WHERE key = %(key)s AND field = '' AND value::bigint > 0 AND {self._LIVE}
                """,
                {"key": key},
            )
        )

    def expire(self, key: str, ttl_ms: int) -> bool:
        return bool(
            self._rowcount(
                f"UPDATE kv_store SET expires_at = %(exp)s WHERE key = %(key)s AND {self._LIVE}",
                {"key": key, "exp": self._deadline(ttl_ms)},
            )
        )

    def pttl(self, key: str) -> Optional[int]:
        rows = self._fetchall(
            f"SELECT max(expires_at) FROM kv_store WHERE key = %(key)s AND {self._LIVE}",
            {"key": key},
        )
        deadline = rows[0][0] if rows else None
        return None if deadline is None else int(deadline) - self._clock()

    def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        for fld, value in mapping.items():
            self._upsert(key, str(fld), str(value), None, None)

    def hgetall(self, key: str) -> Dict[str, str]:
        rows = self._fetchall(
            f"SELECT field, value FROM kv_store WHERE key = %(key)s AND field <> '' AND {self._LIVE}",
            {"key": key},
        )
        return {fld: value for fld, value in rows}

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return self._increment(key, field, amount, None)

    def zadd(self, key: str, member: str, score: float) -> None:
        self._upsert(key, member, "", float(score), None)

    def zrem(self, key: str, member: str) -> bool:
        return bool(
            self._rowcount(
                "DELETE FROM kv_store WHERE key = %(key)s AND field = %(member)s",
                {"key": key, "member": member},
            )
        )

    def zremrangebyscore(self, key: str, max_score: float) -> int:
        return self._rowcount(
            "DELETE FROM kv_store WHERE key = %(key)s AND score <= %(max)s",
            {"key": key, "max": float(max_score)},
        )

    def zcard(self, key: str) -> int:
        rows = self._fetchall(
            f"SELECT count(*) FROM kv_store WHERE key = %(key)s AND field <> '' AND {self._LIVE}",
            {"key": key},
        )
        return int(rows[0][0])

    def zrange(self, key: str) -> List[Tuple[str, float]]:
        rows = self._fetchall(
            f"""
            SELECT field, score FROM kv_store
             WHERE key = %(key)s AND field <> '' AND {self._LIVE}
             ORDER BY score, field
            """,
            {"key": key},
        )
        return [(member, float(score)) for member, score in rows]

    def sadd(self, key: str, member: str) -> bool:
        return self._insert_if_absent(key, member, "", None)

    def sismember(self, key: str, member: str) -> bool:
        rows = self._fetchall(
            f"SELECT 1 FROM kv_store WHERE key = %(key)s AND field = %(member)s AND {self._LIVE}",
            {"key": key, "member": member},
        )
        return bool(rows)

    def lpush_trim(self, key: str, value: str, max_len: int) -> None:
        self._rowcount(
            """
            WITH seq AS (SELECT nextval('kv_list_seq') AS n)
            INSERT INTO kv_store (key, field, value, score)
            SELECT %(key)s, lpad(n::text, 20, '0'), %(value)s, n FROM seq
            """,
            {"key": key, "value": value},
        )
        self._rowcount(
            """
            DELETE FROM kv_store WHERE key = %(key)s AND field IN (
                SELECT field FROM kv_store WHERE key = %(key)s ORDER BY score DESC OFFSET %(keep)s
            )
            """,
            {"key": key, "keep": max_len},
        )

    def lrange(self, key: str, count: int) -> List[str]:
        rows = self._fetchall(
            f"""
            SELECT value FROM kv_store WHERE key = %(key)s AND {self._LIVE}
             ORDER BY score DESC LIMIT %(count)s
            """,
            {"key": key, "count": count},
        )
        return [value for (value,) in rows]

    def scan(self, prefix: str) -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._fetchall(
            f"SELECT DISTINCT key FROM kv_store WHERE key LIKE %(pattern)s AND {self._LIVE} ORDER BY key",
            {"pattern": escaped + "%"},
        )
        return [key for (key,) in rows]

    def purge_expired(self) -> int:
        return self._rowcount(
            "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= %(now)s", {}
        )


__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "PostgresKeyValueStore"]
