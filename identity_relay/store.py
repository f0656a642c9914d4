"""SQLite persistence with one typed repository per entity.

The connection is shared by all repositories and guarded by a single
threading lock; async callers go through :meth:`SQLiteStore.call`, which runs
the repository method in a worker thread and turns driver errors into
:class:`~identity_relay.errors.PersistenceFailure`.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from .errors import PersistenceFailure
from .helpers import chunked, now_iso

LOG = logging.getLogger("identity-relay.store")

T = TypeVar("T")

# SQLite caps the number of bound parameters per statement.
_MAX_PARAMS = 500


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


# ── Records ───────────────────────────────────────────────────────────────────────────


@dataclass
class Identity:
    id: int
    token: str
    usage_count: int
    active: bool
    created_at: str

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "Identity":
        return cls(
            id=int(r["id"]),
            token=str(r["token"]),
            usage_count=int(r["usage_count"]),
            active=bool(r["active"]),
            created_at=str(r["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationMapping:
    owner_id: str
    conversation_id: str
    upstream_thread_id: Optional[str]
    last_used_at: str

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "ConversationMapping":
        return cls(
            owner_id=str(r["owner_id"]),
            conversation_id=str(r["conversation_id"]),
            upstream_thread_id=r["upstream_thread_id"],
            last_used_at=str(r["last_used_at"]),
        )


@dataclass
class ModelAlias:
    custom_name: str
    provider_name: str
    brand_name: str
    active: bool
    created_at: str

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "ModelAlias":
        return cls(
            custom_name=str(r["custom_name"]),
            provider_name=str(r["provider_name"]),
            brand_name=str(r["brand_name"] or ""),
            active=bool(r["active"]),
            created_at=str(r["created_at"]),
        )


@dataclass
class OwnerUsage:
    owner_id: str
    total_requests: int
    total_tokens: int
    last_used_at: Optional[str]
    models: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── SQLite Store ──────────────────────────────────────────────────────────────────────


class SQLiteStore:
    """Persistent storage for identities, conversations, aliases and usage.

    Uses WAL mode for better concurrent read performance and
    thread-safe access via a threading lock.
    """

    def __init__(self, db_path: str) -> None:
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(p, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.Lock()
        with self.lock:
            self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA synchronous = NORMAL")
            self.conn.execute("PRAGMA busy_timeout = 5000")
        self._init_schema()
        self.identities = IdentityRepository(self)
        self.conversations = ConversationRepository(self)
        self.aliases = ModelAliasRepository(self)
        self.settings = SettingsRepository(self)
        self.usage = UsageRepository(self)

    def _init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS identities (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    token       TEXT    NOT NULL UNIQUE,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    active      INTEGER NOT NULL DEFAULT 1,
                    created_at  TEXT    NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id           TEXT NOT NULL,
                    conversation_id    TEXT NOT NULL,
                    upstream_thread_id TEXT,
                    last_used_at       TEXT NOT NULL,
                    created_at         TEXT NOT NULL,
                    UNIQUE (owner_id, conversation_id)
                );

                CREATE TABLE IF NOT EXISTS model_aliases (
                    custom_name   TEXT PRIMARY KEY,
                    provider_name TEXT    NOT NULL,
                    brand_name    TEXT    NOT NULL DEFAULT '',
                    active        INTEGER NOT NULL DEFAULT 1,
                    created_at    TEXT    NOT NULL,
                    updated_at    TEXT    NOT NULL
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS owner_usage (
                    owner_id       TEXT PRIMARY KEY,
                    total_requests INTEGER NOT NULL DEFAULT 0,
                    total_tokens   INTEGER NOT NULL DEFAULT 0,
                    last_used_at   TEXT
                );

                CREATE TABLE IF NOT EXISTS owner_model_usage (
                    owner_id TEXT    NOT NULL,
                    model    TEXT    NOT NULL,
                    requests INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (owner_id, model)
                );

                CREATE INDEX IF NOT EXISTS idx_identities_pick
                    ON identities(active, usage_count);
                """
            )
            self.conn.commit()

    def close(self) -> None:
        """Close the database connection and run optimize."""
        with self.lock:
            try:
                self.conn.execute("PRAGMA optimize")
            except sqlite3.Error:
                LOG.debug("PRAGMA optimize failed", exc_info=True)
            self.conn.close()

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking repository method off the event loop."""
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"store error: {exc}") from exc


class _Repository:
    def __init__(self, store: SQLiteStore) -> None:
        self._conn = store.conn
        self._lock = store.lock


# ── Identities ────────────────────────────────────────────────────────────────────────


class IdentityRepository(_Repository):
    _INSERT = (
        "INSERT INTO identities(token, usage_count, active, created_at) "
        "VALUES(?, 0, 1, ?)"
    )

    def insert(self, token: str) -> Identity:
        with self._lock, self._conn:
            cur = self._conn.execute(self._INSERT, (token, now_iso()))
            row = self._conn.execute(
                "SELECT * FROM identities WHERE id=?", (cur.lastrowid,)
            ).fetchone()
        return Identity.from_row(row)

    def insert_many(self, tokens: Sequence[str]) -> list[Identity]:
        """Insert all tokens in one transaction; nothing is written on error."""
        if not tokens:
            return []
        now = now_iso()
        with self._lock, self._conn:
            self._conn.executemany(self._INSERT, [(t, now) for t in tokens])
            rows = self._conn.execute(
                f"SELECT * FROM identities WHERE token IN ({_placeholders(len(tokens))}) "
                "ORDER BY id",
                list(tokens),
            ).fetchall()
        return [Identity.from_row(r) for r in rows]

    def existing_tokens(self, tokens: Sequence[str]) -> set[str]:
        found: set[str] = set()
        with self._lock:
            for part in chunked(list(tokens), _MAX_PARAMS):
                rows = self._conn.execute(
                    f"SELECT token FROM identities WHERE token IN ({_placeholders(len(part))})",
                    list(part),
                ).fetchall()
                found.update(str(r["token"]) for r in rows)
        return found

    def get(self, identity_id: int) -> Optional[Identity]:
        with self._lock:
            r = self._conn.execute(
                "SELECT * FROM identities WHERE id=?", (identity_id,)
            ).fetchone()
        return Identity.from_row(r) if r else None

    def list_eligible(self, threshold: int, limit: Optional[int] = None) -> list[Identity]:
        """Active identities under ``threshold``, least used first."""
        sql = (
            "SELECT * FROM identities WHERE active=1 AND usage_count<? "
            "ORDER BY usage_count ASC, id ASC"
        )
        params: list[Any] = [threshold]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Identity.from_row(r) for r in rows]

    def count_eligible(self, threshold: int) -> int:
        with self._lock:
            r = self._conn.execute(
                "SELECT COUNT(*) AS c FROM identities WHERE active=1 AND usage_count<?",
                (threshold,),
            ).fetchone()
        return int(r["c"]) if r else 0

    def list_all(self, limit: Optional[int] = None) -> list[Identity]:
        sql = "SELECT * FROM identities ORDER BY created_at DESC, id DESC"
        params: list[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Identity.from_row(r) for r in rows]

    def list_retirable(self, threshold: int) -> list[Identity]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM identities WHERE active=0 OR usage_count>=? ORDER BY id",
                (threshold,),
            ).fetchall()
        return [Identity.from_row(r) for r in rows]

    def increment_usage(self, identity_id: int) -> Optional[int]:
        """Atomically add one use; returns the new count or None if missing."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE identities SET usage_count=usage_count+1 WHERE id=?",
                (identity_id,),
            )
            if cur.rowcount == 0:
                return None
            r = self._conn.execute(
                "SELECT usage_count FROM identities WHERE id=?", (identity_id,)
            ).fetchone()
        return int(r["usage_count"])

    def set_active(self, ids: Sequence[int], active: bool) -> int:
        if not ids:
            return 0
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"UPDATE identities SET active=? WHERE id IN ({_placeholders(len(ids))})",
                [int(active), *ids],
            )
        return cur.rowcount

    def reset(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE identities SET usage_count=0, active=1 "
                f"WHERE id IN ({_placeholders(len(ids))})",
                list(ids),
            )
        return cur.rowcount

    def reset_all(self) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("UPDATE identities SET usage_count=0, active=1")
        return cur.rowcount

    def delete(self, identity_id: int) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM identities WHERE id=?", (identity_id,)
            )
        return cur.rowcount > 0

    def delete_many(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"DELETE FROM identities WHERE id IN ({_placeholders(len(ids))})",
                list(ids),
            )
        return cur.rowcount

    def stats(self, threshold: int, near_limit_margin: int = 5) -> dict[str, int]:
        with self._lock:
            r = self._conn.execute(
                """SELECT
                       COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN active=1 AND usage_count<? THEN 1 ELSE 0 END), 0)
                           AS available,
                       COALESCE(SUM(CASE WHEN usage_count>=? AND usage_count<? THEN 1 ELSE 0 END), 0)
                           AS near_limit,
                       COALESCE(SUM(CASE WHEN active=0 THEN 1 ELSE 0 END), 0) AS inactive
                   FROM identities""",
                (threshold, max(0, threshold - near_limit_margin), threshold),
            ).fetchone()
        return {
            "total": int(r["total"]),
            "available": int(r["available"]),
            "near_limit": int(r["near_limit"]),
            "inactive": int(r["inactive"]),
        }


# ── Conversations ─────────────────────────────────────────────────────────────────────


class ConversationRepository(_Repository):
    _ENSURE = (
        "INSERT OR IGNORE INTO conversations("
        "owner_id, conversation_id, upstream_thread_id, last_used_at, created_at"
        ") VALUES(?, ?, NULL, ?, ?)"
    )

    def get(self, owner_id: str, conversation_id: str) -> Optional[ConversationMapping]:
        with self._lock:
            r = self._conn.execute(
                "SELECT * FROM conversations WHERE owner_id=? AND conversation_id=?",
                (owner_id, conversation_id),
            ).fetchone()
        return ConversationMapping.from_row(r) if r else None

    def get_or_create(
        self, owner_id: str, conversation_id: str
    ) -> tuple[ConversationMapping, bool]:
        """Return the mapping, creating it if needed, and refresh last use."""
        now = now_iso()
        with self._lock, self._conn:
            cur = self._conn.execute(self._ENSURE, (owner_id, conversation_id, now, now))
            created = cur.rowcount > 0
            if not created:
                self._conn.execute(
                    "UPDATE conversations SET last_used_at=? "
                    "WHERE owner_id=? AND conversation_id=?",
                    (now, owner_id, conversation_id),
                )
            r = self._conn.execute(
                "SELECT * FROM conversations WHERE owner_id=? AND conversation_id=?",
                (owner_id, conversation_id),
            ).fetchone()
        return ConversationMapping.from_row(r), created

    def bind_thread(self, owner_id: str, conversation_id: str, thread_id: str) -> bool:
        """Set the upstream thread id unless one is already stored."""
        now = now_iso()
        with self._lock, self._conn:
            self._conn.execute(self._ENSURE, (owner_id, conversation_id, now, now))
            cur = self._conn.execute(
                "UPDATE conversations SET upstream_thread_id=?, last_used_at=? "
                "WHERE owner_id=? AND conversation_id=? AND upstream_thread_id IS NULL",
                (thread_id, now, owner_id, conversation_id),
            )
        return cur.rowcount > 0

    def delete_all(self, owner_id: Optional[str] = None) -> int:
        with self._lock, self._conn:
            if owner_id is None:
                cur = self._conn.execute("DELETE FROM conversations")
            else:
                cur = self._conn.execute(
                    "DELETE FROM conversations WHERE owner_id=?", (owner_id,)
                )
        return cur.rowcount

    def count(self, owner_id: Optional[str] = None) -> int:
        with self._lock:
            if owner_id is None:
                r = self._conn.execute("SELECT COUNT(*) AS c FROM conversations").fetchone()
            else:
                r = self._conn.execute(
                    "SELECT COUNT(*) AS c FROM conversations WHERE owner_id=?",
                    (owner_id,),
                ).fetchone()
        return int(r["c"]) if r else 0


# ── Model aliases ─────────────────────────────────────────────────────────────────────


class ModelAliasRepository(_Repository):
    def get(self, custom_name: str) -> Optional[ModelAlias]:
        with self._lock:
            r = self._conn.execute(
                "SELECT * FROM model_aliases WHERE custom_name=?", (custom_name,)
            ).fetchone()
        return ModelAlias.from_row(r) if r else None

    def list(self, include_inactive: bool = False) -> list[ModelAlias]:
        sql = "SELECT * FROM model_aliases"
        if not include_inactive:
            sql += " WHERE active=1"
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY custom_name").fetchall()
        return [ModelAlias.from_row(r) for r in rows]

    def upsert(
        self,
        custom_name: str,
        provider_name: str,
        brand_name: str = "",
        active: bool = True,
    ) -> ModelAlias:
        now = now_iso()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO model_aliases("
                "custom_name, provider_name, brand_name, active, created_at, updated_at"
                ") VALUES(?,?,?,?,?,?) "
                "ON CONFLICT(custom_name) DO UPDATE SET "
                "provider_name=excluded.provider_name, brand_name=excluded.brand_name, "
                "active=excluded.active, updated_at=excluded.updated_at",
                (custom_name, provider_name, brand_name, int(active), now, now),
            )
            r = self._conn.execute(
                "SELECT * FROM model_aliases WHERE custom_name=?", (custom_name,)
            ).fetchone()
        return ModelAlias.from_row(r)


# ── Settings ──────────────────────────────────────────────────────────────────────────


class SettingsRepository(_Repository):
    def set(self, key: str, value: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO settings(key,value,updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE "
                "SET value=excluded.value, updated_at=excluded.updated_at",
                (key, value, now_iso()),
            )

    def get_many(self, keys: Sequence[str]) -> dict[str, Optional[str]]:
        out: dict[str, Optional[str]] = {k: None for k in keys}
        if not keys:
            return out
        with self._lock:
            rows = self._conn.execute(
                f"SELECT key, value FROM settings WHERE key IN ({_placeholders(len(keys))})",
                list(keys),
            ).fetchall()
        for r in rows:
            out[str(r["key"])] = str(r["value"])
        return out


# ── Usage analytics ───────────────────────────────────────────────────────────────────


class UsageRepository(_Repository):
    def record(self, owner_id: str, model: str, tokens: int) -> None:
        now = now_iso()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO owner_usage(owner_id,total_requests,total_tokens,last_used_at) "
                "VALUES(?,1,?,?) "
                "ON CONFLICT(owner_id) DO UPDATE SET "
                "total_requests=total_requests+1, "
                "total_tokens=total_tokens+excluded.total_tokens, "
                "last_used_at=excluded.last_used_at",
                (owner_id, max(0, int(tokens)), now),
            )
            self._conn.execute(
                "INSERT INTO owner_model_usage(owner_id,model,requests) VALUES(?,?,1) "
                "ON CONFLICT(owner_id, model) DO UPDATE SET requests=requests+1",
                (owner_id, model),
            )

    def _models(self, owner_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT model, requests FROM owner_model_usage WHERE owner_id=? "
            "ORDER BY requests DESC, model",
            (owner_id,),
        ).fetchall()
        return {str(r["model"]): int(r["requests"]) for r in rows}

    def get(self, owner_id: str) -> Optional[OwnerUsage]:
        with self._lock:
            r = self._conn.execute(
                "SELECT * FROM owner_usage WHERE owner_id=?", (owner_id,)
            ).fetchone()
            if not r:
                return None
            models = self._models(owner_id)
        return OwnerUsage(
            owner_id=owner_id,
            total_requests=int(r["total_requests"]),
            total_tokens=int(r["total_tokens"]),
            last_used_at=r["last_used_at"],
            models=models,
        )

    def list(self) -> list[OwnerUsage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM owner_usage ORDER BY total_requests DESC, owner_id"
            ).fetchall()
            out = [
                OwnerUsage(
                    owner_id=str(r["owner_id"]),
                    total_requests=int(r["total_requests"]),
                    total_tokens=int(r["total_tokens"]),
                    last_used_at=r["last_used_at"],
                    models=self._models(str(r["owner_id"])),
                )
                for r in rows
            ]
        return out
