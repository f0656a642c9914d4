"""Identity generation and the rotating identity pool.

An identity is a synthetic ``browserId`` session token. The upstream counts
requests per token, so the pool hands out the least-used tokens, retires them
at ``retire_threshold`` uses and tops itself up whenever the number of
eligible tokens drops under ``min_pool_size``.

Replenishment is not serialized: concurrent triggers that all observe a low
pool each generate a full batch. Over-generation is harmless (extra tokens are
simply used later) and avoids a cross-request lock.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import secrets
import sqlite3
import string
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Sequence

import httpx

from .background import BackgroundExecutor
from .errors import InvalidRequest, PersistenceFailure
from .helpers import chunked, mask_secret
from .settings import POOL_SETTING_KEYS, PoolConfig, resolve_pool_config
from .store import Identity, IdentityRepository, SQLiteStore
from .upstream import UpstreamClient

LOG = logging.getLogger("identity-relay.identities")

TOKEN_PREFIX = "BRWS-"
TOKEN_ALPHABET = string.digits + string.ascii_lowercase
TOKEN_MIN_LENGTH = 30
TOKEN_MAX_LENGTH = 35
TOKEN_PATTERN = re.compile(r"^BRWS-[0-9a-z]{30,35}$")

STORE_BATCH_SIZE = 10
CLEANUP_BATCH_SIZE = 20
SELECTION_WINDOW = 5
NEAR_LIMIT_MARGIN = 5
ACCEPTED_PROBE_STATUSES = frozenset({200, 400, 429})
BULK_ACTIONS = ("enable", "disable", "delete", "reset")


def generate_token() -> str:
    length = TOKEN_MIN_LENGTH + secrets.randbelow(TOKEN_MAX_LENGTH - TOKEN_MIN_LENGTH + 1)
    return TOKEN_PREFIX + "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


# ── Results ───────────────────────────────────────────────────────────────────────────


@dataclass
class BatchResult:
    created: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    def merge(self, other: "BatchResult") -> None:
        self.created += other.created
        self.errors += other.errors
        self.error_messages.extend(other.error_messages)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WriteOutcome:
    """What one persistence strategy did with a sub-batch.

    ``deferred`` tokens were not attempted to completion and are handed to
    the next strategy; ``failed`` tokens are final per-token errors.
    """

    strategy: str
    written: list[Identity] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    deferred: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class ReplenishResult:
    replenished: bool
    created: int
    errors: int
    available: int
    min_pool_size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupResult:
    deleted: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class UsageResult:
    identity_id: int
    usage_count: Optional[int]
    retired: bool


# ── Persistence strategies ────────────────────────────────────────────────────────────


def bulk_insert(repo: IdentityRepository, tokens: Sequence[str]) -> WriteOutcome:
    """All-or-nothing insert of the whole sub-batch."""
    try:
        written = repo.insert_many(tokens)
    except sqlite3.Error as exc:
        return WriteOutcome("bulk", deferred=list(tokens), reason=str(exc))
    done = {i.token for i in written}
    return WriteOutcome("bulk", written=written, deferred=[t for t in tokens if t not in done])


def row_insert(repo: IdentityRepository, tokens: Sequence[str]) -> WriteOutcome:
    """Insert tokens one at a time, recording each failure."""
    out = WriteOutcome("row")
    for token in tokens:
        try:
            out.written.append(repo.insert(token))
        except sqlite3.Error as exc:
            out.failed[token] = str(exc)
    return out


PERSIST_STRATEGIES: tuple[Callable[[IdentityRepository, Sequence[str]], WriteOutcome], ...] = (
    bulk_insert,
    row_insert,
)


# ── Generator ─────────────────────────────────────────────────────────────────────────


class IdentityGenerator:
    """Creates identity tokens and persists them in sub-batches."""

    def __init__(
        self,
        store: SQLiteStore,
        upstream: Optional[UpstreamClient] = None,
        strategies: Sequence[Callable[[IdentityRepository, Sequence[str]], WriteOutcome]] = PERSIST_STRATEGIES,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.strategies = tuple(strategies)

    def generate(self, count: int) -> list[str]:
        """Return ``count`` distinct tokens."""
        seen: set[str] = set()
        out: list[str] = []
        while len(out) < count:
            token = generate_token()
            if token in seen:
                continue
            seen.add(token)
            out.append(token)
        return out

    async def validate_sample(self, token: str) -> bool:
        """Probe upstream once with ``token``.

        An accepted status only means the token format is recognised; it says
        nothing about the remaining quota.
        """
        if self.upstream is None:
            LOG.warning("No upstream client configured, cannot validate sample")
            return False
        try:
            status = await self.upstream.probe(token)
        except httpx.HTTPError as exc:
            LOG.warning("Sample validation failed: %s: %s", type(exc).__name__, exc)
            return False
        ok = status in ACCEPTED_PROBE_STATUSES
        LOG.info("Sample validation for %s: status=%d accepted=%s", mask_secret(token), status, ok)
        return ok

    async def _persist(self, tokens: Sequence[str]) -> BatchResult:
        result = BatchResult()
        pending = list(tokens)
        reason = ""
        for strategy in self.strategies:
            if not pending:
                break
            try:
                outcome = await self.store.call(strategy, self.store.identities, pending)
            except PersistenceFailure as exc:
                outcome = WriteOutcome(strategy.__name__, deferred=pending, reason=exc.detail)
            if outcome.reason:
                LOG.debug(
                    "Strategy %s deferred %d tokens: %s",
                    outcome.strategy, len(outcome.deferred), outcome.reason,
                )
            result.created += len(outcome.written)
            for token, message in outcome.failed.items():
                result.errors += 1
                result.error_messages.append(f"{mask_secret(token)}: {message}")
            pending = outcome.deferred
            reason = outcome.reason or reason
        for token in pending:
            result.errors += 1
            result.error_messages.append(f"{mask_secret(token)}: {reason or 'not written'}")
        return result

    async def store_batch(self, tokens: Sequence[str]) -> BatchResult:
        """Persist ``tokens``, skipping ones the store already has."""
        unique = list(dict.fromkeys(tokens))
        try:
            existing = await self.store.call(self.store.identities.existing_tokens, unique)
        except PersistenceFailure as exc:
            LOG.warning("Duplicate check failed, relying on unique constraint: %s", exc)
            existing = set()
        fresh = [t for t in unique if t not in existing]
        if len(fresh) < len(tokens):
            LOG.info("Skipping %d tokens already present", len(tokens) - len(fresh))

        result = BatchResult()
        parts = await asyncio.gather(
            *(self._persist(part) for part in chunked(fresh, STORE_BATCH_SIZE))
        )
        for part in parts:
            result.merge(part)
        LOG.info("Stored identities: created=%d errors=%d", result.created, result.errors)
        return result

    async def generate_and_store(self, count: int, validate: bool = False) -> BatchResult:
        tokens = self.generate(count)
        if validate and tokens and not await self.validate_sample(tokens[0]):
            return BatchResult(created=0, errors=1, error_messages=["sample validation failed"])
        return await self.store_batch(tokens)


# ── Pool ──────────────────────────────────────────────────────────────────────────────


class IdentityPool:
    """Selects, accounts for, retires and replenishes identities."""

    def __init__(
        self,
        store: SQLiteStore,
        generator: IdentityGenerator,
        executor: BackgroundExecutor,
        defaults: PoolConfig,
    ) -> None:
        self.store = store
        self.generator = generator
        self.executor = executor
        self.defaults = defaults

    async def config(self) -> PoolConfig:
        """Current configuration: stored overrides on top of process defaults."""
        try:
            overrides = await self.store.call(self.store.settings.get_many, POOL_SETTING_KEYS)
        except PersistenceFailure as exc:
            LOG.warning("Pool settings unavailable, using defaults: %s", exc)
            return self.defaults
        return resolve_pool_config(overrides, self.defaults)

    def schedule_replenish(self, reason: str) -> None:
        LOG.debug("Scheduling replenish: %s", reason)
        self.executor.submit(self.replenish(), label=f"replenish ({reason})")

    async def acquire(self) -> Optional[Identity]:
        """Pick one of the least-used eligible identities, or ``None``."""
        cfg = await self.config()
        repo = self.store.identities
        try:
            candidates = await self.store.call(
                repo.list_eligible, cfg.retire_threshold, SELECTION_WINDOW
            )
            eligible = await self.store.call(repo.count_eligible, cfg.retire_threshold)
        except PersistenceFailure as exc:
            LOG.warning("Identity store unavailable: %s", exc)
            return None

        if not candidates:
            LOG.warning("No eligible identities in pool")
            self.schedule_replenish("pool empty")
            return None
        if eligible < cfg.min_pool_size:
            self.schedule_replenish(f"{eligible} eligible < {cfg.min_pool_size}")
        return random.choice(candidates)

    def ephemeral_token(self) -> str:
        """Unpersisted token for a single request when the pool is empty."""
        return generate_token()

    async def record_use(self, identity_id: int) -> UsageResult:
        """Count one use; retire the identity once it reaches the threshold."""
        cfg = await self.config()
        repo = self.store.identities
        try:
            count = await self.store.call(repo.increment_usage, identity_id)
        except PersistenceFailure as exc:
            LOG.error("Failed to record use of identity %d: %s", identity_id, exc)
            return UsageResult(identity_id, None, False)
        if count is None:
            LOG.debug("Identity %d no longer exists, use not recorded", identity_id)
            return UsageResult(identity_id, None, False)

        retired = False
        if count >= cfg.retire_threshold:
            try:
                retired = await self.store.call(repo.delete, identity_id)
            except PersistenceFailure as exc:
                LOG.error("Failed to retire identity %d: %s", identity_id, exc)
            if retired:
                LOG.info("Retired identity %d after %d uses", identity_id, count)
        self.schedule_replenish(f"identity {identity_id} used")
        return UsageResult(identity_id, count, retired)

    async def retire(self, identity_id: int) -> bool:
        """Delete an identity now, e.g. after the upstream reported its quota spent."""
        deleted = await self.store.call(self.store.identities.delete, identity_id)
        if deleted:
            LOG.info("Retired identity %d on quota exhaustion", identity_id)
        self.schedule_replenish(f"identity {identity_id} retired")
        return deleted

    async def replenish(self, config: Optional[PoolConfig] = None) -> ReplenishResult:
        """Generate a batch when fewer than ``min_pool_size`` identities are eligible."""
        cfg = config or await self.config()
        available = await self.store.call(
            self.store.identities.count_eligible, cfg.retire_threshold
        )
        if available >= cfg.min_pool_size:
            return ReplenishResult(False, 0, 0, available, cfg.min_pool_size)

        LOG.info(
            "Pool low (%d < %d), generating %d identities",
            available, cfg.min_pool_size, cfg.replenish_batch,
        )
        batch = await self.generator.generate_and_store(cfg.replenish_batch)
        return ReplenishResult(
            True, batch.created, batch.errors, available + batch.created, cfg.min_pool_size
        )

    async def cleanup(self) -> CleanupResult:
        """Delete identities that are inactive or at/over the threshold."""
        cfg = await self.config()
        repo = self.store.identities
        victims = await self.store.call(repo.list_retirable, cfg.retire_threshold)
        result = CleanupResult()
        for part in chunked([v.id for v in victims], CLEANUP_BATCH_SIZE):
            try:
                result.deleted += await self.store.call(repo.delete_many, part)
            except PersistenceFailure as exc:
                result.errors += len(part)
                LOG.error("Cleanup batch of %d failed: %s", len(part), exc)
        if victims:
            LOG.info("Cleanup removed %d identities (%d errors)", result.deleted, result.errors)
        return result

    async def reset_counters(self) -> int:
        count = await self.store.call(self.store.identities.reset_all)
        LOG.info("Reset usage counters of %d identities", count)
        return count

    async def stats(self) -> dict[str, Any]:
        cfg = await self.config()
        st = await self.store.call(
            self.store.identities.stats, cfg.retire_threshold, NEAR_LIMIT_MARGIN
        )
        return {**st, "config": cfg.to_dict()}

    async def bulk_action(self, action: str, ids: Sequence[int]) -> int:
        """Apply ``enable``, ``disable``, ``delete`` or ``reset`` to ``ids``."""
        if action not in BULK_ACTIONS:
            raise InvalidRequest(
                f"unknown action {action!r}, expected one of: {', '.join(BULK_ACTIONS)}"
            )
        if not ids:
            raise InvalidRequest("ids must not be empty")
        repo = self.store.identities
        id_list = [int(i) for i in ids]
        if action == "enable":
            n = await self.store.call(repo.set_active, id_list, True)
        elif action == "disable":
            n = await self.store.call(repo.set_active, id_list, False)
        elif action == "delete":
            n = await self.store.call(repo.delete_many, id_list)
        else:
            n = await self.store.call(repo.reset, id_list)
        LOG.info("Bulk %s affected %d of %d identities", action, n, len(id_list))
        if action in ("disable", "delete"):
            self.schedule_replenish(f"bulk {action}")
        return n


async def maintenance_loop(pool: IdentityPool, interval_seconds: float) -> None:
    """Periodically clean up retired identities and top the pool up."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            cleaned = await pool.cleanup()
            replenished = await pool.replenish()
            st = await pool.stats()
        except Exception:
            LOG.exception("Pool maintenance failed")
            continue
        LOG.info(
            "Pool maintenance: cleaned=%d created=%d total=%d available=%d near_limit=%d",
            cleaned.deleted, replenished.created, st["total"], st["available"], st["near_limit"],
        )
