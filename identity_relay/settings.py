"""Process settings and the per-operation pool configuration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

LOG = logging.getLogger("identity-relay.settings")

# ── Pool defaults ─────────────────────────────────────────────────────────────────────

DEFAULT_RETIRE_THRESHOLD = 45
DEFAULT_MIN_POOL_SIZE = 10
DEFAULT_REPLENISH_BATCH = 50

# Keys in the settings table that override the pool configuration.
RETIRE_THRESHOLD_KEY = "identity_retire_threshold"
MIN_POOL_SIZE_KEY = "identity_min_pool_size"
REPLENISH_BATCH_KEY = "identity_replenish_batch"
POOL_SETTING_KEYS = (RETIRE_THRESHOLD_KEY, MIN_POOL_SIZE_KEY, REPLENISH_BATCH_KEY)


@dataclass(frozen=True)
class PoolConfig:
    retire_threshold: int = DEFAULT_RETIRE_THRESHOLD
    min_pool_size: int = DEFAULT_MIN_POOL_SIZE
    replenish_batch: int = DEFAULT_REPLENISH_BATCH

    def to_dict(self) -> dict[str, int]:
        return {
            "retire_threshold": self.retire_threshold,
            "min_pool_size": self.min_pool_size,
            "replenish_batch": self.replenish_batch,
        }


def _positive_int(raw: Optional[str], fallback: int) -> int:
    if raw is None:
        return fallback
    try:
        value = int(str(raw).strip())
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def resolve_pool_config(
    overrides: Mapping[str, Optional[str]], fallback: PoolConfig
) -> PoolConfig:
    """Apply stored overrides on top of ``fallback``; bad values are ignored."""
    return PoolConfig(
        retire_threshold=_positive_int(
            overrides.get(RETIRE_THRESHOLD_KEY), fallback.retire_threshold
        ),
        min_pool_size=_positive_int(
            overrides.get(MIN_POOL_SIZE_KEY), fallback.min_pool_size
        ),
        replenish_batch=_positive_int(
            overrides.get(REPLENISH_BATCH_KEY), fallback.replenish_batch
        ),
    )


# ── App settings ──────────────────────────────────────────────────────────────────────


@dataclass
class AppSettings:
    db_path: str
    port: int
    admin_token: str
    client_tokens: set[str]
    upstream_base_url: str = "https://kyvex.ai"
    upstream_timeout_seconds: float = 120.0
    max_connections: int = 200
    max_keepalive: int = 50
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_request_body_bytes: int = 10 * 1024 * 1024  # 10 MB
    retire_threshold: int = DEFAULT_RETIRE_THRESHOLD
    min_pool_size: int = DEFAULT_MIN_POOL_SIZE
    replenish_batch: int = DEFAULT_REPLENISH_BATCH
    maintenance_interval_seconds: float = 0.0
    model_aliases: dict[str, str] = field(default_factory=dict)
    brand_name: str = "Assistant"
    text_substitutions: list[tuple[str, str]] = field(default_factory=list)
    drain_timeout_seconds: float = 10.0

    @property
    def pool_defaults(self) -> PoolConfig:
        return PoolConfig(
            retire_threshold=max(1, self.retire_threshold),
            min_pool_size=max(0, self.min_pool_size),
            replenish_batch=max(1, self.replenish_batch),
        )


def parse_model_aliases(raw: str) -> dict[str, str]:
    """Parse ``"Alias=provider-model,Other=other-model"`` into a mapping."""
    out: dict[str, str] = {}
    for item in (raw or "").split(","):
        if "=" not in item:
            continue
        alias, provider = item.split("=", 1)
        alias, provider = alias.strip(), provider.strip()
        if alias and provider:
            out[alias] = provider
    return out


def parse_substitutions(raw: str) -> list[tuple[str, str]]:
    """Parse ``"old=>new;old2=>new2"`` into ordered replacement pairs."""
    out: list[tuple[str, str]] = []
    for item in (raw or "").split(";"):
        if "=>" not in item:
            continue
        old, new = item.split("=>", 1)
        if old.strip():
            out.append((old.strip(), new.strip()))
    return out


def default_substitutions(brand_name: str, public_host: str) -> list[tuple[str, str]]:
    return [("kyvex.ai", public_host), ("Kyvex", brand_name)]


def _env_int(getenv: Callable[[str, str], str], name: str, default: int) -> int:
    try:
        return int(getenv(name, str(default)))
    except ValueError:
        LOG.warning("%s is not an integer, using %d", name, default)
        return default


def _env_float(getenv: Callable[[str, str], str], name: str, default: float) -> float:
    try:
        return float(getenv(name, str(default)))
    except ValueError:
        LOG.warning("%s is not a number, using %s", name, default)
        return default


def load_settings() -> AppSettings:
    """Load settings from environment variables with validation."""
    getenv = os.getenv
    ct_raw = getenv("IR_CLIENT_TOKENS", "")
    ct = {t.strip() for t in ct_raw.split(",") if t.strip()}
    cors_raw = getenv("IR_CORS_ORIGINS", "*")
    cors = [o.strip() for o in cors_raw.split(",") if o.strip()]
    brand = getenv("IR_BRAND_NAME", "Assistant").strip() or "Assistant"
    subs_raw = getenv("IR_TEXT_SUBSTITUTIONS", "")
    subs = (
        parse_substitutions(subs_raw)
        if subs_raw.strip()
        else default_substitutions(brand, getenv("IR_PUBLIC_HOST", "localhost").strip())
    )

    settings = AppSettings(
        db_path=getenv("IR_DB_PATH", "./data/identity_relay.db"),
        port=_env_int(getenv, "IR_PORT", 8095),
        admin_token=getenv("IR_ADMIN_TOKEN", "change-me-admin-token").strip(),
        client_tokens=ct,
        upstream_base_url=getenv("IR_UPSTREAM_BASE_URL", "https://kyvex.ai").strip().rstrip("/"),
        upstream_timeout_seconds=max(5.0, _env_float(getenv, "IR_UPSTREAM_TIMEOUT_SECONDS", 120.0)),
        max_connections=max(10, _env_int(getenv, "IR_MAX_CONNECTIONS", 200)),
        max_keepalive=max(10, _env_int(getenv, "IR_MAX_KEEPALIVE", 50)),
        log_level=getenv("IR_LOG_LEVEL", "INFO").upper(),
        cors_origins=cors,
        max_request_body_bytes=_env_int(getenv, "IR_MAX_REQUEST_BODY_BYTES", 10 * 1024 * 1024),
        retire_threshold=max(1, _env_int(getenv, "IR_RETIRE_THRESHOLD", DEFAULT_RETIRE_THRESHOLD)),
        min_pool_size=max(0, _env_int(getenv, "IR_MIN_POOL_SIZE", DEFAULT_MIN_POOL_SIZE)),
        replenish_batch=max(1, _env_int(getenv, "IR_REPLENISH_BATCH", DEFAULT_REPLENISH_BATCH)),
        maintenance_interval_seconds=max(
            0.0, _env_float(getenv, "IR_MAINTENANCE_INTERVAL_SECONDS", 3600.0)
        ),
        model_aliases=parse_model_aliases(getenv("IR_MODEL_ALIASES", "")),
        brand_name=brand,
        text_substitutions=subs,
        drain_timeout_seconds=_env_float(getenv, "IR_DRAIN_TIMEOUT_SECONDS", 10.0),
    )

    if settings.admin_token == "change-me-admin-token":
        LOG.warning("IR_ADMIN_TOKEN uses the default - set a strong token!")
    if not settings.model_aliases:
        LOG.warning("IR_MODEL_ALIASES is empty - only aliases already in the database are served")

    return settings
