"""FastAPI application: caller chat API plus the operational admin API."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.background import BackgroundTask

from . import __version__
from .background import BackgroundExecutor
from .conversations import ConversationMap
from .errors import GatewayError, InvalidRequest
from .helpers import (
    constant_time_compare,
    generate_request_id,
    mask_secret,
    owner_id_for_token,
    parse_bearer_token,
)
from .identities import BULK_ACTIONS, IdentityGenerator, IdentityPool, maintenance_loop
from .relay import StreamingRelay
from .settings import AppSettings, load_settings
from .store import Identity, SQLiteStore
from .upstream import UpstreamClient

LOG = logging.getLogger("identity-relay")

DEFAULT_ADMIN_TOKEN = "change-me-admin-token"
ANONYMOUS_OWNER = "anonymous"
MAX_GENERATE_COUNT = 1000


def problem_detail(
    status: int,
    detail: str,
    error_type: str = "about:blank",
    request_id: str = "",
    **extra: Any,
) -> JSONResponse:
    """Return an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": error_type,
        "status": status,
        "detail": detail,
    }
    if request_id:
        body["request_id"] = request_id
    body.update(extra)
    return JSONResponse(body, status_code=status)


def sanitize_identity(identity: Identity) -> dict[str, Any]:
    """Identity dict for API responses with the token masked."""
    out = identity.to_dict()
    out["token_preview"] = mask_secret(out.pop("token"))
    return out


# ── Admin payloads ────────────────────────────────────────────────────────────────────


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int = Field(50, ge=1, le=MAX_GENERATE_COUNT)
    validate_sample: bool = Field(False, alias="validate")


class BulkActionRequest(BaseModel):
    action: str
    ids: list[int] = Field(default_factory=list)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in BULK_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(BULK_ACTIONS)}")
        return v


class ClearConversationsRequest(BaseModel):
    owner_id: Optional[str] = None


# ── App Factory ───────────────────────────────────────────────────────────────────────


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    store = SQLiteStore(cfg.db_path)
    executor = BackgroundExecutor()
    upstream = UpstreamClient(cfg, transport=transport)
    generator = IdentityGenerator(store, upstream)
    pool = IdentityPool(store, generator, executor, cfg.pool_defaults)
    conversations = ConversationMap(store)
    relay = StreamingRelay(
        store, pool, conversations, upstream, executor, cfg.text_substitutions
    )
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        for custom_name, provider_name in cfg.model_aliases.items():
            await store.call(store.aliases.upsert, custom_name, provider_name, cfg.brand_name)
        await upstream.startup()
        maintenance: Optional[asyncio.Task[None]] = None
        if cfg.maintenance_interval_seconds > 0:
            maintenance = asyncio.create_task(
                maintenance_loop(pool, cfg.maintenance_interval_seconds)
            )
        LOG.info(
            "Identity Relay v%s ready on port %s (aliases=%d)",
            __version__, cfg.port, len(cfg.model_aliases),
        )
        try:
            yield
        finally:
            LOG.info("Initiating graceful shutdown...")
            if maintenance is not None:
                maintenance.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await maintenance
            await executor.drain(cfg.drain_timeout_seconds)
            await upstream.shutdown()
            store.close()
            LOG.info("Shutdown complete")

    app = FastAPI(
        title="Identity Relay",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = cfg
    app.state.store = store
    app.state.pool = pool
    app.state.executor = executor
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Conversation-ID"],
    )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Request-ID"] = req_id
        return response

    @app.middleware("http")
    async def body_size_middleware(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > cfg.max_request_body_bytes:
            return problem_detail(
                413,
                f"Request body too large (max {cfg.max_request_body_bytes} bytes)",
                "request_too_large",
            )
        return await call_next(request)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        req_id = getattr(request.state, "request_id", "")
        if exc.status_code >= 500:
            LOG.warning("%s: %s [req=%s]", exc.error_type, exc.detail, req_id)
        return problem_detail(exc.status_code, exc.detail, exc.error_type, req_id, **exc.extra)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, str(exc.detail), request_id=req_id)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return problem_detail(500, "internal server error", "internal_error", req_id)

    # Auth dependencies
    def require_admin(
        authorization: Optional[str] = Header(None),
        x_admin_token: Optional[str] = Header(None),
    ) -> None:
        if not cfg.admin_token or cfg.admin_token == DEFAULT_ADMIN_TOKEN:
            return
        tok = (x_admin_token or "").strip() or parse_bearer_token(authorization)
        if not constant_time_compare(tok, cfg.admin_token):
            raise HTTPException(401, "admin authorization failed")

    def require_client(
        request: Request,
        authorization: Optional[str] = Header(None),
    ) -> None:
        request.state.owner_id = ANONYMOUS_OWNER
        if not cfg.client_tokens:
            return
        tok = parse_bearer_token(authorization)
        if not tok:
            raise HTTPException(401, "client token required")
        if any(constant_time_compare(tok, ct) for ct in cfg.client_tokens):
            request.state.owner_id = owner_id_for_token(tok)
            return
        raise HTTPException(401, "client token invalid")

    async def read_json(request: Request) -> Any:
        raw = await request.body()
        if len(raw) > cfg.max_request_body_bytes:
            raise HTTPException(413, "request body too large")
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            raise InvalidRequest("invalid JSON body")

    # Caller API: chat completions
    async def chat_completions(request: Request) -> Response:
        req_id = getattr(request.state, "request_id", "")
        owner_id = getattr(request.state, "owner_id", ANONYMOUS_OWNER)
        body = await read_json(request)

        ctx = await relay.prepare(body, owner_id, req_id)
        upstream_response = await relay.open(ctx)
        headers = {"X-Conversation-ID": ctx.conversation_id}
        if ctx.stream:
            headers["Cache-Control"] = "no-cache"
            return StreamingResponse(
                relay.stream(ctx, upstream_response),
                media_type="text/event-stream",
                headers=headers,
                background=BackgroundTask(relay.release, ctx, upstream_response),
            )
        return JSONResponse(await relay.complete(ctx, upstream_response), headers=headers)

    # Caller API: models
    async def list_models() -> JSONResponse:
        aliases = await store.call(store.aliases.list)
        created = int(started_at)
        return JSONResponse(
            {
                "object": "list",
                "data": [
                    {
                        "id": a.custom_name,
                        "object": "model",
                        "created": created,
                        "owned_by": a.brand_name or cfg.brand_name,
                    }
                    for a in aliases
                ],
            }
        )

    # Routes: generic
    @app.get("/health")
    async def health():
        """Health check with pool status."""
        st = await pool.stats()
        healthy = st["available"] > 0
        return JSONResponse(
            {
                "status": "ok" if healthy else "degraded",
                "version": __version__,
                "uptime_seconds": round(time.time() - started_at, 1),
                "pool": st,
                "background": executor.stats(),
            },
            status_code=200 if healthy else 503,
        )

    # Routes: admin API
    @app.get("/admin/api/pool", dependencies=[Depends(require_admin)])
    async def pool_stats():
        return JSONResponse(await pool.stats())

    @app.get("/admin/api/identities", dependencies=[Depends(require_admin)])
    async def list_identities(limit: int = 100):
        items = await store.call(store.identities.list_all, max(1, min(limit, 1000)))
        return JSONResponse({"identities": [sanitize_identity(i) for i in items]})

    @app.post("/admin/api/identities/generate", dependencies=[Depends(require_admin)])
    async def generate_identities(payload: GenerateRequest):
        result = await generator.generate_and_store(payload.count, payload.validate_sample)
        return JSONResponse(result.to_dict())

    @app.post("/admin/api/identities/replenish", dependencies=[Depends(require_admin)])
    async def replenish_identities():
        result = await pool.replenish()
        return JSONResponse(result.to_dict())

    @app.post("/admin/api/identities/cleanup", dependencies=[Depends(require_admin)])
    async def cleanup_identities():
        result = await pool.cleanup()
        return JSONResponse(result.to_dict())

    @app.post("/admin/api/identities/reset-counters", dependencies=[Depends(require_admin)])
    async def reset_counters():
        n = await pool.reset_counters()
        return JSONResponse({"ok": True, "reset": n})

    @app.post("/admin/api/identities/bulk", dependencies=[Depends(require_admin)])
    async def bulk_identities(payload: BulkActionRequest):
        n = await pool.bulk_action(payload.action, payload.ids)
        return JSONResponse({"ok": True, "action": payload.action, "affected": n})

    @app.delete("/admin/api/identities/{identity_id}", dependencies=[Depends(require_admin)])
    async def delete_identity(identity_id: int):
        if not await store.call(store.identities.delete, identity_id):
            raise HTTPException(404, "identity not found")
        return JSONResponse({"ok": True})

    @app.post("/admin/api/conversations/clear", dependencies=[Depends(require_admin)])
    async def clear_conversations(payload: Optional[ClearConversationsRequest] = None):
        owner_id = payload.owner_id if payload else None
        n = await conversations.bulk_clear(owner_id)
        return JSONResponse({"ok": True, "deleted": n})

    @app.get("/admin/api/usage", dependencies=[Depends(require_admin)])
    async def usage():
        owners = await store.call(store.usage.list)
        return JSONResponse({"owners": [o.to_dict() for o in owners]})

    # Routes: caller API
    @app.post("/v1/chat/completions", dependencies=[Depends(require_client)])
    async def chat(request: Request):
        return await chat_completions(request)

    @app.post("/chat/completions", dependencies=[Depends(require_client)])
    async def chat_legacy(request: Request):
        return await chat_completions(request)

    @app.get("/v1/models", dependencies=[Depends(require_client)])
    async def models():
        return await list_models()

    @app.get("/models", dependencies=[Depends(require_client)])
    async def models_legacy():
        return await list_models()

    return app


def main() -> None:
    s = load_settings()
    uvicorn.run(
        "identity_relay.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
