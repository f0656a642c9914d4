"""Chat request relay: caller request in, upstream event stream out.

The upstream speaks a loose ``data: <text>`` event stream. Frames are
rebuilt from arbitrary network chunks, the upstream thread marker is
captured and removed, reasoning markup is dropped, and the remaining text is
re-emitted as OpenAI ``chat.completion.chunk`` events under the caller-facing
alias name.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .background import BackgroundExecutor
from .conversations import ConversationMap, new_conversation_id
from .errors import (
    GatewayError,
    InvalidRequest,
    ModelUnavailable,
    PersistenceFailure,
    QuotaExhausted,
    UpstreamFailure,
)
from .helpers import mask_secret
from .identities import IdentityPool
from .store import Identity, ModelAlias, SQLiteStore
from .upstream import UpstreamClient

LOG = logging.getLogger("identity-relay.relay")

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
IMAGE_PLACEHOLDER = "[IMAGE]"
THREAD_MARKER = re.compile(r"\[THREAD_ID:(.*?)\]")
REASONING_OPEN = "<think>"
REASONING_CLOSE = re.compile(r"</think>|</redacted_reasoning>")
QUOTA_SCAN_TAIL = 64


# ── Request models ────────────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: Any = ""


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    model: str
    messages: list[ChatMessage] = Field(min_length=1)
    conversation_id: Optional[str] = None
    stream: bool = True
    max_tokens: Optional[int] = None
    files: list[Any] = Field(default_factory=list)
    web_search: bool = Field(False, alias="webSearch")
    generate_image: bool = Field(False, alias="generateImage")
    reasoning: bool = False
    input_audio: str = Field("", alias="inputAudio")
    auto_route: bool = Field(False, alias="autoRoute")

    @field_validator("files", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("input_audio", mode="before")
    @classmethod
    def none_as_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("conversation_id", mode="before")
    @classmethod
    def blank_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


def parse_chat_request(body: Any) -> ChatRequest:
    if not isinstance(body, dict):
        raise InvalidRequest("request body must be a JSON object")
    if not body.get("model") or not body.get("messages"):
        raise InvalidRequest("Missing required fields: model and messages")
    try:
        return ChatRequest.model_validate(body)
    except ValidationError as exc:
        raise GatewayError(
            f"invalid chat request: {exc.error_count()} validation error(s)",
            status_code=422,
            error_type="validation_error",
            errors=[
                {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                for e in exc.errors()
            ],
        ) from exc


# ── Stream text helpers ───────────────────────────────────────────────────────────────


def extract_prompt(content: Any) -> tuple[str, list[Any]]:
    """Return ``(prompt, files)`` for the content of one message.

    Structured content keeps text parts in order; every image part becomes a
    file reference and an ``[IMAGE]`` placeholder in the prompt.
    """
    if isinstance(content, str):
        return content, []
    if isinstance(content, list):
        parts: list[str] = []
        files: list[Any] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "text":
                parts.append(str(part.get("text") or ""))
            elif kind == "image_url":
                image = part.get("image_url")
                url = image.get("url") if isinstance(image, dict) else image
                if url:
                    files.append(url)
                    parts.append(IMAGE_PLACEHOLDER)
        return " ".join(parts), files
    return ("" if content is None else str(content)), []


class FrameDecoder:
    """Rebuilds newline-delimited frames from arbitrarily split byte chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [line.rstrip("\r") for line in rest.split("\n") if line.strip()]


def frame_data(line: str) -> Optional[str]:
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):]
    return data[1:] if data.startswith(" ") else data


def extract_thread_id(data: str) -> Optional[str]:
    m = THREAD_MARKER.search(data)
    if not m:
        return None
    return m.group(1).strip() or None


def strip_markup(data: str, state: Optional[TurnState] = None) -> str:
    """Remove thread markers and reasoning annotations from a frame.

    Reasoning blocks may span frames: with ``state`` given, an unclosed
    ``<think>`` keeps hiding text in the following frames until its closing
    tag arrives.
    """
    in_reasoning = state.in_reasoning if state is not None else False
    rest = THREAD_MARKER.sub("", data)
    visible: list[str] = []
    while rest:
        if in_reasoning:
            m = REASONING_CLOSE.search(rest)
            if not m:
                break
            in_reasoning = False
            rest = rest[m.end():]
        else:
            start = rest.find(REASONING_OPEN)
            if start < 0:
                visible.append(rest)
                break
            visible.append(rest[:start])
            in_reasoning = True
            rest = rest[start + len(REASONING_OPEN):]
    if state is not None:
        state.in_reasoning = in_reasoning
    cleaned = "".join(visible)
    return cleaned.strip() if cleaned != data else cleaned


def apply_substitutions(text: str, substitutions: Sequence[tuple[str, str]]) -> str:
    for old, new in substitutions:
        text = text.replace(old, new)
    return text


def is_quota_exhausted(text: str) -> bool:
    lower = (text or "").lower()
    return (
        "text prompts limit reached" in lower
        or "limit reached" in lower
        or ("sign up" in lower and "limit" in lower)
    )


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


# ── Relay ─────────────────────────────────────────────────────────────────────────────


@dataclass
class TurnState:
    bound: bool = False
    quota_hit: bool = False
    in_reasoning: bool = False
    released: bool = False
    tail: str = ""
    completion: list[str] = field(default_factory=list)


@dataclass
class RelayContext:
    request_id: str
    owner_id: str
    alias: ModelAlias
    conversation_id: str
    thread_id: Optional[str]
    prompt: str
    stream: bool
    identity: Optional[Identity]
    token: str
    payload: dict[str, Any]
    completion_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex[:24]}")
    created: int = field(default_factory=lambda: int(time.time()))
    turn: TurnState = field(default_factory=TurnState)

    def __post_init__(self) -> None:
        self.turn.bound = self.thread_id is not None



class StreamingRelay:
    def __init__(
        self,
        store: SQLiteStore,
        pool: IdentityPool,
        conversations: ConversationMap,
        upstream: UpstreamClient,
        executor: BackgroundExecutor,
        substitutions: Sequence[tuple[str, str]] = (),
    ) -> None:
        self.store = store
        self.pool = pool
        self.conversations = conversations
        self.upstream = upstream
        self.executor = executor
        self.substitutions = list(substitutions)

    async def prepare(self, body: Any, owner_id: str, request_id: str = "") -> RelayContext:
        """Validate the request, resolve alias and conversation, pick an identity."""
        req = parse_chat_request(body)
        alias = await self.store.call(self.store.aliases.get, req.model)
        if alias is None or not alias.active:
            raise ModelUnavailable(f'Model "{req.model}" is not available or inactive')

        conversation_id = req.conversation_id or new_conversation_id()
        try:
            thread_id = await self.conversations.resolve(owner_id, conversation_id)
        except PersistenceFailure as exc:
            LOG.warning("Conversation lookup failed, thread continuity skipped: %s [req=%s]", exc, request_id)
            thread_id = None

        prompt, files = extract_prompt(req.messages[-1].content)
        files.extend(req.files)

        identity = await self.pool.acquire()
        if identity is not None:
            token = identity.token
            LOG.debug(
                "Using identity %d (%s, usage=%d) [req=%s]",
                identity.id, mask_secret(token), identity.usage_count, request_id,
            )
        else:
            token = self.pool.ephemeral_token()
            LOG.warning("No pooled identity, using ephemeral %s [req=%s]", mask_secret(token), request_id)

        payload = {
            "model": alias.provider_name,
            "prompt": prompt,
            "threadId": thread_id,
            "webSearch": req.web_search,
            "generateImage": req.generate_image,
            "reasoning": req.reasoning,
            "files": files,
            "inputAudio": req.input_audio,
            "autoRoute": req.auto_route,
        }
        return RelayContext(
            request_id=request_id,
            owner_id=owner_id,
            alias=alias,
            conversation_id=conversation_id,
            thread_id=thread_id,
            prompt=prompt,
            stream=req.stream,
            identity=identity,
            token=token,
            payload=payload,
        )

    async def open(self, ctx: RelayContext) -> httpx.Response:
        LOG.info(
            "Relaying %s -> %s conv=%s stream=%s [req=%s]",
            ctx.alias.custom_name, ctx.alias.provider_name, ctx.conversation_id, ctx.stream, ctx.request_id,
        )
        return await self.upstream.open_stream(ctx.payload, ctx.token)

    async def _bind(self, ctx: RelayContext, thread_id: str) -> None:
        try:
            await self.conversations.bind(ctx.owner_id, ctx.conversation_id, thread_id)
        except PersistenceFailure as exc:
            LOG.warning("Thread binding skipped: %s [req=%s]", exc, ctx.request_id)

    def _scan_quota(self, ctx: RelayContext, state: TurnState, text: str) -> None:
        if state.quota_hit:
            return
        window = state.tail + text
        state.tail = window[-QUOTA_SCAN_TAIL:]
        if not is_quota_exhausted(window):
            return
        state.quota_hit = True
        if ctx.identity is not None:
            LOG.warning("Quota exhausted for identity %d [req=%s]", ctx.identity.id, ctx.request_id)
            self.executor.submit(
                self.pool.retire(ctx.identity.id), label=f"retire identity {ctx.identity.id}"
            )
        else:
            LOG.warning("Quota exhausted for ephemeral identity [req=%s]", ctx.request_id)
            self.pool.schedule_replenish("quota exhausted")

    async def _process_frame(self, ctx: RelayContext, state: TurnState, line: str) -> Optional[str]:
        """Turn one upstream frame into visible text, or ``None``."""
        data = frame_data(line)
        if data is None or data.strip() == DONE_MARKER:
            return None
        thread_id = extract_thread_id(data)
        if thread_id and not state.bound:
            state.bound = True
            await self._bind(ctx, thread_id)
        text = strip_markup(data, state)
        if not text:
            return None
        self._scan_quota(ctx, state, text)
        text = apply_substitutions(text, self.substitutions)
        state.completion.append(text)
        return text or None

    def _chunk(self, ctx: RelayContext, delta: dict[str, Any], finish_reason: Optional[str] = None) -> bytes:
        obj = {
            "id": ctx.completion_id,
            "object": "chat.completion.chunk",
            "created": ctx.created,
            "model": ctx.alias.custom_name,
            "conversation_id": ctx.conversation_id,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")

    def _finish(self, ctx: RelayContext, state: TurnState) -> None:
        """Queue usage accounting once the upstream call is over."""
        if ctx.identity is not None:
            self.executor.submit(
                self.pool.record_use(ctx.identity.id), label=f"record_use {ctx.identity.id}"
            )
        tokens = estimate_tokens(ctx.prompt) + estimate_tokens("".join(state.completion))
        self.executor.submit(
            self.store.call(self.store.usage.record, ctx.owner_id, ctx.alias.custom_name, tokens),
            label="usage analytics",
        )

    async def release(self, ctx: RelayContext, response: httpx.Response) -> None:
        """Close the upstream response and queue accounting, once per turn.

        Runs from the body generator and again from the response's background
        task, so a body that was cancelled before its first item still frees
        the upstream connection.
        """
        state = ctx.turn
        if state.released:
            return
        state.released = True
        try:
            await response.aclose()
        finally:
            self._finish(ctx, state)

    async def stream(self, ctx: RelayContext, response: httpx.Response) -> AsyncIterator[bytes]:
        """Yield caller-facing SSE bytes; always closes ``response``."""
        state = ctx.turn
        decoder = FrameDecoder()
        try:
            try:
                async for chunk in response.aiter_bytes():
                    for line in decoder.feed(chunk):
                        text = await self._process_frame(ctx, state, line)
                        if text:
                            yield self._chunk(ctx, {"content": text})
                for line in decoder.flush():
                    text = await self._process_frame(ctx, state, line)
                    if text:
                        yield self._chunk(ctx, {"content": text})
            except httpx.HTTPError as exc:
                LOG.warning("Upstream stream interrupted: %s [req=%s]", exc, ctx.request_id)
                raise UpstreamFailure(
                    f"upstream stream interrupted: {type(exc).__name__}: {exc}"
                ) from exc
            yield self._chunk(ctx, {}, finish_reason="stop")
            yield f"data: {DONE_MARKER}\n\n".encode("utf-8")
        finally:
            await self.release(ctx, response)

    async def complete(self, ctx: RelayContext, response: httpx.Response) -> dict[str, Any]:
        """Buffer the whole upstream stream into one ``chat.completion``."""
        state = ctx.turn
        decoder = FrameDecoder()
        try:
            try:
                async for chunk in response.aiter_bytes():
                    for line in decoder.feed(chunk):
                        await self._process_frame(ctx, state, line)
                for line in decoder.flush():
                    await self._process_frame(ctx, state, line)
            except httpx.HTTPError as exc:
                LOG.warning("Upstream read failed: %s [req=%s]", exc, ctx.request_id)
                raise UpstreamFailure(
                    f"upstream read failed: {type(exc).__name__}: {exc}"
                ) from exc
        finally:
            await self.release(ctx, response)

        if state.quota_hit:
            raise QuotaExhausted("Rate limit reached. Please try again.")

        content = "".join(state.completion)
        prompt_tokens = estimate_tokens(ctx.prompt)
        completion_tokens = estimate_tokens(content)
        return {
            "id": ctx.completion_id,
            "object": "chat.completion",
            "created": ctx.created,
            "model": ctx.alias.custom_name,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
            "conversation_id": ctx.conversation_id,
        }
