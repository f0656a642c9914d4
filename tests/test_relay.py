"""Tests for stream reparsing and the streaming relay."""

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Callable

import httpx
import pytest

from identity_relay.background import BackgroundExecutor
from identity_relay.conversations import ConversationMap
from identity_relay.errors import (
    GatewayError,
    InvalidRequest,
    ModelUnavailable,
    QuotaExhausted,
    UpstreamFailure,
)
from identity_relay.identities import IdentityGenerator, IdentityPool
from identity_relay.relay import (
    FrameDecoder,
    StreamingRelay,
    TurnState,
    apply_substitutions,
    extract_prompt,
    extract_thread_id,
    is_quota_exhausted,
    strip_markup,
)
from identity_relay.settings import AppSettings
from identity_relay.store import SQLiteStore
from identity_relay.upstream import UpstreamClient

OWNER = "owner-1"

UPSTREAM_STREAM = (
    "data: [THREAD_ID:thread-42]\n"
    "data: Hello\n"
    "data: <think>internal notes</think>\n"
    "data:  wörld from Kyvex\n"
    "data: [DONE]\n"
    "data: [THREAD_ID:thread-99]\n"
    "data: !"
).encode("utf-8")
EXPECTED_TEXT = "Hello wörld from Brand!"


def sse_events(raw: bytes) -> list[str]:
    return [
        line[len("data: "):]
        for line in raw.decode("utf-8").split("\n")
        if line.startswith("data: ")
    ]


def build_relay(db_path: Path, handler: Callable, identities: int = 20, **kw) -> SimpleNamespace:
    settings = AppSettings(
        db_path=str(db_path),
        port=0,
        admin_token="",
        client_tokens=set(),
        upstream_base_url="https://upstream.test",
        text_substitutions=[("Kyvex", "Brand"), ("kyvex.ai", "relay.test")],
        **kw,
    )
    store = SQLiteStore(settings.db_path)
    store.aliases.upsert("Alias1", "X", "Brand")
    store.aliases.upsert("Retired", "Y", "Brand", active=False)
    executor = BackgroundExecutor()
    upstream = UpstreamClient(settings, transport=httpx.MockTransport(handler))
    generator = IdentityGenerator(store, upstream)
    if identities:
        store.identities.insert_many(generator.generate(identities))
    pool = IdentityPool(store, generator, executor, settings.pool_defaults)
    conversations = ConversationMap(store)
    relay = StreamingRelay(
        store, pool, conversations, upstream, executor, settings.text_substitutions
    )
    return SimpleNamespace(
        store=store, executor=executor, upstream=upstream, pool=pool,
        conversations=conversations, relay=relay,
    )


def chunked_handler(state: dict) -> Callable:
    """Serve ``state["chunks"]`` as a chunked event stream."""

    def handler(req: httpx.Request) -> httpx.Response:
        state.setdefault("requests", []).append(json.loads(req.content))
        chunks = list(state["chunks"])

        async def body():
            for c in chunks:
                yield c

        return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})

    return handler


async def run_stream(env: SimpleNamespace, body: dict) -> bytes:
    ctx = await env.relay.prepare(body, OWNER, "req-test")
    response = await env.relay.open(ctx)
    out = b""
    async for piece in env.relay.stream(ctx, response):
        out += piece
    return out


# ── 1. Text helpers ───────────────────────────────────────────────────────


def test_quota_predicate() -> None:
    assert is_quota_exhausted("limit reached")
    assert is_quota_exhausted("Your daily LIMIT REACHED for today")
    assert is_quota_exhausted("Text prompts Limit Reached")
    assert is_quota_exhausted("Please sign up to lift the limit")
    assert not is_quota_exhausted("Hello, how can I help you today?")
    assert not is_quota_exhausted("Please sign up for the newsletter")
    assert not is_quota_exhausted("")


def test_strip_markup_and_thread_marker() -> None:
    assert extract_thread_id("[THREAD_ID: abc-1 ]hi") == "abc-1"
    assert extract_thread_id("no marker") is None
    assert strip_markup("[THREAD_ID:abc] Hi there ") == "Hi there"
    assert strip_markup("<think>x</think>Answer") == "Answer"
    assert strip_markup("<think>x\ny</redacted_reasoning>Answer") == "Answer"
    assert strip_markup(" keep spacing") == " keep spacing"
    assert strip_markup("[THREAD_ID:abc]") == ""


def test_substitutions_are_exact_match() -> None:
    subs = [("kyvex.ai", "relay.test"), ("Kyvex", "Brand")]
    assert apply_substitutions("Visit kyvex.ai, Kyvex rocks", subs) == "Visit relay.test, Brand rocks"
    assert apply_substitutions("KYVEX stays", subs) == "KYVEX stays"


def test_extract_prompt_variants() -> None:
    assert extract_prompt("plain") == ("plain", [])
    prompt, files = extract_prompt(
        [
            {"type": "text", "text": "Look at"},
            {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
            {"type": "image_url", "image_url": "data:image/png;base64,AAA"},
            {"type": "text", "text": "please"},
        ]
    )
    assert prompt == "Look at [IMAGE] [IMAGE] please"
    assert files == ["https://img.test/a.png", "data:image/png;base64,AAA"]
    assert extract_prompt(42) == ("42", [])
    assert extract_prompt(None) == ("", [])


def test_frame_decoder_handles_split_utf8_and_remainder() -> None:
    raw = "data: café\ndata: tail".encode("utf-8")
    cut = raw.index(b"\xc3") + 1
    dec = FrameDecoder()
    assert dec.feed(raw[:cut]) == []
    assert dec.feed(raw[cut:]) == ["data: café"]
    assert dec.flush() == ["data: tail"]
    assert dec.flush() == []


# ── 2. Chunk boundaries ───────────────────────────────────────────────────


def test_marker_extracted_once_for_every_split(tmp_path: Path) -> None:
    state: dict = {}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state))
    marker_end = UPSTREAM_STREAM.index(b"]") + 1
    splits = [[i] for i in range(1, len(UPSTREAM_STREAM))]
    splits += [[i, j] for i in range(1, marker_end) for j in range(i + 1, marker_end + 3)]

    async def _test():
        await env.upstream.startup()
        try:
            for n, cuts in enumerate(splits):
                bounds = [0, *cuts, len(UPSTREAM_STREAM)]
                state["chunks"] = [UPSTREAM_STREAM[a:b] for a, b in zip(bounds, bounds[1:])]
                raw = await run_stream(env, {
                    "model": "Alias1",
                    "messages": [{"role": "user", "content": "Hi"}],
                    "conversation_id": f"conv-{n}",
                })
                events = sse_events(raw)
                assert events[-1] == "[DONE]", cuts
                chunks = [json.loads(e) for e in events[:-1]]
                text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
                assert text == EXPECTED_TEXT, cuts
                assert "THREAD_ID" not in raw.decode("utf-8"), cuts
                assert await env.conversations.resolve(OWNER, f"conv-{n}") == "thread-42", cuts
            await env.executor.drain()
        finally:
            await env.upstream.shutdown()

    asyncio.run(_test())
    assert env.executor.failures == 0


# ── 3. Alias scenario ─────────────────────────────────────────────────────


def test_chunks_carry_alias_name_never_provider(tmp_path: Path) -> None:
    state = {"chunks": [b"data: Hi\n", b"data:  there\n", b"data: [DONE]\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state))

    async def _test():
        await env.upstream.startup()
        try:
            raw = await run_stream(env, {
                "model": "Alias1",
                "messages": [{"role": "user", "content": "Hi"}],
                "stream": True,
            })
            await env.executor.drain()
            return raw
        finally:
            await env.upstream.shutdown()

    events = sse_events(asyncio.run(_test()))
    assert events[-1] == "[DONE]"
    chunks = [json.loads(e) for e in events[:-1]]
    assert len(chunks) == 3
    assert all(c["model"] == "Alias1" for c in chunks)
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert chunks[-1]["choices"][0]["delta"] == {}
    assert len({c["conversation_id"] for c in chunks}) == 1
    assert chunks[0]["conversation_id"].startswith("conv_")

    sent = state["requests"][0]
    assert sent["model"] == "X"
    assert sent["prompt"] == "Hi"
    assert sent["threadId"] is None
    assert set(sent) == {
        "model", "prompt", "threadId", "webSearch", "generateImage",
        "reasoning", "files", "inputAudio", "autoRoute",
    }


def test_known_thread_id_is_sent_upstream(tmp_path: Path) -> None:
    state = {"chunks": [b"data: [THREAD_ID:new-thread]\ndata: ok\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state))
    env.store.conversations.bind_thread(OWNER, "conv_known", "old-thread")

    async def _test():
        await env.upstream.startup()
        try:
            await run_stream(env, {
                "model": "Alias1",
                "messages": [{"role": "user", "content": [{"type": "text", "text": "next"}]}],
                "conversation_id": "conv_known",
                "files": ["https://f.test/doc.pdf"],
                "webSearch": True,
            })
            await env.executor.drain()
        finally:
            await env.upstream.shutdown()

    asyncio.run(_test())
    sent = state["requests"][0]
    assert sent["threadId"] == "old-thread"
    assert sent["files"] == ["https://f.test/doc.pdf"]
    assert sent["webSearch"] is True
    assert env.store.conversations.get(OWNER, "conv_known").upstream_thread_id == "old-thread"


# ── 4. Side effects ───────────────────────────────────────────────────────


def test_stream_records_use_and_analytics(tmp_path: Path) -> None:
    state = {"chunks": [b"data: abcdefgh\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state), identities=1, min_pool_size=0)
    (identity,) = env.store.identities.list_all()

    async def _test():
        await env.upstream.startup()
        try:
            await run_stream(env, {"model": "Alias1", "messages": [{"role": "user", "content": "abcd"}]})
            await env.executor.drain()
        finally:
            await env.upstream.shutdown()

    asyncio.run(_test())
    assert env.store.identities.get(identity.id).usage_count == 1
    usage = env.store.usage.get(OWNER)
    assert usage.total_requests == 1
    assert usage.total_tokens == 3
    assert usage.models == {"Alias1": 1}


def test_quota_phrase_retires_identity_but_stream_drains(tmp_path: Path) -> None:
    state = {"chunks": [b"data: Your text prompts limit\n", b"data:  reached. Sign in\n", b"data: later\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state), identities=1, min_pool_size=1, replenish_batch=3)
    (identity,) = env.store.identities.list_all()

    async def _test():
        await env.upstream.startup()
        try:
            raw = await run_stream(env, {"model": "Alias1", "messages": [{"role": "user", "content": "x"}]})
            await env.executor.drain()
            return raw
        finally:
            await env.upstream.shutdown()

    events = sse_events(asyncio.run(_test()))
    assert events[-1] == "[DONE]"
    assert json.loads(events[-3])["choices"][0]["delta"]["content"] == "later"
    assert env.store.identities.get(identity.id) is None
    # Retirement and the usage update may both trigger a refill.
    assert env.store.identities.count_eligible(45) in (3, 6)
    assert env.executor.failures == 0


def test_non_stream_completion(tmp_path: Path) -> None:
    state = {"chunks": [b"data: [THREAD_ID:t-1]\ndata: Hello\n", b"data:  kyvex.ai\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state))

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare(
                {"model": "Alias1", "messages": [{"role": "user", "content": "q"}], "stream": False},
                OWNER,
            )
            result = await env.relay.complete(ctx, await env.relay.open(ctx))
            await env.executor.drain()
            return result
        finally:
            await env.upstream.shutdown()

    result = asyncio.run(_test())
    assert result["object"] == "chat.completion"
    assert result["model"] == "Alias1"
    assert result["choices"][0]["message"] == {"role": "assistant", "content": "Hello relay.test"}
    assert env.store.conversations.get(OWNER, result["conversation_id"]).upstream_thread_id == "t-1"


def test_non_stream_quota_phrase_raises(tmp_path: Path) -> None:
    state = {"chunks": [b"data: Limit reached, come back tomorrow\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state), min_pool_size=0)

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare(
                {"model": "Alias1", "messages": [{"role": "user", "content": "q"}], "stream": False},
                OWNER,
            )
            with pytest.raises(QuotaExhausted):
                await env.relay.complete(ctx, await env.relay.open(ctx))
            await env.executor.drain()
            return ctx.identity.id
        finally:
            await env.upstream.shutdown()

    retired_id = asyncio.run(_test())
    assert env.store.identities.get(retired_id) is None


def test_empty_pool_uses_ephemeral_token(tmp_path: Path) -> None:
    state = {"chunks": [b"data: ok\n"]}
    cookies: list[str] = []
    inner = chunked_handler(state)

    def handler(req: httpx.Request) -> httpx.Response:
        cookies.append(req.headers["cookie"])
        return inner(req)

    env = build_relay(tmp_path / "relay.db", handler, identities=0, min_pool_size=2, replenish_batch=4)

    async def _test():
        await env.upstream.startup()
        try:
            await run_stream(env, {"model": "Alias1", "messages": [{"role": "user", "content": "q"}]})
            await env.executor.drain()
        finally:
            await env.upstream.shutdown()

    asyncio.run(_test())
    assert cookies[0].startswith("browserId=BRWS-")
    stored = {i.token for i in env.store.identities.list_all()}
    assert len(stored) == 4
    assert cookies[0].split("=", 1)[1] not in stored


# ── 5. Errors ─────────────────────────────────────────────────────────────


def test_request_validation_errors(tmp_path: Path) -> None:
    env = build_relay(tmp_path / "relay.db", chunked_handler({"chunks": []}))

    async def _test():
        with pytest.raises(InvalidRequest):
            await env.relay.prepare({"messages": [{"role": "user", "content": "x"}]}, OWNER)
        with pytest.raises(InvalidRequest):
            await env.relay.prepare({"model": "Alias1", "messages": []}, OWNER)
        with pytest.raises(InvalidRequest):
            await env.relay.prepare(["not", "an", "object"], OWNER)
        with pytest.raises(ModelUnavailable):
            await env.relay.prepare({"model": "Unknown", "messages": [{"content": "x"}]}, OWNER)
        with pytest.raises(ModelUnavailable):
            await env.relay.prepare({"model": "Retired", "messages": [{"content": "x"}]}, OWNER)
        with pytest.raises(GatewayError) as exc_info:
            await env.relay.prepare({"model": "Alias1", "messages": "nope"}, OWNER)
        assert exc_info.value.status_code == 422

    asyncio.run(_test())


def test_upstream_error_status_raises_with_detail(tmp_path: Path) -> None:
    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    env = build_relay(tmp_path / "relay.db", handler)

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare({"model": "Alias1", "messages": [{"content": "x"}]}, OWNER)
            with pytest.raises(UpstreamFailure) as exc_info:
                await env.relay.open(ctx)
            return exc_info.value
        finally:
            await env.upstream.shutdown()

    err = asyncio.run(_test())
    assert err.status_code == 502
    assert err.upstream_status == 503
    assert err.upstream_body == "maintenance"


def test_mid_stream_transport_error_propagates_and_closes(tmp_path: Path) -> None:
    closed: list[bool] = []

    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"data: partial\n"
            raise httpx.ReadError("connection reset")

        async def aclose(self) -> None:
            closed.append(True)

    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=BrokenStream())

    env = build_relay(tmp_path / "relay.db", handler, min_pool_size=0)

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare({"model": "Alias1", "messages": [{"content": "x"}]}, OWNER)
            response = await env.relay.open(ctx)
            received = []
            with pytest.raises(UpstreamFailure):
                async for piece in env.relay.stream(ctx, response):
                    received.append(piece)
            await env.executor.drain()
            return received
        finally:
            await env.upstream.shutdown()

    received = asyncio.run(_test())
    assert len(received) == 1
    assert b"partial" in received[0]
    assert closed


def test_caller_cancellation_closes_upstream(tmp_path: Path) -> None:
    closed: list[bool] = []

    class EndlessStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            while True:
                yield b"data: more\n"

        async def aclose(self) -> None:
            closed.append(True)

    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=EndlessStream())

    env = build_relay(tmp_path / "relay.db", handler, min_pool_size=0)

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare({"model": "Alias1", "messages": [{"content": "x"}]}, OWNER)
            gen = env.relay.stream(ctx, await env.relay.open(ctx))
            first = await gen.__anext__()
            await gen.aclose()
            await env.executor.drain()
            return first, ctx.identity.id
        finally:
            await env.upstream.shutdown()

    first, identity_id = asyncio.run(_test())
    assert b"more" in first
    assert closed
    assert env.store.identities.get(identity_id).usage_count == 1


def test_body_cancelled_before_first_item_still_releases_upstream(tmp_path: Path) -> None:
    closed: list[bool] = []

    class EndlessStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            while True:
                yield b"data: more\n"

        async def aclose(self) -> None:
            closed.append(True)

    def handler(req: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=EndlessStream())

    env = build_relay(tmp_path / "relay.db", handler, min_pool_size=0)

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare({"model": "Alias1", "messages": [{"content": "x"}]}, OWNER)
            response = await env.relay.open(ctx)
            gen = env.relay.stream(ctx, response)
            # The body never starts, so only the response background task runs.
            await gen.aclose()
            assert not closed
            await env.relay.release(ctx, response)
            await env.relay.release(ctx, response)
            await env.executor.drain()
            return ctx.identity.id, response.is_closed
        finally:
            await env.upstream.shutdown()

    identity_id, is_closed = asyncio.run(_test())
    assert closed
    assert is_closed
    assert env.store.identities.get(identity_id).usage_count == 1
    assert env.store.usage.get(OWNER).total_requests == 1


def test_release_after_full_stream_counts_once(tmp_path: Path) -> None:
    state = {"chunks": [b"data: hello\n"]}
    env = build_relay(tmp_path / "relay.db", chunked_handler(state), identities=1, min_pool_size=0)
    (identity,) = env.store.identities.list_all()

    async def _test():
        await env.upstream.startup()
        try:
            ctx = await env.relay.prepare({"model": "Alias1", "messages": [{"content": "x"}]}, OWNER)
            response = await env.relay.open(ctx)
            async for _ in env.relay.stream(ctx, response):
                pass
            await env.relay.release(ctx, response)
            await env.executor.drain()
        finally:
            await env.upstream.shutdown()

    asyncio.run(_test())
    assert env.store.identities.get(identity.id).usage_count == 1
    assert env.store.usage.get(OWNER).total_requests == 1


# ── 6. Reasoning across frames ────────────────────────────────────────────


def test_strip_markup_carries_open_reasoning_between_frames() -> None:
    turn = TurnState()
    frames = ["Before <think>plan", "still thinking", "done</think> After", "Tail"]
    assert [strip_markup(f, turn) for f in frames] == ["Before", "", "After", "Tail"]
    assert turn.in_reasoning is False


def test_reasoning_block_split_over_frames_is_hidden(tmp_path: Path) -> None:
    state = {
        "chunks": [
            b"data: <think>\n",
            b"data: secret plan\n",
            b"data: </think>\n",
            b"data: Answer\n",
        ]
    }
    env = build_relay(tmp_path / "relay.db", chunked_handler(state), min_pool_size=0)

    async def _test():
        await env.upstream.startup()
        try:
            return await run_stream(env, {"model": "Alias1", "messages": [{"content": "x"}]})
        finally:
            await env.upstream.shutdown()

    events = sse_events(asyncio.run(_test()))
    text = "".join(
        json.loads(e)["choices"][0]["delta"].get("content", "")
        for e in events
        if e != "[DONE]"
    )
    assert text == "Answer"
    assert "secret" not in "".join(events)
