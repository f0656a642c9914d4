"""HTTP client for the upstream chat service."""

from __future__ import annotations

import logging
import random
from typing import Any, Optional

import httpx

from .errors import UpstreamFailure
from .settings import AppSettings

LOG = logging.getLogger("identity-relay.upstream")

STREAM_PATH = "/api/v1/ai/stream"
MODELS_PATH = "/api/v1/ai/list-models"
COOKIE_NAME = "browserId"
MAX_ERROR_BODY_CHARS = 2000

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)


def join_url(base: str, path: str) -> str:
    """Join base URL and path safely."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def build_upstream_headers(base_url: str, token: str, accept: str) -> dict[str, str]:
    """Browser-like headers carrying the identity as a session cookie."""
    return {
        "Accept": accept,
        "User-Agent": random.choice(USER_AGENTS),
        "Origin": base_url.rstrip("/"),
        "Referer": f"{base_url.rstrip('/')}/",
        "Cookie": f"{COOKIE_NAME}={token}",
    }


class UpstreamClient:
    """Owns the pooled ``httpx.AsyncClient`` used for every upstream call."""

    def __init__(
        self,
        settings: AppSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.upstream_base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(self.settings.upstream_timeout_seconds, connect=15.0),
            transport=self._transport,
            limits=httpx.Limits(
                max_connections=self.settings.max_connections,
                max_keepalive_connections=self.settings.max_keepalive,
            ),
        )

    async def startup(self) -> None:
        self._client = self._make_client()
        LOG.info(
            "Upstream client started: base=%s max_connections=%d max_keepalive=%d",
            self.base_url,
            self.settings.max_connections,
            self.settings.max_keepalive,
        )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("HTTP client not initialised")
        return self._client

    async def open_stream(self, payload: dict[str, Any], token: str) -> httpx.Response:
        """POST the chat payload and return the response with an unread body.

        The caller owns the returned response and must ``aclose()`` it.
        A non-2xx status is read, closed and raised as :class:`UpstreamFailure`.
        """
        headers = build_upstream_headers(self.base_url, token, "text/event-stream")
        headers["Content-Type"] = "application/json"
        request = self.client.build_request(
            "POST", join_url(self.base_url, STREAM_PATH), json=payload, headers=headers
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(
                f"upstream request failed: {type(exc).__name__}: {exc}"
            ) from exc

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            LOG.warning("Upstream answered %d: %s", response.status_code, body[:200])
            raise UpstreamFailure(
                f"upstream returned status {response.status_code}",
                upstream_status=response.status_code,
                upstream_body=body[:MAX_ERROR_BODY_CHARS],
            )
        return response

    async def probe(self, token: str) -> int:
        """Issue the lightweight models request and return its status code."""
        headers = build_upstream_headers(self.base_url, token, "application/json")
        response = await self.client.get(join_url(self.base_url, MODELS_PATH), headers=headers)
        return response.status_code
