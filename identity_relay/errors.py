"""Gateway error taxonomy.

Every error carries the HTTP status and problem ``type`` it is rendered with;
``extra`` fields are merged into the problem-detail body.
"""

from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""

    status_code = 500
    error_type = "internal_error"

    def __init__(
        self,
        detail: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        **extra: Any,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        self.extra = {k: v for k, v in extra.items() if v is not None}


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request"


class ModelUnavailable(GatewayError):
    status_code = 400
    error_type = "model_unavailable"


class UpstreamFailure(GatewayError):
    """Upstream answered with a non-success status or the transport failed."""

    status_code = 502
    error_type = "upstream_error"

    def __init__(
        self,
        detail: str,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ) -> None:
        super().__init__(
            detail, upstream_status=upstream_status, upstream_body=upstream_body
        )
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class QuotaExhausted(GatewayError):
    status_code = 429
    error_type = "quota_exhausted"


class PersistenceFailure(GatewayError):
    """The store could not be reached or rejected the operation."""

    status_code = 503
    error_type = "persistence_error"
