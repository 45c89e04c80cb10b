from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for failures that surface to API clients as an OpenAI error envelope."""

    status_code = 500
    error_type = "internal_error"
    code = "internal_error"

    def __init__(self, message: str, *, param: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.param = param

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": self.param,
                "code": self.code,
            },
        }

    def headers(self) -> dict[str, str]:
        return {}


class InvalidRequestError(BridgeError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class RateLimitedError(BridgeError):
    status_code = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"

    def __init__(self, retry_after_seconds: float) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Upstream rate limited. Retry after {int(retry_after_seconds * 1000)}ms.",
        )

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(max(0, int(round(self.retry_after_seconds))))}


class UpstreamError(BridgeError):
    code = "upstream_error"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = status


class UpstreamUnavailableError(UpstreamError):
    """The upstream could not be reached or refused the status request."""


class ChallengeFormatChangedError(UpstreamError):
    """The upstream challenge no longer matches what the solver understands."""

    code = "challenge_format_changed"
