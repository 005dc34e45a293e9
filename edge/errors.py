"""Error kinds raised by the edge core."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .logging import redact


class EdgeError(Exception):
    reason_code = "EDGE_ERROR"
    title = "Edge error"
    status = 502

    def problem(self) -> Dict[str, Any]:
        return {
            "type": f"https://errors.kis-edge/{self.reason_code}",
            "title": self.title,
            "status": self.status,
            "detail": str(self),
            "reason_code": self.reason_code,
        }


class TokenIssuanceError(EdgeError):
    """The token endpoint rejected our credentials or returned no token."""

    reason_code = "TOKEN_ISSUE_FAILED"
    title = "Token issuance failed"

    def __init__(self, status: int, body: Any = None) -> None:
        self.upstream_status = status
        self.body = redact(body)
        super().__init__(f"token_issue_failed: upstream status {status}")

    def problem(self) -> Dict[str, Any]:
        problem = super().problem()
        problem["context"] = {"upstream_status": self.upstream_status, "body": self.body}
        return problem


class UpstreamTimeout(EdgeError):
    reason_code = "UPSTREAM_TIMEOUT"
    title = "Upstream timeout"
    status = 504

    def __init__(self, url: str, timeout: float) -> None:
        self.url = url
        self.timeout = timeout
        super().__init__(f"upstream did not answer within {timeout:g}s")


class UpstreamHttpError(EdgeError):
    reason_code = "UPSTREAM_HTTP_ERROR"
    title = "Upstream error"

    def __init__(self, status: int, body: Any = None) -> None:
        self.upstream_status = status
        self.status = status if 400 <= status < 600 else 502
        self.body = redact(body)
        super().__init__(self.body or f"upstream status {status}")


class FieldNotFound(EdgeError):
    reason_code = "FIELD_NOT_FOUND"
    title = "Field not found"
    status = 404

    def __init__(self, field: str, date: str, attempts: int, last_status: Optional[int] = None) -> None:
        self.field = field
        self.date = date
        self.attempts = attempts
        self.last_status = last_status or 0
        super().__init__(f"{field} not found for {date} after {attempts} attempts")


__all__ = [
    "EdgeError",
    "FieldNotFound",
    "TokenIssuanceError",
    "UpstreamHttpError",
    "UpstreamTimeout",
]
