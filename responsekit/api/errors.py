"""Typed failure raised by the remote API client."""

import json
from typing import Any

import httpx


class ApiError(Exception):
    """
    A failed call to the response API.

    Covers HTTP error statuses, transport failures and undecodable bodies.
    When the provider returned its structured error envelope
    ({"error": {"message": ..., "code": ...}}), `code` and `message` carry
    its fields and `body` keeps the raw text for the audit trail.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status, or None for transport failures
        code: Provider error code (e.g. "response_expired"), if any
        body: Raw response body, if any
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        body: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.body = body
        self.cause = cause

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        """Build an ApiError from an HTTP error response."""
        body = response.text
        message = f"HTTP {response.status_code}"
        code = None
        try:
            payload: Any = json.loads(body) if body else None
        except ValueError:
            payload = None

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
            message = error.get("message") or message
            code = error.get("code")

        return cls(message, status_code=response.status_code, code=code, body=body)

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} ({self.code})"
        return self.message
