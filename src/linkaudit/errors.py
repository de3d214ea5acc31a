from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    SCHEDULER_DISABLED = "SCHEDULER_DISABLED"
    INVALID_INPUT = "INVALID_INPUT"
    CONFIG_INVALID = "CONFIG_INVALID"


class LinkAuditError(Exception):
    """Raised by tool handlers for all expected failure conditions.

    Caught by server.py and serialised into the MCP error response.
    Core components never raise it; they return result values instead.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }


class ProbeError(Exception):
    """A refresh probe failed and may be retried by the caller."""

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"Probe failed for {url}: {detail}")
        self.url = url
        self.detail = detail
