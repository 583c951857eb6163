"""Exception hierarchy and machine-readable error codes."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Codes carried by stream `error` events and HTTP error bodies."""

    INVALID_REQUEST = "invalid_request"
    NO_TRACES = "no_traces"
    ANALYSIS_FAILED = "analysis_failed"
    ANALYSIS_TIMEOUT = "analysis_timeout"
    BATCH_FAILED = "batch_failed"
    SERVER_ERROR = "server_error"


ERROR_STATUS_CODES = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.NO_TRACES: 400,
    ErrorCode.ANALYSIS_FAILED: 502,
    ErrorCode.ANALYSIS_TIMEOUT: 504,
    ErrorCode.BATCH_FAILED: 502,
    ErrorCode.SERVER_ERROR: 500,
}


def get_status_code(code: ErrorCode) -> int:
    return ERROR_STATUS_CODES.get(code, 500)


class TraceCopilotError(Exception):
    """Base class for errors raised by the copilot pipeline."""

    code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InputError(TraceCopilotError):
    """Request rejected before any model call."""

    code = ErrorCode.INVALID_REQUEST


class AnalysisError(TraceCopilotError):
    """The free-text analysis call failed; fatal to the turn."""

    code = ErrorCode.ANALYSIS_FAILED


class BatchRankingError(TraceCopilotError):
    code = ErrorCode.BATCH_FAILED


class TurnCancelled(Exception):
    """Raised when the client went away. Not an error: nothing is reported."""
