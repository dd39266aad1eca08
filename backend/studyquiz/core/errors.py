"""Error kinds shared by the HTTP layer and the generation/grading pipelines.

Client-facing failures are a single ``AppError`` tagged with an ``ErrorKind``;
the kind decides the HTTP status and the machine-readable code. Pipeline
internals use ``FailureCause`` so operators can tell a malformed model reply
from a leaked system marker or an unreachable provider, while users only ever
see one generic message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL_ERROR: 500,
}


class AppError(Exception):
    """Error with a wire status derived from its kind."""

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"AppError({self.kind.value}, {self.message!r})"


# ── Pipeline failures ─────────────────────────────────────────


class FailureCause(str, Enum):
    VALIDATION_FAILURE = "validation_failure"
    EXFILTRATION_DETECTED = "exfiltration_detected"
    MODEL_UNAVAILABLE = "model_unavailable"


class ModelUnavailableError(Exception):
    """The model endpoint errored or timed out during a single call."""


class StructuredOutputError(Exception):
    """Terminal failure of the structured-output retry loop."""

    def __init__(self, cause: FailureCause, block_name: str, detail: str = ""):
        super().__init__(f"{cause.value} while producing <{block_name}>: {detail}".rstrip(": "))
        self.cause = cause
        self.block_name = block_name
        self.detail = detail


GENERATION_FAILED_MESSAGE = "Generation failed. Please try again."
GRADING_FAILED_MESSAGE = "Grading failed. Please try again."
