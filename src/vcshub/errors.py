"""Error taxonomy for vcshub.

Every error raised by the core carries a stable ``kind`` and a message that is
safe to show to a client. Failures of the document store or the object store
are logged with a correlation id and surface as a generic ``UpstreamError``
that only carries that id.
"""

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger


class ErrorKind(str, Enum):
    """Stable error kinds exposed at the core boundary."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    UPSTREAM = "upstream"
    INVALID = "invalid"


class VCSHubError(Exception):
    """Base exception for all vcshub errors."""

    kind: ErrorKind = ErrorKind.UPSTREAM

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(VCSHubError):
    """Raised when a project, branch, commit or object does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(VCSHubError):
    """Raised on duplicate names, locked paths or a stale commit index."""

    kind = ErrorKind.CONFLICT


class ForbiddenError(VCSHubError):
    """Raised when the caller's role is insufficient."""

    kind = ErrorKind.FORBIDDEN


class InvalidError(VCSHubError):
    """Raised when input is malformed."""

    kind = ErrorKind.INVALID


class ConfigurationError(InvalidError):
    """Raised when configuration is invalid or missing."""


class UpstreamError(VCSHubError):
    """Raised when the document store or object store fails.

    Attributes:
        correlation_id: Id under which the internal error was logged
    """

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str = "Internal server error",
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, details)
        self.correlation_id = correlation_id

    @classmethod
    def from_exception(cls, operation: str, exc: BaseException) -> "UpstreamError":
        """Log ``exc`` under a new correlation id and wrap it.

        Args:
            operation: Short name of the failed operation (for the log)
            exc: Underlying driver/client exception

        Returns:
            Error whose message does not contain the driver's error text
        """
        correlation_id = uuid.uuid4().hex[:12]
        logger.opt(exception=exc).error(
            "[{}] {} failed: {}", correlation_id, operation, exc
        )
        return cls(
            f"Internal server error (ref: {correlation_id})",
            details={"operation": operation},
            correlation_id=correlation_id,
        )


def to_payload(exc: BaseException) -> Dict[str, str]:
    """Map an exception to the stable ``{"error", "message"}`` boundary shape.

    Unknown exceptions are logged and reported as a generic upstream error.
    """
    if not isinstance(exc, VCSHubError):
        exc = UpstreamError.from_exception("unhandled", exc)
    return {"error": exc.kind.value, "message": exc.message}
