"""Error definitions for MCP tools.

This module defines structured error types with stable codes
that can be surfaced to MCP clients. Core exceptions carry an
upper-case error_code; MCP codes are its lower-case form.
"""

from dataclasses import dataclass
from typing import Any

VALIDATION_ERROR = "validation"
FLASH_ERROR = "flash_error"
PERMISSION_ERROR = "permission_denied"
DEVICE_NOT_FOUND = "device_not_found"
IMAGE_NOT_FOUND = "image_not_found"
SIZE_EXCEEDED = "size_exceeded"
ALREADY_IN_PROGRESS = "already_in_progress"
INTERNAL_ERROR = "internal_error"


@dataclass
class MCPError:
    """Structured error response for MCP tools.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        details: Optional additional error details.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


def make_error(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> MCPError:
    """Create an MCPError instance.

    Args:
        code: Stable error code.
        message: Human-readable message.
        details: Optional additional details.

    Returns:
        MCPError instance.
    """
    return MCPError(code=code, message=message, details=details)


def validation_error(message: str, details: dict[str, Any] | None = None) -> MCPError:
    """Create a validation error."""
    return make_error(VALIDATION_ERROR, message, details)


def flash_error(
    message: str,
    error_code: str | None = None,
    details: dict[str, Any] | None = None,
) -> MCPError:
    """Create a flash error."""
    code = error_code.lower() if error_code else FLASH_ERROR
    return make_error(code, message, details)


def from_exception(error: Exception) -> MCPError:
    """Translate a core exception carrying message/error_code.

    Exceptions without an error_code become internal errors.
    """
    error_code = getattr(error, "error_code", None)
    message = getattr(error, "message", None) or str(error)
    if not error_code:
        return make_error(INTERNAL_ERROR, message)
    return make_error(str(error_code).lower(), message)


__all__ = [
    "ALREADY_IN_PROGRESS",
    "DEVICE_NOT_FOUND",
    "FLASH_ERROR",
    "IMAGE_NOT_FOUND",
    "INTERNAL_ERROR",
    "MCPError",
    "PERMISSION_ERROR",
    "SIZE_EXCEEDED",
    "VALIDATION_ERROR",
    "flash_error",
    "from_exception",
    "make_error",
    "validation_error",
]
