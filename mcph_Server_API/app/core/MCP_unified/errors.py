"""
Tool-level errors.

A ``ToolError`` is an expected domain outcome (missing crate, wrong password...).
It is returned to the client as a successful JSON-RPC result flagged with
``isError: true`` rather than as a JSON-RPC error envelope.
"""

from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional


class ToolErrorCode(str, Enum):
    # Authentication & Authorization
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    # Resource Errors
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_EXPIRED = "RESOURCE_EXPIRED"
    RESOURCE_ALREADY_EXISTS = "RESOURCE_ALREADY_EXISTS"

    # Validation Errors
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_PASSWORD = "INVALID_PASSWORD"

    # System Errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Business Logic Errors
    OPERATION_NOT_ALLOWED = "OPERATION_NOT_ALLOWED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


def create_tool_error(
    code: ToolErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Standard ``isError`` tool result"""
    error: Dict[str, Any] = {"code": code.value, "message": message}
    if details:
        error["details"] = details
    if request_id:
        error["requestId"] = request_id
    return {
        "content": [{"type": "text", "text": message}],
        "isError": True,
        "error": error,
    }


def is_error_response(response: Any) -> bool:
    return isinstance(response, Mapping) and response.get("isError") is True and bool(response.get("error"))


class ToolError(Exception):
    """Raised by tool handlers for expected, caller-visible failures"""

    def __init__(self, code: ToolErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    def to_result(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        return create_tool_error(self.code, self.message, self.details, request_id)


class CommonErrors:
    """Factories for frequent tool errors: ``raise CommonErrors.not_found("Crate")``"""

    @staticmethod
    def not_found(resource: str = "Resource") -> ToolError:
        return ToolError(ToolErrorCode.RESOURCE_NOT_FOUND, f"{resource} not found")

    @staticmethod
    def permission_denied(action: str = "access this resource") -> ToolError:
        return ToolError(ToolErrorCode.PERMISSION_DENIED, f"You don't have permission to {action}")

    @staticmethod
    def authentication_required(action: str = "perform this operation") -> ToolError:
        return ToolError(ToolErrorCode.AUTHENTICATION_REQUIRED, f"You need to be logged in to {action}")

    @staticmethod
    def invalid_input(field: str, reason: Optional[str] = None) -> ToolError:
        suffix = f": {reason}" if reason else ""
        return ToolError(ToolErrorCode.INVALID_INPUT, f"Invalid input for field '{field}'{suffix}")


def validate_required(data: Mapping[str, Any], required_fields: Iterable[str]) -> None:
    """Raise MISSING_REQUIRED_FIELD for the first absent, null or empty field"""
    for name in required_fields:
        value = data.get(name)
        if value is None or value == "":
            raise ToolError(ToolErrorCode.MISSING_REQUIRED_FIELD, f"Missing required field: {name}")
