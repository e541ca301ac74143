"""HTTP error type rendered as {success: false, error: {code, message, details}}."""

from typing import Any, Dict, Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return error_body(self.code, self.message, self.details)


def error_body(code: str, message: str, details: Optional[str] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }


_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "NO_TOKEN",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def code_for_status(status_code: int) -> str:
    return _STATUS_CODES.get(status_code, "INTERNAL_ERROR" if status_code >= 500 else "ERROR")
