"""
defense_eval/errors.py
Centralized error taxonomy for evaluation submissions

Every rejection carries a stable machine-readable code and tells the
client whether retrying can help:

- VALIDATION_ERROR (400): request is malformed, correct and resubmit
- DUPLICATE_SUBMISSION (409): already recorded, safe to treat as success
- CONFLICT_DETECTED (409): content diverges from a recorded evaluation
- NOT_FOUND (404): referenced record does not exist
- INTERNAL_ERROR (500): storage or formatting failure
- TRANSACTION_TIMEOUT / STORAGE_BUSY (503): transient, retry later

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "retryable": false,
    "timestamp": "2025-01-13T10:30:00Z",
    "details": {} (optional)
}
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import status

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    STORAGE_BUSY = "STORAGE_BUSY"


def utc_timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


def new_log_id() -> str:
    return str(uuid.uuid4())[:8]


class APIError(Exception):
    """Base API exception with consistent structure"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        self.timestamp = utc_timestamp()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
        if self.details:
            result["details"] = self.details
        return result


class SubmissionValidationError(APIError):
    """400 - Missing or malformed submission"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = ErrorCode.VALIDATION_ERROR


class DuplicateSubmissionError(APIError):
    """409 - The evaluator's slot was already flipped (or does not exist)"""
    status_code = status.HTTP_409_CONFLICT
    code = ErrorCode.DUPLICATE_SUBMISSION

    def __init__(
        self,
        message: str = "Evaluation already submitted by this evaluator or evaluator not found",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)


class ConflictDetectedError(APIError):
    """409 - Submitted content diverges from an already recorded evaluation"""
    status_code = status.HTTP_409_CONFLICT
    code = ErrorCode.CONFLICT_DETECTED

    def __init__(
        self,
        message: str = "Conflict data detected - evaluation reverted",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)


class NotFoundError(APIError):
    """404 - Resource does not exist"""
    status_code = status.HTTP_404_NOT_FOUND
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, {"resource": resource, "id": identifier})


class InternalError(APIError):
    """500 - Storage or formatting failure; detail only leaves in development"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "An internal error occurred", log_id: Optional[str] = None):
        self.log_id = log_id or new_log_id()
        super().__init__(message, {"log_id": self.log_id})


class TransactionTimeoutError(APIError):
    """503 - The unit of work ran past its deadline and was rolled back"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = ErrorCode.TRANSACTION_TIMEOUT
    retryable = True

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Submission did not complete within {timeout_seconds:g}s and was rolled back; retry later",
            {"timeout_seconds": timeout_seconds},
        )


class StorageBusyError(APIError):
    """503 - The database could not take the write lock in time"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = ErrorCode.STORAGE_BUSY
    retryable = True

    def __init__(self, message: str = "Storage is busy; retry later"):
        super().__init__(message)


ERROR_MAPPING = {
    400: ErrorCode.VALIDATION_ERROR,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.DUPLICATE_SUBMISSION,
    500: ErrorCode.INTERNAL_ERROR,
    503: ErrorCode.STORAGE_BUSY,
}


def error_payload(
    message: str,
    code: str,
    retryable: bool = False,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a failure envelope for errors that are not APIError instances."""
    payload = {
        "success": False,
        "message": message,
        "code": code,
        "retryable": retryable,
        "timestamp": utc_timestamp(),
    }
    if details:
        payload["details"] = details
    return payload
