"""
Error taxonomy, typed operation results and transaction handling for the order subsystem
"""

import uuid
import traceback
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class ErrorContext:
    """Context object for tracking error information across the request lifecycle"""

    def __init__(self, request: Request):
        self.request_id = str(uuid.uuid4())
        self.request = request
        self.endpoint = str(request.url.path)
        self.method = request.method
        self.client_ip = self._get_client_ip()
        self.user_agent = request.headers.get("user-agent")
        self.timestamp = datetime.utcnow()

    def _get_client_ip(self) -> Optional[str]:
        """Extract client IP from request headers"""
        if "x-forwarded-for" in self.request.headers:
            return self.request.headers["x-forwarded-for"].split(",")[0].strip()
        elif "x-real-ip" in self.request.headers:
            return self.request.headers["x-real-ip"]
        elif self.request.client:
            return self.request.client.host
        return None


class OrderServiceError(Exception):
    """Base class for errors raised by the order subsystem"""
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(OrderServiceError):
    """A required field is missing or invalid; nothing was written"""
    error_code = "VALIDATION_ERROR"


class NotFoundError(OrderServiceError):
    """Unknown order, group or medication id"""
    error_code = "NOT_FOUND"


class StateConflictError(OrderServiceError):
    """Mutation blocked by the current state (terminal order, duplicate group number)"""
    error_code = "STATE_CONFLICT"


class PersistenceError(OrderServiceError):
    """Storage engine failure; in-flight transaction work has been rolled back"""
    error_code = "DATABASE_ERROR"

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class EncryptionFallback(OrderServiceError):
    """A stored value could not be decrypted and is treated as legacy plaintext"""
    error_code = "ENCRYPTION_FALLBACK"


class EncryptionConfigError(OrderServiceError):
    """Encryption key material is missing or malformed"""
    error_code = "ENCRYPTION_CONFIG_ERROR"


@dataclass
class OperationResult:
    """Outcome of an order mutation; failures are returned, not raised"""
    success: bool
    message: str
    order: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, message: str, order: Optional[Dict[str, Any]] = None) -> "OperationResult":
        return cls(success=True, message=message, order=order)

    @classmethod
    def failure(cls, error: OrderServiceError) -> "OperationResult":
        return cls(success=False, message=error.message, error_code=error.error_code)

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "message": self.message}
        if self.order is not None:
            result["order"] = self.order
        if self.error_code:
            result["errorCode"] = self.error_code
        return result


STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    StateConflictError: 409,
    PersistenceError: 500,
}


def status_code_for(error: Exception) -> int:
    """HTTP status for an order subsystem error"""
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def raise_for_result(result: OperationResult) -> OperationResult:
    """Turn a failed OperationResult into the matching HTTPException"""
    if result.success:
        return result
    status_code = {
        ValidationError.error_code: 400,
        NotFoundError.error_code: 404,
        StateConflictError.error_code: 409,
    }.get(result.error_code, 500)
    raise HTTPException(status_code=status_code, detail=result.message)


class ErrorHandler:
    """Centralized error handling service"""

    @staticmethod
    def create_error_response(
        error_context: ErrorContext,
        error: Exception,
        status_code: int = 500,
        error_code: Optional[str] = None,
        include_details: bool = False
    ) -> JSONResponse:
        """Create a standardized error response"""

        error_data = {
            "error": {
                "code": error_code or ErrorHandler._get_error_code(error),
                "message": ErrorHandler._get_user_friendly_message(error),
                "request_id": error_context.request_id,
                "timestamp": error_context.timestamp.isoformat(),
                "endpoint": error_context.endpoint,
                "method": error_context.method
            }
        }

        if include_details:
            error_data["error"]["details"] = {
                "original_error": str(error),
                "error_type": type(error).__name__,
                "stack_trace": traceback.format_exc()
            }

        ErrorHandler._log_error(error_context, error, status_code)

        return JSONResponse(
            status_code=status_code,
            content=error_data
        )

    @staticmethod
    def _get_error_code(error: Exception) -> str:
        """Generate appropriate error codes based on exception type"""
        if isinstance(error, HTTPException):
            return f"HTTP_{error.status_code}"
        elif isinstance(error, OrderServiceError):
            return error.error_code
        elif isinstance(error, ValueError):
            return "VALIDATION_ERROR"
        else:
            return "INTERNAL_ERROR"

    @staticmethod
    def _get_user_friendly_message(error: Exception) -> str:
        """Generate user-friendly error messages"""
        if isinstance(error, HTTPException):
            return error.detail
        elif isinstance(error, PersistenceError):
            return "A database error occurred. Please try again later."
        elif isinstance(error, OrderServiceError):
            return error.message
        elif isinstance(error, ValueError):
            return "Invalid input provided. Please check your data and try again."
        else:
            return "An unexpected error occurred. Please try again later."

    @staticmethod
    def _log_error(error_context: ErrorContext, error: Exception, status_code: int):
        """Log error with comprehensive context"""
        log = logger.error if status_code >= 500 else logger.warning
        log(
            f"Error {error_context.request_id}: {type(error).__name__} in {error_context.method} {error_context.endpoint}",
            extra={
                "request_id": error_context.request_id,
                "endpoint": error_context.endpoint,
                "method": error_context.method,
                "status_code": status_code,
                "client_ip": error_context.client_ip,
                "user_agent": error_context.user_agent,
                "error_type": type(error).__name__,
                "error_message": str(error),
            }
        )


class TransactionScope:
    """Context manager that commits a session on success and rolls it back on any failure"""

    def __init__(self, db: Session):
        self.db = db

    def __enter__(self) -> Session:
        return self.db

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            try:
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise self._translate(e) from e
            return False

        self.db.rollback()
        if isinstance(exc_val, SQLAlchemyError):
            raise self._translate(exc_val) from exc_val
        return False

    @staticmethod
    def _translate(error: SQLAlchemyError) -> OrderServiceError:
        if isinstance(error, IntegrityError) and "UNIQUE" in str(error).upper():
            return StateConflictError("A record with this information already exists")
        logger.error(f"Database transaction error: {error}")
        return PersistenceError(f"Database transaction failed: {error}", error)
