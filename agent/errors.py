"""
Error taxonomy for the execution engine.

Every failure that crosses a component boundary is an EngineError carrying an
ErrorType, a short code and a retryable flag. The resilience layer reads the
flag; the tool layer turns errors into structured ToolResults; the executor
records them in Response metadata.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class EngineError(Exception):
    """Base class for all classified engine errors."""

    error_type: ErrorType = ErrorType.EXECUTION_ERROR
    default_retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.error_type.value
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context: Dict[str, Any] = dict(context or {})

    def is_retryable(self) -> bool:
        return self.retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}: {self.message!r})"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "EngineError":
        """Classify an arbitrary exception into the taxonomy."""
        if isinstance(exc, EngineError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return OperationTimeoutError(str(exc) or "Operation timed out")
        if isinstance(exc, (ConnectionError, OSError)):
            return NetworkError(str(exc) or type(exc).__name__)
        return ExecutionError(str(exc) or type(exc).__name__, context={"exception": type(exc).__name__})


class ValidationError(EngineError):
    """Bad tool parameters. Never retried."""
    error_type = ErrorType.VALIDATION_ERROR
    default_retryable = False


class PermissionDeniedError(EngineError):
    """Confirmation declined or operation blocked by policy. Never retried."""
    error_type = ErrorType.PERMISSION_DENIED
    default_retryable = False


class ExecutionError(EngineError):
    error_type = ErrorType.EXECUTION_ERROR
    default_retryable = True


class CancellationError(ExecutionError):
    """Raised at a suspension point once the owning token is cancelled."""
    default_retryable = False

    def __init__(self, message: str = "Operation cancelled", **kwargs: Any):
        kwargs.setdefault("code", "CANCELLED")
        super().__init__(message, **kwargs)


class OperationTimeoutError(EngineError):
    error_type = ErrorType.TIMEOUT_ERROR
    default_retryable = True


class NetworkError(EngineError):
    error_type = ErrorType.NETWORK_ERROR
    default_retryable = True


class CircuitOpenError(NetworkError):
    """Fail-fast rejection while a circuit is open."""
    default_retryable = False

    def __init__(self, operation_id: str, **kwargs: Any):
        kwargs.setdefault("code", "CIRCUIT_OPEN")
        kwargs.setdefault("context", {"operation_id": operation_id})
        super().__init__(f'Operation "{operation_id}" rejected: circuit open', **kwargs)
        self.operation_id = operation_id


class FatalError(EngineError):
    """Unrecoverable condition (context corruption, lost session identity).
    Aborts the owning Task without retry."""
    error_type = ErrorType.EXECUTION_ERROR
    default_retryable = False

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "FATAL")
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)
