"""
Global Exception Handling

Provides the exception taxonomy, operator-facing error messages,
a circuit breaker for the inference backend and FastAPI handlers
that render structured error responses.
"""

import re
import time
import asyncio
import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from atelier.core.logging import get_logger, slot_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class AtelierError(Exception):
    """Base exception for the studio orchestration core."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        slot_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.slot_id = slot_id or slot_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AtelierError):
    """Raised when an upload or request is rejected before any state change."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class NotFoundError(AtelierError):
    """Raised when an upload slot or preview key does not exist."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


class SelectionError(AtelierError):
    """Raised when a region is selected outside the Selecting stage or is unknown."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=409, **kwargs)


class PipelineStageError(AtelierError):
    """Raised on an illegal ingestion stage transition."""

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, code=500, stage=stage, **kwargs)


class InferenceError(AtelierError):
    """Raised when a remote inference call fails."""

    def __init__(
        self,
        message: str,
        operation: str,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.operation = operation
        self.http_status = http_status
        self.details["operation"] = operation
        self.details["http_status"] = http_status


class CircuitBreakerOpenError(AtelierError):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            code=503,
            **kwargs
        )
        self.details["service"] = service


# =============================================================================
# Operator-facing messages
# =============================================================================

def friendly_error_message(error: BaseException, context: str = "") -> str:
    """
    Convert an exception into a message fit for the operator.

    Known failure families (timeouts, network errors, safety blocks,
    unsupported formats, missing image output) get a fixed explanation;
    anything else is reported as "<context>. <raw message>".
    """
    if isinstance(error, asyncio.CancelledError):
        return "The operation was cancelled."
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return (
            "The request timed out. This could be due to a slow network or "
            "high server load. Please try again."
        )

    raw_message = str(error) or type(error).__name__
    lower = raw_message.lower()

    if isinstance(error, httpx.TransportError) or "failed to fetch" in lower or "network request failed" in lower:
        return "A network error occurred. Please check your internet connection and try again."

    if "timeout" in lower or "timed out" in lower:
        return (
            "The request timed out. This could be due to a slow network or "
            "high server load. The \"Retry\" button might help."
        )

    if "request was blocked" in lower or "safety policy" in lower:
        return (
            "The request was blocked due to the content safety policy. This can "
            "happen with images that are unclear or resemble restricted content. "
            "Please try a different image or prompt."
        )

    if "generation stopped unexpectedly" in lower and "safety settings" in lower:
        return (
            "The image could not be generated, which can be due to safety "
            "filters. Please try a different image or prompt."
        )

    if "unsupported mime type" in lower:
        match = re.search(r"unsupported mime type: (\S+)", raw_message, re.IGNORECASE)
        if match:
            return f"File type '{match.group(1)}' is not supported. Please use a format like PNG, JPEG, or WEBP."
        return "Unsupported file format. Please upload an image format like PNG, JPEG, or WEBP."

    if "did not return an image" in lower:
        return (
            "The AI model didn't return an image. This can happen if the request "
            "is too complex or the garment is difficult to isolate. Please try a "
            "different image."
        )

    if context:
        return f"{context.rstrip('.')}. {raw_message}"
    return raw_message


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        half_open_max_calls: int = 1
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        elif state == "OPEN":
            return False
        elif state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls

        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info(
                    "circuit_breaker_closed",
                    circuit=self.name,
                    message="Service recovered"
                )
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold and self._state != "OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# =============================================================================
# Exception Handlers
# =============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(AtelierError)
    async def atelier_exception_handler(request: Request, exc: AtelierError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "atelier_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "code": exc.code,
                "slot_id": exc.slot_id,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": 500,
                "timestamp": _timestamp()
            }
        )
