"""
Global Exception Handling

Provides the upscaling error taxonomy and structured error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, operation_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class UpscalingBaseException(Exception):
    """Base exception for the upscaling service."""

    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: int = 500,
        operation_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.operation_id = operation_id or operation_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(UpscalingBaseException):
    """Raised when input dimensions, buffer size or target scale are invalid."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ModelNotReadyError(UpscalingBaseException):
    """Raised when the ONNX model is missing, downloading or broken."""

    error_code = "MODEL_NOT_READY"

    def __init__(self, message: str, model_status: Optional[str] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.details["model_status"] = model_status


class SessionInitError(UpscalingBaseException):
    """Raised when no execution provider could build a usable session."""

    error_code = "SESSION_INIT_FAILURE"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="initializing", **kwargs)


class GPUInferenceError(UpscalingBaseException):
    """Raised when the accelerator fails while running inference."""

    error_code = "GPU_INFERENCE_FAILURE"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, stage="processing_tiles", **kwargs)
        self.details["provider"] = provider


class CPUInferenceError(UpscalingBaseException):
    """Raised when inference fails on the CPU provider."""

    error_code = "CPU_INFERENCE_FAILURE"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, stage="processing_tiles", **kwargs)
        self.details["provider"] = provider


class UpscaleCancelledError(UpscalingBaseException):
    """Raised at a checkpoint after the caller requested cancellation."""

    error_code = "CANCELLED"

    def __init__(self, message: str = "Upscaling was cancelled", **kwargs):
        super().__init__(message, code=499, **kwargs)


class AlreadyProcessingError(UpscalingBaseException):
    """Raised when a second upscale is attempted while one is in flight."""

    error_code = "ALREADY_PROCESSING"

    def __init__(self, message: str = "Service is already processing an image", **kwargs):
        super().__init__(message, code=409, **kwargs)


class UpscalingFailedError(UpscalingBaseException):
    """Generic failure for errors outside the taxonomy above."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


EXCEPTIONS_BY_ERROR_CODE = {
    cls.error_code: cls
    for cls in (
        ValidationError,
        ModelNotReadyError,
        SessionInitError,
        GPUInferenceError,
        CPUInferenceError,
        UpscaleCancelledError,
        AlreadyProcessingError,
    )
}


def exception_for_error_code(error_code: Optional[str], message: str) -> UpscalingBaseException:
    """Rebuild the exception matching a failed result's error code."""
    exc_class = EXCEPTIONS_BY_ERROR_CODE.get(error_code or "")
    if exc_class is None:
        return UpscalingFailedError(message)
    return exc_class(message)


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_payload(exc: UpscalingBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "error_code": exc.error_code,
        "operation_id": exc.operation_id or operation_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UpscalingBaseException)
    async def upscaling_exception_handler(request: Request, exc: UpscalingBaseException):
        logger.error(
            "upscaling_exception",
            error=exc.message,
            error_code=exc.error_code,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content=_error_payload(exc)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        operation_id = operation_id_var.get()

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
                "operation_id": operation_id,
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
