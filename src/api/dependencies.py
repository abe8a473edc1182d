"""
FastAPI Dependencies for the Upscaling Service

Provides dependency injection for:
- UpscalingService (singleton; owns the model manager, inference session
  and worker thread)

The service is cheap to construct: the ONNX session is only built on the
first upscale or when PRELOAD_SESSION is enabled.
"""

from src.core.config import settings
from src.core.logging import get_logger
from src.engines.upscaling.services import UpscalingService, create_upscaling_service

logger = get_logger(__name__)


# =============================================================================
# Global Singletons - one inference session per process
# =============================================================================

_upscaling_service = create_upscaling_service(settings)


# =============================================================================
# Session Preloading
# =============================================================================

async def preload_session_async() -> bool:
    """Build the inference session during startup.

    Failures are logged and the session is retried lazily on the first request.
    """
    logger.info("preloading_inference_session")
    success = await _upscaling_service.initialize_async()
    if success:
        logger.info(
            "inference_session_preloaded",
            gpu_active=_upscaling_service.is_gpu_active
        )
    else:
        logger.warning(
            "inference_session_preload_failed",
            model_status=_upscaling_service.get_model_status().value
        )
    return success


def shutdown_upscaling_service():
    """Release the session and stop the worker thread."""
    _upscaling_service.close()
    logger.info("upscaling_service_closed")


# =============================================================================
# Dependencies
# =============================================================================

def get_upscaling_service() -> UpscalingService:
    """Returns singleton upscaling service."""
    return _upscaling_service
