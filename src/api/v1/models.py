"""
Model Management Endpoints

GET    /api/v1/models/upscaler          - Model file status
POST   /api/v1/models/upscaler/download - Fetch the model from UPSCALE_MODEL_URL
DELETE /api/v1/models/upscaler          - Remove the model file
"""

from fastapi import APIRouter, Depends, Response

from src.core.exceptions import AlreadyProcessingError
from src.core.logging import get_logger
from src.engines.upscaling.schemas import ModelDownloadResponseDTO, ModelInfoDTO
from src.engines.upscaling.services import UpscalingService
from src.api.dependencies import get_upscaling_service

logger = get_logger(__name__)
router = APIRouter()


def _model_info(service: UpscalingService) -> ModelInfoDTO:
    return ModelInfoDTO(
        status=service.get_model_status(),
        path=str(service.get_model_path()),
        size_bytes=service.model_manager.get_size_bytes()
    )


@router.get("/upscaler", response_model=ModelInfoDTO)
async def get_upscaler_model(service: UpscalingService = Depends(get_upscaling_service)):
    return _model_info(service)


@router.post("/upscaler/download", response_model=ModelDownloadResponseDTO)
async def download_upscaler_model(
    response: Response,
    service: UpscalingService = Depends(get_upscaling_service)
):
    """
    Download the upscaling model.

    Blocks until the transfer finishes. Responds 503 when no URL is
    configured, another download is running or the transfer failed.
    """
    last_status = {}

    def on_progress(progress):
        last_status["message"] = progress.status

    success = await service.download_model_async(progress=on_progress)
    status = service.get_model_status()

    if not success:
        response.status_code = 503

    return ModelDownloadResponseDTO(
        success=success,
        status=status,
        message=last_status.get("message", "Download finished" if success else "Download failed"),
        details={"path": str(service.get_model_path())}
    )


@router.delete("/upscaler", response_model=ModelInfoDTO)
async def delete_upscaler_model(service: UpscalingService = Depends(get_upscaling_service)):
    """Remove the model file and drop any session built from it."""
    if service.is_processing:
        raise AlreadyProcessingError("Cannot delete the model while an image is being upscaled")

    service.session_manager.invalidate()
    deleted = service.model_manager.delete_model()

    logger.info("upscaler_model_delete_requested", deleted=deleted)
    return _model_info(service)
