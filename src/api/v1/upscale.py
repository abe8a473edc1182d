"""
Upscale Endpoint

POST /api/v1/upscale        - Upscale an uploaded image, returns PNG
GET  /api/v1/upscale/status - Model, session and device status
"""

import io
import asyncio
from typing import Tuple

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from PIL import Image, ImageOps

from src.core.config import settings
from src.core.exceptions import ValidationError, exception_for_error_code
from src.core.logging import get_logger
from src.engines.upscaling.schemas import UpscaleStatusDTO
from src.engines.upscaling.services import UpscalingService
from src.api.dependencies import get_upscaling_service

logger = get_logger(__name__)
router = APIRouter()

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)


def _decode_image(content: bytes) -> Tuple[bytes, int, int]:
    """Decode any Pillow-readable image to upright RGBA8 pixels."""
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except Exception as e:
        raise ValidationError(f"Invalid image file: {e}")

    image = ImageOps.exif_transpose(image).convert("RGBA")
    width, height = image.size

    if width * height > settings.MAX_INPUT_PIXELS:
        raise ValidationError(
            f"Image is {width}x{height}; at most {settings.MAX_INPUT_PIXELS} pixels are accepted",
            details={"width": width, "height": height, "max_pixels": settings.MAX_INPUT_PIXELS}
        )

    return image.tobytes(), width, height


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_class=Response)
async def upscale_image(
    file: UploadFile = File(...),
    target_scale: float = Form(...),
    service: UpscalingService = Depends(get_upscaling_service)
):
    """
    Upscale an image with the 4x model and resize it to ``target_scale``.

    Accepts any image Pillow can read; EXIF orientation is applied first.
    Returns the result as ``image/png`` with the output size and the device
    that ran inference in response headers.
    """
    content = await file.read()

    if len(content) > MAX_IMAGE_SIZE_BYTES:
        actual_size_mb = len(content) / (1024 * 1024)
        raise ValidationError(
            f"Image size ({actual_size_mb:.2f}MB) exceeds maximum ({MAX_IMAGE_SIZE_MB:.0f}MB). "
            "Please compress or resize.",
            details={"size_bytes": len(content), "max_bytes": MAX_IMAGE_SIZE_BYTES}
        )

    pixels, width, height = await asyncio.to_thread(_decode_image, content)

    logger.info(
        "upscale_requested",
        filename=file.filename,
        width=width,
        height=height,
        target_scale=target_scale
    )

    result = await service.upscale(pixels, width, height, target_scale)

    if not result.success:
        error_code = result.error_code.value if result.error_code else None
        raise exception_for_error_code(error_code, result.error_message or "Upscaling failed")

    return Response(
        content=result.image_data,
        media_type="image/png",
        headers={
            "X-Upscaled-Width": str(result.width),
            "X-Upscaled-Height": str(result.height),
            "X-Execution-Device": result.device.value if result.device else "unknown",
        }
    )


@router.get("/status", response_model=UpscaleStatusDTO)
async def upscale_status(service: UpscalingService = Depends(get_upscaling_service)):
    """Current model status, session device and tiling configuration."""
    session = service.session_manager.session
    tiling = service.tiling_engine

    return UpscaleStatusDTO(
        model_status=service.get_model_status(),
        model_path=str(service.get_model_path()),
        is_processing=service.is_processing,
        session_initialized=session is not None,
        is_gpu_active=service.is_gpu_active,
        gpu_permanently_disabled=service.session_manager.gpu_permanently_disabled,
        provider=session.provider if session else None,
        last_state=service.state,
        tile_size=tiling.tile_size,
        tile_padding=tiling.padding,
        scale_factor=tiling.scale_factor,
        min_target_scale=service.min_target_scale,
        max_target_scale=service.max_target_scale
    )
