from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Union
from enum import Enum

import numpy as np

from src.core.exceptions import ValidationError


class ModelStatus(str, Enum):
    NOT_DOWNLOADED = "not_downloaded"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class ExecutionDevice(str, Enum):
    GPU = "gpu"
    CPU = "cpu"


class UpscalingPhase(str, Enum):
    PREPARING = "preparing"
    PROCESSING_TILES = "processing_tiles"
    RESIZING_TO_TARGET = "resizing_to_target"
    FINALIZING = "finalizing"


class UpscaleState(str, Enum):
    """States of one upscale call; see UpscalingService._execute."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    TILING = "tiling"
    REINITIALIZING = "reinitializing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UpscaleErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MODEL_NOT_READY = "MODEL_NOT_READY"
    SESSION_INIT_FAILURE = "SESSION_INIT_FAILURE"
    GPU_INFERENCE_FAILURE = "GPU_INFERENCE_FAILURE"
    CPU_INFERENCE_FAILURE = "CPU_INFERENCE_FAILURE"
    CANCELLED = "CANCELLED"
    ALREADY_PROCESSING = "ALREADY_PROCESSING"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# Pixel Buffers & Tiles
# =============================================================================

class ImageBuffer(BaseModel):
    """Interleaved RGBA8 image owned by a single upscale call.

    ``pixels`` has shape ``(height, width, 4)`` and dtype ``uint8``.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    width: int
    height: int
    pixels: np.ndarray

    @classmethod
    def from_bytes(cls, data: Union[bytes, bytearray, memoryview], width: int, height: int) -> "ImageBuffer":
        """Wrap a raw RGBA byte buffer, copying it so the caller keeps ownership."""
        if width <= 0 or height <= 0:
            raise ValidationError(f"Invalid image dimensions: {width}x{height}")

        expected = width * height * 4
        if len(data) != expected:
            raise ValidationError(
                f"Pixel buffer has {len(data)} bytes, expected {expected} for {width}x{height} RGBA",
                details={"expected_bytes": expected, "actual_bytes": len(data)}
            )

        pixels = np.frombuffer(bytes(data), dtype=np.uint8).reshape(height, width, 4).copy()
        return cls(width=width, height=height, pixels=pixels)

    @classmethod
    def from_array(cls, pixels: np.ndarray) -> "ImageBuffer":
        if pixels.ndim != 3 or pixels.shape[2] != 4 or pixels.dtype != np.uint8:
            raise ValidationError(
                f"Expected a (height, width, 4) uint8 array, got {pixels.shape} {pixels.dtype}"
            )
        height, width = pixels.shape[:2]
        if width <= 0 or height <= 0:
            raise ValidationError(f"Invalid image dimensions: {width}x{height}")
        return cls(width=width, height=height, pixels=np.ascontiguousarray(pixels))

    @classmethod
    def blank(cls, width: int, height: int) -> "ImageBuffer":
        return cls(width=width, height=height, pixels=np.zeros((height, width, 4), dtype=np.uint8))

    def copy(self) -> "ImageBuffer":
        return ImageBuffer(width=self.width, height=self.height, pixels=self.pixels.copy())


class TileDescriptor(BaseModel):
    """One cell of the tile grid.

    ``origin_x``/``origin_y`` is the unclamped top-left of the padded extraction
    window and may lie outside the image; sampling clamps it.
    """
    model_config = ConfigDict(frozen=True)

    tx: int
    ty: int
    origin_x: int
    origin_y: int
    tile_size: int
    padding: int

    @property
    def stride(self) -> int:
        return self.tile_size - 2 * self.padding

    @property
    def content_x(self) -> int:
        return self.tx * self.stride

    @property
    def content_y(self) -> int:
        return self.ty * self.stride


# =============================================================================
# Progress & Results
# =============================================================================

class UpscalingProgress(BaseModel):
    """Progress update for one upscale call."""
    model_config = ConfigDict(frozen=True)

    phase: UpscalingPhase
    message: str
    percent: int = Field(..., ge=0, le=100)


class ModelDownloadProgress(BaseModel):
    """Progress update while fetching the model file."""
    bytes_downloaded: int
    total_bytes: int
    status: str

    @property
    def percent(self) -> float:
        """Percentage (0-100), or -1 when the total size is unknown."""
        if self.total_bytes > 0:
            return self.bytes_downloaded / self.total_bytes * 100
        return -1


class UpscalingResult(BaseModel):
    """Outcome of one upscale call. Failed results never carry image data."""
    success: bool
    error_message: Optional[str] = None
    error_code: Optional[UpscaleErrorCode] = None
    image_data: Optional[bytes] = None
    width: int = 0
    height: int = 0
    device: Optional[ExecutionDevice] = None

    @property
    def cancelled(self) -> bool:
        return self.error_code == UpscaleErrorCode.CANCELLED

    @classmethod
    def succeeded(
        cls,
        image_data: bytes,
        width: int,
        height: int,
        device: Optional[ExecutionDevice] = None
    ) -> "UpscalingResult":
        return cls(success=True, image_data=image_data, width=width, height=height, device=device)

    @classmethod
    def failed(cls, error_code: UpscaleErrorCode, message: str) -> "UpscalingResult":
        return cls(success=False, error_code=error_code, error_message=message)


# =============================================================================
# API Schemas
# =============================================================================

class UpscaleStatusDTO(BaseModel):
    """Current state of the upscaling service."""
    model_status: ModelStatus
    model_path: str
    is_processing: bool
    session_initialized: bool
    is_gpu_active: bool
    gpu_permanently_disabled: bool
    provider: Optional[str] = None
    last_state: UpscaleState = UpscaleState.IDLE
    tile_size: int
    tile_padding: int
    scale_factor: int
    min_target_scale: float
    max_target_scale: float


class ModelInfoDTO(BaseModel):
    """Model file status."""
    status: ModelStatus
    path: str
    size_bytes: Optional[int] = None


class ModelDownloadResponseDTO(BaseModel):
    success: bool
    status: ModelStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
