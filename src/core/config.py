"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Imagery Upscaling Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Model Storage
    # ==========================================================================
    MODEL_DIR: Path = Path("./models")
    UPSCALE_MODEL_FILENAME: str = "4x-UltraSharp.onnx"

    # No default source is shipped; point this at your own mirror of the model
    UPSCALE_MODEL_URL: Optional[str] = None

    # Files smaller than this are reported as broken downloads
    UPSCALE_MODEL_MIN_BYTES: int = 1_000_000
    MODEL_DOWNLOAD_TIMEOUT_SECONDS: float = 1800.0

    # ==========================================================================
    # Upscaling Settings
    # ==========================================================================
    # 4x-UltraSharp (ESRGAN) native ratio
    SCALE_FACTOR: int = 4

    # Larger tiles use more VRAM; content stride is TILE_SIZE - 2 * TILE_PADDING
    TILE_SIZE: int = 192
    TILE_PADDING: int = 32

    MIN_TARGET_SCALE: float = 1.1
    MAX_TARGET_SCALE: float = 4.0

    # ==========================================================================
    # Execution Providers
    # ==========================================================================
    PREFER_GPU: bool = True

    # Tried in order; the first one onnxruntime reports as available wins
    ACCELERATOR_PROVIDERS: str = "CUDAExecutionProvider,DmlExecutionProvider"
    GPU_DEVICE_ID: int = 0

    # Defaults to the host's logical core count
    CPU_INTRA_OP_THREADS: Optional[int] = None

    # Build the inference session during startup instead of on first request
    PRELOAD_SESSION: bool = False

    # ==========================================================================
    # Request Limits
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 20971520  # 20MB
    MAX_INPUT_PIXELS: int = 4096 * 4096

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    @property
    def accelerator_providers(self) -> List[str]:
        return [p.strip() for p in self.ACCELERATOR_PROVIDERS.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()

# Ensure critical directories exist
settings.MODEL_DIR.mkdir(parents=True, exist_ok=True)
