#!/usr/bin/env python3
"""
Model Setup Script - Pre-download and Verify the Upscaling Model

This script:
1. Downloads the 4x ONNX upscaling model (if UPSCALE_MODEL_URL / --url is set)
2. Checks the file is present and not truncated
3. Optionally builds an inference session and reports the device it landed on
4. Optionally runs a single-tile smoke test

Run this during Docker build to avoid download at runtime:
    python scripts/setup_models.py --url https://example.com/4x-UltraSharp.onnx

Environment variables:
    MODEL_DIR: Directory holding the model (default: ./models)
    UPSCALE_MODEL_URL: Where to fetch the model from
"""

import sys
import time
import asyncio
import logging
import argparse
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import settings
from src.engines.upscaling.model_manager import OnnxModelManager
from src.engines.upscaling.providers import (
    CpuExecutionProvider,
    ExecutionProviderSelector,
    GpuExecutionProvider,
)
from src.engines.upscaling.schemas import ImageBuffer, ModelStatus
from src.engines.upscaling.tiling import TilingEngine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _print_progress(progress):
    if progress.percent >= 0:
        logger.info(f"  {progress.status} ({progress.percent:.0f}%)")
    else:
        logger.info(f"  {progress.status}")


def setup_models(
    model_dir: str,
    url: str = None,
    build_session: bool = True,
    prefer_gpu: bool = True,
    smoke_test: bool = False,
) -> bool:
    """Download and verify the upscaling model.

    Args:
        model_dir: Directory to store the model in
        url: Download source; skipped when the model is already present
        build_session: Whether to build an ONNX Runtime session after download
        prefer_gpu: Try the accelerator providers before CPU
        smoke_test: Run one tile through the session
    """
    manager = OnnxModelManager(
        models_dir=Path(model_dir),
        filename=settings.UPSCALE_MODEL_FILENAME,
        url=url,
        min_bytes=settings.UPSCALE_MODEL_MIN_BYTES,
        timeout=settings.MODEL_DOWNLOAD_TIMEOUT_SECONDS
    )

    logger.info("=" * 60)
    logger.info("Upscaling Model Setup Script")
    logger.info("=" * 60)
    logger.info(f"Model path: {manager.get_model_path().absolute()}")
    logger.info(f"Download URL: {url or '(not set)'}")
    logger.info("=" * 60)

    total_start = time.time()

    # =========================================================================
    # Step 1: Download
    # =========================================================================
    logger.info("\n[Step 1/3] Downloading model...")
    status = manager.get_status()

    if status == ModelStatus.READY:
        logger.info("Model already present, skipping download")
    else:
        if not asyncio.run(manager.download_async(progress=_print_progress)):
            logger.error(f"Model download failed (status: {manager.get_status().value})")
            return False

    # =========================================================================
    # Step 2: Verify
    # =========================================================================
    logger.info("\n[Step 2/3] Verifying model file...")
    status = manager.get_status()
    if status != ModelStatus.READY:
        logger.error(f"Model is not usable (status: {status.value})")
        return False
    logger.info(f"Model size: {manager.get_size_bytes() / (1024 * 1024):.1f}MB")

    # =========================================================================
    # Step 3: Session
    # =========================================================================
    if build_session:
        logger.info("\n[Step 3/3] Building inference session...")
        selector = ExecutionProviderSelector(
            gpu_provider=GpuExecutionProvider(settings.accelerator_providers, settings.GPU_DEVICE_ID),
            cpu_provider=CpuExecutionProvider(settings.CPU_INTRA_OP_THREADS)
        )
        session_start = time.time()
        session = selector.create_session(manager.get_model_path(), prefer_gpu=prefer_gpu)
        logger.info(
            f"Session ready on {session.device.value} ({session.provider}) "
            f"in {time.time() - session_start:.1f}s"
        )
        logger.info(f"Input: {session.input_name}, output: {session.output_name}")

        if smoke_test:
            engine = TilingEngine(settings.TILE_SIZE, settings.TILE_PADDING, settings.SCALE_FACTOR)
            image = ImageBuffer.blank(engine.stride, engine.stride)
            image.pixels[..., 3] = 255
            tile_start = time.time()
            result = engine.process_tiles(image, session)
            logger.info(
                f"Smoke test: {image.width}x{image.height} -> {result.width}x{result.height} "
                f"in {time.time() - tile_start:.2f}s"
            )
            if not np.all(result.pixels[..., 3] == 255):
                logger.error("Smoke test produced non-opaque output")
                return False

        session.close()
    else:
        logger.info("\n[Step 3/3] Skipping session build")

    logger.info("=" * 60)
    logger.info("✅ Model setup complete!")
    logger.info(f"Total time: {time.time() - total_start:.1f}s")
    logger.info("=" * 60)

    return True


def main():
    parser = argparse.ArgumentParser(
        description="Download and verify the upscaling model"
    )
    parser.add_argument(
        "--model-dir",
        default=str(settings.MODEL_DIR),
        help="Directory to store the model"
    )
    parser.add_argument(
        "--url",
        default=settings.UPSCALE_MODEL_URL,
        help="Model download URL"
    )
    parser.add_argument(
        "--no-session",
        action="store_true",
        help="Skip building an inference session"
    )
    parser.add_argument(
        "--cpu",
        action="store_true",
        help="Build the session on CPU only"
    )
    parser.add_argument(
        "--smoke-test",
        action="store_true",
        help="Run one tile through the model"
    )

    args = parser.parse_args()

    success = setup_models(
        model_dir=args.model_dir,
        url=args.url,
        build_session=not args.no_session,
        prefer_gpu=not args.cpu,
        smoke_test=args.smoke_test,
    )

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
