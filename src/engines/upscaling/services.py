"""
Upscaling Orchestrator

Public entry point for 4x super-resolution with arbitrary target scales:

    validate -> single-flight guard -> worker thread:
        INITIALIZING -> TILING -> FINALIZING -> COMPLETED
                          |  ^
            GPU failure   v  |  (once)
                     REINITIALIZING

Every exception raised inside the pipeline is turned into an
UpscalingResult; callers of ``upscale()`` never see a raw exception.
"""

import asyncio
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from src.core.exceptions import (
    AlreadyProcessingError,
    GPUInferenceError,
    UpscaleCancelledError,
    UpscalingBaseException,
    ValidationError,
)
from src.core.logging import clear_operation_context, get_logger, phase_var, set_operation_context
from src.core.metrics import (
    active_upscales_gauge,
    record_gpu_failover,
    record_upscale_outcome,
    track_phase_latency,
)
from src.engines.upscaling.finalizer import ScaleFinalizer
from src.engines.upscaling.model_manager import DownloadProgressCallback, OnnxModelManager
from src.engines.upscaling.progress import CancellationToken, ProgressCallback, ProgressReporter
from src.engines.upscaling.providers import (
    CpuExecutionProvider,
    ExecutionProviderSelector,
    GpuExecutionProvider,
    UpscalerSession,
)
from src.engines.upscaling.schemas import (
    ImageBuffer,
    ModelStatus,
    UpscaleErrorCode,
    UpscaleState,
    UpscalingPhase,
    UpscalingResult,
)
from src.engines.upscaling.session import InferenceSessionManager
from src.engines.upscaling.tiling import TilingEngine

logger = get_logger(__name__)

PixelData = Union[bytes, bytearray, memoryview, np.ndarray]


class UpscalingService:
    """Runs one upscale at a time on a dedicated worker thread.

    A second call while one is in flight is rejected with ALREADY_PROCESSING
    rather than queued. Progress callbacks are invoked from the worker thread.
    """

    def __init__(
        self,
        model_manager: OnnxModelManager,
        session_manager: InferenceSessionManager,
        tiling_engine: TilingEngine,
        finalizer: ScaleFinalizer,
        min_target_scale: float = 1.1,
        max_target_scale: float = 4.0
    ):
        self.model_manager = model_manager
        self.session_manager = session_manager
        self.tiling_engine = tiling_engine
        self.finalizer = finalizer
        self.min_target_scale = min_target_scale
        self.max_target_scale = max_target_scale

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upscaler")
        self._processing_lock = threading.Lock()
        self._state = UpscaleState.IDLE

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def is_processing(self) -> bool:
        return self._processing_lock.locked()

    @property
    def is_gpu_active(self) -> bool:
        return self.session_manager.is_gpu_active

    @property
    def state(self) -> UpscaleState:
        return self._state

    def get_model_status(self) -> ModelStatus:
        return self.model_manager.get_status()

    def get_model_path(self) -> Path:
        return self.model_manager.get_model_path()

    async def download_model_async(
        self,
        progress: Optional[DownloadProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> bool:
        return await self.model_manager.download_async(progress=progress, cancellation=cancellation)

    async def initialize_async(self) -> bool:
        """Build the inference session ahead of the first request."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.session_manager.ensure_initialized)

    # =========================================================================
    # Upscale
    # =========================================================================

    async def upscale(
        self,
        pixels: PixelData,
        width: int,
        height: int,
        target_scale: float,
        progress: Optional[ProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> UpscalingResult:
        """Upscale an RGBA8 buffer to ``target_scale`` and return PNG bytes.

        Args:
            pixels: Interleaved RGBA, ``width * height * 4`` bytes (or a
                ``(height, width, 4)`` uint8 array).
            width: Source width in pixels.
            height: Source height in pixels.
            target_scale: Output scale in [min_target_scale, max_target_scale].
            progress: Called with UpscalingProgress; percent never decreases.
            cancellation: Checked at every phase start and before each tile.
        """
        try:
            image, target_scale = self._validate(pixels, width, height, target_scale)
        except ValidationError as e:
            record_upscale_outcome("validation_error")
            return UpscalingResult.failed(UpscaleErrorCode.VALIDATION_ERROR, e.message)

        if not self._processing_lock.acquire(blocking=False):
            record_upscale_outcome("already_processing")
            return UpscalingResult.failed(
                UpscaleErrorCode.ALREADY_PROCESSING,
                AlreadyProcessingError().message
            )

        token = cancellation or CancellationToken()
        operation_id = str(uuid.uuid4())

        try:
            work = self._executor.submit(self._run, image, target_scale, progress, token, operation_id)
        except BaseException:
            self._processing_lock.release()
            raise

        try:
            return await asyncio.wrap_future(work)
        except asyncio.CancelledError:
            token.cancel()
            if work.cancel():
                # Never started, so _run won't release the guard
                self._processing_lock.release()
            logger.info("upscale_caller_cancelled", operation_id=operation_id)
            raise

    def _validate(
        self,
        pixels: PixelData,
        width: int,
        height: int,
        target_scale: float
    ) -> Tuple[ImageBuffer, float]:
        try:
            width, height = int(width), int(height)
            target_scale = float(target_scale)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError("Dimensions and target scale must be numeric")

        if width <= 0 or height <= 0:
            raise ValidationError("Invalid image dimensions")

        if not (self.min_target_scale <= target_scale <= self.max_target_scale):
            raise ValidationError(
                f"Target scale must be between {self.min_target_scale} and {self.max_target_scale}"
            )

        if isinstance(pixels, np.ndarray):
            image = ImageBuffer.from_array(pixels)
            if image.width != width or image.height != height:
                raise ValidationError(
                    f"Pixel array is {image.width}x{image.height}, expected {width}x{height}"
                )
            return image.copy(), target_scale

        return ImageBuffer.from_bytes(pixels, width, height), target_scale

    def _run(
        self,
        image: ImageBuffer,
        target_scale: float,
        progress: Optional[ProgressCallback],
        token: CancellationToken,
        operation_id: str
    ) -> UpscalingResult:
        # Executor threads don't inherit the caller's contextvars
        set_operation_context(operation_id)
        active_upscales_gauge.inc()
        start = time.time()

        logger.info(
            "upscale_started",
            width=image.width,
            height=image.height,
            target_scale=target_scale
        )

        try:
            result = self._execute(image, target_scale, ProgressReporter(progress), token)
            duration = time.time() - start

            outcome = "success" if result.success else (result.error_code.value.lower() if result.error_code else "error")
            record_upscale_outcome(outcome, duration)

            logger.info(
                "upscale_finished",
                success=result.success,
                error_code=result.error_code.value if result.error_code else None,
                out_width=result.width,
                out_height=result.height,
                duration_ms=int(duration * 1000)
            )
            return result
        finally:
            active_upscales_gauge.dec()
            clear_operation_context()
            self._processing_lock.release()

    # =========================================================================
    # State Machine
    # =========================================================================

    def _transition(self, state: UpscaleState):
        previous = self._state
        self._state = state
        phase_var.set(state.value)
        logger.debug("upscale_state_changed", previous=previous.value, state=state.value)

    def _execute(
        self,
        image: ImageBuffer,
        target_scale: float,
        reporter: ProgressReporter,
        token: CancellationToken
    ) -> UpscalingResult:
        state = UpscaleState.INITIALIZING
        session: Optional[UpscalerSession] = None
        upscaled: Optional[ImageBuffer] = None
        gpu_reason: Optional[str] = None

        while True:
            self._transition(state)
            try:
                if state == UpscaleState.INITIALIZING:
                    reporter.report(UpscalingPhase.PREPARING, "Loading image...", 0)
                    token.raise_if_cancelled()
                    session = self.session_manager.initialize()
                    state = UpscaleState.TILING

                elif state == UpscaleState.TILING:
                    reporter.report(UpscalingPhase.PROCESSING_TILES, "Generating AI details...", 5)
                    token.raise_if_cancelled()
                    with track_phase_latency("processing_tiles"):
                        upscaled = self.tiling_engine.process_tiles(
                            image,
                            session,
                            cancellation=token,
                            on_tile=reporter.tiles
                        )
                    state = UpscaleState.FINALIZING

                elif state == UpscaleState.REINITIALIZING:
                    token.raise_if_cancelled()
                    record_gpu_failover()
                    session = None
                    self.session_manager.disable_gpu()
                    self.session_manager.invalidate()
                    session = self.session_manager.initialize()
                    logger.info("retrying_on_cpu", device=session.device.value, provider=session.provider)
                    state = UpscaleState.TILING

                elif state == UpscaleState.FINALIZING:
                    with track_phase_latency("finalizing"):
                        result = self._finalize(image, upscaled, target_scale, reporter, token)
                    upscaled = None
                    self._transition(UpscaleState.COMPLETED)
                    return result

            except UpscaleCancelledError as e:
                logger.info("upscale_cancelled", state=state.value)
                self._transition(UpscaleState.CANCELLED)
                return UpscalingResult.failed(UpscaleErrorCode.CANCELLED, e.message)

            except GPUInferenceError as e:
                if state == UpscaleState.TILING and gpu_reason is None:
                    logger.warning(
                        "gpu_inference_failed",
                        error=e.message,
                        provider=e.details.get("provider")
                    )
                    # Keep only the message; the traceback pins the failed session and canvas
                    gpu_reason = e.message
                    upscaled = None
                    state = UpscaleState.REINITIALIZING
                    continue
                return self._fail(state, e, gpu_reason)

            except Exception as e:
                return self._fail(state, e, gpu_reason)

    def _finalize(
        self,
        image: ImageBuffer,
        upscaled: ImageBuffer,
        target_scale: float,
        reporter: ProgressReporter,
        token: CancellationToken
    ) -> UpscalingResult:
        token.raise_if_cancelled()
        target_w, target_h = self.finalizer.target_size(image.width, image.height, target_scale)

        if self.finalizer.is_native_scale(target_scale):
            reporter.report(UpscalingPhase.FINALIZING, "Finalizing...", 95)
        else:
            reporter.report(
                UpscalingPhase.RESIZING_TO_TARGET,
                f"Resizing to {target_scale:.1f}x ({target_w}x{target_h})...",
                90
            )
        final = self.finalizer.finalize(upscaled, target_scale)

        reporter.report(UpscalingPhase.FINALIZING, "Encoding result...", 98)
        token.raise_if_cancelled()
        png = self.finalizer.encode_png(final)

        reporter.report(UpscalingPhase.FINALIZING, "Complete!", 100)

        device = self.session_manager.session.device if self.session_manager.session else None
        return UpscalingResult.succeeded(png, final.width, final.height, device=device)

    def _fail(
        self,
        state: UpscaleState,
        error: Exception,
        gpu_reason: Optional[str]
    ) -> UpscalingResult:
        if isinstance(error, UpscalingBaseException):
            code = UpscaleErrorCode(error.error_code)
            reason = error.message
        else:
            code = UpscaleErrorCode.INTERNAL_ERROR
            reason = str(error) or type(error).__name__

        if state == UpscaleState.REINITIALIZING:
            message = f"Upscaling failed (GPU Error: {gpu_reason})"
            code = UpscaleErrorCode.GPU_INFERENCE_FAILURE
        elif gpu_reason is not None:
            message = f"Upscaling failed (CPU retry): {reason}"
        elif state == UpscaleState.INITIALIZING:
            message = reason
        else:
            message = f"Upscaling failed: {reason}"

        logger.error(
            "upscale_failed",
            state=state.value,
            error=reason,
            error_type=type(error).__name__,
            error_code=code.value,
            after_gpu_failover=gpu_reason is not None
        )

        self._transition(UpscaleState.FAILED)
        return UpscalingResult.failed(code, message)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self):
        self._executor.shutdown(wait=True)
        self.session_manager.close()


def create_upscaling_service(settings) -> UpscalingService:
    """Wire the service from application settings."""
    model_manager = OnnxModelManager(
        models_dir=settings.MODEL_DIR,
        filename=settings.UPSCALE_MODEL_FILENAME,
        url=settings.UPSCALE_MODEL_URL,
        min_bytes=settings.UPSCALE_MODEL_MIN_BYTES,
        timeout=settings.MODEL_DOWNLOAD_TIMEOUT_SECONDS
    )

    selector = ExecutionProviderSelector(
        gpu_provider=GpuExecutionProvider(settings.accelerator_providers, settings.GPU_DEVICE_ID),
        cpu_provider=CpuExecutionProvider(settings.CPU_INTRA_OP_THREADS)
    )

    return UpscalingService(
        model_manager=model_manager,
        session_manager=InferenceSessionManager(model_manager, selector, prefer_gpu=settings.PREFER_GPU),
        tiling_engine=TilingEngine(settings.TILE_SIZE, settings.TILE_PADDING, settings.SCALE_FACTOR),
        finalizer=ScaleFinalizer(settings.SCALE_FACTOR),
        min_target_scale=settings.MIN_TARGET_SCALE,
        max_target_scale=settings.MAX_TARGET_SCALE
    )
