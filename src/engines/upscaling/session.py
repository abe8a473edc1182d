"""
Inference session lifecycle.

Holds the one UpscalerSession a service instance may own. Construction is
lazy and single-flight; release always completes before a replacement is
built.
"""

import threading
import time
from typing import Optional

from src.core.exceptions import ModelNotReadyError
from src.core.logging import get_logger
from src.core.metrics import record_session_created, record_session_released
from src.engines.upscaling.providers import ExecutionProviderSelector, UpscalerSession
from src.engines.upscaling.schemas import ModelStatus

logger = get_logger(__name__)


class InferenceSessionManager:
    """Thread-safe owner of the inference session.

    Once ``disable_gpu()`` has been called every later construction is
    CPU-only for the lifetime of this manager.
    """

    def __init__(self, model_manager, selector: ExecutionProviderSelector, prefer_gpu: bool = True):
        self.model_manager = model_manager
        self.selector = selector
        self.prefer_gpu = prefer_gpu

        self._session: Optional[UpscalerSession] = None
        self._gpu_permanently_disabled = False
        self._lock = threading.Lock()

    @property
    def session(self) -> Optional[UpscalerSession]:
        return self._session

    @property
    def is_initialized(self) -> bool:
        return self._session is not None

    @property
    def is_gpu_active(self) -> bool:
        session = self._session
        return session is not None and session.is_gpu

    @property
    def gpu_permanently_disabled(self) -> bool:
        return self._gpu_permanently_disabled

    def initialize(self) -> UpscalerSession:
        """Return the cached session, building it on first use.

        Raises:
            ModelNotReadyError: Model file is missing, downloading or broken.
            SessionInitError: No execution provider produced a session.
        """
        session = self._session
        if session is not None:
            return session

        with self._lock:
            if self._session is not None:
                return self._session

            status = self.model_manager.get_status()
            if status != ModelStatus.READY:
                raise ModelNotReadyError(
                    f"Upscaling model is not ready (status: {status.value})",
                    model_status=status.value
                )

            prefer_gpu = self.prefer_gpu and not self._gpu_permanently_disabled
            model_path = self.model_manager.get_model_path()

            logger.info(
                "session_initializing",
                model_path=str(model_path),
                prefer_gpu=prefer_gpu,
                gpu_permanently_disabled=self._gpu_permanently_disabled
            )

            start = time.time()
            session = self.selector.create_session(model_path, prefer_gpu=prefer_gpu)
            record_session_created(session.device.value, time.time() - start)

            self._session = session
            return session

    def ensure_initialized(self) -> bool:
        """Best-effort warm-up; returns False instead of raising."""
        try:
            self.initialize()
            return True
        except Exception as e:
            logger.warning("session_warmup_failed", error=str(e), error_type=type(e).__name__)
            return False

    def disable_gpu(self):
        with self._lock:
            if not self._gpu_permanently_disabled:
                logger.warning("gpu_permanently_disabled")
            self._gpu_permanently_disabled = True

    def invalidate(self):
        """Release the current session so the next initialize() rebuilds it."""
        with self._lock:
            self._release_locked()

    def close(self):
        self.invalidate()

    def _release_locked(self):
        session = self._session
        if session is None:
            return

        self._session = None
        session.close()
        record_session_released(session.device.value)
        logger.info("session_released", device=session.device.value, provider=session.provider)
