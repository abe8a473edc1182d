"""
On-disk model management for the 4x upscaler.

Tracks whether the ONNX file is present and sane, and can fetch it from a
configured URL. Downloads stream into ``<model>.download`` and are renamed
into place only when complete, so a half-written file is never reported as
ready.
"""

import threading
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from src.core.exceptions import UpscaleCancelledError
from src.core.logging import get_logger, with_logging
from src.core.metrics import record_model_download
from src.engines.upscaling.progress import CancellationToken
from src.engines.upscaling.schemas import ModelDownloadProgress, ModelStatus

logger = get_logger(__name__)

DownloadProgressCallback = Callable[[ModelDownloadProgress], None]

CHUNK_SIZE = 81920
PROGRESS_INTERVAL_SECONDS = 0.1


class OnnxModelManager:
    def __init__(
        self,
        models_dir: Path,
        filename: str = "4x-UltraSharp.onnx",
        url: Optional[str] = None,
        min_bytes: int = 1_000_000,
        timeout: float = 1800.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.models_dir = Path(models_dir)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.url = url
        self.min_bytes = min_bytes
        self.timeout = timeout
        self._http_client = http_client

        self._download_lock = threading.Lock()
        self._is_downloading = False

    @property
    def model_path(self) -> Path:
        return self.models_dir / self.filename

    @property
    def temp_path(self) -> Path:
        return self.model_path.with_name(self.model_path.name + ".download")

    @property
    def is_downloading(self) -> bool:
        with self._download_lock:
            return self._is_downloading

    def get_model_path(self) -> Path:
        return self.model_path

    def get_status(self) -> ModelStatus:
        if self.is_downloading:
            return ModelStatus.DOWNLOADING

        if not self.model_path.is_file():
            return ModelStatus.NOT_DOWNLOADED

        # Truncated downloads and HTML error pages are far below any real model size
        if self.model_path.stat().st_size < self.min_bytes:
            return ModelStatus.ERROR

        return ModelStatus.READY

    def get_size_bytes(self) -> Optional[int]:
        if self.model_path.is_file():
            return self.model_path.stat().st_size
        return None

    @with_logging("model_download")
    async def download_async(
        self,
        progress: Optional[DownloadProgressCallback] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> bool:
        """Fetch the model into ``models_dir``.

        Returns True when the model is ready afterwards and False when no URL
        is configured, another download is running or the transfer failed.

        Raises:
            UpscaleCancelledError: The token was tripped mid-transfer. The
                partial file is removed first.
        """
        if self.get_status() == ModelStatus.READY:
            size = self.get_size_bytes() or 0
            self._report(progress, size, size, "Model already downloaded")
            return True

        if not self.url:
            logger.warning("model_download_url_missing", model_path=str(self.model_path))
            self._report(progress, 0, 0, "No download URL configured")
            record_model_download("skipped")
            return False

        with self._download_lock:
            if self._is_downloading:
                logger.warning("model_download_already_running")
                return False
            self._is_downloading = True

        try:
            self._report(progress, 0, 0, "Starting download...")
            total, downloaded = await self._stream_to_temp(progress, cancellation)

            if self.model_path.exists():
                self.model_path.unlink()
            self.temp_path.rename(self.model_path)

            self._report(progress, downloaded, total, "Download complete")
            record_model_download("success")
            logger.info("model_downloaded", model_path=str(self.model_path), size_bytes=downloaded)
            return True

        except UpscaleCancelledError:
            self._report(progress, 0, 0, "Download cancelled")
            self._cleanup_partial_download()
            record_model_download("cancelled")
            raise

        except Exception as e:
            logger.error("model_download_failed", error=str(e), error_type=type(e).__name__)
            self._report(progress, 0, 0, f"Download failed: {e}")
            self._cleanup_partial_download()
            record_model_download("error")
            return False

        finally:
            with self._download_lock:
                self._is_downloading = False

    async def _stream_to_temp(self, progress, cancellation):
        if self._http_client is not None:
            return await self._stream_with(self._http_client, progress, cancellation)

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._stream_with(client, progress, cancellation)

    async def _stream_with(self, client: httpx.AsyncClient, progress, cancellation):
        async with client.stream("GET", self.url) as response:
            response.raise_for_status()

            total = int(response.headers.get("Content-Length") or 0)
            downloaded = 0
            last_report = time.monotonic()

            with open(self.temp_path, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    if cancellation is not None:
                        cancellation.raise_if_cancelled()

                    f.write(chunk)
                    downloaded += len(chunk)

                    now = time.monotonic()
                    if now - last_report > PROGRESS_INTERVAL_SECONDS:
                        self._report(
                            progress,
                            downloaded,
                            total,
                            f"Downloading... {downloaded // 1024 // 1024}MB / {total // 1024 // 1024}MB"
                        )
                        last_report = now

        return total, downloaded

    def _cleanup_partial_download(self):
        try:
            if self.temp_path.exists():
                self.temp_path.unlink()
        except OSError as e:
            logger.warning("partial_download_cleanup_failed", path=str(self.temp_path), error=str(e))

    def delete_model(self) -> bool:
        """Remove the model file. Returns False when there was nothing to delete."""
        if not self.model_path.exists():
            return False

        self.model_path.unlink()
        logger.info("model_deleted", model_path=str(self.model_path))
        return True

    @staticmethod
    def _report(progress, downloaded: int, total: int, status: str):
        if progress is not None:
            progress(ModelDownloadProgress(bytes_downloaded=downloaded, total_bytes=total, status=status))
