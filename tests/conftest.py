import threading
from types import SimpleNamespace
from typing import AsyncGenerator

import numpy as np
import pytest
from httpx import AsyncClient, ASGITransport

from src.main import app
from src.api.dependencies import get_upscaling_service
from src.engines.upscaling.finalizer import ScaleFinalizer
from src.engines.upscaling.model_manager import OnnxModelManager
from src.engines.upscaling.providers import (
    CpuExecutionProvider,
    ExecutionProviderSelector,
    GpuExecutionProvider,
)
from src.engines.upscaling.services import UpscalingService
from src.engines.upscaling.session import InferenceSessionManager
from src.engines.upscaling.tiling import TilingEngine

CPU = "CPUExecutionProvider"
CUDA = "CUDAExecutionProvider"


# =============================================================================
# Fake ONNX Runtime
# =============================================================================

class FakeOrtSession:
    """Nearest-neighbour upscaler with the onnxruntime.InferenceSession surface."""

    def __init__(self, providers, scale=4, run_error=None, fail_after=None, gate=None, drop_accelerator=False):
        self.requested_providers = providers
        self.scale = scale
        self.run_error = run_error
        self.fail_after = fail_after
        self.gate = gate
        self.drop_accelerator = drop_accelerator
        self.run_calls = 0

    def get_inputs(self):
        return [SimpleNamespace(name="input")]

    def get_outputs(self):
        return [SimpleNamespace(name="output")]

    def get_providers(self):
        if self.drop_accelerator:
            return [CPU]
        return list(self.requested_providers)

    def run(self, output_names, feeds):
        self.run_calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.run_error is not None and (self.fail_after is None or self.run_calls > self.fail_after):
            # Fresh instance per call, like a native runtime error
            raise type(self.run_error)(*self.run_error.args)

        x = feeds["input"]
        return [np.repeat(np.repeat(x, self.scale, axis=2), self.scale, axis=3)]


class FakeOrtRuntime:
    """Stands in for onnxruntime.InferenceSession and get_available_providers."""

    def __init__(
        self,
        available=(CPU,),
        gpu_run_error=None,
        cpu_run_error=None,
        gpu_fail_after=None,
        fail_construct=(),
        drop_accelerator=False,
        gate=None,
        scale=4
    ):
        self.available = list(available)
        self.gpu_run_error = gpu_run_error
        self.cpu_run_error = cpu_run_error
        self.gpu_fail_after = gpu_fail_after
        self.fail_construct = set(fail_construct)
        self.drop_accelerator = drop_accelerator
        self.gate = gate
        self.scale = scale
        self.sessions = []

    def get_available_providers(self):
        return list(self.available)

    def __call__(self, path, sess_options=None, providers=None):
        names = [p[0] if isinstance(p, tuple) else p for p in providers]
        if names[0] in self.fail_construct:
            raise RuntimeError(f"{names[0]} failed to initialize")

        on_cpu = names[0] == CPU
        session = FakeOrtSession(
            names,
            scale=self.scale,
            run_error=self.cpu_run_error if on_cpu else self.gpu_run_error,
            fail_after=None if on_cpu else self.gpu_fail_after,
            gate=self.gate,
            drop_accelerator=self.drop_accelerator and not on_cpu
        )
        self.sessions.append(session)
        return session

    def selector(self) -> ExecutionProviderSelector:
        return ExecutionProviderSelector(
            gpu_provider=GpuExecutionProvider([CUDA]),
            cpu_provider=CpuExecutionProvider(2),
            session_factory=self,
            available_providers=self.get_available_providers
        )


@pytest.fixture
def fake_runtime():
    """Factory for FakeOrtRuntime instances."""
    return FakeOrtRuntime


@pytest.fixture
def gpu_runtime():
    return FakeOrtRuntime(available=(CUDA, CPU))


# =============================================================================
# Model & Service Builders
# =============================================================================

@pytest.fixture
def model_manager(tmp_path) -> OnnxModelManager:
    """Model manager whose model file is present and passes the size check."""
    manager = OnnxModelManager(models_dir=tmp_path / "models", min_bytes=64)
    manager.get_model_path().write_bytes(b"\0" * 128)
    return manager


@pytest.fixture
def missing_model_manager(tmp_path) -> OnnxModelManager:
    return OnnxModelManager(models_dir=tmp_path / "empty", min_bytes=64)


@pytest.fixture
def make_service(model_manager):
    """Build an UpscalingService around a FakeOrtRuntime."""
    services = []

    def _make(runtime, manager=None, prefer_gpu=True, tile_size=192, padding=32):
        manager = manager or model_manager
        service = UpscalingService(
            model_manager=manager,
            session_manager=InferenceSessionManager(manager, runtime.selector(), prefer_gpu=prefer_gpu),
            tiling_engine=TilingEngine(tile_size, padding, 4),
            finalizer=ScaleFinalizer(4)
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        service.close()


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


def rgba_image(width: int, height: int) -> np.ndarray:
    """Deterministic opaque test pattern."""
    ys, xs = np.mgrid[0:height, 0:width]
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = (xs * 7) % 256
    pixels[..., 1] = (ys * 13) % 256
    pixels[..., 2] = (xs + ys) % 256
    pixels[..., 3] = 255
    return pixels


@pytest.fixture
def make_pixels():
    return rgba_image


# =============================================================================
# API Client
# =============================================================================

@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def override_service():
    """Point the API at a test-built service."""
    def _override(service: UpscalingService):
        app.dependency_overrides[get_upscaling_service] = lambda: service
        return service
    return _override
