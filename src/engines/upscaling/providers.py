"""
ONNX Runtime execution providers and session construction.

The selector walks a fallback chain (accelerator first, then CPU) and returns
the first session that builds. Each provider variant owns its own
SessionOptions tuning:

- GPU: conservative graph optimization and no memory pattern/arena/prepacking,
  which keeps peak VRAM predictable for the fixed tile size.
- CPU: full graph optimization, memory pattern and arena on, one intra-op
  thread per logical core.
"""

import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from src.core.exceptions import CPUInferenceError, GPUInferenceError, SessionInitError
from src.core.logging import get_logger
from src.engines.upscaling.schemas import ExecutionDevice

logger = get_logger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

DEFAULT_ACCELERATOR_PROVIDERS = ["CUDAExecutionProvider", "DmlExecutionProvider"]


# =============================================================================
# Session Handle
# =============================================================================

class UpscalerSession:
    """A built inference session plus the tensor names it was discovered with."""

    def __init__(
        self,
        handle: Any,
        input_name: str,
        output_name: str,
        device: ExecutionDevice,
        provider: str,
        optimizations: Optional[Dict[str, Any]] = None
    ):
        self.handle = handle
        self.input_name = input_name
        self.output_name = output_name
        self.device = device
        self.provider = provider
        self.optimizations = optimizations or {}

    @property
    def is_gpu(self) -> bool:
        return self.device == ExecutionDevice.GPU

    @property
    def is_closed(self) -> bool:
        return self.handle is None

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Run one forward pass and return the first output.

        Native failures are re-raised as GPUInferenceError or CPUInferenceError
        depending on where the session lives.
        """
        if self.handle is None:
            raise SessionInitError("Inference session has been released")

        try:
            outputs = self.handle.run([self.output_name], {self.input_name: tensor})
        except Exception as e:
            error_class = GPUInferenceError if self.is_gpu else CPUInferenceError
            raise error_class(
                f"{type(e).__name__}: {e}",
                provider=self.provider
            ) from e

        return np.asarray(outputs[0])

    def close(self):
        # ORT sessions free native memory when the last reference goes away
        self.handle = None

    def __repr__(self) -> str:
        return f"UpscalerSession(device={self.device.value}, provider={self.provider})"


# =============================================================================
# Provider Variants
# =============================================================================

class ExecutionProvider(ABC):
    """One entry in the session fallback chain."""

    device: ExecutionDevice

    @abstractmethod
    def is_available(self, available_providers: Sequence[str]) -> bool:
        ...

    @abstractmethod
    def build_options(self) -> Tuple[ort.SessionOptions, Dict[str, Any]]:
        """Return SessionOptions and a loggable summary of them."""

    @abstractmethod
    def provider_list(self, available_providers: Sequence[str]) -> List[Any]:
        ...

    def verify(self, handle: Any, provider: str):
        """Hook for post-construction checks; raise to reject the session."""

    @property
    def name(self) -> str:
        return type(self).__name__


class GpuExecutionProvider(ExecutionProvider):
    """CUDA / DirectML accelerator with a CPU provider behind it for unsupported ops."""

    device = ExecutionDevice.GPU

    def __init__(self, accelerators: Optional[Sequence[str]] = None, device_id: int = 0):
        self.accelerators = list(accelerators or DEFAULT_ACCELERATOR_PROVIDERS)
        self.device_id = device_id

    def _pick(self, available_providers: Sequence[str]) -> Optional[str]:
        for provider in self.accelerators:
            if provider in available_providers:
                return provider
        return None

    def is_available(self, available_providers: Sequence[str]) -> bool:
        return self._pick(available_providers) is not None

    def build_options(self) -> Tuple[ort.SessionOptions, Dict[str, Any]]:
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
        options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        options.enable_mem_pattern = False
        options.enable_cpu_mem_arena = False
        options.add_session_config_entry("session.disable_prepacking", "1")
        options.add_session_config_entry("ep.dml.enable_graph_capture", "0")

        return options, {
            "graph_optimization": "basic",
            "execution_mode": "sequential",
            "mem_pattern": False,
            "cpu_mem_arena": False,
            "prepacking": False,
            "dml_graph_capture": False,
        }

    def provider_list(self, available_providers: Sequence[str]) -> List[Any]:
        accelerator = self._pick(available_providers)
        return [(accelerator, {"device_id": self.device_id}), CPU_PROVIDER]

    def verify(self, handle: Any, provider: str):
        # ORT falls back to CPU without raising when the accelerator can't start
        active = list(handle.get_providers())
        if not active or active[0] != provider:
            raise RuntimeError(
                f"{provider} was requested but session is running on {active}"
            )


class CpuExecutionProvider(ExecutionProvider):
    device = ExecutionDevice.CPU

    def __init__(self, intra_op_threads: Optional[int] = None):
        self.intra_op_threads = intra_op_threads or os.cpu_count() or 1

    def is_available(self, available_providers: Sequence[str]) -> bool:
        return True

    def build_options(self) -> Tuple[ort.SessionOptions, Dict[str, Any]]:
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.enable_mem_pattern = True
        options.enable_cpu_mem_arena = True
        options.intra_op_num_threads = self.intra_op_threads

        return options, {
            "graph_optimization": "all",
            "mem_pattern": True,
            "cpu_mem_arena": True,
            "intra_op_threads": self.intra_op_threads,
        }

    def provider_list(self, available_providers: Sequence[str]) -> List[Any]:
        return [CPU_PROVIDER]


# =============================================================================
# Selector
# =============================================================================

class ExecutionProviderSelector:
    """Builds an UpscalerSession from the first provider variant that works.

    ``session_factory`` and ``available_providers`` default to onnxruntime and
    are injectable for tests.
    """

    def __init__(
        self,
        gpu_provider: Optional[GpuExecutionProvider] = None,
        cpu_provider: Optional[CpuExecutionProvider] = None,
        session_factory: Callable[..., Any] = ort.InferenceSession,
        available_providers: Callable[[], Sequence[str]] = ort.get_available_providers
    ):
        self.gpu_provider = gpu_provider or GpuExecutionProvider()
        self.cpu_provider = cpu_provider or CpuExecutionProvider()
        self._session_factory = session_factory
        self._available_providers = available_providers

    def chain(self, prefer_gpu: bool) -> List[ExecutionProvider]:
        if prefer_gpu:
            return [self.gpu_provider, self.cpu_provider]
        return [self.cpu_provider]

    def create_session(self, model_path: Path, prefer_gpu: bool = True) -> UpscalerSession:
        """Build a session, falling back along the provider chain.

        Raises:
            SessionInitError: No variant could construct a session, or the
                model exposes no usable input/output tensor.
        """
        available = list(self._available_providers())
        errors: Dict[str, str] = {}

        for variant in self.chain(prefer_gpu):
            if not variant.is_available(available):
                logger.info("execution_provider_unavailable", variant=variant.name, available=available)
                continue

            providers = variant.provider_list(available)
            provider_name = providers[0][0] if isinstance(providers[0], tuple) else providers[0]
            options, summary = variant.build_options()

            start = time.time()
            try:
                handle = self._session_factory(
                    str(model_path),
                    sess_options=options,
                    providers=providers
                )
                variant.verify(handle, provider_name)
            except Exception as e:
                errors[variant.name] = str(e)
                logger.warning(
                    "session_construction_failed",
                    variant=variant.name,
                    provider=provider_name,
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue

            input_name, output_name = self._discover_tensor_names(handle)

            logger.info(
                "session_created",
                device=variant.device.value,
                provider=provider_name,
                input_name=input_name,
                output_name=output_name,
                load_time_ms=int((time.time() - start) * 1000),
                **summary
            )

            return UpscalerSession(
                handle=handle,
                input_name=input_name,
                output_name=output_name,
                device=variant.device,
                provider=provider_name,
                optimizations=summary
            )

        raise SessionInitError(
            "Failed to create an inference session with any execution provider",
            details={"errors": errors, "available_providers": available}
        )

    @staticmethod
    def _discover_tensor_names(handle: Any) -> Tuple[str, str]:
        inputs = handle.get_inputs()
        outputs = handle.get_outputs()

        if not inputs or not inputs[0].name:
            raise SessionInitError("Model does not declare an input tensor")
        if not outputs or not outputs[0].name:
            raise SessionInitError("Model does not declare an output tensor")

        return inputs[0].name, outputs[0].name
