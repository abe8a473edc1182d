import numpy as np
import pytest
from types import SimpleNamespace

from src.core.exceptions import CPUInferenceError, GPUInferenceError, SessionInitError
from src.engines.upscaling.providers import (
    CpuExecutionProvider,
    ExecutionProviderSelector,
    GpuExecutionProvider,
    UpscalerSession,
)
from src.engines.upscaling.schemas import ExecutionDevice


def test_prefers_accelerator_when_available(gpu_runtime):
    session = gpu_runtime.selector().create_session("model.onnx", prefer_gpu=True)

    assert session.device == ExecutionDevice.GPU
    assert session.provider == "CUDAExecutionProvider"
    assert gpu_runtime.sessions[0].requested_providers == ["CUDAExecutionProvider", "CPUExecutionProvider"]
    assert session.optimizations["mem_pattern"] is False


def test_cpu_only_when_gpu_not_preferred(gpu_runtime):
    session = gpu_runtime.selector().create_session("model.onnx", prefer_gpu=False)

    assert session.device == ExecutionDevice.CPU
    assert gpu_runtime.sessions[0].requested_providers == ["CPUExecutionProvider"]
    assert session.optimizations["intra_op_threads"] == 2


def test_skips_accelerator_not_reported_by_runtime(fake_runtime):
    runtime = fake_runtime(available=("CPUExecutionProvider",))

    session = runtime.selector().create_session("model.onnx", prefer_gpu=True)

    assert session.device == ExecutionDevice.CPU
    assert len(runtime.sessions) == 1


def test_falls_back_to_cpu_when_accelerator_construction_fails(fake_runtime):
    runtime = fake_runtime(
        available=("CUDAExecutionProvider", "CPUExecutionProvider"),
        fail_construct=("CUDAExecutionProvider",)
    )

    session = runtime.selector().create_session("model.onnx", prefer_gpu=True)

    assert session.device == ExecutionDevice.CPU


def test_silently_dropped_accelerator_counts_as_failure(fake_runtime):
    runtime = fake_runtime(
        available=("CUDAExecutionProvider", "CPUExecutionProvider"),
        drop_accelerator=True
    )

    session = runtime.selector().create_session("model.onnx", prefer_gpu=True)

    assert session.device == ExecutionDevice.CPU
    assert len(runtime.sessions) == 2


def test_exhausted_chain_raises_session_init_error(fake_runtime):
    runtime = fake_runtime(
        available=("CUDAExecutionProvider", "CPUExecutionProvider"),
        fail_construct=("CUDAExecutionProvider", "CPUExecutionProvider")
    )

    with pytest.raises(SessionInitError) as exc_info:
        runtime.selector().create_session("model.onnx", prefer_gpu=True)

    assert set(exc_info.value.details["errors"]) == {"GpuExecutionProvider", "CpuExecutionProvider"}


def test_missing_tensor_names_are_fatal():
    handle = SimpleNamespace(
        get_inputs=lambda: [],
        get_outputs=lambda: [SimpleNamespace(name="output")],
        get_providers=lambda: ["CPUExecutionProvider"]
    )
    calls = []

    def factory(path, sess_options=None, providers=None):
        calls.append(providers)
        return handle

    selector = ExecutionProviderSelector(
        gpu_provider=GpuExecutionProvider(["CUDAExecutionProvider"]),
        cpu_provider=CpuExecutionProvider(1),
        session_factory=factory,
        available_providers=lambda: ["CPUExecutionProvider"]
    )

    with pytest.raises(SessionInitError):
        selector.create_session("model.onnx", prefer_gpu=True)

    assert len(calls) == 1


@pytest.mark.parametrize("device,error_class", [
    (ExecutionDevice.GPU, GPUInferenceError),
    (ExecutionDevice.CPU, CPUInferenceError),
])
def test_run_wraps_native_errors_by_device(fake_runtime, device, error_class):
    runtime = fake_runtime(cpu_run_error=RuntimeError("device lost"))
    session = UpscalerSession(
        handle=runtime("model.onnx", providers=["CPUExecutionProvider"]),
        input_name="input",
        output_name="output",
        device=device,
        provider="SomeProvider"
    )

    with pytest.raises(error_class) as exc_info:
        session.run(np.zeros((1, 3, 4, 4), dtype=np.float32))

    assert "device lost" in exc_info.value.message
    assert exc_info.value.details["provider"] == "SomeProvider"


def test_closed_session_cannot_run(fake_runtime):
    session = fake_runtime().selector().create_session("model.onnx", prefer_gpu=False)
    session.close()

    assert session.is_closed
    with pytest.raises(SessionInitError):
        session.run(np.zeros((1, 3, 4, 4), dtype=np.float32))
