import io
import asyncio

import pytest
from PIL import Image


def png_bytes(pixels) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def cpu_service(make_service, fake_runtime, override_service):
    return override_service(make_service(fake_runtime()))


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_when_model_present(cpu_service, client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["model_status"] == "ready"


@pytest.mark.asyncio
async def test_not_ready_without_model(make_service, fake_runtime, missing_model_manager, override_service, client):
    override_service(make_service(fake_runtime(), manager=missing_model_manager))

    response = await client.get("/ready")
    assert response.status_code == 503
    assert response.json()["ready"] is False


@pytest.mark.asyncio
async def test_upscale_returns_png(cpu_service, client, make_pixels):
    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(20, 12)), "image/png")},
        data={"target_scale": "2.0"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["X-Upscaled-Width"] == "40"
    assert response.headers["X-Upscaled-Height"] == "24"
    assert response.headers["X-Execution-Device"] == "cpu"
    assert Image.open(io.BytesIO(response.content)).size == (40, 24)


@pytest.mark.asyncio
async def test_upscale_accepts_rgb_jpeg(cpu_service, client, make_pixels):
    buffer = io.BytesIO()
    Image.fromarray(make_pixels(16, 16)).convert("RGB").save(buffer, format="JPEG")

    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("photo.jpg", buffer.getvalue(), "image/jpeg")},
        data={"target_scale": "4.0"}
    )

    assert response.status_code == 200
    assert response.headers["X-Upscaled-Width"] == "64"


@pytest.mark.asyncio
async def test_upscale_rejects_out_of_range_scale(cpu_service, client, make_pixels):
    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "5.0"}
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_upscale_rejects_non_image(cpu_service, client):
    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("notes.txt", b"definitely not an image", "text/plain")},
        data={"target_scale": "2.0"}
    )

    assert response.status_code == 400
    assert "Invalid image file" in response.json()["error"]


@pytest.mark.asyncio
async def test_upscale_without_model_is_503(
    make_service, fake_runtime, missing_model_manager, override_service, client, make_pixels
):
    override_service(make_service(fake_runtime(), manager=missing_model_manager))

    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "2.0"}
    )

    assert response.status_code == 503
    assert response.json()["error_code"] == "MODEL_NOT_READY"


@pytest.mark.asyncio
async def test_cpu_retry_failure_is_500(make_service, fake_runtime, override_service, client, make_pixels):
    runtime = fake_runtime(
        available=("CUDAExecutionProvider", "CPUExecutionProvider"),
        gpu_run_error=RuntimeError("device removed"),
        cpu_run_error=RuntimeError("out of memory")
    )
    override_service(make_service(runtime))

    response = await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "2.0"}
    )

    assert response.status_code == 500
    body = response.json()
    assert body["error_code"] == "CPU_INFERENCE_FAILURE"
    assert body["error"].startswith("Upscaling failed (CPU retry):")


@pytest.mark.asyncio
async def test_status_reports_session(cpu_service, client, make_pixels):
    before = (await client.get("/api/v1/upscale/status")).json()
    assert before["session_initialized"] is False
    assert before["tile_size"] == 192
    assert before["last_state"] == "idle"

    await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "4.0"}
    )

    after = (await client.get("/api/v1/upscale/status")).json()
    assert after["session_initialized"] is True
    assert after["provider"] == "CPUExecutionProvider"
    assert after["last_state"] == "completed"


@pytest.mark.asyncio
async def test_model_endpoints(cpu_service, client):
    info = (await client.get("/api/v1/models/upscaler")).json()
    assert info["status"] == "ready"
    assert info["size_bytes"] == 128

    deleted = await client.delete("/api/v1/models/upscaler")
    assert deleted.status_code == 200
    assert deleted.json()["status"] == "not_downloaded"

    download = await client.post("/api/v1/models/upscaler/download")
    assert download.status_code == 503
    assert download.json()["success"] is False


@pytest.mark.asyncio
async def test_model_delete_is_refused_while_upscaling(
    make_service, fake_runtime, override_service, client, make_pixels, gate
):
    service = override_service(make_service(fake_runtime(gate=gate)))
    upload = asyncio.create_task(client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "4.0"}
    ))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5.0
    while not (service.is_processing and service.session_manager.is_initialized):
        assert loop.time() < deadline, "upscale never started"
        await asyncio.sleep(0.01)

    deleted = await client.delete("/api/v1/models/upscaler")

    assert deleted.status_code == 409
    assert deleted.json()["error_code"] == "ALREADY_PROCESSING"
    assert service.get_model_path().exists()
    assert service.session_manager.is_initialized

    gate.set()
    response = await upload
    assert response.status_code == 200
    assert service.get_model_path().exists()


@pytest.mark.asyncio
async def test_metrics_endpoint(cpu_service, client, make_pixels):
    await client.post(
        "/api/v1/upscale",
        files={"file": ("tile.png", png_bytes(make_pixels(8, 8)), "image/png")},
        data={"target_scale": "4.0"}
    )

    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "upscale_requests_total" in response.text
    assert "upscale_tiles_processed_total" in response.text
