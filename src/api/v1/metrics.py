"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from src.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - upscale_phase_latency_seconds (per phase)
    - upscale_requests_total / upscale_total_duration_seconds
    - upscale_tiles_processed_total (per device)
    - upscale_gpu_failovers_total
    - inference_session_active / inference_session_init_seconds
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
