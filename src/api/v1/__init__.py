"""
API v1 Router Module - Upscaling Service

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/upscale
- Multipart image upload, PNG response

Supporting endpoints:
- /api/v1/upscale/status - Session and device status
- /api/v1/models/* - Model download and removal
- /api/v1/metrics - Prometheus scrape target
"""

from fastapi import APIRouter

from src.api.v1.upscale import router as upscale_router
from src.api.v1.models import router as models_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upscale_router, prefix="/upscale", tags=["upscaling"])
api_v1_router.include_router(models_router, prefix="/models", tags=["models"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
