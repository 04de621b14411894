"""
Operational endpoints for the text generation backend: health of the model
server, process resource usage, and an emergency stop.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from datetime import datetime
import httpx
import logging

from ..config import settings
from ..dependencies import get_safety_gate
from ..services.llm.safety import GenerationSafetyGate

logger = logging.getLogger(__name__)

router = APIRouter()


async def check_model_server(base_url: str) -> str:
    """running, error or offline"""
    url = f"{base_url.rstrip('/')}/api/tags"
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(url)
        return "running" if response.status_code == 200 else "error"
    except httpx.HTTPError as e:
        logger.info(f"[SAFETY] Model server unreachable at {url}: {e}")
        return "offline"


@router.get("/status")
async def get_status(gate: GenerationSafetyGate = Depends(get_safety_gate)):
    resources = gate.get_resource_usage()
    model_status = await check_model_server(settings.llm_base_url)
    healthy = (
        resources["memory"]["rss_mb"] < gate.memory_soft_mb
        and resources["active_requests"] < gate.max_concurrent
        and model_status == "running"
    )
    return {
        "healthy": healthy,
        "resources": resources,
        "model_server": {
            "status": model_status,
            "endpoint": settings.llm_base_url,
            "api_type": settings.llm_api_type,
        },
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/resources")
async def get_resources(gate: GenerationSafetyGate = Depends(get_safety_gate)):
    return gate.get_resource_usage()


@router.post("/stop-llm")
async def stop_llm(gate: GenerationSafetyGate = Depends(get_safety_gate)):
    logger.warning("[SAFETY] Emergency stop requested via API")
    try:
        result = await gate.emergency_stop()
    except Exception as e:
        logger.error(f"[SAFETY] Emergency stop failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Emergency stop failed: {e}")
    return {"success": True, "message": "Emergency stop executed", **result}
