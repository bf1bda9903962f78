"""Metrics endpoint."""

from typing import Any, Dict

from fastapi import APIRouter

from core.observability.metrics import get_metrics


router = APIRouter()


@router.get("")
async def get_metrics_summary() -> Dict[str, Any]:
    """In-memory counters of this process (API calls, sync outcomes, queue drains)."""
    return get_metrics().get_summary()
