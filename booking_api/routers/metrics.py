"""
Metrics Router - Prometheus Endpoint

Exposes /metrics endpoint for Prometheus scraping
"""
from fastapi import APIRouter, Response
from ..metrics import get_metrics_text, get_metrics_content_type

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """
    Prometheus metrics endpoint

    Returns metrics in Prometheus text format for scraping (not enveloped).
    Should be restricted to the scraper's network in production.
    """
    return Response(
        content=get_metrics_text(),
        media_type=get_metrics_content_type()
    )
