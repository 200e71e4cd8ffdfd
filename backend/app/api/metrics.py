"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Response

from app.monitoring.registry import registry

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"

router = APIRouter(tags=["system"])


@router.get("/metrics", response_class=Response)
def export_metrics() -> Response:
    """Expose realtime and presence counters for scraping."""

    return Response(content=registry.render(), media_type=PROMETHEUS_CONTENT_TYPE)
