"""Prometheus metrics endpoint.

Called by Prometheus every N seconds.  Returns plain text in the
exposition format, e.g.:

  # HELP enrollsync_operations_total Orchestrated operations by name and outcome
  # TYPE enrollsync_operations_total counter
  enrollsync_operations_total{operation="enroll_student",outcome="committed"} 412.0
  enrollsync_operations_total{operation="enroll_student",outcome="replayed"} 9.0

The inventory itself lives in core/metrics.py.  Restrict access to this
path at the ingress; lock and degradation counts reveal load patterns.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose all Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
