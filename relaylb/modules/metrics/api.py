from __future__ import annotations

from fastapi import APIRouter, Request
from starlette.responses import Response

from relaylb.core.metrics import get_metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    metrics = get_metrics()
    elector = getattr(request.app.state, "leader_elector", None)
    if elector is not None:
        metrics.set_leader(elector.is_leader())
    return Response(
        content=metrics.render(),
        media_type=metrics.content_type,
        headers={"Cache-Control": "no-cache"},
    )
