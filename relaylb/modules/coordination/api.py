from __future__ import annotations

import math

from fastapi import APIRouter, Body, Depends

from relaylb.dependencies import CoordinationContext, get_coordination_context
from relaylb.modules.coordination.schemas import (
    ActivityRecordedResponse,
    ActivitySignalRequest,
    ActivityStatusResponse,
    LeaderStatusResponse,
)

router = APIRouter(prefix="/api/coordination", tags=["coordination"])


@router.get("/leader", response_model=LeaderStatusResponse)
async def get_leader(
    context: CoordinationContext = Depends(get_coordination_context),
) -> LeaderStatusResponse:
    elector = context.elector
    return LeaderStatusResponse(
        instance_id=elector.get_instance_id(),
        is_leader=elector.is_leader(),
        state=elector.state.value,
        leader_id=await elector.get_leader_id(),
        periodic_tasks=elector.task_names,
    )


@router.post("/activity", response_model=ActivityRecordedResponse)
async def record_activity(
    payload: ActivitySignalRequest = Body(...),
    context: CoordinationContext = Depends(get_coordination_context),
) -> ActivityRecordedResponse:
    recorded = await context.activity.handle_signal(payload.to_signal())
    return ActivityRecordedResponse(recorded=recorded)


@router.get("/activity", response_model=ActivityStatusResponse)
async def get_activity(
    context: CoordinationContext = Depends(get_coordination_context),
) -> ActivityStatusResponse:
    tracker = context.activity
    record = await tracker.current_record()
    inactive = await tracker.get_inactive_time()
    return ActivityStatusResponse(
        active=await tracker.is_user_active(),
        inactive_seconds=None if math.isinf(inactive) else inactive,
        recent_activity_count=record.recent_activity_count if record is not None else 0,
        last_activity_kind=record.last_activity_kind if record is not None else None,
    )
