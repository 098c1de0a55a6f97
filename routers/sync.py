"""
Drive sync endpoints: start a run, follow its progress over SSE, read status.
"""

import json
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from config import config
from schemas.sync import SyncStartRequest, SyncStartResponse, SyncStatusResponse
from services.progress import AsyncSubscription
from services.sync_errors import AlreadyRunningError
from services.sync_service import SyncService
from utils.structured_logging import StructuredLogger

router = APIRouter(tags=["sync"])

api_logger = StructuredLogger(service="api", logger_name="drive_mirror.api")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


@router.post("/sync", status_code=202, response_model=SyncStartResponse)
def start_sync(
    body: Optional[SyncStartRequest] = None,
    sync_service: SyncService = Depends(get_sync_service),
):
    """
    Start a background sync of the given folder (or the default scope).

    Returns 409 while an overlapping run is active: any run blocks a
    whole-catalog sync, and a whole-catalog sync blocks every folder.
    """
    folder_id = body.folder_id if body else None
    try:
        handle = sync_service.start_run(folder_id)
    except AlreadyRunningError as e:
        api_logger.warning(action="start_sync", status="conflict", message=str(e), run_id=e.run_id)
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "scope": e.scope, "run_id": e.run_id},
        )

    return SyncStartResponse(run_id=handle.run_id, scope=handle.scope, state=handle.state.value)


async def sse_events(
    subscription: AsyncSubscription,
    heartbeat_interval: float,
    until_complete: bool = False,
    request: Optional[Request] = None,
) -> AsyncIterator[str]:
    """Render a subscription as SSE frames, starting with a `connected` event."""
    connected = {"timestamp": datetime.now(timezone.utc).isoformat(), "heartbeat_interval": heartbeat_interval}
    yield f"event: connected\ndata: {json.dumps(connected)}\n\n"
    while True:
        if request is not None and await request.is_disconnected():
            return
        event = await subscription.next_event(heartbeat_interval)
        if event is None:
            return
        yield event.to_sse()
        if until_complete and event.is_terminal:
            return


@router.get("/sync/progress")
async def stream_progress(
    request: Request,
    until_complete: bool = Query(False, description="Close the stream after the next complete/error event"),
    sync_service: SyncService = Depends(get_sync_service),
):
    """
    Stream sync progress via Server-Sent Events.

    Events: `connected`, `page_loaded`, `entry_processed`, `heartbeat`,
    `complete`, `error`. Only events published after connecting are sent.
    """
    subscription = sync_service.subscribe_async()

    async def event_generator():
        try:
            async for frame in sse_events(subscription, config.SYNC_HEARTBEAT_SECONDS, until_complete, request):
                yield frame
        finally:
            # The run keeps going; only this subscription ends
            sync_service.unsubscribe(subscription)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(sync_service: SyncService = Depends(get_sync_service)):
    """Latest run per scope, active or finished."""
    runs = [handle.to_dict() for handle in sync_service.runs()]
    return {"active": any(run["running"] for run in runs), "runs": runs}
