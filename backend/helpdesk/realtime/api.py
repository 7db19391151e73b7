"""HTTP endpoints backed by the realtime core.

    - GET  /api/presence: live presence snapshot
    - POST /api/chats/messages/{message_id}/attachments-updated: hook for the
      upload pipeline; fans ``attachments:updated`` out to both chat parties
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from helpdesk.domain.errors import NotFoundError

from .router import EventRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["realtime"])


def get_event_router(request: Request) -> EventRouter:
    return request.app.state.event_router


@router.get("/presence")
async def get_presence(event_router: EventRouter = Depends(get_event_router)):
    return {"agentIds": event_router.presence.online_agent_ids()}


@router.post("/chats/messages/{message_id}/attachments-updated")
async def attachments_updated(
    message_id: int, event_router: EventRouter = Depends(get_event_router)
):
    try:
        await event_router.notify_attachments_updated(message_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"status": "ok", "messageId": message_id}
