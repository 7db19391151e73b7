"""WhatsApp webhook: subscription check and inbound delivery.

    - GET  /api/whatsapp/webhook: hub verification handshake
    - POST /api/whatsapp/webhook: delivery statuses and inbound client messages

Inbound media is not downloaded; the message is stored with a placeholder
text (or its caption) so the conversation stays readable for the agent.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse

from helpdesk.realtime.api import get_event_router
from helpdesk.realtime.router import EventRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])

MEDIA_PLACEHOLDERS = {
    "image": "Imagen",
    "audio": "Nota de audio",
    "document": "Adjunto",
}


def extract_content(message: Dict[str, Any]) -> Optional[str]:
    """Text of an inbound message, a placeholder for media, None otherwise."""
    text = (message.get("text") or {}).get("body")
    if text:
        return text
    button = (message.get("button") or {}).get("text")
    if button:
        return button
    media_type = message.get("type")
    if media_type in MEDIA_PLACEHOLDERS:
        caption = (message.get(media_type) or {}).get("caption")
        return caption or MEDIA_PLACEHOLDERS[media_type]
    return None


@router.get("/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    event_router: EventRouter = Depends(get_event_router),
):
    if mode == "subscribe" and token == event_router.config.whatsapp.verify_token:
        return PlainTextResponse(challenge or "")
    logger.warning("[WhatsApp] Webhook verification rejected (mode=%s)", mode)
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/webhook")
async def receive_webhook(
    request: Request, event_router: EventRouter = Depends(get_event_router)
):
    """Always answers 200 so the provider does not retry a processed batch."""
    try:
        body = await request.json()
    except ValueError:
        logger.warning("[WhatsApp] Webhook body is not JSON")
        return {"status": "ignored"}

    if not isinstance(body, dict):
        return {"status": "ignored"}

    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            await _handle_statuses(event_router, value)
            await _handle_messages(event_router, value)

    return {"status": "ok"}


async def _handle_statuses(event_router: EventRouter, value: Dict[str, Any]) -> None:
    for status in value.get("statuses") or []:
        external_id = status.get("id")
        if not external_id:
            continue
        try:
            message = await event_router.apply_provider_status(external_id, status.get("status") or "sent")
            if message:
                logger.info("[WhatsApp] Status update: %s -> %s", message.id, message.status.value)
        except Exception:
            logger.exception("[WhatsApp] Failed to apply status for %s", external_id)


async def _handle_messages(event_router: EventRouter, value: Dict[str, Any]) -> None:
    contacts = value.get("contacts") or []
    profile_name = ((contacts[0] if contacts else {}).get("profile") or {}).get("name")

    for message in value.get("messages") or []:
        wa_id = message.get("from")
        content = extract_content(message)
        if not wa_id or not content:
            continue
        try:
            saved = await event_router.ingest_whatsapp_message(
                wa_id,
                profile_name,
                content,
                external_message_id=message.get("id"),
                reply_to_external_id=(message.get("context") or {}).get("id"),
            )
            logger.info("[WhatsApp] Inbound message saved as %s", saved.id)
        except Exception:
            logger.exception("[WhatsApp] Failed to ingest message from %s", wa_id)
