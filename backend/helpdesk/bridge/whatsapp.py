"""Outbound WhatsApp Cloud API client.

All sends go to ``https://graph.facebook.com/{version}/{phone_number_id}/messages``
and return the provider's message id, which the router stores on the local
message so delivery statuses can be correlated later.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from helpdesk.domain.errors import ProviderError

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "audio", "document")


class WhatsAppClient:
    """Thin async wrapper over the WhatsApp Cloud API."""

    BASE_URL = "https://graph.facebook.com"

    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        graph_version: str = "v19.0",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.graph_version = graph_version
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self.BASE_URL}/{self.graph_version}/{self.phone_number_id}/messages"

    async def _post_message(self, payload: Dict[str, Any]) -> Optional[str]:
        if not self.configured:
            raise ProviderError(
                "WhatsApp not configured: access token or phone number id missing"
            )

        body = {"messaging_product": "whatsapp", **payload}
        try:
            resp = await self._client.post(
                self.messages_url,
                json=body,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"WhatsApp request failed: {e}") from e

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}

        if resp.status_code < 200 or resp.status_code >= 300:
            raise ProviderError(
                f"WhatsApp API error: {resp.status_code}",
                status_code=resp.status_code,
                response=data,
            )

        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def send_text(
        self, to: str, text: str, reply_to_message_id: Optional[str] = None
    ) -> Optional[str]:
        payload: Dict[str, Any] = {"to": to, "type": "text", "text": {"body": text}}
        if reply_to_message_id:
            payload["context"] = {"message_id": reply_to_message_id}
        return await self._post_message(payload)

    async def send_media(
        self,
        to: str,
        media_type: str,
        url: str,
        caption: Optional[str] = None,
        filename: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
    ) -> Optional[str]:
        """Send an image, audio or document by public link.

        Raises:
            ProviderError: Unsupported media type, or the API call failed.
        """
        if media_type not in MEDIA_TYPES:
            raise ProviderError(f"Unsupported media type: {media_type}")

        media: Dict[str, Any] = {"link": url}
        if caption and media_type == "image":
            media["caption"] = caption
        if filename and media_type == "document":
            media["filename"] = filename

        payload: Dict[str, Any] = {"to": to, "type": media_type, media_type: media}
        if reply_to_message_id:
            payload["context"] = {"message_id": reply_to_message_id}
        return await self._post_message(payload)

    async def send_template(
        self,
        to: str,
        name: str,
        language_code: str,
        components: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[str]:
        if not name or not language_code:
            raise ProviderError("Template name and language code are required")

        template: Dict[str, Any] = {"name": name, "language": {"code": language_code}}
        if components:
            template["components"] = components
        return await self._post_message({"to": to, "type": "template", "template": template})

    async def aclose(self) -> None:
        await self._client.aclose()
