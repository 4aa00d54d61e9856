"""
WhatsApp Cloud API messaging service
Text, image and interactive flow messages. Delivery failures are logged and
reported as False; they never raise into ledger code.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.pin_security import mask_phone

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"


class WhatsAppService:
    """Thin client for POST /{phone_number_id}/messages"""

    def __init__(self):
        self.access_token = Config.WHATSAPP_ACCESS_TOKEN
        self.phone_number_id = Config.WHATSAPP_PHONE_NUMBER_ID
        self.api_version = Config.WHATSAPP_API_VERSION
        self.timeout = aiohttp.ClientTimeout(total=Config.PROVIDER_TIMEOUT_SECONDS)

        if not self.access_token or not self.phone_number_id:
            logger.warning("WhatsApp credentials not configured - outbound messages will be dropped")

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.api_version}/{self.phone_number_id}/messages"

    async def _post(self, payload: Dict[str, Any]) -> bool:
        if not self.access_token or not self.phone_number_id:
            logger.warning(f"📵 WhatsApp not configured, dropping {payload.get('type')} message")
            return False

        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.messages_url, json=payload, headers=headers) as response:
                    if response.status >= 400:
                        body = await response.text()
                        logger.error(
                            f"❌ WHATSAPP_SEND_FAILED: to={mask_phone(payload.get('to'))} "
                            f"type={payload.get('type')} status={response.status} body={body[:300]}"
                        )
                        return False
                    return True
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(
                f"❌ WHATSAPP_SEND_FAILED: to={mask_phone(payload.get('to'))} type={payload.get('type')} "
                f"error={type(e).__name__}: {e}"
            )
            return False

    async def send_text(self, to: str, body: str) -> bool:
        return await self._post({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body[:4096]},
        })

    async def send_image(self, to: str, image_url: str, caption: Optional[str] = None) -> bool:
        image: Dict[str, Any] = {"link": image_url}
        if caption:
            image["caption"] = caption[:1024]
        return await self._post({
            "messaging_product": "whatsapp",
            "to": to,
            "type": "image",
            "image": image,
        })

    async def send_flow(
        self,
        to: str,
        flow_id: str,
        flow_token: str,
        cta: str,
        body: str,
        screen: str,
        data: Optional[Dict[str, Any]] = None,
        header: Optional[str] = None,
    ) -> bool:
        """Interactive flow message opening `screen` with optional initial data"""
        action_payload: Dict[str, Any] = {"screen": screen}
        if data:
            action_payload["data"] = data
        interactive: Dict[str, Any] = {
            "type": "flow",
            "body": {"text": body},
            "action": {
                "name": "flow",
                "parameters": {
                    "flow_message_version": "3",
                    "flow_token": flow_token,
                    "flow_id": flow_id,
                    "flow_cta": cta,
                    "flow_action": "navigate",
                    "flow_action_payload": action_payload,
                },
            },
        }
        if header:
            interactive["header"] = {"type": "text", "text": header}
        return await self._post({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "interactive",
            "interactive": interactive,
        })

    async def mark_as_read(self, message_id: str) -> bool:
        return await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })


_whatsapp_service: Optional[WhatsAppService] = None


def get_whatsapp_service() -> WhatsAppService:
    global _whatsapp_service
    if _whatsapp_service is None:
        _whatsapp_service = WhatsAppService()
    return _whatsapp_service
