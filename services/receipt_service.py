"""
Receipt Service for completed transactions
Renders a receipt image through the optional renderer, falling back to a text
receipt carrying the same fields. Delivery never affects the ledger.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.whatsapp_service import get_whatsapp_service
from utils.background_task_runner import run_background_task

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 5


def _naira(value) -> str:
    return f"₦{Decimal(str(value or 0)):,.2f}"


class ReceiptService:
    """Builds and delivers transaction receipts over WhatsApp"""

    RECEIPT_TITLES = {
        "bank_transfer": "Transfer Successful",
        "data_purchase": "Data Purchase Successful",
        "airtime_purchase": "Airtime Purchase Successful",
        "utility_bill": "Bill Payment Successful",
        "incoming_transfer": "Money Received",
    }

    @staticmethod
    def build_fields(txn: Dict[str, Any], new_balance=None) -> Dict[str, Any]:
        """Receipt fields from a transaction_to_dict() payload"""
        recipient = txn.get("recipientDetails") or {}
        meta = txn.get("metadata") or {}
        return {
            "title": ReceiptService.RECEIPT_TITLES.get(txn.get("category"), "Transaction Successful"),
            "reference": txn.get("reference"),
            "amount": _naira(txn.get("amount")),
            "fee": _naira(txn.get("fee")),
            "total": _naira(txn.get("totalAmount")),
            "recipientName": recipient.get("accountName") or meta.get("phoneNumber") or meta.get("meterNumber"),
            "recipientAccount": recipient.get("accountNumber"),
            "bankName": recipient.get("bankName"),
            "narration": recipient.get("narration") or txn.get("description"),
            "planTitle": meta.get("planTitle"),
            "token": meta.get("token"),
            "date": txn.get("processedAt") or txn.get("createdAt"),
            "balance": _naira(new_balance) if new_balance is not None else None,
        }

    @staticmethod
    def format_text(fields: Dict[str, Any]) -> str:
        lines = [f"✅ *{fields['title']}*", ""]
        labels = (
            ("Amount", "amount"), ("Fee", "fee"), ("Total", "total"),
            ("Recipient", "recipientName"), ("Account", "recipientAccount"), ("Bank", "bankName"),
            ("Plan", "planTitle"), ("Meter token", "token"), ("Narration", "narration"), ("Reference", "reference"),
            ("Date", "date"), ("New balance", "balance"),
        )
        for label, key in labels:
            if fields.get(key):
                lines.append(f"{label}: {fields[key]}")
        lines.append("")
        lines.append(f"Thank you for using {Config.PLATFORM_NAME}.")
        return "\n".join(lines)

    async def render_image(self, fields: Dict[str, Any]) -> Optional[str]:
        """URL of the rendered receipt image, or None when rendering is unavailable"""
        if not Config.RECEIPT_RENDERER_URL:
            return None
        try:
            timeout = aiohttp.ClientTimeout(total=Config.PROVIDER_TIMEOUT_SECONDS)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(Config.RECEIPT_RENDERER_URL, json=fields) as response:
                    if response.status >= 400:
                        logger.warning(f"⚠️ RECEIPT_RENDER_FAILED: ref={fields.get('reference')} status={response.status}")
                        return None
                    body = await response.json(content_type=None)
                    return (body or {}).get("url")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"⚠️ RECEIPT_RENDER_FAILED: ref={fields.get('reference')} error={e}")
            return None

    async def send_receipt(self, phone_number: str, txn: Dict[str, Any], new_balance=None) -> bool:
        fields = self.build_fields(txn, new_balance)
        whatsapp = get_whatsapp_service()

        image_url = await self.render_image(fields)
        caption = fields["title"]
        if fields.get("token"):
            caption += f"\nMeter token: {fields['token']}"
        if image_url and await whatsapp.send_image(phone_number, image_url, caption=caption):
            return True

        text = self.format_text(fields)
        if await whatsapp.send_text(phone_number, text):
            return True

        logger.error(f"❌ RECEIPT_UNDELIVERED: ref={fields.get('reference')} - scheduling one retry")
        await run_background_task(self._retry_text(phone_number, text, fields.get("reference")))
        return False

    async def _retry_text(self, phone_number: str, text: str, reference: Optional[str]) -> None:
        await asyncio.sleep(RETRY_DELAY_SECONDS)
        if not await get_whatsapp_service().send_text(phone_number, text):
            logger.error(f"❌ RECEIPT_RETRY_FAILED: ref={reference}")


receipt_service = ReceiptService()
