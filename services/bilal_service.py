"""
Bilal reseller integration
Token authentication (Basic auth exchange, cached for 23 hours) plus data
bundles, airtime top-ups and electricity bills through the unified retry adapter
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from services.data_plan_service import NETWORK_IDS, normalize_network
from utils.exception_handler import ChatWalletError, ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 23 * 3600

REJECTED_USER_MESSAGE = "The purchase could not be completed. You have not been charged."

# distribution companies by the reseller's disco id
DISCO_IDS = {
    "IKEJA": 1,
    "EKO": 2,
    "KANO": 3,
    "PORT HARCOURT": 4,
    "JOS": 5,
    "IBADAN": 6,
    "ENUGU": 7,
    "KADUNA": 8,
    "ABUJA": 9,
    "BENIN": 10,
}


def local_phone_number(phone: str) -> str:
    """+2348012345678 / 2348012345678 -> 08012345678"""
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    if digits.startswith("234"):
        digits = "0" + digits[3:]
    return digits


class BilalService(APIAdapterRetry):
    """Data, airtime and electricity purchases from the Bilal reseller"""

    def __init__(self):
        super().__init__(service_name="bilal", base_url=Config.BILAL_BASE_URL)
        self.username = Config.BILAL_USERNAME
        self.password = Config.BILAL_PASSWORD
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self.last_known_balance: Optional[str] = None

        if not (self.username and self.password):
            logger.warning("BILAL credentials not configured - reseller purchases will not work")

    def is_available(self) -> bool:
        return bool(self.username and self.password)

    async def _generate_token(self) -> str:
        url = f"{self.base_url}/user/"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    auth=aiohttp.BasicAuth(self.username, self.password),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"❌ BILAL_TOKEN_FAILED: {type(e).__name__}: {e}")
            raise ProviderUnavailable(f"Bilal token request failed: {e}", provider="bilal")

        if not isinstance(body, dict) or body.get("status") != "success" or not body.get("AccessToken"):
            message = body.get("message") if isinstance(body, dict) else None
            logger.error(f"❌ BILAL_TOKEN_REJECTED: {message}")
            raise ProviderUnavailable(f"Bilal authentication failed: {message}", provider="bilal")

        self._token = body["AccessToken"]
        self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
        self.last_known_balance = body.get("balance")
        logger.info(f"🔑 BILAL_TOKEN_REFRESHED: balance={self.last_known_balance}")
        return self._token

    async def _auth_headers(self) -> Dict[str, str]:
        token = self._token
        if not token or time.monotonic() >= self._token_expires_at:
            token = await self._generate_token()
        return {"Authorization": f"Token {token}"}

    def _map_provider_error_to_unified(self, status: int, body: Dict[str, Any], endpoint: str) -> ChatWalletError:
        message = body.get("message") or body.get("error") or f"HTTP {status}"
        if status in (401, 403):
            # force a fresh token on the next call
            self._token = None
            return ProviderUnavailable(f"Bilal authentication failed: {message}", provider="bilal")
        return ProviderRejected(
            f"Bilal rejected {endpoint}: {message}",
            response_code=str(status),
            user_message=REJECTED_USER_MESSAGE,
        )

    def _require_success(self, response: Dict[str, Any], request_id: str, product: str) -> None:
        """Anything but status == "success" is a rejection"""
        if response.get("status") == "success":
            return
        message = response.get("message") or response.get("status") or "unknown"
        logger.warning(f"⚠️ BILAL_PURCHASE_REJECTED: product={product} request={request_id} message={message}")
        raise ProviderRejected(
            f"Bilal {product} purchase failed: {message}",
            response_code=str(response.get("status")),
            user_message=REJECTED_USER_MESSAGE,
        )

    async def purchase_data(self, network: str, phone: str, plan_id, request_id: str) -> Dict[str, Any]:
        """
        Buy a bundle. Returns the reseller's answer on status == "success";
        any other answer raises ProviderRejected.
        """
        network = normalize_network(network)
        payload = {
            "network": NETWORK_IDS[network],
            "phone": local_phone_number(phone),
            "data_plan": int(plan_id),
            "bypass": False,
            "request-id": request_id,
        }
        logger.info(f"📶 Bilal data purchase: request={request_id} network={network} plan={plan_id}")

        response = await self._make_request("POST", "/data/", payload)
        self._require_success(response, request_id, "data")

        return {
            "requestId": response.get("request-id") or request_id,
            "amount": response.get("amount"),
            "network": response.get("network") or network,
            "dataPlan": response.get("dataplan"),
            "phoneNumber": response.get("phone_number") or payload["phone"],
            "message": response.get("message"),
        }

    async def purchase_airtime(self, network: str, phone: str, amount, request_id: str) -> Dict[str, Any]:
        """VTU top-up of `amount` naira; same answer contract as purchase_data"""
        network = normalize_network(network)
        payload = {
            "network": NETWORK_IDS[network],
            "phone": local_phone_number(phone),
            "plan_type": "VTU",
            "amount": str(amount),
            "bypass": False,
            "request-id": request_id,
        }
        logger.info(f"📱 Bilal airtime purchase: request={request_id} network={network} amount={amount}")

        response = await self._make_request("POST", "/topup/", payload)
        self._require_success(response, request_id, "airtime")

        return {
            "requestId": response.get("request-id") or request_id,
            "amount": response.get("amount") or str(amount),
            "discount": response.get("discount"),
            "network": response.get("network") or network,
            "phoneNumber": response.get("phone_number") or payload["phone"],
            "message": response.get("message"),
        }

    async def pay_electricity(
        self, disco: str, meter_type: str, meter_number: str, amount, request_id: str
    ) -> Dict[str, Any]:
        """Electricity bill; prepaid answers carry the meter token"""
        payload = {
            "disco": DISCO_IDS[disco],
            "meter_type": meter_type,
            "meter_number": meter_number,
            "amount": str(amount),
            "bypass": False,
            "request-id": request_id,
        }
        logger.info(f"⚡ Bilal electricity payment: request={request_id} disco={disco} type={meter_type}")

        response = await self._make_request("POST", "/bill/", payload)
        self._require_success(response, request_id, "electricity")

        return {
            "requestId": response.get("request-id") or request_id,
            "amount": response.get("amount") or str(amount),
            "charges": response.get("charges"),
            "disco": response.get("disco_name") or disco,
            "meterType": response.get("meter_type") or meter_type,
            "meterNumber": response.get("meter_number") or meter_number,
            "token": response.get("token"),
            "message": response.get("message"),
        }


_bilal_service: Optional[BilalService] = None


def get_bilal_service() -> BilalService:
    global _bilal_service
    if _bilal_service is None:
        _bilal_service = BilalService()
    return _bilal_service
