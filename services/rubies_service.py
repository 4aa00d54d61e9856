"""
Rubies BaaS Service for NGN virtual accounts and NIP transfers
Handles name enquiry, fund transfers, status queries, balance enquiry,
virtual account provisioning, BVN validation and webhook verification
"""

import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Optional, Dict, Any, List

from config import Config
from models import TransactionStatus
from services.api_adapter_retry import APIAdapterRetry
from utils.exception_handler import ChatWalletError, ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"

# Provider response code -> Transaction status
RESPONSE_CODE_STATUS: Dict[str, str] = {
    "00": TransactionStatus.COMPLETED.value,
    "14": TransactionStatus.FAILED.value,
    "33": TransactionStatus.FAILED.value,
    "34": TransactionStatus.PENDING_SETTLEMENT.value,
    "-1": TransactionStatus.PROCESSING.value,
}


def status_for_response_code(code: Optional[str]) -> Optional[str]:
    return RESPONSE_CODE_STATUS.get(str(code)) if code is not None else None


def _mask(account_number: Optional[str]) -> str:
    return f"***{account_number[-4:]}" if account_number else "unknown"


class RubiesService(APIAdapterRetry):
    """Service for the Rubies banking-as-a-service API with unified retry system"""

    def __init__(self):
        super().__init__(service_name="rubies", base_url=Config.RUBIES_BASE_URL)
        self.api_key = Config.RUBIES_API_KEY
        self.webhook_secret = Config.RUBIES_WEBHOOK_SECRET

        self._bank_list_cache: Optional[List[Dict[str, str]]] = None
        self._bank_list_cached_at: Optional[float] = None

        if not self.api_key:
            logger.warning("RUBIES_API_KEY not configured - bank transfers will not work")

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": self.api_key or ""}

    def _map_provider_error_to_unified(self, status: int, body: Dict[str, Any], endpoint: str) -> ChatWalletError:
        message = body.get("responseMessage") or body.get("message") or f"HTTP {status}"
        if status in (401, 403):
            logger.error(f"❌ Rubies authentication failed on {endpoint}: {message}")
            return ProviderUnavailable(f"Rubies authentication failed: {message}", provider="rubies")
        return ProviderRejected(
            f"Rubies rejected {endpoint}: {message}",
            response_code=str(body.get("responseCode") or status),
        )

    @staticmethod
    def is_success(response: Dict[str, Any]) -> bool:
        return str(response.get("responseCode")) == SUCCESS_CODE or response.get("success") is True

    async def name_enquiry(self, account_number: str, bank_code: str) -> Dict[str, Any]:
        """Resolve the registered account name for (account number, 6-digit institution code)"""
        payload = {"accountNumber": account_number.strip(), "bankCode": bank_code.strip()}
        logger.info(f"🔍 Rubies name enquiry: account={_mask(account_number)} bank={bank_code}")

        response = await self._make_request("POST", "/baas-transaction/name-enquiry", payload)
        if not self.is_success(response) or not response.get("accountName"):
            raise ProviderRejected(
                f"Name enquiry failed: {response.get('responseMessage')}",
                response_code=response.get("responseCode"),
                user_message="We couldn't verify that account. Please check the account number and bank.",
            )

        return {
            "accountName": response.get("accountName"),
            "accountNumber": response.get("accountNumber") or account_number,
            "bankCode": response.get("bankCode") or bank_code,
            "bankName": response.get("bankName"),
            "sessionId": response.get("sessionId"),
        }

    async def fund_transfer(
        self,
        amount: Decimal,
        account_number: str,
        bank_code: str,
        bank_name: str,
        account_name: str,
        narration: str,
        reference: str,
        debit_account_number: Optional[str] = None,
        debit_account_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Instruct an outbound NIP transfer. `reference` is the idempotency key.

        Returns a result dict with `success`, `status` (the Transaction status the
        answer implies), `responseCode`, `responseMessage`, `providerReference`
        and `sessionId`. Transport failures raise ProviderUnavailable.
        """
        payload = {
            "amount": str(Decimal(str(amount)).quantize(Decimal("0.01"))),
            "bankCode": bank_code,
            "bankName": bank_name or "",
            "creditAccountName": account_name,
            "creditAccountNumber": account_number,
            "debitAccountName": debit_account_name or Config.PLATFORM_NAME,
            "debitAccountNumber": debit_account_number or "",
            "narration": (narration or "Transfer")[:100],
            "reference": reference,
            "sessionId": reference,
        }
        logger.info(
            f"💸 Rubies fund transfer: ref={reference} amount={payload['amount']} "
            f"to={_mask(account_number)} bank={bank_code}"
        )

        response = await self._make_request("POST", "/baas-transaction/fund-transfer", payload)
        code = str(response.get("responseCode")) if response.get("responseCode") is not None else None
        success = self.is_success(response)
        status = TransactionStatus.COMPLETED.value if success else (
            status_for_response_code(code) or TransactionStatus.FAILED.value
        )

        result = {
            "success": success,
            "status": status,
            "responseCode": code,
            "responseMessage": response.get("responseMessage"),
            "providerReference": response.get("reference") or response.get("transactionReference") or reference,
            "sessionId": response.get("sessionId"),
            "raw": response,
        }
        log = logger.info if success else logger.warning
        log(f"💸 Rubies fund transfer result: ref={reference} code={code} status={status}")
        return result

    async def get_bank_list(self, force_refresh: bool = False) -> List[Dict[str, str]]:
        """Provider bank list as [{code, name}], cached for BANK_LIST_CACHE_SECONDS"""
        now = time.monotonic()
        if (
            not force_refresh
            and self._bank_list_cache is not None
            and self._bank_list_cached_at is not None
            and now - self._bank_list_cached_at < Config.BANK_LIST_CACHE_SECONDS
        ):
            return self._bank_list_cache

        response = await self._make_request("POST", "/baas-transaction/bank-list", {"readAll": "YES"})
        if not self.is_success(response):
            raise ProviderRejected(
                f"Bank list failed: {response.get('responseMessage')}", response_code=response.get("responseCode")
            )

        banks = [
            {"code": str(bank.get("bankCode") or bank.get("code")), "name": bank.get("bankName") or bank.get("name")}
            for bank in response.get("data") or []
            if (bank.get("bankCode") or bank.get("code"))
        ]
        self._bank_list_cache = banks
        self._bank_list_cached_at = now
        logger.info(f"🏦 Retrieved {len(banks)} banks from Rubies")
        return banks

    async def transaction_status_query(self, reference: str) -> Optional[Dict[str, Any]]:
        """
        Query the outcome of a transfer. Returns a provider outcome
        ({status, responseCode, responseMessage, providerReference, sessionId})
        or None when the provider does not know the final state yet.
        """
        response = await self._make_request("POST", "/baas-Transaction/tsq", {"reference": reference})
        if not self.is_success(response):
            logger.info(f"TSQ for {reference} not answered: {response.get('responseMessage')}")
            return None

        data = response.get("data") or {}
        if isinstance(data, list):
            data = data[0] if data else {}
        code = data.get("responseCode") or data.get("transactionStatusCode")
        status = status_for_response_code(code)
        if status is None:
            text = str(data.get("status") or data.get("transactionStatus") or "").lower()
            status = {
                "successful": TransactionStatus.COMPLETED.value,
                "success": TransactionStatus.COMPLETED.value,
                "completed": TransactionStatus.COMPLETED.value,
                "failed": TransactionStatus.FAILED.value,
                "reversed": TransactionStatus.FAILED.value,
            }.get(text)
        if status is None:
            return None

        return {
            "status": status,
            "responseCode": code,
            "responseMessage": data.get("responseMessage") or response.get("responseMessage"),
            "providerReference": data.get("reference") or reference,
            "sessionId": data.get("sessionId"),
            "failureReason": data.get("responseMessage") if status == TransactionStatus.FAILED.value else None,
            "source": "tsq",
        }

    async def wallet_balance_enquiry(self, account_number: str) -> Decimal:
        response = await self._make_request(
            "POST", "/baas-wallet/wallet-balance-enquiry", {"accountNumber": account_number.strip()}
        )
        if not self.is_success(response):
            raise ProviderRejected(
                f"Balance enquiry failed: {response.get('responseMessage')}", response_code=response.get("responseCode")
            )
        return Decimal(str(response.get("accountBalance") or "0"))

    async def initiate_virtual_account(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Step one of provisioning: the provider sends an OTP to the customer's phone"""
        reference = user_data.get("reference") or f"VA_{int(time.time() * 1000)}_{user_data['userId']}"
        payload = {
            "accountAmountControl": "EXACT",
            "accountType": "REUSABLE",
            "amount": "0",
            "bvn": str(user_data["bvn"]).strip(),
            "firstName": user_data["firstName"].strip(),
            "lastName": user_data["lastName"].strip(),
            "gender": user_data.get("gender") or "Male",
            "phoneNumber": user_data["phoneNumber"],
            "reference": reference,
        }
        response = await self._make_request("POST", "/baas-virtual-account/initiaiteCreateVirtualAccount", payload)
        if not self.is_success(response):
            raise ProviderRejected(
                f"Virtual account initiation failed: {response.get('responseMessage')}",
                response_code=response.get("responseCode"),
            )
        logger.info(f"🏦 Virtual account initiated for user {user_data['userId']}: ref={reference}")
        return {"reference": reference, "otpRequired": True}

    async def complete_virtual_account(self, reference: str, otp: str) -> Dict[str, Any]:
        response = await self._make_request(
            "POST", "/baas-virtual-account/completeVirtualAccountCreation", {"reference": reference, "otp": otp}
        )
        if not self.is_success(response) or not response.get("accountNumber"):
            raise ProviderRejected(
                f"Virtual account completion failed: {response.get('responseMessage')}",
                response_code=response.get("responseCode"),
            )
        return {
            "accountNumber": response.get("accountNumber"),
            "accountName": response.get("accountName"),
            "bankName": response.get("channelBankName") or "RUBIES MFB",
            "bankCode": response.get("channelBankCode") or "090175",
            "reference": reference,
        }

    async def validate_bvn(self, bvn: str) -> Dict[str, Any]:
        if not bvn or len(bvn) != 11 or not bvn.isdigit():
            raise ProviderRejected("Invalid BVN format", user_message="BVN must be exactly 11 digits.")
        logger.info(f"🪪 Rubies BVN validation: bvn=***{bvn[-4:]}")
        response = await self._make_request("POST", "/baas-kyc/bvn-validation", {"bvn": bvn})
        if not self.is_success(response):
            raise ProviderRejected(
                f"BVN validation failed: {response.get('responseMessage')}",
                response_code=response.get("responseCode"),
                user_message="We couldn't verify your BVN. Please check it and try again.",
            )
        return {"verified": True, "data": response.get("data") or {}}

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA256 of the raw body, hex; an optional `sha256=` prefix is accepted"""
        if not self.webhook_secret:
            logger.critical("🚨 RUBIES_WEBHOOK_SECRET not configured - rejecting webhook")
            return False
        if not signature:
            return False
        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[7:]
        expected = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, provided.lower())


_rubies_service: Optional[RubiesService] = None


def get_rubies_service() -> RubiesService:
    """Get or create the shared Rubies service instance (shared bank list cache)"""
    global _rubies_service
    if _rubies_service is None:
        _rubies_service = RubiesService()
    return _rubies_service
