"""
Rubies Provider Client Tests
Response-code mapping, status queries, webhook signatures, the circuit
breaker and the request-rate limiter
"""

import hashlib
import hmac
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from config import Config
from models import TransactionStatus
from services.api_adapter_retry import ProviderRateLimiter
from services.circuit_breaker import CircuitBreaker, CircuitState
from services.rubies_service import RubiesService, status_for_response_code
from utils.exception_handler import ProviderRejected, ProviderUnavailable


@pytest.fixture
def rubies():
    with patch.object(Config, 'RUBIES_API_KEY', 'sk_test'), \
            patch.object(Config, 'RUBIES_WEBHOOK_SECRET', 'whsec_test'):
        service = RubiesService()
    service._make_request = AsyncMock()
    return service


async def _transfer(service):
    return await service.fund_transfer(
        amount=Decimal("1000"),
        account_number="1001011000",
        bank_code="000010",
        bank_name="Test Bank",
        account_name="JOHN DOE",
        narration="Rent",
        reference="TRF-RB-1",
    )


class TestFundTransfer:
    """Provider answers mapped to transaction statuses"""

    @pytest.mark.parametrize("code,status", [
        ("00", "completed"),
        ("-1", "processing"),
        ("34", "pending_settlement"),
        ("14", "failed"),
        ("33", "failed"),
        ("99", "failed"),
    ])
    @pytest.mark.asyncio
    async def test_response_codes(self, rubies, code, status):
        rubies._make_request.return_value = {"responseCode": code, "responseMessage": "msg", "sessionId": "S1"}

        result = await _transfer(rubies)

        assert result["status"] == status
        assert result["success"] is (code == "00")
        assert result["responseCode"] == code

    @pytest.mark.asyncio
    async def test_reference_is_the_idempotency_key(self, rubies):
        rubies._make_request.return_value = {"responseCode": "00"}

        result = await _transfer(rubies)

        payload = rubies._make_request.await_args.args[2]
        assert payload["reference"] == "TRF-RB-1"
        assert payload["amount"] == "1000.00"
        assert result["providerReference"] == "TRF-RB-1"

    @pytest.mark.asyncio
    async def test_unconfigured_client_is_unavailable(self):
        with patch.object(Config, 'RUBIES_API_KEY', None):
            service = RubiesService()
        with pytest.raises(ProviderUnavailable):
            await _transfer(service)

    def test_response_code_table(self):
        assert status_for_response_code("00") == TransactionStatus.COMPLETED.value
        assert status_for_response_code(None) is None
        assert status_for_response_code("91") is None


class TestStatusQueryAndEnquiries:
    """TSQ and the other read endpoints"""

    @pytest.mark.asyncio
    async def test_tsq_final_state(self, rubies):
        rubies._make_request.return_value = {
            "responseCode": "00", "data": {"responseCode": "00", "sessionId": "S9"}
        }

        outcome = await rubies.transaction_status_query("TRF-RB-1")

        assert outcome["status"] == "completed"
        assert outcome["sessionId"] == "S9"
        assert outcome["source"] == "tsq"

    @pytest.mark.asyncio
    async def test_tsq_textual_status(self, rubies):
        rubies._make_request.return_value = {"responseCode": "00", "data": [{"status": "Reversed"}]}

        outcome = await rubies.transaction_status_query("TRF-RB-1")

        assert outcome["status"] == "failed"

    @pytest.mark.asyncio
    async def test_tsq_not_answered(self, rubies):
        rubies._make_request.return_value = {"responseCode": "25", "responseMessage": "Not found"}
        assert await rubies.transaction_status_query("TRF-RB-1") is None

    @pytest.mark.asyncio
    async def test_name_enquiry_failure(self, rubies):
        rubies._make_request.return_value = {"responseCode": "07", "responseMessage": "Invalid account"}

        with pytest.raises(ProviderRejected) as exc_info:
            await rubies.name_enquiry("1001011000", "000010")

        assert "couldn't verify" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_bank_list_cached(self, rubies):
        rubies._make_request.return_value = {
            "responseCode": "00", "data": [{"bankCode": "000058", "bankName": "GTBank"}, {"bankName": "No code"}]
        }

        first = await rubies.get_bank_list()
        second = await rubies.get_bank_list()

        assert first == [{"code": "000058", "name": "GTBank"}]
        assert second == first
        assert rubies._make_request.await_count == 1

    @pytest.mark.asyncio
    async def test_balance_enquiry(self, rubies):
        rubies._make_request.return_value = {"responseCode": "00", "accountBalance": "2500.50"}
        assert await rubies.wallet_balance_enquiry("9000000001") == Decimal("2500.50")

    @pytest.mark.asyncio
    async def test_bvn_format_checked_locally(self, rubies):
        with pytest.raises(ProviderRejected):
            await rubies.validate_bvn("123")
        rubies._make_request.assert_not_awaited()


class TestWebhookSignature:
    """HMAC-SHA256 over the raw body"""

    def test_valid_signature(self, rubies):
        body = b'{"reference":"TRF1"}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()

        assert rubies.verify_webhook_signature(body, signature)
        assert rubies.verify_webhook_signature(body, f"sha256={signature.upper()}")

    def test_tampered_body(self, rubies):
        signature = hmac.new(b"whsec_test", b'{"amount":1}', hashlib.sha256).hexdigest()
        assert not rubies.verify_webhook_signature(b'{"amount":1000}', signature)

    def test_missing_signature_or_secret(self, rubies):
        assert not rubies.verify_webhook_signature(b"{}", None)
        with patch.object(Config, 'RUBIES_WEBHOOK_SECRET', None):
            unconfigured = RubiesService()
        assert not unconfigured.verify_webhook_signature(b"{}", "abc")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Three failures open the circuit for five minutes"""

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_recovers(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=3, recovery_timeout=300, clock=clock)
        failing = AsyncMock(side_effect=ProviderUnavailable("down"))
        healthy = AsyncMock(return_value="ok")

        for _ in range(3):
            with pytest.raises(ProviderUnavailable):
                await breaker.async_call(failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(ProviderUnavailable):
            await breaker.async_call(healthy)
        healthy.assert_not_awaited()

        clock.now = 300
        assert await breaker.async_call(healthy) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_state()["stats"]["blocked_calls"] == 1

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=300, clock=clock)
        failing = AsyncMock(side_effect=ProviderUnavailable("down"))

        with pytest.raises(ProviderUnavailable):
            await breaker.async_call(failing)
        clock.now = 301
        with pytest.raises(ProviderUnavailable):
            await breaker.async_call(failing)

        assert breaker.state == CircuitState.OPEN
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_business_errors_do_not_count(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        rejected = AsyncMock(side_effect=ProviderRejected("declined"))

        with pytest.raises(ProviderRejected):
            await breaker.async_call(rejected)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_count(self):
        breaker = CircuitBreaker("test", failure_threshold=3)
        failing = AsyncMock(side_effect=ProviderUnavailable("down"))

        for _ in range(2):
            with pytest.raises(ProviderUnavailable):
                await breaker.async_call(failing)
        await breaker.async_call(AsyncMock(return_value=1))

        assert breaker.failure_count == 0


class TestRateLimiter:
    """At most five requests per second, 200 ms apart"""

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(round(seconds, 3))

        limiter = ProviderRateLimiter(max_per_second=5, min_interval=0.2, clock=lambda: 0.0, sleep=fake_sleep)
        for _ in range(6):
            await limiter.acquire()

        assert sleeps == [0.2, 0.4, 0.6, 0.8, 1.0]

    @pytest.mark.asyncio
    async def test_window_cap_without_gap(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(round(seconds, 3))

        limiter = ProviderRateLimiter(max_per_second=5, min_interval=0, clock=lambda: 0.0, sleep=fake_sleep)
        for _ in range(6):
            await limiter.acquire()

        assert sleeps == [1.0]
