"""
Standardized API Adapter with Unified Retry System
Base class for external provider integrations: rate limiting, bounded
exponential backoff, circuit breaker and consistent error mapping
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple

import aiohttp

from config import Config
from services.circuit_breaker import CircuitBreaker, circuit_breakers
from utils.exception_handler import ChatWalletError, ProviderUnavailable

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class ProviderRateLimiter:
    """
    At most `max_per_second` requests in any one-second window and at least
    `min_interval` seconds between consecutive requests. Each caller reserves
    its slot before sleeping, so concurrent callers queue in order.
    """

    def __init__(self, max_per_second: int = 5, min_interval: float = 0.2,
                 clock=time.monotonic, sleep=asyncio.sleep):
        self.max_per_second = max_per_second
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._slots: Deque[float] = deque()
        self._last_slot: Optional[float] = None

    def _reserve(self) -> float:
        now = self._clock()
        while self._slots and self._slots[0] <= now - 1.0:
            self._slots.popleft()
        slot = now
        if self._last_slot is not None:
            slot = max(slot, self._last_slot + self.min_interval)
        if len(self._slots) >= self.max_per_second:
            slot = max(slot, self._slots[-self.max_per_second] + 1.0)
        self._slots.append(slot)
        self._last_slot = slot
        return slot - now

    async def acquire(self) -> None:
        wait = self._reserve()
        if wait > 0:
            await self._sleep(wait)


class APIAdapterRetry(ABC):
    """
    Base class for external API integrations with unified retry logic

    Subclasses provide authentication headers and map provider answers to the
    error taxonomy. Transport failures (timeouts, connection errors, 429/5xx)
    are retried with backoff and surface as ProviderUnavailable.
    """

    def __init__(self, service_name: str, base_url: str, timeout: Optional[int] = None):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or Config.PROVIDER_TIMEOUT_SECONDS
        self.max_retries = Config.PROVIDER_MAX_RETRIES
        self.rate_limiter = ProviderRateLimiter(
            max_per_second=Config.PROVIDER_MAX_RPS,
            min_interval=Config.PROVIDER_MIN_INTERVAL_MS / 1000.0,
        )
        if service_name not in circuit_breakers:
            circuit_breakers[service_name] = CircuitBreaker(
                service_name,
                failure_threshold=Config.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=Config.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            )
        self.circuit_breaker = circuit_breakers[service_name]
        logger.debug(f"🔧 APIAdapterRetry initialized for {service_name}")

    @abstractmethod
    async def _auth_headers(self) -> Dict[str, str]:
        """Authentication headers for every request"""

    @abstractmethod
    def _map_provider_error_to_unified(self, status: int, body: Dict[str, Any], endpoint: str) -> ChatWalletError:
        """Map a non-transient provider error answer to the error taxonomy"""

    def is_available(self) -> bool:
        return True

    def _backoff_delay(self, attempt: int) -> float:
        return 0.5 * (2 ** attempt) + random.uniform(0, 0.3)

    async def _make_request(
        self, method: str, endpoint: str, data: Optional[Dict] = None, params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Authenticated request through the circuit breaker; returns the decoded JSON body"""
        if not self.is_available():
            raise ProviderUnavailable(f"{self.service_name} is not configured", provider=self.service_name)
        return await self.circuit_breaker.async_call(self._request_with_retry, method, endpoint, data, params)

    async def _send(
        self, method: str, url: str, headers: Dict[str, str], data: Optional[Dict], params: Optional[Dict],
        timeout: float,
    ) -> Tuple[int, Dict[str, Any]]:
        """One HTTP exchange; returns (status, decoded body)"""
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method, url, headers=headers, json=data, params=params,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {"raw": await response.text()}
                return response.status, body if isinstance(body, dict) else {"data": body}

    async def _request_with_retry(
        self, method: str, endpoint: str, data: Optional[Dict], params: Optional[Dict]
    ) -> Dict[str, Any]:
        """All attempts, backoff included, share one PROVIDER_TIMEOUT_SECONDS deadline"""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        last_error = "unknown error"
        attempts = 0

        for attempt in range(self.max_retries + 1):
            await self.rate_limiter.acquire()
            remaining = deadline - loop.time()
            if remaining <= 0:
                last_error = f"deadline of {self.timeout}s exceeded"
                break
            attempts += 1
            try:
                headers = {"Content-Type": "application/json", "Accept": "application/json"}
                headers.update(await self._auth_headers())
                status, body = await asyncio.wait_for(
                    self._send(method, url, headers, data, params, remaining), timeout=remaining
                )

                if status in TRANSIENT_STATUSES:
                    last_error = f"HTTP {status}"
                    logger.warning(
                        f"⚠️ {self.service_name} {method} {endpoint} -> {status} (attempt {attempt + 1})"
                    )
                elif status >= 400:
                    raise self._map_provider_error_to_unified(status, body, endpoint)
                else:
                    logger.debug(f"{self.service_name} API success: {method} {endpoint}")
                    return body

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.warning(
                    f"⚠️ {self.service_name} network error on {endpoint}: {last_error} (attempt {attempt + 1})"
                )

            if attempt < self.max_retries:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    last_error = f"deadline of {self.timeout}s exceeded after {last_error}"
                    break
                await asyncio.sleep(min(self._backoff_delay(attempt), remaining))

        logger.error(f"❌ {self.service_name} unavailable for {endpoint} after {attempts} attempt(s): {last_error}")
        raise ProviderUnavailable(
            f"{self.service_name} unavailable: {last_error}", provider=self.service_name, endpoint=endpoint
        )
