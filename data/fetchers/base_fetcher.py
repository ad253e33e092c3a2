"""
Base Fetcher and Request Throttling

A backfill cycle can launch dozens of symbol tasks at once, and all of them
talk to the same REST provider. This module keeps that burst polite:

- RateLimiter: token bucket shared by every task, plus backoff bookkeeping
  and provider-requested pauses (HTTP 429 ``Retry-After``)
- CircuitBreaker: stops sending requests to a provider that keeps failing
- BaseFetcher: owns the aiohttp session and routes GETs through both
"""

import asyncio
import random
import time
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Any, Union
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
import aiohttp
import pandas as pd


logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # requests flow
    OPEN = "open"            # requests rejected until the cool-down ends
    HALF_OPEN = "half_open"  # probing


@dataclass
class RateLimitConfig:
    """Token bucket and backoff settings."""
    requests_per_second: float = 5.0
    burst_size: int = 10
    backoff_factor: float = 2.0
    max_backoff: float = 60.0


@dataclass
class CircuitBreakerConfig:
    """Thresholds for opening and closing the circuit."""
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 3


class CircuitBreakerOpenError(Exception):
    """Request refused because the circuit is open."""
    pass


class RateLimiter:
    """
    Token bucket with burst capacity.

    The bucket refills continuously at ``requests_per_second`` up to
    ``burst_size``. Failures grow an exponential delay applied before the
    next request; a provider-requested pause blocks every caller until it
    expires.
    """

    def __init__(self, config: RateLimitConfig):
        self.config = config
        self.tokens = float(config.burst_size)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

        self.consecutive_failures = 0
        self.paused_until = 0.0

        logger.info(f"RateLimiter initialized: {config.requests_per_second} req/s, "
                    f"burst={config.burst_size}")

    def _refill(self, now: float) -> None:
        self.tokens = min(self.config.burst_size,
                          self.tokens + (now - self.last_refill) * self.config.requests_per_second)
        self.last_refill = now

    async def acquire(self, tokens_needed: float = 1.0) -> bool:
        """Take ``tokens_needed`` tokens if the bucket holds them."""
        async with self.lock:
            now = time.monotonic()
            self._refill(now)
            if now < self.paused_until or self.tokens < tokens_needed:
                return False
            self.tokens -= tokens_needed
            return True

    async def wait_for_tokens(self, tokens_needed: float = 1.0, timeout: float = 300.0):
        """
        Block until tokens are available.

        Raises:
            asyncio.TimeoutError: If ``timeout`` seconds pass first
        """
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            if await self.acquire(tokens_needed):
                return
            wait = max(tokens_needed / self.config.requests_per_second,
                       self.paused_until - time.monotonic())
            await asyncio.sleep(min(wait, 1.0))

        raise asyncio.TimeoutError("Rate limiter timeout exceeded")

    def pause(self, seconds: float) -> None:
        """Hold all requests for ``seconds``, as asked by the provider."""
        self.paused_until = max(self.paused_until, time.monotonic() + seconds)
        logger.warning(f"Provider asked to slow down, pausing requests for {seconds:.1f}s")

    def record_failure(self):
        self.consecutive_failures += 1
        logger.warning(f"Recorded failure #{self.consecutive_failures}")

    def record_success(self):
        if self.consecutive_failures > 0:
            logger.info(f"Request succeeded after {self.consecutive_failures} failures, backoff cleared")
            self.consecutive_failures = 0

    def get_backoff_delay(self) -> float:
        """Delay before the next request, 0 when the last one succeeded."""
        if self.consecutive_failures == 0:
            return 0.0

        delay = min(self.config.backoff_factor ** self.consecutive_failures,
                    self.config.max_backoff)
        # up to 10% jitter so parallel tasks do not retry in lockstep
        return delay + delay * 0.1 * random.random()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'tokens': self.tokens,
            'consecutive_failures': self.consecutive_failures,
            'paused': time.monotonic() < self.paused_until,
            'requests_per_second': self.config.requests_per_second,
            'burst_size': self.config.burst_size,
        }


class CircuitBreaker:
    """
    Fail-fast gate in front of the provider.

    CLOSED -> OPEN after ``failure_threshold`` failures; OPEN -> HALF_OPEN once
    ``recovery_timeout`` has passed; HALF_OPEN -> CLOSED after
    ``success_threshold`` successes, or straight back to OPEN on a failure.
    """

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt = 0.0

        logger.info(f"CircuitBreaker initialized: failure_threshold={config.failure_threshold}")

    def allow_request(self) -> bool:
        if self.state == CircuitState.OPEN:
            if time.monotonic() < self.next_attempt:
                return False
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info("Circuit breaker half-open, probing provider")
        return True

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info("Circuit breaker closed, provider recovered")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self.state = CircuitState.OPEN
            self.next_attempt = time.monotonic() + self.config.recovery_timeout
            logger.error(f"Circuit breaker OPEN after {self.failure_count} failures, "
                         f"retrying in {self.config.recovery_timeout}s")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
        }


class BaseFetcher(ABC):
    """
    Abstract REST fetcher.

    Subclasses build URLs and parse payloads; every request goes through
    ``_get_json`` so throttling and failure accounting live in one place.
    """

    USER_AGENT = 'PolygonGapFill/1.0'

    def __init__(self,
                 api_key: Optional[str] = None,
                 rate_limit_config: Optional[RateLimitConfig] = None,
                 circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
                 timeout: float = 30.0):
        """
        Args:
            api_key: Provider API key
            rate_limit_config: Token bucket settings
            circuit_breaker_config: Breaker thresholds
            timeout: Total timeout per request, in seconds
        """
        self.api_key = api_key
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

        self.rate_limiter = RateLimiter(rate_limit_config or RateLimitConfig())
        self.circuit_breaker = CircuitBreaker(circuit_breaker_config or CircuitBreakerConfig())

        self.request_count = 0
        self.error_count = 0
        self.throttled_count = 0

        logger.info(f"{self.__class__.__name__} initialized with timeout={timeout}s")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self):
        """Open the shared HTTP session."""
        if self.session is None:
            connector = aiohttp.TCPConnector(limit=100, limit_per_host=30, ttl_dns_cache=300)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.USER_AGENT}
            )
            logger.info("HTTP session created")

    async def stop(self):
        """Close the shared HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("HTTP session closed")

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET ``url`` and decode the JSON body.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            aiohttp.ClientResponseError: On a non-2xx response
            aiohttp.ClientError, asyncio.TimeoutError: On transport failures
        """
        if not self.session:
            await self.start()

        await self.rate_limiter.wait_for_tokens()

        if not self.circuit_breaker.allow_request():
            raise CircuitBreakerOpenError("Circuit breaker is open")

        backoff = self.rate_limiter.get_backoff_delay()
        if backoff:
            await asyncio.sleep(backoff)

        try:
            async with self.session.get(url, params=params) as response:
                if response.status == 429:
                    self.throttled_count += 1
                    self.rate_limiter.pause(_retry_after(response.headers))
                response.raise_for_status()
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.error_count += 1
            self.rate_limiter.record_failure()
            self.circuit_breaker.record_failure()
            logger.error(f"Request failed: {e}")
            raise

        self.request_count += 1
        self.rate_limiter.record_success()
        self.circuit_breaker.record_success()
        return payload

    @abstractmethod
    async def fetch_historical(self,
                               symbol: str,
                               start: Union[str, datetime],
                               end: Union[str, datetime],
                               interval: str = '1min',
                               **kwargs) -> pd.DataFrame:
        """OHLCV bars for ``symbol`` indexed by UTC timestamp."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        pass

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'fetcher_class': self.__class__.__name__,
            'request_count': self.request_count,
            'error_count': self.error_count,
            'throttled_count': self.throttled_count,
            'error_rate': self.error_count / max(self.request_count, 1),
            'rate_limiter': self.rate_limiter.get_stats(),
            'circuit_breaker': self.circuit_breaker.get_stats()
        }


def _retry_after(headers, default: float = 1.0) -> float:
    """Seconds from a ``Retry-After`` header, ``default`` when absent or malformed."""
    try:
        return max(float(headers.get('Retry-After', default)), 0.0)
    except (TypeError, ValueError):
        return default
