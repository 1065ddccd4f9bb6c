"""
HTTP delivery for alert webhooks.

Posts JSON payloads with bounded retries, exponential backoff and a
circuit breaker, so a dead endpoint fails fast instead of stalling every
monitoring pass.
"""
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

# Throttling and transient server errors; everything else >= 400 fails at once
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class CircuitOpenError(RuntimeError):
    """Raised when the endpoint's circuit breaker is open."""


@dataclass
class RetryConfig:
    """
    Retry policy for one webhook POST.

    Attributes:
        max_retries: Attempts after the first one
        base_delay_seconds: Delay before the first retry, doubled per attempt
        max_delay_seconds: Cap on the backoff delay
        jitter_ratio: Random extra delay as a fraction of the backoff
        timeout_seconds: Per-request timeout
    """
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter_ratio: float = 0.3
    timeout_seconds: float = 10.0

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        backoff = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))
        backoff += backoff * random.uniform(0, self.jitter_ratio)
        return max(backoff, retry_after) if retry_after is not None else backoff


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Unable to parse Retry-After header: %s", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Opens after failure_threshold failed deliveries in a row. Once
    open_seconds have passed, a single probe is let through; its outcome
    closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        open_seconds: int = 300,
        timer: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.timer = timer
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self.probing = False

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None

    def can_attempt(self) -> bool:
        if not self.is_open:
            return True
        if self.probing or self.timer() - self.opened_at < self.open_seconds:
            return False
        self.probing = True
        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.opened_at = None
        self.probing = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.probing or self.consecutive_failures >= self.failure_threshold:
            if not self.is_open:
                logger.warning(f"Circuit opened after {self.consecutive_failures} failed deliveries")
            self.opened_at = self.timer()
            self.probing = False


class WebhookClient:
    """
    JSON POST client used by the webhook alert sink.

    Args:
        name: Label used in log messages and errors
        retry_config: Retry policy (defaults apply when omitted)
        circuit_breaker: Breaker shared across POSTs to the same endpoint
        session: requests.Session to send through
    """

    def __init__(
        self,
        name: str = "webhook",
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        session: Optional[requests.Session] = None,
    ):
        self.name = name
        self.session = session or requests.Session()
        self.retry_config = retry_config or RetryConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    def post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """
        POST a JSON payload.

        Raises:
            CircuitOpenError: If the circuit is open
            requests.RequestException: If every attempt failed or the
                endpoint rejected the payload
        """
        if not self.circuit_breaker.can_attempt():
            raise CircuitOpenError(f"{self.name} circuit open")

        attempts = self.retry_config.max_retries + 1
        for attempt in range(attempts):
            final = attempt == attempts - 1
            try:
                response = self.session.request(
                    "POST", url, json=payload, headers=headers, timeout=self.retry_config.timeout_seconds
                )
            except requests.RequestException as exc:
                if final:
                    self.circuit_breaker.record_failure()
                    raise
                logger.debug(f"{self.name}: attempt {attempt + 1}/{attempts} failed: {exc}")
                time.sleep(self.retry_config.delay(attempt))
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and not final:
                logger.debug(f"{self.name}: attempt {attempt + 1}/{attempts} got HTTP {response.status_code}")
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                time.sleep(self.retry_config.delay(attempt, retry_after))
                continue

            if response.status_code >= 400:
                self.circuit_breaker.record_failure()
                response.raise_for_status()

            self.circuit_breaker.record_success()
            return response

        raise RuntimeError(f"{self.name}: no delivery attempt made")
