"""
Shared outbound HTTP layer for every external service.

All data-source, directions, geocoding and narrative requests go through
ServiceHTTPClient. It provides:
- Fresh requests.Session per call (thread-safe, no shared state)
- Retry with backoff on 429 / 5xx / timeouts (2 retries, 2s then 4s)
- gr_trace integration (one APICallRecord per attempt)
- Passive health recording via health_monitor.record_call

Callers get parsed JSON back or one of the exceptions below.
"""

import logging
import time
from typing import Any, Dict, Optional

import requests

from gr_trace import get_trace

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for outbound HTTP failures after all retries."""

    def __init__(self, message: str, service: str = "", status_code: int = 0):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class ServiceRateLimitError(ServiceError):
    """Provider answered 429 on every attempt."""

    pass


class ServiceRequestError(ServiceError):
    """Non-rate-limit failure: HTTP error, timeout, connection error, bad JSON."""

    @property
    def retryable(self) -> bool:
        return self.status_code == 0 or self.status_code >= 500


def _record_health(service: str, success: bool, elapsed_ms: int, error: Optional[str] = None) -> None:
    try:
        from health_monitor import record_call
        record_call(service, success, elapsed_ms, error)
    except Exception:
        logger.debug("health_monitor.record_call failed", exc_info=True)


class ServiceHTTPClient:
    DEFAULT_TIMEOUT = 20  # seconds
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]  # seconds

    def __init__(self, max_retries: Optional[int] = None):
        if max_retries is not None:
            self.MAX_RETRIES = max_retries

    def request_json(
        self,
        method: str,
        url: str,
        service: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> Any:
        """
        Perform an HTTP request and return the decoded JSON body.

        Args:
            method: "GET" or "POST".
            url: Full endpoint URL.
            service: Service name for trace/health ("sandag", "mapbox", ...).
            endpoint: Logical endpoint name for trace attribution.

        Raises:
            ServiceRateLimitError: 429 after MAX_RETRIES retries.
            ServiceRequestError: any other failure after retries
                (4xx fail immediately; 5xx/timeouts are retried).
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        for attempt in range(1 + self.MAX_RETRIES):
            try:
                return self._do_request(
                    method, url, service, endpoint, params, json_body, headers, timeout,
                    retried=attempt > 0,
                )
            except ServiceRateLimitError:
                if attempt >= self.MAX_RETRIES:
                    raise
                reason = "rate limited"
            except ServiceRequestError as e:
                if attempt >= self.MAX_RETRIES or not e.retryable:
                    raise
                reason = str(e)
            sleep_time = self.RETRY_BACKOFF[min(attempt, len(self.RETRY_BACKOFF) - 1)]
            logger.info(
                "%s %s failed (%s), attempt %d/%d, sleeping %ds",
                service, endpoint, reason, attempt + 1, 1 + self.MAX_RETRIES, sleep_time,
            )
            time.sleep(sleep_time)

        raise ServiceRequestError(f"{service} {endpoint} failed after all retries", service)

    def get_json(self, url: str, service: str, endpoint: str, **kwargs) -> Any:
        return self.request_json("GET", url, service, endpoint, **kwargs)

    def post_json(self, url: str, service: str, endpoint: str, **kwargs) -> Any:
        return self.request_json("POST", url, service, endpoint, **kwargs)

    def _do_request(
        self,
        method: str,
        url: str,
        service: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
        timeout: int,
        retried: bool = False,
    ) -> Any:
        """One HTTP attempt with trace + health recording."""
        trace = get_trace()
        start = time.monotonic()

        def _trace(status_code: int, provider_status: str = "") -> int:
            elapsed = int((time.monotonic() - start) * 1000)
            if trace:
                trace.record_api_call(
                    service=service,
                    endpoint=endpoint,
                    elapsed_ms=elapsed,
                    status_code=status_code,
                    provider_status=provider_status,
                    retried=retried,
                )
            return elapsed

        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            elapsed = _trace(0, "timeout")
            _record_health(service, False, elapsed, "timeout")
            raise ServiceRequestError(
                f"{service} {endpoint} timed out after {timeout}s", service
            )
        except requests.exceptions.RequestException as e:
            elapsed = _trace(0, "exception")
            _record_health(service, False, elapsed, str(e))
            raise ServiceRequestError(
                f"{service} {endpoint} request failed: {e}", service
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            elapsed = _trace(429, "rate_limit")
            _record_health(service, False, elapsed, "HTTP 429")
            raise ServiceRateLimitError(
                f"{service} {endpoint} 429 Too Many Requests", service, 429
            )
        if status_code >= 400:
            elapsed = _trace(status_code, "http_error")
            _record_health(service, False, elapsed, f"HTTP {status_code}")
            raise ServiceRequestError(
                f"{service} {endpoint} HTTP {status_code}", service, status_code
            )

        try:
            data = resp.json()
        except ValueError:
            elapsed = _trace(status_code, "parse_error")
            _record_health(service, False, elapsed, "non-JSON response")
            raise ServiceRequestError(
                f"{service} {endpoint} returned non-JSON response (HTTP {status_code})",
                service,
                status_code,
            )

        elapsed = _trace(status_code)
        _record_health(service, True, elapsed)
        return data
