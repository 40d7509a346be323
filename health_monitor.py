"""
Health of the external services behind the map layers and plans.

Every outbound call made through http_client lands in a per-service
ServiceWindow (the last 50 outcomes). A window's success rate decides
the passive status:

    >= 95%  healthy      >= 70%  degraded      below  down      empty  unknown

Services that are free and keyless can also be probed actively. The
probe table maps a service to an ArcGIS query URL; a daemon thread asks
each one for a record count every HEALTH_CHECK_INTERVAL seconds. Mapbox,
OpenAI and HPI are passive only, since probing them spends quota.

An active result, once there is one, wins over passive data for that
service.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

WINDOW_SIZE = 50
HEALTHY_RATE = 0.95
DEGRADED_RATE = 0.70
PROBE_TIMEOUT = 10

MONITORED_SERVICES = ("sandag", "bike_routes", "hpi", "mapbox", "openai")

_PROBE_PARAMS = {"where": "1=1", "returnCountOnly": "true", "f": "json"}


def _iso(ts: Optional[float] = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class HealthCheckResult:
    service: str
    status: str          # healthy | degraded | down | unknown
    latency_ms: int
    last_checked: str    # ISO-8601
    mode: str = "passive"
    error: Optional[str] = None
    success_rate: Optional[float] = None
    sample_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status,
            "mode": self.mode,
            "latency_ms": self.latency_ms,
            "last_checked": self.last_checked,
        }
        if self.mode == "passive":
            d["sample_size"] = self.sample_size
            if self.success_rate is not None:
                d["success_rate"] = self.success_rate
        if self.error:
            d["error"] = self.error
        return d


class ServiceWindow:
    """The last WINDOW_SIZE call outcomes for one service."""

    def __init__(self, size: int = WINDOW_SIZE):
        self._calls = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, success: bool, latency_ms: int, error: Optional[str] = None) -> None:
        self._calls.append((time.time(), success, latency_ms, error))

    def result(self, service: str) -> HealthCheckResult:
        calls = list(self._calls)
        if not calls:
            return HealthCheckResult(service, "unknown", 0, _iso())

        ok = sum(1 for _, success, _, _ in calls if success)
        rate = ok / len(calls)
        if rate >= HEALTHY_RATE:
            status = "healthy"
        elif rate >= DEGRADED_RATE:
            status = "degraded"
        else:
            status = "down"
        last_error = next(
            (err for _, success, _, err in reversed(calls) if not success and err), None
        )
        return HealthCheckResult(
            service=service,
            status=status,
            latency_ms=int(sum(c[2] for c in calls) / len(calls)),
            last_checked=_iso(max(c[0] for c in calls)),
            error=last_error,
            success_rate=round(rate, 3),
            sample_size=len(calls),
        )


class HealthMonitor:
    """Thread-safe passive windows plus optional active probes."""

    def __init__(self, probes: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._windows: Dict[str, ServiceWindow] = {s: ServiceWindow() for s in MONITORED_SERVICES}
        self._probes: Dict[str, str] = dict(probes or {})
        self._active: Dict[str, HealthCheckResult] = {}
        self._last_status: Dict[str, str] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- passive -----------------------------------------------------------

    def record_call(self, service: str, success: bool, latency_ms: int,
                    error: Optional[str] = None) -> None:
        with self._lock:
            window = self._windows.setdefault(service, ServiceWindow())
            window.add(success, latency_ms, error)

    def passive_status(self, service: str) -> HealthCheckResult:
        with self._lock:
            window = self._windows.get(service)
            if window is None:
                return ServiceWindow().result(service)
            return window.result(service)

    # -- active ------------------------------------------------------------

    def set_probe(self, service: str, url: Optional[str]) -> None:
        with self._lock:
            if url:
                self._probes[service] = url
            else:
                self._probes.pop(service, None)
                self._active.pop(service, None)

    def probe(self, service: str) -> HealthCheckResult:
        """Ask *service*'s probe URL for a record count."""
        url = self._probes[service]
        t0 = time.time()
        error = None
        try:
            resp = requests.get(url, params=_PROBE_PARAMS, timeout=PROBE_TIMEOUT)
        except requests.Timeout:
            status, error = "down", "timeout"
        except requests.RequestException as e:
            status, error = "down", str(e)
        else:
            if resp.status_code == 200:
                status = "healthy"
            else:
                status, error = "degraded", f"HTTP {resp.status_code}"
        return HealthCheckResult(
            service=service,
            status=status,
            latency_ms=int((time.time() - t0) * 1000),
            last_checked=_iso(),
            mode="active",
            error=error,
        )

    def run_probes(self) -> None:
        with self._lock:
            services = list(self._probes)
        for service in services:
            result = self.probe(service)
            with self._lock:
                previous = self._last_status.get(service)
                self._active[service] = result
                self._last_status[service] = result.status
            if previous and previous != result.status:
                logger.warning(
                    "[health] %s status changed: %s -> %s (error=%s)",
                    service, previous, result.status, result.error,
                )
            else:
                logger.info("[health] %s: %s (%dms)", service, result.status, result.latency_ms)

    # -- combined view -----------------------------------------------------

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            services = list(self._windows) + [s for s in self._probes if s not in self._windows]
            active = dict(self._active)
        out = {}
        for service in services:
            result = active.get(service) or self.passive_status(service)
            out[service] = result.to_dict()
        return out

    # -- background thread -------------------------------------------------

    def _loop(self) -> None:
        logger.info("[health] Probe thread started (every %ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            try:
                self.run_probes()
            except Exception:
                logger.exception("[health] Unexpected error while probing services")
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)
        logger.info("[health] Probe thread stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


def services_down(statuses: Dict[str, Dict[str, Any]]) -> List[str]:
    return sorted(s for s, info in statuses.items() if info.get("status") == "down")


# ---------------------------------------------------------------------------
# Process-wide monitor
# ---------------------------------------------------------------------------

_monitor = HealthMonitor()


def configure_probe(service: str, url: Optional[str]) -> None:
    _monitor.set_probe(service, url)


def record_call(service: str, success: bool, latency_ms: int, error: Optional[str] = None) -> None:
    """Called by http_client after every outbound attempt."""
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()
