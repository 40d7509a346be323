"""
Request-scoped tracing for healthy-plan builds and layer refreshes.

One TraceContext per plan request (or refresh cycle) collects:
  - a StageRecord per pipeline stage: elapsed time, outbound calls made,
    and whether it failed or fell back to a degraded result
  - an APICallRecord per outbound HTTP attempt
  - a summary, logged once and returned as ``_trace`` in plan responses

The context is thread-local. The *stage* name is also thread-local, so
layer fetches running in a pool under one shared context each attribute
their own calls.

Usage:
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    try:
        route = timed_stage("routing", client.walking_route, start, end)
    finally:
        ctx.log_summary()
        clear_trace()
"""

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_local = threading.local()


@dataclass
class APICallRecord:
    service: str          # "sandag" | "hpi" | "bike_routes" | "mapbox" | "openai"
    endpoint: str         # "parks", "walking_route", "chat_completion", ...
    elapsed_ms: int
    status_code: int      # 0 when no response arrived
    provider_status: str = ""
    retried: bool = False
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""
    degraded: str = ""

    @property
    def status(self) -> str:
        if self.error_class:
            return "error"
        return "degraded" if self.degraded else "ok"


@dataclass
class TraceContext:
    """Timing for one plan request or one refresh cycle."""
    trace_id: str
    started: float = field(default_factory=time.monotonic)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    MAX_CALL_RECORDS = 200

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ) -> None:
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=current_stage(),
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "[api] trace=%s stage=%s %s/%s %dms http=%d %s",
            self.trace_id, rec.stage or "-", service, endpoint,
            elapsed_ms, status_code, provider_status,
        )

    def record_stage(
        self,
        stage_name: str,
        elapsed_ms: int,
        error: Optional[BaseException] = None,
        degraded: str = "",
    ) -> StageRecord:
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=elapsed_ms,
                api_calls_made=calls,
                error_class=type(error).__name__ if error else "",
                error_message=str(error)[:200] if error else "",
                degraded=degraded,
            )
            self.stages.append(rec)

        detail = rec.error_message or rec.degraded
        logger.info(
            "[stage] trace=%s %s %s %dms calls=%d%s",
            self.trace_id, stage_name, rec.status.upper(), elapsed_ms, calls,
            f" ({detail})" if detail else "",
        )
        return rec

    @property
    def final_outcome(self) -> str:
        """empty | error (nothing succeeded) | partial | success."""
        if not self.stages:
            return "empty"
        statuses = {s.status for s in self.stages}
        if statuses == {"error"}:
            return "error"
        if statuses != {"ok"}:
            return "partial"
        return "success"

    def services(self) -> Dict[str, Dict[str, int]]:
        """Call count and total milliseconds per external service."""
        totals: Dict[str, Dict[str, int]] = defaultdict(lambda: {"calls": 0, "elapsed_ms": 0})
        for c in self.api_calls:
            totals[c.service]["calls"] += 1
            totals[c.service]["elapsed_ms"] += c.elapsed_ms
        return dict(totals)

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            calls = list(self.api_calls)
            stages = list(self.stages)
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.monotonic() - self.started) * 1000),
            "total_api_calls": len(calls),
            "final_outcome": self.final_outcome,
            "stages": [
                {"name": s.stage_name, "status": s.status, "elapsed_ms": s.elapsed_ms}
                for s in stages
            ],
            "services": self.services(),
            "calls": [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "stage": c.stage,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                }
                for c in calls[:self.MAX_CALL_RECORDS]
            ],
        }

    def log_summary(self) -> None:
        s = self.summary_dict()
        per_service = " ".join(
            f"{svc}={v['calls']}/{v['elapsed_ms']}ms" for svc, v in sorted(s["services"].items())
        )
        logger.info(
            "[trace-summary] trace=%s outcome=%s total_ms=%d stages=%s calls=%d %s",
            s["trace_id"],
            s["final_outcome"],
            s["total_elapsed_ms"],
            ",".join(f"{st['name']}:{st['status']}" for st in s["stages"]) or "-",
            s["total_api_calls"],
            per_service,
        )


# =============================================================================
# Thread-local access
# =============================================================================

def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _local.ctx = ctx


def clear_trace() -> None:
    _local.ctx = None
    _local.stage = ""
    _local.degraded = ""


def current_stage() -> str:
    return getattr(_local, "stage", "")


def degrade_stage(reason: str) -> None:
    """Mark the running stage as having fallen back to a degraded result."""
    _local.degraded = reason


# =============================================================================
# Stage helpers
# =============================================================================

@contextmanager
def stage(name: str):
    """Time the enclosed block as stage *name* of the current trace."""
    trace = get_trace()
    outer_stage = current_stage()
    outer_degraded = getattr(_local, "degraded", "")
    _local.stage = name
    _local.degraded = ""
    t0 = time.monotonic()
    try:
        yield trace
    except Exception as exc:
        elapsed = int((time.monotonic() - t0) * 1000)
        if trace:
            trace.record_stage(name, elapsed, error=exc)
        else:
            logger.warning("[stage] %s failed after %dms: %s", name, elapsed, exc)
        raise
    else:
        elapsed = int((time.monotonic() - t0) * 1000)
        if trace:
            trace.record_stage(name, elapsed, degraded=getattr(_local, "degraded", ""))
    finally:
        _local.stage = outer_stage
        _local.degraded = outer_degraded


def timed_stage(stage_name: str, fn, *args, **kwargs):
    """Call *fn* inside ``stage(stage_name)``; failures are recorded and re-raised."""
    with stage(stage_name):
        return fn(*args, **kwargs)


def timed_stage_in_thread(parent_trace: Optional[TraceContext], stage_name: str, fn, *args, **kwargs):
    """timed_stage for a pool thread, recording into the submitting thread's trace."""
    set_trace(parent_trace)
    try:
        return timed_stage(stage_name, fn, *args, **kwargs)
    finally:
        clear_trace()
