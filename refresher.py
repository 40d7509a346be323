"""
Background layer refresher.

Runs in a dedicated daemon thread per gunicorn worker process. Every
LAYER_REFRESH_INTERVAL seconds it re-fetches all map layers through the
LayerStore; each layer is replaced wholesale or, on failure, left as it
was. Supports graceful shutdown via a stop event.
"""

import logging
import os
import threading
import uuid

from data_sources import LayerStore
from gr_trace import TraceContext, clear_trace, set_trace

logger = logging.getLogger(__name__)

# Stop event: set by the main process to signal the refresher thread to exit
_stop_event = threading.Event()
_refresher_thread = None


def run_refresh(store: LayerStore) -> dict:
    """One refresh cycle under its own trace. Returns {category: succeeded}."""
    trace_ctx = TraceContext(trace_id=f"refresh-{uuid.uuid4().hex[:8]}")
    set_trace(trace_ctx)
    try:
        results = store.refresh()
        failed = sorted(c for c, ok in results.items() if not ok)
        if failed:
            logger.warning("[refresher] Layers kept stale after failed refresh: %s", ", ".join(failed))
        return results
    finally:
        trace_ctx.log_summary()
        clear_trace()


def _refresh_loop(store: LayerStore, interval: float) -> None:
    """Loop: refresh, wait, repeat until the stop event is set."""
    logger.info("[refresher] Layer refresher thread started (every %ds)", interval)
    while not _stop_event.is_set():
        try:
            run_refresh(store)
        except Exception as e:
            logger.exception("[refresher] Unhandled error during refresh")
            if os.environ.get("SENTRY_DSN"):
                import sentry_sdk
                sentry_sdk.capture_exception(e)
        _stop_event.wait(timeout=interval)
    logger.info("[refresher] Layer refresher thread stopped")


def start_refresher(store: LayerStore, interval: float = None) -> None:
    """
    Start the background refresher thread. Safe to call from the main process
    or from a gunicorn post_fork hook. Only one thread is started per process.
    """
    global _refresher_thread
    if _refresher_thread is not None and _refresher_thread.is_alive():
        return
    if interval is None:
        interval = store.settings.refresh_interval_s
    _stop_event.clear()
    _refresher_thread = threading.Thread(
        target=_refresh_loop, args=(store, interval), daemon=True,
    )
    _refresher_thread.start()


def stop_refresher() -> None:
    """Signal the refresher thread to stop (for tests or graceful shutdown)."""
    _stop_event.set()
