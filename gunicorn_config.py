"""
Gunicorn config for Green Routes.

    gunicorn -c gunicorn_config.py app:app

Each worker process holds its own in-memory map layers, so the layer
refresher and the health monitor are started per worker in post_fork and
signalled to stop in worker_exit. Once the master is listening, when_ready
runs smoke_test against localhost in a background thread.
"""

import logging
import os
import threading
import time

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
# A plan can wait on geocoding, the first layer load (LAYER_LAZY_LOAD_WAIT),
# OpenAI and Mapbox in sequence, each with its own retries
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "120"))

SMOKE_DELAY_S = 2


def _background_starters():
    from app import LAYERS
    from health_monitor import start_monitor
    from refresher import start_refresher

    return [
        ("layer refresher", lambda: start_refresher(LAYERS)),
        ("health monitor", start_monitor),
    ]


def when_ready(server):
    """Smoke-test the freshly started server without blocking startup."""
    base_url = f"http://127.0.0.1:{os.environ.get('PORT', '8000')}"
    log = logging.getLogger("gunicorn.error")

    def _smoke():
        time.sleep(SMOKE_DELAY_S)  # let workers finish forking
        try:
            from smoke_test import run_tests
            log.info("Post-deploy smoke test starting against %s", base_url)
            if run_tests(base_url):
                log.info("Post-deploy smoke test PASSED")
            else:
                log.error("Post-deploy smoke test FAILED")
        except Exception:
            log.exception("Post-deploy smoke test crashed")

    threading.Thread(target=_smoke, daemon=True, name="smoke-test").start()


def post_fork(server, worker):
    log = logging.getLogger(__name__)
    try:
        starters = _background_starters()
    except Exception:
        log.exception("Could not import the app for worker %s", worker.pid)
        return
    for name, start in starters:
        try:
            start()
        except Exception:
            log.exception("Failed to start %s in worker %s", name, worker.pid)


def worker_exit(server, worker):
    from health_monitor import stop_monitor
    from refresher import stop_refresher

    stop_refresher()
    stop_monitor()
