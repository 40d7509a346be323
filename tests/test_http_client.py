"""Unit tests for http_client.py: shared outbound HTTP layer.

Tests cover: success path, retry logic, error classification, response
parsing, trace recording and passive health recording.
"""

from unittest.mock import patch, MagicMock

import pytest
import requests

from gr_trace import TraceContext, set_trace, clear_trace
from http_client import (
    ServiceHTTPClient,
    ServiceRateLimitError,
    ServiceRequestError,
)


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("http_client.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture(autouse=True)
def _no_health():
    with patch("health_monitor.record_call") as mock_record:
        yield mock_record


# =========================================================================
# Success path
# =========================================================================

class TestSuccess:
    def test_get_json_returns_body(self):
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(200, {"ok": 1})) as req:
            result = client.get_json("https://x.test/q", "sandag", "parks", params={"f": "json"})

        assert result == {"ok": 1}
        args, kwargs = req.call_args
        assert args == ("GET", "https://x.test/q")
        assert kwargs["params"] == {"f": "json"}
        assert kwargs["timeout"] == ServiceHTTPClient.DEFAULT_TIMEOUT

    def test_post_json_sends_body_and_headers(self):
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(200, {})) as req:
            client.post_json(
                "https://x.test/chat", "openai", "chat_completion",
                json_body={"model": "m"}, headers={"Authorization": "Bearer k"}, timeout=5,
            )

        args, kwargs = req.call_args
        assert args[0] == "POST"
        assert kwargs["json"] == {"model": "m"}
        assert kwargs["headers"] == {"Authorization": "Bearer k"}
        assert kwargs["timeout"] == 5

    def test_records_health_success(self, _no_health):
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(200, {})):
            client.get_json("https://x.test", "mapbox", "walking_route")

        service, success = _no_health.call_args[0][:2]
        assert service == "mapbox"
        assert success is True


# =========================================================================
# HTTP error handling
# =========================================================================

class TestHTTPErrors:
    def test_429_raises_rate_limit_error_after_retries(self, _no_sleep):
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(429)) as req:
            with pytest.raises(ServiceRateLimitError) as exc_info:
                client.get_json("https://x.test", "hpi", "environmental")

        assert req.call_count == 1 + ServiceHTTPClient.MAX_RETRIES
        assert exc_info.value.status_code == 429
        assert [c.args[0] for c in _no_sleep.call_args_list] == [2, 4]

    def test_4xx_fails_immediately(self, _no_sleep):
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(401)) as req:
            with pytest.raises(ServiceRequestError) as exc_info:
                client.get_json("https://x.test", "openai", "chat_completion")

        assert req.call_count == 1
        assert exc_info.value.status_code == 401
        assert not exc_info.value.retryable
        _no_sleep.assert_not_called()

    def test_5xx_then_success(self):
        client = ServiceHTTPClient()
        responses = [_mock_response(502), _mock_response(200, {"features": []})]
        with patch.object(requests.Session, "request", side_effect=responses) as req:
            result = client.get_json("https://x.test", "sandag", "parks")

        assert result == {"features": []}
        assert req.call_count == 2

    def test_timeout_is_retried_then_raised(self):
        client = ServiceHTTPClient(max_retries=1)
        with patch.object(requests.Session, "request", side_effect=requests.exceptions.Timeout()) as req:
            with pytest.raises(ServiceRequestError, match="timed out"):
                client.get_json("https://x.test", "mapbox", "geocode", timeout=3)

        assert req.call_count == 2

    def test_connection_error(self):
        client = ServiceHTTPClient(max_retries=0)
        with patch.object(requests.Session, "request",
                          side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(ServiceRequestError) as exc_info:
                client.get_json("https://x.test", "sandag", "parks")

        assert exc_info.value.status_code == 0
        assert exc_info.value.retryable

    def test_non_json_body(self, _no_health):
        client = ServiceHTTPClient(max_retries=0)
        with patch.object(requests.Session, "request", return_value=_mock_response(200)):
            with pytest.raises(ServiceRequestError, match="non-JSON"):
                client.get_json("https://x.test", "bike_routes", "bike_paths")

        assert _no_health.call_args[0][1] is False


# =========================================================================
# Trace recording
# =========================================================================

class TestTraceRecording:
    def test_records_each_attempt(self):
        ctx = TraceContext(trace_id="t-1")
        set_trace(ctx)
        try:
            client = ServiceHTTPClient()
            responses = [_mock_response(503), _mock_response(200, {})]
            with patch.object(requests.Session, "request", side_effect=responses):
                client.get_json("https://x.test", "sandag", "parks")
        finally:
            clear_trace()

        assert [c.status_code for c in ctx.api_calls] == [503, 200]
        assert [c.retried for c in ctx.api_calls] == [False, True]
        assert all(c.service == "sandag" for c in ctx.api_calls)

    def test_no_trace_is_fine(self):
        clear_trace()
        client = ServiceHTTPClient()
        with patch.object(requests.Session, "request", return_value=_mock_response(200, [])):
            assert client.get_json("https://x.test", "sandag", "parks") == []
