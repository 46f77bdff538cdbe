import gzip
import json
import threading

import pytest

from sessionproxy.core.exceptions import StorageError
from sessionproxy.interception.interceptor import (
    REQUEST_ID_HEADER,
    SessionRecorder,
    capture_body,
)
from flows import add_response, make_flow


def _entries(writer):
    writer.close()
    return json.loads(writer.path.read_text())


@pytest.fixture
def recorder(app_config, writer):
    return SessionRecorder(app_config.logging, writer)


def _recorder_with(app_config, writer, **changes):
    return SessionRecorder(app_config.logging.model_copy(update=changes), writer)


class TestCorrelation:
    def test_get_produces_request_then_matching_response(self, recorder, writer):
        flow = make_flow("GET", "http://example.com/index.html")

        recorder.request(flow)
        add_response(flow, 200, b"<html></html>", {"Content-Type": "text/html"})
        recorder.response(flow)

        request, response = _entries(writer)
        assert request["type"] == "request"
        assert request["data"]["method"] == "GET"
        assert request["data"]["url"] == "http://example.com/index.html"
        assert response["type"] == "response"
        assert response["data"]["status_code"] == 200
        assert response["data"]["request_id"] == request["data"]["request_id"]

    def test_request_carries_synthetic_header(self, recorder):
        flow = make_flow()

        request_id = recorder.on_request(flow)

        assert flow.request.headers[REQUEST_ID_HEADER] == request_id
        assert request_id.isdigit()

    def test_ids_are_unique_and_increasing(self, recorder):
        ids = [int(recorder.next_request_id()) for _ in range(1000)]

        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_ids_unique_across_threads(self, recorder):
        seen = []
        lock = threading.Lock()

        def worker():
            local = [recorder.next_request_id() for _ in range(200)]
            with lock:
                seen.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(seen)) == 800

    def test_response_without_logged_request_has_no_id(self, app_config, writer):
        recorder = _recorder_with(app_config, writer, log_requests=False)
        flow = make_flow()

        recorder.request(flow)
        add_response(flow, 404)
        recorder.response(flow)

        (response,) = _entries(writer)
        assert response["type"] == "response"
        assert "request_id" not in response["data"]
        # The request is still stamped for downstream tooling
        assert REQUEST_ID_HEADER in flow.request.headers

    def test_responses_can_be_disabled(self, app_config, writer):
        recorder = _recorder_with(app_config, writer, log_responses=False)
        flow = make_flow()

        recorder.request(flow)
        add_response(flow)
        recorder.response(flow)

        assert [e["type"] for e in _entries(writer)] == ["request"]


class TestBodyCapture:
    def test_truncates_log_but_forwards_full_body(self, recorder, writer):
        original = b"A" * 16 + b"B" * 5
        flow = make_flow("POST", "http://example.com/upload", original, {"Content-Type": "text/plain"})

        recorder.request(flow)

        assert flow.request.raw_content == original
        assert len(flow.request.content) == 21

        (request,) = _entries(writer)
        assert request["data"]["body"] == "A" * 16

    def test_response_body_restored(self, recorder, writer):
        flow = make_flow()
        recorder.request(flow)
        add_response(flow, 200, b"0123456789abcdefXYZ")

        recorder.response(flow)

        assert flow.response.content == b"0123456789abcdefXYZ"
        response = _entries(writer)[1]
        assert response["data"]["body"] == "0123456789abcdef"

    def test_encoded_body_is_logged_decoded_and_forwarded_raw(self):
        flow = add_response(make_flow(), 200, b"", {"Content-Encoding": "gzip"})
        compressed = gzip.compress(b"hello world")
        flow.response.raw_content = compressed

        captured = capture_body(flow.response, 1024)

        assert captured == "hello world"
        assert flow.response.raw_content == compressed

    def test_streamed_body_is_not_captured(self):
        flow = make_flow("POST", "http://example.com/", b"payload")
        flow.request.raw_content = None

        assert capture_body(flow.request, 1024) is None

    def test_invalid_utf8_is_replaced(self):
        flow = make_flow("POST", "http://example.com/", b"ok\xff\xfe")

        assert capture_body(flow.request, 1024) == "ok\ufffd\ufffd"

    def test_zero_ceiling_logs_empty_body(self):
        flow = make_flow("POST", "http://example.com/", b"payload")

        assert capture_body(flow.request, 0) == ""
        assert flow.request.raw_content == b"payload"


class TestDisabledFields:
    def test_headers_disabled_are_absent(self, app_config, writer):
        recorder = _recorder_with(app_config, writer, log_headers=False)
        flow = make_flow("GET", "http://example.com/", b"", {"Accept": "*/*"})

        recorder.request(flow)
        add_response(flow, 200, b"ok", {"Content-Type": "text/plain"})
        recorder.response(flow)

        for entry in _entries(writer):
            assert "headers" not in entry["data"]

    def test_body_disabled_is_absent(self, app_config, writer):
        recorder = _recorder_with(app_config, writer, log_body=False)
        flow = make_flow("POST", "http://example.com/", b"secret")

        recorder.request(flow)
        add_response(flow, 200, b"ok")
        recorder.response(flow)

        for entry in _entries(writer):
            assert "body" not in entry["data"]
        assert flow.request.content == b"secret"

    def test_empty_bodies_are_absent(self, recorder, writer):
        flow = make_flow("GET", "http://example.com/")

        recorder.request(flow)
        add_response(flow, 204)
        recorder.response(flow)

        request, response = _entries(writer)
        assert "body" not in request["data"]
        assert "body" not in response["data"]

    def test_empty_headers_are_absent(self, recorder, writer):
        flow = make_flow()
        recorder.request(flow)
        add_response(flow, 200, b"ok")
        flow.response.headers.clear()

        recorder.response(flow)

        response = _entries(writer)[1]
        assert "headers" not in response["data"]
        assert response["data"]["body"] == "ok"

    def test_headers_enabled_keep_first_value(self, recorder, writer):
        flow = make_flow("GET", "http://example.com/", b"", {"Accept": "text/html"})
        flow.request.headers.add("Accept", "application/json")

        recorder.request(flow)

        headers = _entries(writer)[0]["data"]["headers"]
        assert headers["Accept"] == "text/html"
        assert REQUEST_ID_HEADER in headers


class TestFailureIsolation:
    def test_logging_failure_does_not_break_traffic(self, recorder, writer):
        writer.close()
        flow = make_flow("POST", "http://example.com/", b"payload")

        recorder.request(flow)
        add_response(flow, 200, b"ok")
        recorder.response(flow)

        assert recorder.get_stats()["errors"] == 2
        assert flow.request.content == b"payload"
        assert flow.response.content == b"ok"
        assert REQUEST_ID_HEADER in flow.request.headers

    def test_on_request_surfaces_failure(self, recorder, writer):
        writer.close()

        with pytest.raises(StorageError):
            recorder.on_request(make_flow())

    def test_stats(self, recorder):
        flow = make_flow()
        recorder.request(flow)
        add_response(flow)
        recorder.response(flow)

        assert recorder.get_stats() == {
            "requests_logged": 1,
            "responses_logged": 1,
            "errors": 0
        }
