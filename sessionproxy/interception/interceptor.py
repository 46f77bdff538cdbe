"""
mitmproxy Addon for HTTP Session Recording

Hooks into mitmproxy's event system to stamp every exchange with a
correlation id and stream request/response records into the session log.
"""

import threading
import time
from typing import Dict, Optional

import structlog
from mitmproxy import http

from sessionproxy.core.exceptions import SessionProxyError
from sessionproxy.interception.records import RequestRecord, ResponseRecord, utc_timestamp
from sessionproxy.interception.session_log import SessionLogWriter

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Session-Request-ID"

# flow.metadata keys
METADATA_REQUEST_ID = "session_request_id"
METADATA_REQUEST_LOGGED = "session_request_logged"


def capture_body(message: http.Message, limit: int) -> Optional[str]:
    """
    Drain a message body, keep a bounded copy, and put the full body back

    The captured text is the first ``limit`` bytes of the decoded body
    (Content-Encoding removed), decoded as UTF-8 with replacement. The raw
    bytes reinstalled on the message are exactly the ones that were read,
    so what gets forwarded is unchanged.

    Returns:
        Captured text, or None if the body was streamed and never buffered
    """
    raw = message.raw_content
    if raw is None:
        return None

    original = bytes(raw)
    try:
        content = message.get_content(strict=False)
    finally:
        message.raw_content = original

    if content is None:
        content = original
    return content[:limit].decode("utf-8", errors="replace")


def capture_headers(message: http.Message) -> Dict[str, str]:
    """First value of every header, keyed by the name as sent"""
    captured = {}
    for name in message.headers.keys():
        values = message.headers.get_all(name)
        if values:
            captured[name] = values[0]
    return captured


class SessionRecorder:
    """
    mitmproxy addon recording traffic into a session document

    mitmproxy calls ``request`` before forwarding a request upstream and
    ``response`` once the upstream reply has arrived. Both hooks log their
    failures instead of raising: a broken session log must never break the
    traffic passing through the proxy.
    """

    def __init__(self, config, writer: SessionLogWriter):
        """
        Initialize the recorder

        Args:
            config: ``logging`` configuration section
            writer: Session log shared by every connection of this run
        """
        self.config = config
        self.writer = writer
        self.logger = logger.bind(component="session_recorder", session=writer.name)

        self._id_lock = threading.Lock()
        self._last_id = 0

        # Statistics
        self.stats = {
            "requests_logged": 0,
            "responses_logged": 0,
            "errors": 0
        }

    def load(self, loader):
        """Called when the addon is loaded"""
        self.logger.info("SessionRecorder addon loaded")

    def next_request_id(self) -> str:
        """Nanosecond timestamp, bumped so concurrent requests never collide"""
        with self._id_lock:
            now = time.time_ns()
            self._last_id = now if now > self._last_id else self._last_id + 1
            return str(self._last_id)

    def on_request(self, flow: http.HTTPFlow) -> str:
        """
        Stamp the request with a correlation id and record it

        Returns:
            The correlation id attached to the request
        """
        request_id = self.next_request_id()
        flow.request.headers[REQUEST_ID_HEADER] = request_id
        flow.metadata[METADATA_REQUEST_ID] = request_id

        if not self.config.log_requests:
            return request_id

        record = RequestRecord(
            timestamp=utc_timestamp(),
            method=flow.request.method,
            url=flow.request.pretty_url,
            request_id=request_id,
        )
        if self.config.log_headers:
            record.headers = capture_headers(flow.request) or None
        if self.config.log_body:
            record.body = capture_body(flow.request, self.config.max_body_size) or None

        self.writer.append(record)
        flow.metadata[METADATA_REQUEST_LOGGED] = True
        self.stats["requests_logged"] += 1
        return request_id

    def on_response(self, flow: http.HTTPFlow):
        """Record the response under the correlation id of its request"""
        if not self.config.log_responses or flow.response is None:
            return

        request_id = (
            flow.request.headers.get(REQUEST_ID_HEADER)
            or flow.metadata.get(METADATA_REQUEST_ID)
        )

        record = ResponseRecord(
            timestamp=utc_timestamp(),
            status_code=flow.response.status_code,
            # Only reference ids that have a request record in this document
            request_id=request_id if flow.metadata.get(METADATA_REQUEST_LOGGED) else None,
        )
        if self.config.log_headers:
            record.headers = capture_headers(flow.response) or None
        if self.config.log_body:
            record.body = capture_body(flow.response, self.config.max_body_size) or None

        self.writer.append(record)
        self.stats["responses_logged"] += 1

    def request(self, flow: http.HTTPFlow):
        """
        Called when a request is received

        Args:
            flow: mitmproxy HTTP flow object
        """
        try:
            request_id = self.on_request(flow)
            self.logger.debug(
                "Request captured",
                method=flow.request.method,
                url=flow.request.pretty_url,
                request_id=request_id
            )
        except (SessionProxyError, OSError) as e:
            self.logger.error("Error in request hook", error=str(e), url=flow.request.pretty_url)
            self.stats["errors"] += 1

    def response(self, flow: http.HTTPFlow):
        """
        Called when a response is received

        Args:
            flow: mitmproxy HTTP flow object
        """
        try:
            self.on_response(flow)
            self.logger.debug(
                "Response captured",
                url=flow.request.pretty_url,
                status=flow.response.status_code if flow.response else None
            )
        except (SessionProxyError, OSError) as e:
            self.logger.error("Error in response hook", error=str(e), url=flow.request.pretty_url)
            self.stats["errors"] += 1

    def get_stats(self) -> dict:
        """Get recorder statistics"""
        return self.stats.copy()
