"""
HTTP Traffic Interception and Session Recording

This module records HTTP/HTTPS traffic flowing through mitmproxy into
per-run session documents and renders them as Markdown reports.

Components:
- Certificate Authority: Root CA generation and persistence
- Session Recorder: mitmproxy addon stamping and recording each exchange
- Session Log Writer: Append-only JSON session document
- Session Store: Listing and loading stored sessions
- Session Exporter: Markdown rendering of stored sessions
- Proxy Server: mitmproxy lifecycle management
"""

from .certificate_manager import CertificateAuthority
from .records import RequestRecord, ResponseRecord, SessionEntry
from .session_log import SessionLogWriter
from .session_store import SessionStore
from .exporter import SessionExporter
from .interceptor import SessionRecorder
from .proxy_server import ProxyServer

__all__ = [
    "CertificateAuthority",
    "RequestRecord",
    "ResponseRecord",
    "SessionEntry",
    "SessionLogWriter",
    "SessionStore",
    "SessionExporter",
    "SessionRecorder",
    "ProxyServer"
]
