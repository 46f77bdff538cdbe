"""
Session log entries

A session document is an ordered list of tagged entries::

    {"type": "request",  "data": {...RequestRecord...}}
    {"type": "response", "data": {...ResponseRecord...}}

``headers`` and ``body`` are left out of ``data`` entirely when they were
not captured, so a reader never mistakes "not logged" for "empty".
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RequestRecord:
    """A request as it was forwarded upstream"""

    TYPE = "request"

    timestamp: str
    method: str
    url: str
    request_id: str
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestRecord":
        return cls(
            timestamp=_str(data.get("timestamp")),
            method=_str(data.get("method")),
            url=_str(data.get("url")),
            request_id=_str(data.get("request_id")),
            headers=_headers(data.get("headers")),
            body=_optional_str(data.get("body")),
        )


@dataclass
class ResponseRecord:
    """An upstream response, linked to its request by ``request_id``"""

    TYPE = "response"

    timestamp: str
    status_code: int
    request_id: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseRecord":
        status = data.get("status_code")
        return cls(
            timestamp=_str(data.get("timestamp")),
            status_code=int(status) if isinstance(status, (int, float)) and not isinstance(status, bool) else 0,
            request_id=_optional_str(data.get("request_id")),
            headers=_headers(data.get("headers")),
            body=_optional_str(data.get("body")),
        )


SessionEntry = Union[RequestRecord, ResponseRecord]

RECORD_TYPES = {
    RequestRecord.TYPE: RequestRecord,
    ResponseRecord.TYPE: ResponseRecord,
}


def encode_entry(entry: SessionEntry) -> Dict[str, Any]:
    """Wrap a record in its ``{type, data}`` envelope"""
    return {"type": entry.TYPE, "data": entry.to_dict()}


def decode_entry(obj: Any) -> Optional[SessionEntry]:
    """
    Map a decoded JSON value back to a record

    Returns:
        The record, or None when the value is not a recognised
        ``{type, data}`` envelope
    """
    if not isinstance(obj, dict):
        return None

    entry_type = obj.get("type")
    record_cls = RECORD_TYPES.get(entry_type) if isinstance(entry_type, str) else None
    data = obj.get("data")
    if record_cls is None or not isinstance(data, dict):
        return None

    return record_cls.from_dict(data)


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _headers(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    return {str(k): v if isinstance(v, str) else str(v) for k, v in value.items()}
