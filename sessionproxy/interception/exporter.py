"""
Session Exporter

Turns a stored session document into a Markdown transcript.

Two on-disk shapes are accepted:
- a JSON array of entries (a session whose writer was closed), also when
  the closing bracket is missing because the proxy died mid-run
- bare back-to-back JSON entries with no enclosing array or separators
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Union

import structlog

from sessionproxy.core.exceptions import FormatError, StorageError
from sessionproxy.interception.records import (
    RequestRecord,
    ResponseRecord,
    SessionEntry,
    decode_entry,
)
from sessionproxy.interception.session_store import SessionStore

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"[ \t\n\r]*")
_BACKTICKS = re.compile(r"`+")

# Mode of written reports
REPORT_MODE = 0o644


def _skip_whitespace(text: str, pos: int) -> int:
    return _WHITESPACE.match(text, pos).end()


def _scan_values(text: str, pos: int, separator: Optional[str]) -> List[Any]:
    """Decode consecutive JSON values starting at ``pos``"""
    decoder = json.JSONDecoder()
    values = []
    pos = _skip_whitespace(text, pos)

    while pos < len(text):
        if values and separator is not None:
            if text[pos] != separator:
                raise FormatError(f"expected {separator!r} between entries at offset {pos}")
            pos = _skip_whitespace(text, pos + 1)
        try:
            value, pos = decoder.raw_decode(text, pos)
        except (json.JSONDecodeError, RecursionError) as e:
            raise FormatError(f"malformed session entry: {e}") from e
        values.append(value)
        pos = _skip_whitespace(text, pos)

    return values


def _parse_array(text: str) -> List[Any]:
    try:
        values = json.loads(text)
    except RecursionError as e:
        raise FormatError("session document is nested too deeply") from e
    except json.JSONDecodeError as e:
        if text.rstrip().endswith("]"):
            raise FormatError(f"malformed session document: {e}") from e
        # Writer never closed: read the entries after the opening bracket
        return _scan_values(text, 1, separator=",")

    if not isinstance(values, list):
        raise FormatError("session document is not a JSON array")
    return values


def parse_session(raw: bytes) -> List[SessionEntry]:
    """
    Decode a session document into its records, in document order

    Entries that are not a recognised ``{type, data}`` envelope are
    skipped.
    """
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FormatError(f"session document is not valid UTF-8: {e}") from e

    start = _skip_whitespace(text, 0)
    if start == len(text):
        return []

    if text[start] == "[":
        values = _parse_array(text[start:])
    else:
        values = _scan_values(text, start, separator=None)

    entries = []
    for value in values:
        entry = decode_entry(value)
        if entry is not None:
            entries.append(entry)
    return entries


def _fence(body: str) -> str:
    longest = max((len(run) for run in _BACKTICKS.findall(body)), default=0)
    return "`" * max(3, longest + 1)


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def _render_details(lines: List[str], entry: SessionEntry):
    if entry.headers:
        lines.append("### Headers")
        lines.append("| Key | Value |")
        lines.append("| --- | --- |")
        for key, value in entry.headers.items():
            lines.append(f"| {_cell(key)} | {_cell(value)} |")
        lines.append("")

    if entry.body:
        fence = _fence(entry.body)
        lines.append("### Body")
        lines.append(fence)
        lines.append(entry.body)
        lines.append(fence)
        lines.append("")


def render_markdown(name: str, entries: List[SessionEntry]) -> str:
    """Flattened transcript: one section per entry, separated by rules"""
    lines = [f"# Session Log: {name}", ""]

    for entry in entries:
        if isinstance(entry, RequestRecord):
            lines.append(f"## Request {entry.request_id}")
            lines.append(f"**Time:** {entry.timestamp}")
            lines.append("")
            lines.append(f"`{entry.method} {entry.url}`")
            lines.append("")
        elif isinstance(entry, ResponseRecord):
            lines.append(f"## Response {entry.request_id or ''}".rstrip())
            lines.append(f"**Time:** {entry.timestamp}")
            lines.append("")
            lines.append(f"**Status:** {entry.status_code}")
            lines.append("")
        else:
            continue

        _render_details(lines, entry)
        lines.append("---")
        lines.append("")

    return "\n".join(lines)


class SessionExporter:
    """Renders stored sessions as Markdown reports"""

    def __init__(self, store: SessionStore):
        self.store = store
        self.logger = logger.bind(component="session_exporter")

    def parse(self, name: str) -> List[SessionEntry]:
        return parse_session(self.store.load(name))

    def render(self, name: str, output_path: Union[str, Path]) -> Path:
        """
        Export a session as Markdown

        The report is rendered completely before anything is written, and
        replaces ``output_path`` atomically.

        Args:
            name: Session document name
            output_path: Destination of the report

        Returns:
            Path of the written report
        """
        entries = self.parse(name)
        report = render_markdown(name, entries)

        output_path = Path(output_path)
        tmp_name = None
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=output_path.parent,
                prefix=f".{output_path.name}.",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(report)
            os.chmod(tmp_name, REPORT_MODE)
            os.replace(tmp_name, output_path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"cannot write report {output_path}: {e}") from e

        self.logger.info("Session exported", session=name, entries=len(entries), output=str(output_path))
        return output_path


def export_session(
    session_dir: Union[str, Path],
    name: str,
    output_path: Union[str, Path]
) -> Path:
    return SessionExporter(SessionStore(session_dir)).render(name, output_path)
