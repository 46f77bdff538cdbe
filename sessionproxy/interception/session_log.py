"""
Session Log Writer for HTTP Traffic

Streams every captured request and response into a single JSON document
per proxy run, as they happen.

Features:
- One file per run, named from its creation time
- Entries flushed to disk as soon as they are written
- Thread-safe appends from concurrent connections
- Valid JSON array once closed
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TextIO, Union

import structlog

from sessionproxy.core.exceptions import StorageError
from sessionproxy.interception.records import SessionEntry, encode_entry

logger = structlog.get_logger()

SESSION_EXTENSION = ".json"
SESSION_NAME_FORMAT = "session_%Y%m%d_%H%M%S"

ARRAY_OPEN = "[\n"
ARRAY_CLOSE = "\n]\n"
SEPARATOR = ",\n"


class SessionLogWriter:
    """
    Append-only writer for one session document

    Until ``close`` is called the file lacks its closing bracket; readers
    must cope with that (see ``SessionExporter``). Appends are serialized
    with a lock so concurrent entries never interleave or lose their
    separator.
    """

    def __init__(self, path: Path, handle: TextIO):
        """
        Use ``SessionLogWriter.open`` rather than calling this directly

        Args:
            path: Path of the session document
            handle: Text handle positioned just after the opening bracket
        """
        self.path = path
        self._handle = handle
        self._lock = threading.Lock()
        self._first_entry = True
        self._closed = False
        self.logger = logger.bind(component="session_log", session=path.name)

        # Statistics
        self.stats = {
            "entries_written": 0,
            "bytes_written": len(ARRAY_OPEN),
            "errors": 0
        }

    @classmethod
    def open(
        cls,
        session_dir: Union[str, Path],
        clock: Optional[Callable[[], datetime]] = None
    ) -> "SessionLogWriter":
        """
        Create a new session document and write its opening framing

        Args:
            session_dir: Directory holding session documents (created if absent)
            clock: Source of the creation time used in the file name

        Returns:
            Writer ready for ``append``
        """
        session_dir = Path(session_dir)
        created = (clock or datetime.now)()
        stem = created.strftime(SESSION_NAME_FORMAT)

        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            handle, path = cls._create_unique(session_dir, stem)
        except OSError as e:
            raise StorageError(f"cannot create session document in {session_dir}: {e}") from e

        try:
            handle.write(ARRAY_OPEN)
            handle.flush()
        except OSError as e:
            handle.close()
            raise StorageError(f"cannot write to {path}: {e}") from e

        writer = cls(path, handle)
        writer.logger.info("Session document opened", path=str(path))
        return writer

    @staticmethod
    def _create_unique(session_dir: Path, stem: str):
        """Exclusively create ``stem.json``, suffixing a counter on collision"""
        attempt = 0
        while True:
            suffix = f"_{attempt}" if attempt else ""
            path = session_dir / f"{stem}{suffix}{SESSION_EXTENSION}"
            try:
                return open(path, "x", encoding="utf-8"), path
            except FileExistsError:
                attempt += 1

    @property
    def name(self) -> str:
        """File name of the session document"""
        return self.path.name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def entries_written(self) -> int:
        return self.stats["entries_written"]

    def append(self, entry: SessionEntry):
        """
        Write one tagged entry, preceded by a separator unless it is the first

        Args:
            entry: RequestRecord or ResponseRecord
        """
        payload = json.dumps(encode_entry(entry), indent=2) + "\n"

        with self._lock:
            if self._closed:
                raise StorageError(f"session document {self.name} is closed")

            chunk = payload if self._first_entry else SEPARATOR + payload
            try:
                self._handle.write(chunk)
                self._handle.flush()
            except OSError as e:
                self.stats["errors"] += 1
                raise StorageError(f"cannot append to {self.name}: {e}") from e

            self._first_entry = False
            self.stats["entries_written"] += 1
            self.stats["bytes_written"] += len(chunk)

    def close(self):
        """Write the closing bracket and release the file"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._handle.write(ARRAY_CLOSE)
                self._handle.flush()
            except OSError as e:
                raise StorageError(f"cannot finalize {self.name}: {e}") from e
            finally:
                self._handle.close()

        self.logger.info("Session document closed", stats=self.stats)

    def get_stats(self) -> Dict[str, Any]:
        """Get writer statistics"""
        return {
            **self.stats,
            "session": self.name,
            "closed": self._closed
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
