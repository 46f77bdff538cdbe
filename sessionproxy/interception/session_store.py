"""
Session Store

Finds and reads persisted session documents.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

import structlog

from sessionproxy.core.exceptions import NotFoundError, StorageError
from sessionproxy.interception.session_log import SESSION_EXTENSION

logger = structlog.get_logger()


class SessionStore:
    """Read access to the session documents of one directory"""

    def __init__(self, session_dir: Union[str, Path]):
        self.session_dir = Path(session_dir)
        self.logger = logger.bind(component="session_store")

    def list(self) -> List[str]:
        """
        List session document names

        Returns:
            Sorted file names; empty if the directory does not exist
        """
        if not self.session_dir.is_dir():
            return []

        return sorted(
            path.name
            for path in self.session_dir.iterdir()
            if path.is_file() and path.suffix == SESSION_EXTENSION
        )

    def path_for(self, name: str) -> Path:
        """Resolve a session name inside the store, rejecting anything else"""
        if not name or Path(name).name != name or name in (".", ".."):
            raise NotFoundError(f"invalid session name: {name!r}")
        return self.session_dir / name

    def load(self, name: str) -> bytes:
        """
        Read a session document

        Args:
            name: File name as returned by ``list``

        Returns:
            Raw bytes of the document
        """
        path = self.path_for(name)
        try:
            data = path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise NotFoundError(f"session {name} not found in {self.session_dir}") from e
        except OSError as e:
            raise StorageError(f"cannot read session {name}: {e}") from e

        self.logger.debug("Loaded session", session=name, bytes=len(data))
        return data

    def describe(self) -> List[Dict[str, Any]]:
        """Name, size and modification time of every session document"""
        sessions = []
        for name in self.list():
            stat = self.path_for(name).stat()
            sessions.append({
                "name": name,
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(timespec="seconds"),
            })
        return sessions


def list_sessions(session_dir: Union[str, Path]) -> List[str]:
    return SessionStore(session_dir).list()


def load_session(session_dir: Union[str, Path], name: str) -> bytes:
    return SessionStore(session_dir).load(name)
