import re
import time
import logging
import threading
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

_ID_LOCK = threading.Lock()
_last_id = 0

_LOCALHOST_PORT_RE = re.compile(r"localhost:(\d+)")
_ASSIGNED_PORT_RE = re.compile(r"(?:PORT|port)\s*=\s*(\d+)")


def new_entry_id() -> str:
    """
    Returns a fresh entry id derived from the current time in milliseconds.
    Ids handed out by this process are strictly increasing, even within the same millisecond.
    """
    global _last_id
    with _ID_LOCK:
        candidate = int(time.time() * 1000)
        _last_id = max(candidate, _last_id + 1)
        return str(_last_id)


def is_valid_port(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= 65535


@dataclass
class Entry:
    """A user-registered development server: a name, the port it serves and how to launch it."""
    id: str
    name: str
    port: int
    command_path: Optional[str] = None
    folder_path: Optional[str] = None
    deploy_url: Optional[str] = None
    github_url: Optional[str] = None
    is_running: bool = False

    def __post_init__(self) -> None:
        if not is_valid_port(self.port):
            raise ValueError(f"Invalid port for entry '{self.name}': {self.port!r}")

    @classmethod
    def create(cls, name: str, port: int, command_path: Optional[str] = None,
               folder_path: Optional[str] = None) -> "Entry":
        return cls(id=new_entry_id(), name=name, port=port,
                   command_path=command_path, folder_path=folder_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        """Builds an Entry from its camelCase JSON form. Raises ValueError/KeyError on bad input."""
        port = data["port"]
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            port=port,
            command_path=data.get("commandPath"),
            folder_path=data.get("folderPath"),
            deploy_url=data.get("deployUrl"),
            github_url=data.get("githubUrl"),
            is_running=bool(data.get("isRunning", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "port": self.port,
            "commandPath": self.command_path,
            "folderPath": self.folder_path,
            "deployUrl": self.deploy_url,
            "githubUrl": self.github_url,
            "isRunning": self.is_running,
        }


def detect_port(command_path: Path) -> Optional[int]:
    """
    Guesses the port a command file serves on.

    Looks for a `localhost:<port>` reference first, then a `PORT=<port>` style assignment.

    :param command_path: The command file to scan.
    :return: The detected port, or None if nothing usable was found.
    """
    try:
        content = Path(command_path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log.warning(f"Could not read '{command_path}' for port detection: {e}")
        return None

    for pattern in (_LOCALHOST_PORT_RE, _ASSIGNED_PORT_RE):
        match = pattern.search(content)
        if match and is_valid_port(int(match.group(1))):
            return int(match.group(1))
    return None
