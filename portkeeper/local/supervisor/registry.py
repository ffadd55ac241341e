import time
import logging
import threading
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional
from portkeeper.local.supervisor.process_utils import is_alive

log = logging.getLogger(__name__)


@dataclass
class ManagedProcess:
    """A child process this manager launched for an entry."""
    entry_id: str
    pid: int
    started_at: float = field(default_factory=time.time)
    handle: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def has_exited(self) -> bool:
        """Non-blocking exit check; prefers the Popen handle so our own zombies are reaped."""
        if self.handle is not None:
            return self.handle.poll() is not None
        return not is_alive(self.pid)

    def to_dict(self) -> Dict[str, object]:
        return {"entryId": self.entry_id, "pid": self.pid, "startedAt": self.started_at}


class ProcessRegistry:
    """
    Maps entry ids to the process this manager launched for them.

    Map access is guarded by an internal lock. Callers that read-then-mutate an
    entry's slot hold that entry's lock via `lock(entry_id)`; different entries
    never share a lock.
    """

    def __init__(self) -> None:
        self._procs: Dict[str, ManagedProcess] = {}
        self._map_lock = threading.Lock()
        self._entry_locks: Dict[str, threading.Lock] = {}
        self._entry_locks_guard = threading.Lock()

    @contextmanager
    def lock(self, entry_id: str) -> Iterator[None]:
        with self._entry_locks_guard:
            entry_lock = self._entry_locks.setdefault(entry_id, threading.Lock())
        with entry_lock:
            yield

    def get(self, entry_id: str) -> Optional[ManagedProcess]:
        with self._map_lock:
            return self._procs.get(entry_id)

    def set(self, entry_id: str, process: ManagedProcess) -> None:
        with self._map_lock:
            previous = self._procs.get(entry_id)
            self._procs[entry_id] = process
        if previous is not None and previous.pid != process.pid:
            log.debug(f"Registry slot for entry {entry_id} replaced: PID {previous.pid} -> {process.pid}")

    def remove(self, entry_id: str) -> Optional[ManagedProcess]:
        with self._map_lock:
            return self._procs.pop(entry_id, None)

    def discard(self, entry_id: str, pid: int) -> bool:
        """Removes the entry only if it still holds `pid`. Returns True if something was removed."""
        with self._map_lock:
            current = self._procs.get(entry_id)
            if current is None or current.pid != pid:
                return False
            del self._procs[entry_id]
        log.info(f"Entry {entry_id} (PID {pid}) exited on its own; removed from registry.")
        return True

    def reap(self) -> List[ManagedProcess]:
        """Drops every held process whose OS process has exited."""
        with self._map_lock:
            candidates = list(self._procs.items())

        reaped = []
        for entry_id, process in candidates:
            if not process.has_exited():
                continue
            with self._map_lock:
                if self._procs.get(entry_id) is process:
                    del self._procs[entry_id]
                    reaped.append(process)
        for process in reaped:
            log.info(f"Reaped exited process for entry {process.entry_id} (PID {process.pid}).")
        return reaped

    def snapshot(self) -> List[ManagedProcess]:
        with self._map_lock:
            return list(self._procs.values())

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._procs)
