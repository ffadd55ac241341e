"""
Pytest configuration and shared fixtures

Points the data directory at a scratch location before anything imports
settings, and provides fake collaborators for the lifecycle manager.
"""

import os
import sys
import shutil
import tempfile
import threading
import time

os.environ["PORTKEEPER_DATA_DIR"] = tempfile.mkdtemp(prefix="portkeeper-tests-")

import pytest
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from portkeeper.local.errors import ProbeError
from portkeeper.local.persistence import EntryStore
from portkeeper.local.supervisor import LifecycleManager, ProcessLauncher, Terminator
from portkeeper.local.supervisor.terminator import TerminationReport

requires_posix_shell = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("bash") is None,
    reason="needs a POSIX system with bash",
)


class FakeProbe:
    """Port probe with a settable owner table."""

    def __init__(self, owners: Optional[Dict[int, Set[int]]] = None, delay: float = 0.0) -> None:
        self.owners = owners or {}
        self.delay = delay
        self.failing_ports: Set[int] = set()
        self.calls: List[int] = []

    def find_owners(self, port: int) -> Set[int]:
        self.calls.append(port)
        if self.delay:
            time.sleep(self.delay)
        if port in self.failing_ports:
            raise ProbeError(port, "simulated failure")
        return set(self.owners.get(port, set()))


class RecordingTerminator(Terminator):
    """Real terminator without settle delays that records every request."""

    def __init__(self) -> None:
        super().__init__(grace_window=0.1, settle_window=0, force_settle_window=0)
        self.calls: List[Tuple[List[int], bool]] = []
        self._lock = threading.Lock()

    def terminate(self, pids: Iterable[int], graceful: bool = True) -> TerminationReport:
        targets = sorted(set(pids))
        with self._lock:
            self.calls.append((targets, graceful))
        return super().terminate(targets, graceful)


@pytest.fixture
def tmp_store(tmp_path: Path) -> EntryStore:
    return EntryStore(tmp_path / "ports.json")


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def fast_terminator() -> Terminator:
    """A real terminator with short windows."""
    return Terminator(grace_window=0.1, settle_window=0.05, force_settle_window=0.1)


@pytest.fixture
def launcher(tmp_path: Path) -> ProcessLauncher:
    return ProcessLauncher(shell="bash", logs_dir=tmp_path / "logs", capture_output=True, extra_path_dirs=[])


@pytest.fixture
def manager(fake_probe: FakeProbe, fast_terminator: Terminator, launcher: ProcessLauncher) -> Iterator[LifecycleManager]:
    manager = LifecycleManager(probe=fake_probe, terminator=fast_terminator, launcher=launcher,
                               operation_deadline=10, max_workers=4)
    yield manager
    manager.shutdown(terminate_children=True)


@pytest.fixture
def sleeper_script(tmp_path: Path) -> Path:
    """A command file that keeps running until it is killed."""
    script = tmp_path / "sleeper.sh"
    script.write_text("#!/bin/bash\necho \"started in $(pwd)\"\nsleep 30\n")
    return script


@pytest.fixture
def quick_script(tmp_path: Path) -> Path:
    """A command file that exits right away."""
    script = tmp_path / "quick.sh"
    script.write_text("#!/bin/bash\necho done\nexit 3\n")
    return script


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
