"""
Tests for the LifecycleManager: real launches through bash, with the port
probe replaced by a settable table unless a test needs the real socket table.
"""

import sys
import socket
import threading
import time
import subprocess

import pytest

from conftest import FakeProbe, RecordingTerminator, requires_posix_shell, wait_until
from portkeeper.local.entries import Entry
from portkeeper.local.errors import LaunchError, OperationTimeout, ProbeError
from portkeeper.local.supervisor import LifecycleManager, PortProbe
from portkeeper.local.supervisor.process_utils import collect_process_tree, is_alive

pytestmark = requires_posix_shell


@pytest.fixture
def foreign():
    """Spawns processes the manager did not launch, standing in for other port owners."""
    procs = []

    def spawn() -> subprocess.Popen:
        proc = subprocess.Popen(["bash", "-c", "sleep 30"])
        procs.append(proc)
        return proc
    yield spawn
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


def _gone(pid: int) -> bool:
    return wait_until(lambda: not is_alive(pid), timeout=3)


class TestStart:
    def test_start_launches_in_command_dir(self, manager, launcher, sleeper_script):
        managed = manager.start("e1", str(sleeper_script), 3000)
        assert is_alive(managed.pid)
        assert manager.registry.get("e1").pid == managed.pid

        log_file = launcher.log_path_for("e1")
        assert wait_until(lambda: log_file.exists() and "started in" in log_file.read_text())
        assert str(sleeper_script.parent.resolve()) in log_file.read_text()

    def test_start_uses_folder_path(self, manager, launcher, sleeper_script, tmp_path):
        workdir = tmp_path / "project"
        workdir.mkdir()
        manager.start("e1", str(sleeper_script), None, str(workdir))
        log_file = launcher.log_path_for("e1")
        assert wait_until(lambda: log_file.exists() and "started in" in log_file.read_text())
        assert str(workdir.resolve()) in log_file.read_text()

    def test_start_twice_replaces_process(self, manager, sleeper_script):
        first = manager.start("e1", str(sleeper_script))
        second = manager.start("e1", str(sleeper_script))
        assert first.pid != second.pid
        assert _gone(first.pid)
        assert is_alive(second.pid)
        assert manager.registry.get("e1").pid == second.pid

    def test_missing_command_file(self, manager, tmp_path):
        with pytest.raises(LaunchError):
            manager.start("e1", str(tmp_path / "missing.sh"))
        assert manager.registry.get("e1") is None

    def test_child_exit_clears_registry(self, manager, quick_script):
        managed = manager.start("e1", str(quick_script))
        assert wait_until(lambda: manager.registry.get("e1") is None)
        assert _gone(managed.pid)

    def test_stale_exit_does_not_clear_new_process(self, manager, quick_script, sleeper_script):
        manager.start("e1", str(quick_script))
        assert wait_until(lambda: manager.registry.get("e1") is None)
        current = manager.start("e1", str(sleeper_script))
        manager.registry.discard("e1", current.pid + 100000)
        assert manager.registry.get("e1").pid == current.pid


class TestStop:
    def test_stop_never_started_free_port(self, manager):
        report = manager.stop("e1", 3000)
        assert report.killed == []
        assert not report.partial

    def test_stop_registered_process(self, manager, sleeper_script):
        managed = manager.start("e1", str(sleeper_script), 3000)
        report = manager.stop("e1", 3000)
        assert managed.pid in report.killed
        assert _gone(managed.pid)
        assert manager.registry.get("e1") is None

    def test_stop_kills_foreign_port_owners(self, manager, fake_probe, foreign):
        other = foreign()
        fake_probe.owners[3000] = {other.pid}
        report = manager.stop("e1", 3000)
        assert report.killed == [other.pid]
        assert _gone(other.pid)

    def test_stop_probe_failure_with_nothing_registered(self, manager, fake_probe):
        fake_probe.failing_ports.add(3000)
        with pytest.raises(ProbeError):
            manager.stop("e1", 3000)

    def test_stop_probe_failure_after_stopping_registered(self, manager, fake_probe, sleeper_script):
        managed = manager.start("e1", str(sleeper_script))
        fake_probe.failing_ports.add(3000)
        report = manager.stop("e1", 3000)
        assert managed.pid in report.killed

    def test_start_and_stop_race_leaves_consistent_registry(self, launcher, fast_terminator, sleeper_script):
        manager = LifecycleManager(probe=FakeProbe(delay=0.1), terminator=fast_terminator, launcher=launcher)
        try:
            for _ in range(3):
                started = manager.start("e1", str(sleeper_script), 3000)
                results = {}

                def restart():
                    results["start"] = manager.start("e1", str(sleeper_script), 3000)

                def stop():
                    results["stop"] = manager.stop("e1", 3000)

                threads = [threading.Thread(target=restart), threading.Thread(target=stop)]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join(timeout=10)

                assert _gone(started.pid)
                relaunched = results["start"]
                held = manager.registry.get("e1")
                if held is None:
                    # Stop ran last and took the relaunched process with it.
                    assert relaunched.pid in results["stop"].killed
                    assert _gone(relaunched.pid)
                else:
                    assert held.pid == relaunched.pid
                    assert is_alive(held.pid)
                    manager.stop("e1", 3000)
        finally:
            manager.shutdown(terminate_children=True)


class TestForceRestart:
    def test_kills_owners_then_relaunches(self, manager, fake_probe, foreign, sleeper_script):
        first = manager.start("e1", str(sleeper_script), 3000)
        other = foreign()
        fake_probe.owners[3000] = {other.pid}

        fresh = manager.force_restart("e1", 3000, str(sleeper_script))
        assert fresh.pid not in (first.pid, other.pid)
        assert _gone(first.pid)
        assert _gone(other.pid)
        assert is_alive(fresh.pid)
        assert manager.registry.get("e1").pid == fresh.pid

    def test_probe_failure_still_relaunches(self, manager, fake_probe, sleeper_script):
        fake_probe.failing_ports.add(3000)
        fresh = manager.force_restart("e1", 3000, str(sleeper_script))
        assert is_alive(fresh.pid)

    def test_uses_forced_termination(self, fake_probe, launcher, sleeper_script):
        terminator = RecordingTerminator()
        manager = LifecycleManager(probe=fake_probe, terminator=terminator, launcher=launcher)
        try:
            fake_probe.owners[3000] = {999999}
            manager.force_restart("e1", 3000, str(sleeper_script))
            assert terminator.calls == [([999999], False)]
        finally:
            manager.shutdown(terminate_children=True)

    def test_concurrent_entries_proceed_independently(self, manager, sleeper_script):
        results = {}

        def restart(entry_id, port):
            results[entry_id] = manager.force_restart(entry_id, port, str(sleeper_script))

        threads = [threading.Thread(target=restart, args=(f"e{i}", 3000 + i)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert set(results) == {"e0", "e1"}
        assert results["e0"].pid != results["e1"].pid
        assert all(is_alive(managed.pid) for managed in results.values())

    def test_concurrent_entries_run_in_parallel(self, launcher, fast_terminator, sleeper_script):
        manager = LifecycleManager(probe=FakeProbe(delay=0.5), terminator=fast_terminator, launcher=launcher)
        try:
            threads = [
                threading.Thread(target=manager.force_restart, args=(f"e{i}", 3000 + i, str(sleeper_script)))
                for i in range(2)
            ]
            started = time.monotonic()
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)
            elapsed = time.monotonic() - started

            # One after the other would take at least twice the port lookup delay.
            assert elapsed < 0.9
            assert len(manager.registry) == 2
        finally:
            manager.shutdown(terminate_children=True)


class TestCheckStatus:
    def test_free_and_busy(self, manager, fake_probe):
        fake_probe.owners[3001] = {1234}
        assert manager.check_status(3000) is False
        assert manager.check_status(3001) is True

    def test_probe_error_propagates(self, manager, fake_probe):
        fake_probe.failing_ports.add(3000)
        with pytest.raises(ProbeError):
            manager.check_status(3000)

    def test_deadline_exceeded(self, launcher):
        manager = LifecycleManager(probe=FakeProbe(delay=1.0), terminator=RecordingTerminator(),
                                   launcher=launcher, operation_deadline=0.2)
        try:
            with pytest.raises(OperationTimeout):
                manager.check_status(3000)
        finally:
            manager.shutdown()

    @pytest.mark.skipif(sys.platform == "darwin", reason="socket table needs lsof or root on macOS")
    def test_real_listener(self, launcher, fast_terminator):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            free_port = s.getsockname()[1]

        listener = subprocess.Popen(
            [sys.executable, "-c",
             "import socket, sys, time\n"
             "s = socket.socket()\n"
             "s.bind(('127.0.0.1', 0))\n"
             "s.listen()\n"
             "print(s.getsockname()[1], flush=True)\n"
             "time.sleep(30)\n"],
            stdout=subprocess.PIPE, text=True,
        )
        manager = LifecycleManager(probe=PortProbe(backend="psutil"), terminator=fast_terminator, launcher=launcher)
        try:
            busy_port = int(listener.stdout.readline())
            assert manager.check_status(busy_port) is True
            assert manager.check_status(free_port) is False
        finally:
            manager.shutdown()
            listener.kill()
            listener.wait()
            listener.stdout.close()


class TestRefresh:
    def test_updates_flags_and_keeps_cached_on_failure(self, manager, fake_probe):
        fake_probe.owners[3000] = {1}
        fake_probe.failing_ports.add(3002)
        entries = [
            Entry(id="a", name="a", port=3000),
            Entry(id="b", name="b", port=3001, is_running=True),
            Entry(id="c", name="c", port=3002, is_running=True),
        ]
        manager.refresh(entries)
        assert [e.is_running for e in entries] == [True, False, True]


class TestShutdown:
    def test_terminates_children_when_asked(self, fake_probe, fast_terminator, launcher, sleeper_script):
        manager = LifecycleManager(probe=fake_probe, terminator=fast_terminator, launcher=launcher)
        managed = manager.start("e1", str(sleeper_script))
        manager.shutdown(terminate_children=True)
        assert _gone(managed.pid)
        assert len(manager.registry) == 0

    def test_leaves_children_by_default(self, fake_probe, fast_terminator, launcher, sleeper_script):
        manager = LifecycleManager(probe=fake_probe, terminator=fast_terminator, launcher=launcher)
        managed = manager.start("e1", str(sleeper_script))
        manager.shutdown()
        try:
            assert is_alive(managed.pid)
        finally:
            fast_terminator.terminate(collect_process_tree(managed.pid), graceful=False)


LISTENER_SOURCE = (
    "import socket, sys, time\n"
    "s = socket.socket()\n"
    "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
    "s.bind(('127.0.0.1', int(sys.argv[1])))\n"
    "s.listen()\n"
    "time.sleep(60)\n"
)


@pytest.mark.skipif(sys.platform == "darwin", reason="socket table needs lsof or root on macOS")
class TestRealPort:
    @pytest.fixture
    def port(self) -> int:
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]

    @pytest.fixture
    def server_script(self, tmp_path, port):
        listener = tmp_path / "listener.py"
        listener.write_text(LISTENER_SOURCE)
        script = tmp_path / "serve.sh"
        script.write_text(f'#!/bin/bash\nexec "{sys.executable}" "{listener}" {port}\n')
        return script

    def test_force_restart_frees_and_rebinds_port(self, launcher, fast_terminator, port, server_script):
        probe = PortProbe(backend="psutil")
        manager = LifecycleManager(probe=probe, terminator=fast_terminator, launcher=launcher)
        try:
            first = manager.start("e1", str(server_script), port)
            assert wait_until(lambda: manager.check_status(port))
            assert first.pid in probe.find_owners(port)

            fresh = manager.force_restart("e1", port, str(server_script))
            assert wait_until(lambda: fresh.pid in probe.find_owners(port))
            assert manager.check_status(port) is True
            assert first.pid not in probe.find_owners(port)
            assert _gone(first.pid)
        finally:
            manager.shutdown(terminate_children=True)

    def test_stop_frees_port(self, launcher, fast_terminator, port, server_script):
        manager = LifecycleManager(probe=PortProbe(backend="psutil"), terminator=fast_terminator, launcher=launcher)
        try:
            managed = manager.start("e1", str(server_script), port)
            assert wait_until(lambda: manager.check_status(port))
            report = manager.stop("e1", port)
            assert report.killed == [managed.pid]
            assert manager.check_status(port) is False
        finally:
            manager.shutdown(terminate_children=True)
