import time
import logging
import concurrent.futures
from typing import Any, Callable, List, Optional, Set
from portkeeper.local import app_globals
from portkeeper.local.entries import Entry
from portkeeper.local.errors import OperationTimeout, ProbeError
from portkeeper.local.supervisor.exit_channel import ExitChannel, ExitEvent
from portkeeper.local.supervisor.port_probe import PortProbe
from portkeeper.local.supervisor.process_utils import ProcessLauncher, collect_process_tree
from portkeeper.local.supervisor.registry import ManagedProcess, ProcessRegistry
from portkeeper.local.supervisor.terminator import TerminationReport, Terminator

log = logging.getLogger(__name__)


class LifecycleManager:
    """
    Starts, stops and force-restarts the process behind each registered entry,
    and answers whether a port is occupied.

    Every public operation runs on a worker pool and is bounded by an overall
    deadline. Operations on the same entry are serialized through the
    registry's per-entry lock; different entries proceed in parallel.
    """

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        probe: Optional[PortProbe] = None,
        terminator: Optional[Terminator] = None,
        launcher: Optional[ProcessLauncher] = None,
        exit_channel: Optional[ExitChannel] = None,
        operation_deadline: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.registry = registry or ProcessRegistry()
        self.probe = probe or PortProbe()
        self.terminator = terminator or Terminator()
        self.launcher = launcher or ProcessLauncher()
        self.exit_channel = exit_channel or ExitChannel()
        self.operation_deadline = operation_deadline or app_globals.OPERATION_DEADLINE_SECONDS
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers or app_globals.MAX_WORKERS,
            thread_name_prefix="Lifecycle",
        )
        self.exit_channel.subscribe(self._on_child_exit)

    #* --- Public operations ---
    def start(self, entry_id: str, command_path: str, port: Optional[int] = None,
              folder_path: Optional[str] = None) -> ManagedProcess:
        """
        Launches the entry's command, terminating the process it previously launched first.

        :raises LaunchError: If the command could not be spawned.
        :raises OperationTimeout: If the operation exceeded its deadline.
        """
        return self._run_bounded("start", self._start, entry_id, command_path, port, folder_path)

    def stop(self, entry_id: str, port: int) -> TerminationReport:
        """
        Terminates the entry's launched process and every other process bound to `port`.
        A report with no killed pids means the entry was already stopped.

        :raises ProbeError: If the port could not be inspected and nothing else was stopped.
        :raises OperationTimeout: If the operation exceeded its deadline.
        """
        return self._run_bounded("stop", self._stop, entry_id, port)

    def force_restart(self, entry_id: str, port: int, command_path: str,
                      folder_path: Optional[str] = None) -> ManagedProcess:
        """
        Kills everything bound to `port` (and the entry's own process tree) without
        grace, waits for the port to settle, then launches a fresh process.

        :raises LaunchError: If the command could not be spawned.
        :raises OperationTimeout: If the operation exceeded its deadline.
        """
        return self._run_bounded("force_restart", self._force_restart, entry_id, port, command_path, folder_path)

    def check_status(self, port: int) -> bool:
        """
        Returns True if any process owns `port`, whether or not this manager launched it.

        :raises ProbeError: If the port could not be inspected.
        :raises OperationTimeout: If the probe exceeded its deadline.
        """
        return self._run_bounded("check_status", self._check_status, port)

    def refresh(self, entries: List[Entry]) -> List[Entry]:
        """Reconciles each entry's cached `is_running` flag with the OS. Probe failures keep the cached value."""
        for entry in entries:
            try:
                entry.is_running = self.check_status(entry.port)
            except (ProbeError, OperationTimeout) as e:
                log.warning(f"Could not refresh status of '{entry.name}' (port {entry.port}): {e}")
        return entries

    def shutdown(self, terminate_children: bool = False) -> None:
        """Stops background machinery; optionally terminates every process still registered."""
        if terminate_children:
            pids: Set[int] = set()
            for process in self.registry.snapshot():
                pids |= collect_process_tree(process.pid)
                self.registry.remove(process.entry_id)
            if pids:
                log.info(f"Terminating {len(pids)} managed processes before exit...")
                self.terminator.terminate(pids, graceful=True)
        self.exit_channel.close()
        self._executor.shutdown(wait=False, cancel_futures=True)

    #* --- Implementations (run on the worker pool) ---
    def _start(self, entry_id: str, command_path: str, port: Optional[int],
               folder_path: Optional[str]) -> ManagedProcess:
        with self.registry.lock(entry_id):
            self.registry.reap()
            previous = self.registry.remove(entry_id)
            if previous is not None and not previous.has_exited():
                log.info(f"Entry {entry_id} already has PID {previous.pid}; terminating it before relaunch.")
                self.terminator.terminate(collect_process_tree(previous.pid), graceful=True)
            return self._launch(entry_id, command_path, folder_path, port)

    def _stop(self, entry_id: str, port: int) -> TerminationReport:
        with self.registry.lock(entry_id):
            self.registry.reap()
            report = TerminationReport()

            managed = self.registry.remove(entry_id)
            if managed is not None:
                log.info(f"Stopping entry {entry_id} (PID {managed.pid}).")
                report.merge(self.terminator.terminate(collect_process_tree(managed.pid), graceful=True))

            try:
                owners = self.probe.find_owners(port)
            except ProbeError:
                if managed is None:
                    raise
                log.warning(f"Port {port} could not be probed after stopping entry {entry_id}; "
                            "other owners may remain.", exc_info=True)
                return report

            remaining = owners - set(report.killed)
            if remaining:
                log.info(f"Port {port} is still held by PIDs {sorted(remaining)}; terminating them.")
                report.merge(self.terminator.terminate(remaining, graceful=True))

            if report.killed:
                log.info(f"Stopped {len(report.killed)} process(es) for entry {entry_id}: {report.killed}")
            else:
                log.info(f"No process running on port {port} (already stopped).")
            return report

    def _force_restart(self, entry_id: str, port: int, command_path: str,
                       folder_path: Optional[str]) -> ManagedProcess:
        with self.registry.lock(entry_id):
            self.registry.reap()
            targets: Set[int] = set()

            managed = self.registry.remove(entry_id)
            if managed is not None:
                targets |= collect_process_tree(managed.pid)

            try:
                targets |= self.probe.find_owners(port)
            except ProbeError:
                log.warning(f"Port {port} could not be probed during force restart of entry {entry_id}; "
                            "relaunching anyway.", exc_info=True)

            if targets:
                log.info(f"Force killing PIDs {sorted(targets)} for entry {entry_id} on port {port}.")
                self.terminator.terminate(targets, graceful=False)
            return self._launch(entry_id, command_path, folder_path, port)

    def _check_status(self, port: int) -> bool:
        running = bool(self.probe.find_owners(port))
        log.debug(f"Port {port} is {'RUNNING' if running else 'NOT running'}")
        return running

    #* --- Helpers ---
    def _launch(self, entry_id: str, command_path: str, folder_path: Optional[str],
                port: Optional[int]) -> ManagedProcess:
        proc = self.launcher.launch(entry_id, command_path, folder_path)
        managed = ManagedProcess(entry_id=entry_id, pid=proc.pid, started_at=time.time(), handle=proc)
        self.registry.set(entry_id, managed)
        self.exit_channel.watch(entry_id, proc)
        if port is not None:
            log.info(f"Entry {entry_id} is starting on port {port} (PID {proc.pid}).")
        return managed

    def _on_child_exit(self, event: ExitEvent) -> None:
        self.registry.discard(event.entry_id, event.pid)
        self.registry.reap()

    def _run_bounded(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(fn, *args)
        done, _ = concurrent.futures.wait([future], timeout=self.operation_deadline)
        if not done:
            if future.cancel():
                log.error(f"Operation '{operation}' was cancelled before it started: deadline exceeded.")
            else:
                log.error(f"Operation '{operation}' exceeded its {self.operation_deadline}s deadline; "
                          "it will finish in the background.")
            raise OperationTimeout(operation, self.operation_deadline)
        return future.result()
