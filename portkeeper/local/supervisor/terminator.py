import time
import psutil
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional
from portkeeper.local import app_globals
from portkeeper.local.errors import TerminationPartialFailure
from portkeeper.local.supervisor.process_utils import is_alive

log = logging.getLogger(__name__)


@dataclass
class TerminationReport:
    """Pids believed gone after a termination pass, plus the ones that could not be signalled."""
    killed: List[int] = field(default_factory=list)
    failures: List[TerminationPartialFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def failed_pids(self) -> List[int]:
        return [failure.pid for failure in self.failures]

    def merge(self, other: "TerminationReport") -> None:
        """Folds another report in, keeping killed pids distinct."""
        for pid in other.killed:
            if pid not in self.killed:
                self.killed.append(pid)
        known = set(self.failed_pids)
        self.failures.extend(f for f in other.failures if f.pid not in known)


class Terminator:
    """
    Terminates processes by pid, either gracefully (SIGTERM, wait, then SIGKILL
    if needed) or forcefully (SIGKILL right away).
    """

    def __init__(self, grace_window: Optional[float] = None, settle_window: Optional[float] = None,
                 force_settle_window: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.grace_window = app_globals.GRACE_WINDOW_SECONDS if grace_window is None else grace_window
        self.settle_window = app_globals.SETTLE_WINDOW_SECONDS if settle_window is None else settle_window
        self.force_settle_window = (app_globals.FORCE_SETTLE_WINDOW_SECONDS
                                    if force_settle_window is None else force_settle_window)
        self._sleep = sleep

    def terminate(self, pids: Iterable[int], graceful: bool = True) -> TerminationReport:
        """
        Terminates every pid independently; a failure on one never aborts the others.

        :param pids: The processes to terminate.
        :param graceful: SIGTERM first and escalate, or SIGKILL everything immediately.
        :return: A report of killed pids and per-pid failures.
        """
        targets = sorted(set(pids))
        report = TerminationReport()
        if not targets:
            return report

        if graceful:
            for pid in targets:
                self._terminate_gracefully(pid, report)
        else:
            signalled = False
            for pid in targets:
                signalled = self._kill(pid, report) or signalled
            if signalled:
                self._sleep(self.force_settle_window)

        if report.partial:
            log.warning(f"Could not terminate PIDs {report.failed_pids}: "
                        f"{'; '.join(f.reason for f in report.failures)}")
        log.info(f"{'Graceful' if graceful else 'Forced'} termination finished. Killed: {report.killed}")
        return report

    def _terminate_gracefully(self, pid: int, report: TerminationReport) -> None:
        try:
            proc = psutil.Process(pid)
            log.debug(f"Sending SIGTERM to PID {pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            log.debug(f"PID {pid} no longer exists, skipping termination.")
            return
        except psutil.AccessDenied:
            log.warning(f"SIGTERM refused for PID {pid}, sending SIGKILL instead.")
            if self._kill(pid, report):
                self._sleep(self.settle_window)
            return

        self._sleep(self.grace_window)
        if is_alive(pid):
            log.warning(f"PID {pid} survived SIGTERM, sending SIGKILL.")
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                report.failures.append(TerminationPartialFailure(pid, f"SIGKILL denied: {e}"))
                return
            self._sleep(self.settle_window)
        report.killed.append(pid)

    def _kill(self, pid: int, report: TerminationReport) -> bool:
        """Sends SIGKILL. Returns True if the signal was delivered."""
        try:
            log.debug(f"Sending SIGKILL to PID {pid}")
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            log.debug(f"PID {pid} no longer exists, skipping kill.")
            return False
        except psutil.AccessDenied as e:
            report.failures.append(TerminationPartialFailure(pid, f"SIGKILL denied: {e}"))
            return False
        report.killed.append(pid)
        return True
