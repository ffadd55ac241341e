import os
import shutil
import psutil
import logging
import subprocess
from typing import Optional, Set
from portkeeper.local import app_globals
from portkeeper.local.errors import ProbeError

log = logging.getLogger(__name__)

# Sockets in these states hold the port number but no longer keep it bound.
_CLOSED_STATES = {psutil.CONN_TIME_WAIT, psutil.CONN_CLOSE}


class PortProbe:
    """
    Finds the processes that own a socket bound to a local TCP port.

    Equivalent to `lsof -ti :PORT` restricted to local addresses: only pids are
    returned, and an unbound port yields an empty set rather than an error.
    """

    def __init__(self, backend: Optional[str] = None, lsof_executable: Optional[str] = None,
                 timeout: Optional[float] = None) -> None:
        self.backend = (backend or app_globals.PORT_PROBE_BACKEND).lower()
        if self.backend not in ("auto", "psutil", "lsof"):
            raise ValueError(f"Unknown port probe backend '{self.backend}'.")
        self.lsof_executable = lsof_executable or app_globals.LSOF_EXECUTABLE
        self.timeout = timeout or app_globals.OPERATION_DEADLINE_SECONDS

    def find_owners(self, port: int) -> Set[int]:
        """
        Returns the pids currently bound to `port`.

        :param port: The TCP port to inspect.
        :return: A set of pids, empty when nothing is bound.
        :raises ProbeError: If the socket table could not be read.
        """
        if self.backend == "lsof":
            owners = self._owners_from_lsof(port)
        elif self.backend == "psutil":
            owners = self._owners_from_psutil(port)
        else:
            try:
                owners = self._owners_from_psutil(port)
            except ProbeError as e:
                log.debug(f"psutil probe unavailable ({e.reason}), falling back to lsof.")
                owners = self._owners_from_lsof(port)

        owners.discard(os.getpid())
        log.debug(f"Port {port} owners: {sorted(owners) if owners else 'none'}")
        return owners

    def _owners_from_psutil(self, port: int) -> Set[int]:
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, PermissionError) as e:
            raise ProbeError(port, f"access denied reading the socket table ({e})") from e
        except psutil.Error as e:
            raise ProbeError(port, str(e)) from e

        owners: Set[int] = set()
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port:
                continue
            if conn.pid:
                owners.add(conn.pid)
            elif conn.status not in _CLOSED_STATES:
                # psutil hides the pid of sockets owned by other users.
                raise ProbeError(port, "a socket on this port belongs to a process we may not inspect")
        return owners

    def _owners_from_lsof(self, port: int) -> Set[int]:
        if shutil.which(self.lsof_executable) is None:
            raise ProbeError(port, f"'{self.lsof_executable}' is not installed")

        cmd = [self.lsof_executable, "-t", "-n", "-P", "-i", f":{port}"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise ProbeError(port, f"lsof did not answer within {self.timeout}s") from e
        except OSError as e:
            raise ProbeError(port, f"could not run lsof: {e}") from e

        # lsof exits with 1 when no process matches.
        if result.returncode not in (0, 1):
            raise ProbeError(port, f"lsof exited with {result.returncode}: {result.stderr.strip()}")

        owners: Set[int] = set()
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                owners.add(int(line))
        return owners
