import os
import sys
import stat
import psutil
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from portkeeper.local import app_globals
from portkeeper.local.errors import LaunchError

log = logging.getLogger(__name__)

# Tool directories a GUI-launched manager usually lacks on its PATH.
_COMMON_PATH_DIRS = [
    "~/.cargo/bin", "~/.bun/bin", "~/bin",
    "/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin",
    "/opt/homebrew/bin", "/usr/local/go/bin",
]


#* --- Process Status ---
def is_alive(pid: int) -> bool:
    """Returns True if `pid` exists and is not a zombie waiting to be reaped."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # It exists, we just may not inspect it.
        return True


def collect_process_tree(pid: int) -> Set[int]:
    """
    Returns `pid` together with all of its descendants.
    A launched command file usually forks the real server, so both must go.
    """
    try:
        proc = psutil.Process(pid)
        children = proc.children(recursive=True)
    except psutil.NoSuchProcess:
        return set()
    except psutil.AccessDenied:
        return {pid}
    return {pid} | {child.pid for child in children}


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific flags that detach the child from the manager."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def build_launch_env(extra_dirs: Optional[List[str]] = None) -> Dict[str, str]:
    """Returns the manager's environment with common tool directories prepended to PATH."""
    env = dict(os.environ)
    home = env.get("HOME") or str(Path.home())
    env["HOME"] = home

    additions = [os.path.expanduser(d) for d in list(extra_dirs or []) + _COMMON_PATH_DIRS]
    existing = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    seen: Set[str] = set()
    merged = []
    for directory in additions + existing:
        if directory not in seen:
            seen.add(directory)
            merged.append(directory)
    env["PATH"] = os.pathsep.join(merged)
    return env


def ensure_executable(command_path: Path) -> None:
    """Adds the execute bits to a command file. Failure is logged, not raised."""
    try:
        mode = command_path.stat().st_mode
        command_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        log.warning(f"Could not set execute permission on '{command_path}': {e}")


class ProcessLauncher:
    """
    Spawns an entry's command file as a detached child process.

    The child's stdout/stderr are appended to a per-entry log file (or discarded),
    never piped back into the manager.
    """

    def __init__(self, shell: Optional[str] = None, logs_dir: Optional[Path] = None,
                 capture_output: Optional[bool] = None, extra_path_dirs: Optional[List[str]] = None) -> None:
        self.shell = shell or app_globals.LAUNCH_SHELL
        self.logs_dir = Path(logs_dir or app_globals.LOGS_DIR)
        self.capture_output = app_globals.CAPTURE_CHILD_OUTPUT if capture_output is None else capture_output
        self.extra_path_dirs = app_globals.EXTRA_PATH_DIRS if extra_path_dirs is None else extra_path_dirs

    def log_path_for(self, entry_id: str) -> Path:
        return self.logs_dir / f"{entry_id}.log"

    def _resolve_cwd(self, command_path: Path, folder_path: Optional[str]) -> Path:
        if folder_path and Path(folder_path).expanduser().is_dir():
            return Path(folder_path).expanduser()
        return command_path.parent

    def launch(self, entry_id: str, command_path: str, folder_path: Optional[str] = None) -> subprocess.Popen:
        """
        Launches `command_path` for `entry_id`.

        :param entry_id: The entry the process belongs to; names its log file.
        :param command_path: The command file to run through the launch shell.
        :param folder_path: Optional working directory; defaults to the command file's directory.
        :return: The Popen handle of the new child.
        :raises LaunchError: If the file is missing or the process could not be spawned.
        """
        path = Path(command_path).expanduser()
        if not path.is_file():
            raise LaunchError(command_path, "command file not found")
        path = path.resolve()
        ensure_executable(path)

        cwd = self._resolve_cwd(path, folder_path)
        log.info(f"Starting '{path}' for entry {entry_id} (cwd: {cwd})...")

        output = None
        try:
            if self.capture_output:
                self.logs_dir.mkdir(parents=True, exist_ok=True)
                output = self.log_path_for(entry_id).open("ab")
            proc = subprocess.Popen(
                [self.shell, str(path)],
                stdin=subprocess.DEVNULL,
                stdout=output if output is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if output is not None else subprocess.DEVNULL,
                cwd=str(cwd),
                env=build_launch_env(self.extra_path_dirs),
                **_get_popen_creation_flags(),
            )
        except OSError as e:
            log.error(f"Failed to start '{path}' for entry {entry_id}: {e}")
            raise LaunchError(command_path, str(e)) from e
        finally:
            # The child holds its own descriptor now.
            if output is not None:
                output.close()

        log.info(f"Entry {entry_id} started with PID: {proc.pid}")
        return proc
