"""
This module contains the default configuration settings for Portkeeper.
It defines paths, API settings, process lifecycle timings and launch options.
Every value can be overridden through the environment or a .env file.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
DATA_DIR = pathlib.Path(os.getenv("PORTKEEPER_DATA_DIR", pathlib.Path.home() / ".portkeeper")).expanduser()
LOGS_DIR = DATA_DIR / "logs"

#* --- Application File Paths ---
PORTS_FILE_PATH = DATA_DIR / "ports.json"
OVERRIDES_JSON_PATH = DATA_DIR / "overrides.json"
LOG_FILE_PATH = LOGS_DIR / "portkeeper.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

#* --- HTTP API Settings ---
API_HOST = os.getenv("PORTKEEPER_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("PORTKEEPER_API_PORT", "9000"))
API_CLIENT_TIMEOUT = 30  # seconds, must exceed OPERATION_DEADLINE_SECONDS
ALLOWED_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}

#* --- Lifecycle Timings ---
GRACE_WINDOW_SECONDS = 0.2         # between SIGTERM and the liveness probe
SETTLE_WINDOW_SECONDS = 0.1        # after an escalated SIGKILL
FORCE_SETTLE_WINDOW_SECONDS = 0.5  # after a force-terminate batch
OPERATION_DEADLINE_SECONDS = float(os.getenv("PORTKEEPER_OPERATION_DEADLINE", "10"))
MAX_WORKERS = int(os.getenv("PORTKEEPER_MAX_WORKERS", "16"))

#* --- Port Probe ---
# 'auto' tries psutil first and falls back to lsof when access is denied.
PORT_PROBE_BACKEND = os.getenv("PORTKEEPER_PORT_PROBE", "auto").lower()
LSOF_EXECUTABLE = os.getenv("PORTKEEPER_LSOF", "lsof")

#* --- Launch Settings ---
LAUNCH_SHELL = os.getenv("PORTKEEPER_SHELL", "bash")
EXTRA_PATH_DIRS = [p for p in os.getenv("PORTKEEPER_EXTRA_PATH", "").split(os.pathsep) if p]
CAPTURE_CHILD_OUTPUT = _env_flag("PORTKEEPER_CAPTURE_OUTPUT", "True")
TERMINATE_CHILDREN_ON_EXIT = _env_flag("PORTKEEPER_TERMINATE_ON_EXIT", "False")

#* --- Process Title ---
PROCESS_TITLE = "Portkeeper - Manager"

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "API_PORT",
    "OPERATION_DEADLINE_SECONDS", "MAX_WORKERS",
    "PORT_PROBE_BACKEND", "LAUNCH_SHELL", "EXTRA_PATH_DIRS",
    "CAPTURE_CHILD_OUTPUT", "TERMINATE_CHILDREN_ON_EXIT",
}
