import json
import logging
import requests
from typing import Any, Dict, List, Optional
from portkeeper.local import app_globals

log = logging.getLogger(__name__)


def _base_url(host: Optional[str] = None, port: Optional[int] = None) -> str:
    return f"http://{host or app_globals.API_HOST}:{port or app_globals.API_PORT}"


def _error_detail(error: requests.exceptions.RequestException) -> str:
    """Extracts the server's error message from a failed response, if there is one."""
    try:
        return error.response.json().get("error", "No details provided.")
    except (AttributeError, json.JSONDecodeError, TypeError, ValueError):
        return str(error)


def is_manager_running(host: Optional[str] = None, port: Optional[int] = None) -> bool:
    """Returns True if a manager answers on its health endpoint."""
    try:
        response = requests.get(f"{_base_url(host, port)}/api/health", timeout=2)
        response.raise_for_status()
        return True
    except requests.exceptions.RequestException:
        return False


def _post(path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    """
    Posts a request to the manager's API.

    :param path: The API path, e.g. '/api/stop-command'.
    :param payload: The JSON body.
    :return: The decoded JSON response, or None on failure (the reason is logged and printed).
    """
    url = f"{_base_url()}{path}"
    try:
        response = requests.post(url, json=payload or {}, timeout=app_globals.API_CLIENT_TIMEOUT)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        detail = _error_detail(e)
        log.error(f"Request to manager failed ({path}): {detail}")
        print(f"Error from manager: {detail}")
        return None
    except json.JSONDecodeError as e:
        log.error(f"Failed to decode response from manager ({path}): {e}")
        return None


def start_entry(entry_id: str, command_path: str) -> Optional[Dict[str, Any]]:
    return _post("/api/execute-command", {"portId": entry_id, "commandPath": command_path})


def stop_entry(entry_id: str, port: int) -> Optional[Dict[str, Any]]:
    return _post("/api/stop-command", {"portId": entry_id, "port": port})


def force_restart_entry(entry_id: str, port: int, command_path: str) -> Optional[Dict[str, Any]]:
    return _post("/api/force-restart-command", {"portId": entry_id, "port": port, "commandPath": command_path})


def refresh_entries() -> Optional[List[Dict[str, Any]]]:
    return _post("/api/ports/refresh")
