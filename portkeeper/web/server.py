import json
import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

from starlette.routing import Route
from starlette.requests import Request
from starlette.middleware import Middleware
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.responses import JSONResponse, Response

from portkeeper.local.entries import Entry, is_valid_port
from portkeeper.local.errors import LaunchError, OperationTimeout, ProbeError
from portkeeper.local.persistence import EntryStore
from portkeeper.local.supervisor import LifecycleManager
from portkeeper.web.middleware import LoopbackOnlyMiddleware, SecurityHeadersMiddleware

log = logging.getLogger("portkeeper.api")


# --- Helpers ---
async def _run(fn: Callable[..., Any], *args: Any) -> Any:
    """Runs blocking manager/store calls off the event loop."""
    return await asyncio.get_running_loop().run_in_executor(None, partial(fn, *args))


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")


async def _read_object(request: Request) -> Dict[str, Any]:
    payload = await _read_json(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return payload


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value:
        raise HTTPException(status_code=400, detail=f"Missing {key}")
    return value


def _require_port(payload: Dict[str, Any]) -> int:
    value = payload.get("port")
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if not is_valid_port(value):
        raise HTTPException(status_code=400, detail="Missing or invalid port")
    return value


def _manager(request: Request) -> LifecycleManager:
    return request.app.state.manager


def _store(request: Request) -> EntryStore:
    return request.app.state.store


# --- Entry Handlers ---
async def health(request: Request) -> Response:
    managed = [process.to_dict() for process in _manager(request).registry.snapshot()]
    return JSONResponse({"status": "ok", "managed": managed})


async def list_ports(request: Request) -> Response:
    entries = await _run(_store(request).load)
    return JSONResponse([entry.to_dict() for entry in entries])


async def save_ports(request: Request) -> Response:
    payload = await _read_json(request)
    if not isinstance(payload, list):
        raise HTTPException(status_code=400, detail="Expected a list of entries")
    try:
        entries = [Entry.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid entry: {e}")

    if not await _run(_store(request).save, entries):
        return JSONResponse({"success": False, "error": "Could not write entry file"}, status_code=500)
    return JSONResponse({"success": True})


async def refresh_ports(request: Request) -> Response:
    store = _store(request)
    entries = await _run(store.load)
    entries = await _run(_manager(request).refresh, entries)
    entries = await _run(store.update_running_many, {entry.id: entry.is_running for entry in entries})
    return JSONResponse([entry.to_dict() for entry in entries])


# --- Lifecycle Handlers ---
async def execute_command(request: Request) -> Response:
    payload = await _read_object(request)
    entry_id = _require_str(payload, "portId")
    command_path = _require_str(payload, "commandPath")

    store = _store(request)
    entry: Optional[Entry] = await _run(store.find, entry_id)
    port = entry.port if entry else None
    folder_path = entry.folder_path if entry else None

    managed = await _run(_manager(request).start, entry_id, command_path, port, folder_path)
    await _run(store.update_running, entry_id, True)
    return JSONResponse({"success": True, "portId": entry_id, "pid": managed.pid,
                         "message": f"Started process with PID: {managed.pid}"})


async def stop_command(request: Request) -> Response:
    payload = await _read_object(request)
    entry_id = _require_str(payload, "portId")
    port = _require_port(payload)

    report = await _run(_manager(request).stop, entry_id, port)
    if not report.partial:
        await _run(_store(request).update_running, entry_id, False)

    if report.killed:
        message = f"Stopped {len(report.killed)} process(es) with PIDs: {report.killed}"
    else:
        message = f"No process running on port {port} (already stopped)"
    return JSONResponse({"success": True, "killedPids": report.killed,
                         "failedPids": report.failed_pids, "message": message})


async def force_restart_command(request: Request) -> Response:
    payload = await _read_object(request)
    entry_id = _require_str(payload, "portId")
    port = _require_port(payload)
    command_path = _require_str(payload, "commandPath")

    store = _store(request)
    entry: Optional[Entry] = await _run(store.find, entry_id)
    folder_path = entry.folder_path if entry else None

    managed = await _run(_manager(request).force_restart, entry_id, port, command_path, folder_path)
    await _run(store.update_running, entry_id, True)
    return JSONResponse({"success": True, "portId": entry_id, "pid": managed.pid,
                         "message": f"Restarted with PID: {managed.pid}"})


async def check_port_status(request: Request) -> Response:
    payload = await _read_object(request)
    port = _require_port(payload)
    running = await _run(_manager(request).check_status, port)
    return JSONResponse({"running": running})


# --- Error Handlers ---
async def http_error(request: Request, exc: HTTPException) -> Response:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


async def launch_error(request: Request, exc: LaunchError) -> Response:
    log.error(f"{request.url.path}: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=500)


async def probe_error(request: Request, exc: ProbeError) -> Response:
    log.error(f"{request.url.path}: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=503)


async def timeout_error(request: Request, exc: OperationTimeout) -> Response:
    log.error(f"{request.url.path}: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=504)


routes = [
    Route("/api/health", endpoint=health, methods=["GET"]),
    Route("/api/ports", endpoint=list_ports, methods=["GET"]),
    Route("/api/ports", endpoint=save_ports, methods=["POST"]),
    Route("/api/ports/refresh", endpoint=refresh_ports, methods=["POST"]),
    Route("/api/execute-command", endpoint=execute_command, methods=["POST"]),
    Route("/api/stop-command", endpoint=stop_command, methods=["POST"]),
    Route("/api/force-restart-command", endpoint=force_restart_command, methods=["POST"]),
    Route("/api/check-port-status", endpoint=check_port_status, methods=["POST"]),
]


def create_app(manager: LifecycleManager, store: EntryStore,
               allowed_hosts: Optional[Iterable[str]] = None) -> Starlette:
    """
    Builds the HTTP API around a lifecycle manager and an entry store.

    :param manager: The manager that owns the process registry.
    :param store: Where entries are loaded from and their running flag is cached.
    :param allowed_hosts: Client addresses allowed to call the API. Defaults to loopback.
    """
    middleware: List[Middleware] = [
        Middleware(LoopbackOnlyMiddleware, allowed_hosts=allowed_hosts),
        Middleware(SecurityHeadersMiddleware),
    ]
    exception_handlers = {
        HTTPException: http_error,
        LaunchError: launch_error,
        ProbeError: probe_error,
        OperationTimeout: timeout_error,
    }
    app = Starlette(debug=False, routes=routes, middleware=middleware, exception_handlers=exception_handlers)
    app.state.manager = manager
    app.state.store = store
    return app
