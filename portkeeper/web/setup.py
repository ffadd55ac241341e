import asyncio
import logging
import setproctitle
from typing import Optional
from hypercorn.asyncio import serve as hypercorn_serve
from hypercorn.config import Config

from portkeeper.local import app_globals
from portkeeper.local.errors import OperationTimeout, ProbeError
from portkeeper.local.persistence import EntryStore
from portkeeper.local.supervisor import LifecycleManager
from portkeeper.web.server import create_app

log = logging.getLogger(__name__)


def _build_hypercorn_config(host: str, port: int) -> Config:
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = logging.getLogger("hypercorn.access")
    config.errorlog = logging.getLogger("hypercorn.error")
    return config


def check_if_already_running(manager: LifecycleManager, port: int) -> bool:
    """
    Checks if something already serves the API port.

    :return: True if the port is taken, False if it is free or could not be inspected.
    """
    try:
        if manager.check_status(port):
            log.error(f"Port {port} is already in use. Is another manager running?")
            return True
    except (ProbeError, OperationTimeout) as e:
        log.warning(f"Could not verify that port {port} is free: {e}")
    return False


def serve(host: Optional[str] = None, port: Optional[int] = None) -> bool:
    """
    Runs the lifecycle manager behind its HTTP API until interrupted.

    :param host: Bind address, defaults to API_HOST.
    :param port: Bind port, defaults to API_PORT.
    :return: False if the server could not start, True after a clean shutdown.
    """
    host = host or app_globals.API_HOST
    port = port or app_globals.API_PORT

    manager = LifecycleManager()
    if check_if_already_running(manager, port):
        manager.shutdown()
        return False

    setproctitle.setproctitle(app_globals.PROCESS_TITLE)
    store = EntryStore()
    refreshed = manager.refresh(store.load())
    entries = store.update_running_many({entry.id: entry.is_running for entry in refreshed})
    log.info(f"Loaded {len(entries)} entries, {sum(e.is_running for e in entries)} currently running.")

    app = create_app(manager, store)
    log.info(f"Portkeeper API starting on http://{host}:{port}")
    try:
        asyncio.run(hypercorn_serve(app, _build_hypercorn_config(host, port)))
    except KeyboardInterrupt:
        log.info("API server interrupted by user.")
    finally:
        manager.shutdown(terminate_children=app_globals.TERMINATE_CHILDREN_ON_EXIT)
        log.info("Portkeeper API stopped.")
    return True
