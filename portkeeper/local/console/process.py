import logging
from typing import List
from portkeeper.local.persistence import EntryStore
from portkeeper.local.console.handler import (
    add_entry, display_status, handle_logs_command, import_from_file, list_entries,
    print_help, remove_entry, restart_entry, start_entry, stop_entry, toggle_verbose_logging,
)

log = logging.getLogger(__name__)


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'add').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    store = EntryStore()
    command_map = {
        "list": lambda: list_entries(store),
        "add": lambda: add_entry(store, args),
        "remove": lambda: remove_entry(store, args),
        "import": lambda: import_from_file(store, args),
        "start": lambda: start_entry(store, args),
        "stop": lambda: stop_entry(store, args),
        "restart": lambda: restart_entry(store, args),
        "status": lambda: display_status(store, args),
        "refresh": lambda: display_status(store, []),
        "logs": lambda: handle_logs_command(store, args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command == "exit":
        return True

    if command == "serve":
        # Imported here so plain entry management does not pull in the web stack.
        from portkeeper.web.setup import serve
        serve()
    elif command in command_map:
        command_map[command]()
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")

    return False
