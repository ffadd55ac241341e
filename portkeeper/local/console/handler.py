import time
import logging
from pathlib import Path
from typing import List, Optional
from portkeeper.local import app_globals, api_client
from portkeeper.local.entries import Entry, detect_port, is_valid_port
from portkeeper.local.errors import EntryStoreError, ProbeError
from portkeeper.local.persistence import EntryStore, import_entries
from portkeeper.local.supervisor import PortProbe
from portkeeper.log import set_console_level

log = logging.getLogger(__name__)

LOG_HISTORY_COUNT = 50


def _find_entry(store: EntryStore, args: List[str], usage: str) -> Optional[Entry]:
    if not args:
        print(f"Usage: {usage}")
        return None
    entry = store.find(args[0])
    if entry is None:
        print(f"No entry with id '{args[0]}'. Use 'list' to see registered entries.")
    return entry


def _require_manager() -> bool:
    if api_client.is_manager_running():
        return True
    print("\nERROR: The manager is not running.")
    print("Start it with the 'serve' command (in another terminal) first.\n")
    return False


def _print_entries(entries: List[Entry]) -> None:
    if not entries:
        print("\nNo entries registered. Use 'add <command-file>' to register one.\n")
        return
    print(f"\n{'ID':<15} {'NAME':<24} {'PORT':<6} {'STATUS':<8} COMMAND")
    for entry in entries:
        status = "RUNNING" if entry.is_running else "STOPPED"
        print(f"{entry.id:<15} {entry.name[:24]:<24} {entry.port:<6} {status:<8} {entry.command_path or '-'}")
    print()


#* --- Entry management ---
def list_entries(store: EntryStore) -> None:
    """Shows the registered entries with their cached running state."""
    _print_entries(store.load())


def add_entry(store: EntryStore, args: List[str]) -> Optional[Entry]:
    """
    Registers a command file as a new entry.

    Usage: add <command-file> [name] [--port N]. The port is detected from the
    file when not given, and asked for interactively as a last resort.
    """
    port: Optional[int] = None
    if "--port" in args:
        index = args.index("--port")
        try:
            port = int(args[index + 1])
        except (IndexError, ValueError):
            print("Usage: add <command-file> [name] [--port N]")
            return None
        args = args[:index] + args[index + 2:]

    if not args:
        print("Usage: add <command-file> [name] [--port N]")
        return None

    command_path = Path(args[0]).expanduser().resolve()
    if not command_path.is_file():
        print(f"File not found: {command_path}")
        return None
    name = " ".join(args[1:]) or command_path.stem

    if port is None:
        port = detect_port(command_path)
        if port is not None:
            print(f"Detected port {port} in '{command_path.name}'.")
    if port is None:
        try:
            answer = input("Could not detect a port. Port number: ").strip()
        except EOFError:
            answer = ""
        port = int(answer) if answer.isdigit() else None
    if not is_valid_port(port):
        print("A valid port number (1-65535) is required.")
        return None

    entries = store.load()
    existing = next((e for e in entries if e.port == port), None)
    if existing:
        print(f"Warning: port {port} is already used by '{existing.name}' ({existing.id}).")

    entry = Entry.create(name=name, port=port, command_path=str(command_path),
                         folder_path=str(command_path.parent))
    entries.append(entry)
    if not store.save(entries):
        print("Failed to save entries. Check logs for details.")
        return None
    print(f"Added '{entry.name}' on port {entry.port} (id {entry.id}).")
    return entry


def remove_entry(store: EntryStore, args: List[str]) -> None:
    """Unregisters an entry. Its process, if any, is left alone."""
    entry = _find_entry(store, args, "remove <id>")
    if entry is None:
        return
    entries = [e for e in store.load() if e.id != entry.id]
    if store.save(entries):
        print(f"Removed '{entry.name}' ({entry.id}).")


def import_from_file(store: EntryStore, args: List[str]) -> None:
    """Merges entries from a JSON file, skipping ids that are already registered."""
    if not args:
        print("Usage: import <file.json>")
        return
    try:
        imported = import_entries(Path(args[0]).expanduser())
    except EntryStoreError as e:
        print(f"Import failed: {e}")
        return

    entries = store.load()
    known_ids = {e.id for e in entries}
    new_entries = [e for e in imported if e.id not in known_ids]
    for entry in new_entries:
        entry.is_running = False
    if store.save(entries + new_entries):
        print(f"Imported {len(new_entries)} entries ({len(imported) - len(new_entries)} already present).")


#* --- Lifecycle commands (through the running manager) ---
def start_entry(store: EntryStore, args: List[str]) -> None:
    entry = _find_entry(store, args, "start <id>")
    if entry is None or not _require_manager():
        return
    if not entry.command_path:
        print(f"Entry '{entry.name}' has no command file.")
        return
    result = api_client.start_entry(entry.id, entry.command_path)
    if result:
        print(f"Started '{entry.name}' with PID {result['pid']}. Logs: {app_globals.LOGS_DIR / (entry.id + '.log')}")


def stop_entry(store: EntryStore, args: List[str]) -> None:
    entry = _find_entry(store, args, "stop <id>")
    if entry is None or not _require_manager():
        return
    result = api_client.stop_entry(entry.id, entry.port)
    if result:
        print(result["message"])
        if result.get("failedPids"):
            print(f"Could not terminate PIDs: {result['failedPids']}")


def restart_entry(store: EntryStore, args: List[str]) -> None:
    entry = _find_entry(store, args, "restart <id>")
    if entry is None or not _require_manager():
        return
    if not entry.command_path:
        print(f"Entry '{entry.name}' has no command file.")
        return
    result = api_client.force_restart_entry(entry.id, entry.port, entry.command_path)
    if result:
        print(f"Restarted '{entry.name}' with PID {result['pid']}.")


def display_status(store: EntryStore, args: List[str]) -> None:
    """
    Shows live port status. Goes through the manager when it runs so the stored
    cache is refreshed too; otherwise probes the ports directly.
    """
    if api_client.is_manager_running():
        refreshed = api_client.refresh_entries()
        if refreshed is None:
            return
        entries = [Entry.from_dict(item) for item in refreshed]
    else:
        entries = store.load()
        probe = PortProbe()
        for entry in entries:
            try:
                entry.is_running = bool(probe.find_owners(entry.port))
            except ProbeError as e:
                log.warning(f"Could not check port {entry.port}: {e}")
        entries = store.update_running_many({entry.id: entry.is_running for entry in entries})

    if args:
        entries = [e for e in entries if e.id == args[0]]
    _print_entries(entries)


def handle_logs_command(store: EntryStore, args: List[str]) -> None:
    """Prints the tail of an entry's output log and follows it until Ctrl+C."""
    entry = _find_entry(store, args, "logs <id>")
    if entry is None:
        return
    log_path = app_globals.LOGS_DIR / f"{entry.id}.log"
    if not log_path.exists():
        print(f"No output logged for '{entry.name}' yet.")
        return

    print(f"\n--- Last {LOG_HISTORY_COUNT} lines of {log_path} (Ctrl+C to stop) ---")
    try:
        with log_path.open("r", encoding="utf-8", errors="replace") as f:
            for line in f.readlines()[-LOG_HISTORY_COUNT:]:
                print(line, end="")
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.5)
                    continue
                print(line, end="")
    except KeyboardInterrupt:
        print("\n--- Log tailing stopped. Returning to console. ---")


def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    app_globals.VERBOSE_LOGGING = not app_globals.VERBOSE_LOGGING
    new_level = logging.DEBUG if app_globals.VERBOSE_LOGGING else logging.INFO

    status = "ON" if app_globals.VERBOSE_LOGGING else "OFF"
    if set_console_level(new_level):
        print(f"Verbose console logging is now {status}.")
    else:
        print("Could not find console handler to modify level.")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  serve                          - Run the manager and its HTTP API (blocks).")
    print("  list                           - Show registered entries.")
    print("  add <file> [name] [--port N]   - Register a command file.")
    print("  remove <id>                    - Unregister an entry.")
    print("  import <file.json>             - Import entries from a JSON file.")
    print("  start <id>                     - Start an entry's server (manager must run).")
    print("  stop <id>                      - Stop everything bound to an entry's port.")
    print("  restart <id>                   - Force kill the port and start again.")
    print("  status [id]                    - Check which ports are currently in use.")
    print("  refresh                        - Re-check every port and update the stored status.")
    print("  logs <id>                      - Show and follow an entry's output log.")
    print("  verbose                        - Toggle detailed DEBUG log output in the console.")
    print("  exit                           - Exit the management console.")
    print()
