import sys
import logging
import threading

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import portkeeper.local.console as console
from portkeeper.local import app_globals, api_client
from portkeeper.log.setup import setup_logging

CONSOLE_LOCK = threading.Lock()


def main() -> None:
    """The main entry point for the console application."""

    setup_logging(logging.INFO, log_file=app_globals.LOG_FILE_PATH)

    # Non-interactive mode for one-off commands
    if len(sys.argv) > 1:
        command, args = sys.argv[1].lower(), sys.argv[2:]
        if "--verbose" in args:
            console.toggle_verbose_logging()
            args.remove("--verbose")

        console.execute_command(command, args)
        return

    # Interactive mode
    print("--- Portkeeper Management Console ---")
    print("Type 'help' for a list of commands.")

    with CONSOLE_LOCK:
        status = "Running" if api_client.is_manager_running() else "Stopped"
        log.debug(f"Console startup - Manager is currently {status.lower()}.")

    print(f"Manager is currently {status}.")
    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                command_line = command_line_str.strip().split()
                if not command_line:
                    continue

                command, args = command_line[0].lower(), command_line[1:]
                log.debug(f"Received command: {command}, args: {args}")

                if console.execute_command(command, args):
                    break

        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                log.warning("\nExiting console.")
                break
        except Exception as e:
            with CONSOLE_LOCK:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)


if __name__ == "__main__":
    main()
    print("Exiting console application. See you next time!")
