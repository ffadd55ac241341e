import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from portkeeper.local import app_globals
from portkeeper.local.entries import Entry
from portkeeper.local.errors import EntryStoreError

log = logging.getLogger(__name__)


def _parse_entries(raw: Any, source: Path) -> List[Entry]:
    """Converts a decoded JSON list into entries, skipping (and logging) malformed items."""
    if not isinstance(raw, list):
        raise EntryStoreError(f"'{source}' does not contain a list of entries.")

    entries: List[Entry] = []
    for item in raw:
        try:
            entries.append(Entry.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Skipping malformed entry in '{source}': {e}")
    return entries


class EntryStore:
    """Loads and saves the list of registered entries as a JSON file."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path or app_globals.PORTS_FILE_PATH)
        self._write_lock = threading.RLock()

    def load(self) -> List[Entry]:
        """
        Reads the entries from disk.

        :return: The stored entries; an empty list if the file is missing or unreadable.
        """
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            return _parse_entries(raw, self.path)
        except (ValueError, IOError, EntryStoreError) as e:
            log.error(f"Could not read entry file '{self.path}': {e}")
            return []

    def save(self, entries: List[Entry]) -> bool:
        """
        Atomically writes the entries to disk.

        :param entries: The full list of entries to persist.
        :return: True on success, False if the file could not be written.
        """
        temp_path = self.path.with_suffix(".tmp")
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with temp_path.open("w", encoding="utf-8") as f:
                    json.dump([entry.to_dict() for entry in entries], f, indent=2, ensure_ascii=False)
                temp_path.replace(self.path)
                return True
            except (IOError, OSError) as e:
                log.error(f"Failed to write entry file '{self.path}': {e}", exc_info=True)
                return False
            finally:
                temp_path.unlink(missing_ok=True)

    def find(self, entry_id: str) -> Optional[Entry]:
        return next((entry for entry in self.load() if entry.id == entry_id), None)

    def update_running(self, entry_id: str, is_running: bool) -> bool:
        """Refreshes the cached running flag of one stored entry. Returns False if it is unknown."""
        with self._write_lock:
            entries = self.load()
            for entry in entries:
                if entry.id == entry_id:
                    entry.is_running = is_running
                    return self.save(entries)
        return False

    def update_running_many(self, states: Dict[str, bool]) -> List[Entry]:
        """
        Writes freshly observed running flags back without clobbering concurrent edits.

        :param states: Running flag per entry id; ids no longer stored are ignored.
        :return: The stored entries after the update.
        """
        with self._write_lock:
            entries = self.load()
            for entry in entries:
                if entry.id in states:
                    entry.is_running = states[entry.id]
            self.save(entries)
            return entries


def import_entries(path: Path) -> List[Entry]:
    """
    Reads a user-supplied JSON file of entries.

    :param path: The file to import.
    :return: The entries found in the file.
    :raises EntryStoreError: If the file is missing or is not a JSON list.
    """
    path = Path(path)
    if not path.exists():
        raise EntryStoreError(f"Import file '{path}' does not exist.")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (ValueError, IOError) as e:
        raise EntryStoreError(f"Could not parse import file '{path}': {e}") from e
    return _parse_entries(raw, path)
