import queue
import logging
import threading
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitEvent:
    entry_id: str
    pid: int
    returncode: Optional[int]


ExitSubscriber = Callable[[ExitEvent], None]


class ExitChannel:
    """
    Delivers exit notifications for launched children.

    One waiter thread per child blocks on `Popen.wait()` (which also reaps the
    zombie) and posts an ExitEvent; a single dispatcher thread hands events to
    subscribers in order.
    """

    def __init__(self) -> None:
        self._events: "queue.Queue[Optional[ExitEvent]]" = queue.Queue()
        self._subscribers: List[ExitSubscriber] = []
        self._subscribers_lock = threading.Lock()
        self._closed = threading.Event()
        self._dispatcher = threading.Thread(target=self._dispatch, daemon=True, name="ExitDispatcherThread")
        self._dispatcher.start()

    def subscribe(self, callback: ExitSubscriber) -> None:
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def watch(self, entry_id: str, proc: subprocess.Popen) -> None:
        """Starts waiting for `proc` to exit in the background."""
        if self._closed.is_set():
            return
        threading.Thread(
            target=self._wait_for_exit,
            args=(entry_id, proc),
            daemon=True,
            name=f"ExitWaiter-{entry_id}-{proc.pid}",
        ).start()

    def publish(self, event: ExitEvent) -> None:
        if not self._closed.is_set():
            self._events.put(event)

    def close(self, timeout: float = 2.0) -> None:
        """Stops the dispatcher. Waiter threads are daemons and die with the manager."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._events.put(None)
        self._dispatcher.join(timeout=timeout)

    def _wait_for_exit(self, entry_id: str, proc: subprocess.Popen) -> None:
        returncode = proc.wait()
        log.debug(f"Child {proc.pid} of entry {entry_id} exited with code {returncode}.")
        self.publish(ExitEvent(entry_id=entry_id, pid=proc.pid, returncode=returncode))

    def _dispatch(self) -> None:
        while True:
            event = self._events.get()
            if event is None:
                break
            with self._subscribers_lock:
                subscribers = list(self._subscribers)
            for callback in subscribers:
                try:
                    callback(event)
                except Exception as e:
                    log.error(f"Exit subscriber failed for entry {event.entry_id}: {e}", exc_info=True)
        log.debug("Exit dispatcher thread has stopped.")
