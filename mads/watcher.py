"""Pod definition directory watcher.

Uses watchdog (inotify on Linux, FSEvents on macOS) for event-driven
processing. On startup every file already in the directory is applied.

On Linux the inotify observer runs with full move events: a file renamed
out of the directory arrives as a move with an empty destination rather
than as a delete, so its pod is left alone.
"""

from __future__ import annotations

import os
import queue
import sys
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event, Thread
from typing import Any

from watchdog.events import (
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .entities import Pod, load_pod_file
from .errors import WatchError
from .logger import logger
from .settings import settings

APPLY = "apply"
DELETE = "delete"

POLL_INTERVAL_S = 0.5


@dataclass(frozen=True)
class PodEvent:
    kind: str  # apply|delete
    name: str
    pod: Pod | None = None
    source: str | None = None  # file the event came from


def default_observer() -> BaseObserver:
    if sys.platform.startswith("linux"):
        from watchdog.observers.inotify import InotifyObserver

        return InotifyObserver(generate_full_events=True)
    return Observer()


class _ForwardingHandler(FileSystemEventHandler):
    """Hands raw notifications from the observer thread to the pipeline thread."""

    def __init__(self, inbox: queue.Queue[FileSystemEvent]) -> None:
        super().__init__()
        self._inbox = inbox

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._inbox.put(event)


class FileWatcher:
    """Turns changes in one directory into apply/delete pod events.

    The path → pod map is only touched from the thread executing `run`.
    Consumers read `events` (bounded, ordered) and `errors` (a fatal error
    ends the pipeline).
    """

    def __init__(
        self,
        path: str,
        buffer: int | None = None,
        loader: Callable[[str], Pod | None] = load_pod_file,
        observer_factory: Callable[[], Any] = default_observer,
    ):
        self.path = os.path.abspath(path)
        self.events: queue.Queue[PodEvent] = queue.Queue(maxsize=buffer or settings.event_buffer)
        self.errors: queue.Queue[Exception] = queue.Queue(maxsize=1)
        self._loader = loader
        self._observer_factory = observer_factory
        self._inbox: queue.Queue[FileSystemEvent] = queue.Queue()
        self._pods: dict[str, Pod] = {}
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._run_forwarding_errors, name="mads-watcher", daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout=timeout_s)

    def _run_forwarding_errors(self) -> None:
        try:
            self.run(self._stop)
        except Exception as e:
            logger.error("File watcher stopped", path=self.path, err=str(e))
            self.errors.put(e)

    def run(self, stop: Event) -> None:
        """Watch until `stop` is set. Parse and watch failures propagate."""
        observer = self._observer_factory()
        try:
            observer.schedule(_ForwardingHandler(self._inbox), self.path, recursive=False)
            observer.start()
        except OSError as e:
            raise WatchError(f"could not watch directory '{self.path}': {e}") from e
        logger.info("Watching pod directory", path=self.path)

        try:
            # The observer is already running, so nothing written during the
            # sweep is missed; at worst a file is applied twice.
            count = self.sweep(stop)
            logger.info("Applied existing pod files", path=self.path, count=count)

            while not stop.is_set():
                try:
                    event = self._inbox.get(timeout=POLL_INTERVAL_S)
                except queue.Empty:
                    self._check_observer(observer)
                    continue
                self.dispatch(event, stop)
        finally:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=POLL_INTERVAL_S * 4)

    def _check_observer(self, observer: Any) -> None:
        if not observer.is_alive():
            raise WatchError(f"file system observer for '{self.path}' died")
        # An invalidated watch stops its emitter while the observer thread
        # carries on, delivering nothing.
        for emitter in list(observer.emitters):
            if not emitter.is_alive():
                raise WatchError(f"watch on '{self.path}' stopped delivering events")

    def sweep(self, stop: Event) -> int:
        """Emit an apply for every regular file directly in the directory."""
        try:
            names = sorted(e.name for e in os.scandir(self.path) if e.is_file())
        except OSError as e:
            raise WatchError(f"could not read directory '{self.path}': {e}") from e
        applied = 0
        for name in names:
            if stop.is_set():
                break
            if self._apply_file(os.path.join(self.path, name), stop):
                applied += 1
        return applied

    def dispatch(self, event: FileSystemEvent, stop: Event) -> None:
        src = os.fsdecode(event.src_path)
        if src == self.path and isinstance(event, (DirDeletedEvent, DirMovedEvent, FileDeletedEvent, FileMovedEvent)):
            # inotify reports the watched directory going away without the
            # directory flag, hence the File* variants
            raise WatchError(f"watched directory '{self.path}' was removed or moved")

        if isinstance(event, FileMovedEvent):
            # A rename must not delete the pod: forget the old path and apply
            # the new one, which is a no-op against the running pod. Either
            # side is empty when the other lies outside the directory.
            self._pods.pop(src, None)
            dest = os.fsdecode(event.dest_path or "")
            if dest and self._in_directory(dest):
                self._apply_file(dest, stop)
        elif isinstance(event, (FileCreatedEvent, FileModifiedEvent)):
            path = os.fsdecode(event.src_path)
            if self._in_directory(path):
                self._apply_file(path, stop)
        elif isinstance(event, FileDeletedEvent):
            path = os.fsdecode(event.src_path)
            pod = self._pods.pop(path, None)
            if pod is None:
                return
            self._emit(PodEvent(kind=DELETE, name=pod.name, source=path), stop)

    def tracked(self) -> dict[str, str]:
        """Path → pod name for every file currently tracked."""
        return {path: pod.name for path, pod in self._pods.items()}

    def _in_directory(self, path: str) -> bool:
        return os.path.dirname(path) == self.path

    def _apply_file(self, path: str, stop: Event) -> bool:
        if not os.path.isfile(path):
            # gone again before we got to it; its delete/move event follows
            return False
        pod = self._loader(path)
        if pod is None:
            logger.debug("Skipping empty pod file", path=path)
            return False
        self._pods[path] = pod
        self._emit(PodEvent(kind=APPLY, name=pod.name, pod=pod, source=path), stop)
        return True

    def _emit(self, event: PodEvent, stop: Event) -> None:
        # Block while the consumer is behind, but keep noticing `stop`.
        while True:
            try:
                self.events.put(event, timeout=POLL_INTERVAL_S)
                return
            except queue.Full:
                if stop.is_set():
                    return
