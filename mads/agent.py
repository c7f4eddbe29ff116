from __future__ import annotations

import queue
from threading import Event

from .errors import MadsError
from .logger import logger
from .orchestrator import Orchestrator
from .runtime import AgentState, PodStatus
from .watcher import APPLY, DELETE, FileWatcher, PodEvent


def handle_event(orch: Orchestrator, ev: PodEvent, state: AgentState | None = None) -> bool:
    """Reconcile one pod event. Failures are logged, never raised."""
    status = PodStatus(name=ev.name, action=ev.kind, ok=False, source=ev.source)
    try:
        if ev.kind == APPLY and ev.pod is not None:
            logger.info("Applying pod", pod=ev.name)
            status.result = orch.apply(ev.pod).action
        elif ev.kind == DELETE:
            logger.info("Deleting pod", pod=ev.name)
            orch.delete(ev.name)
            status.result = "deleted"
        else:
            logger.warning("Ignoring malformed pod event", pod=ev.name, kind=ev.kind)
            return False
        status.ok = True
    except MadsError as e:
        status.error = str(e)
        logger.error(f"Could not {ev.kind} pod", pod=ev.name, err=str(e))
    except Exception as e:
        status.error = f"{type(e).__name__}: {e}"
        logger.exception(f"Unexpected error during {ev.kind}", pod=ev.name)
    if state is not None:
        state.record(status)
    return status.ok


def run_agent(
    watcher: FileWatcher,
    orch: Orchestrator,
    stop: Event,
    state: AgentState | None = None,
) -> int:
    """Feed watcher events to the orchestrator one at a time until `stop`.

    Returns a process exit code: 0 after a requested stop, 1 when the watcher
    failed.
    """
    if state is not None:
        state.watch_dir = watcher.path
    watcher.start()
    try:
        while not stop.is_set():
            try:
                ev = watcher.events.get(timeout=0.5)
            except queue.Empty:
                try:
                    err = watcher.errors.get_nowait()
                except queue.Empty:
                    continue
                if state is not None:
                    state.set_watcher_error(str(err))
                logger.error("Pod file watcher failed, stopping agent", err=str(err))
                return 1
            handle_event(orch, ev, state)
    finally:
        watcher.stop()
    logger.info("Agent stopped")
    return 0
