from __future__ import annotations

import argparse
import os
import signal
import sys
from threading import Event

from .agent import run_agent
from .entities import Pod, load_pod_file
from .errors import MadsError
from .logger import logger
from .orchestrator import Orchestrator
from .runtime import AgentState
from .settings import settings
from .watcher import FileWatcher


def _resolve_watch_dir(raw: str | None) -> str:
    if not raw:
        raise ValueError("watch-dir must be specified (--watch-dir or MADS_WATCH_DIR).")
    path = os.path.abspath(raw)
    if not os.path.exists(path):
        raise ValueError(f"{path} does not exist.")
    if not os.path.isdir(path):
        raise ValueError(f"{path} is not a directory.")
    return path


def cmd_apply(args: argparse.Namespace) -> int:
    # Parse everything first so a bad file applies nothing.
    pods: list[Pod] = []
    for fpath in args.files:
        pod = load_pod_file(os.path.abspath(fpath))
        if pod is None:
            raise MadsError(f"pod definition '{fpath}' is empty")
        pods.append(pod)

    orch = Orchestrator.from_settings(args.socket)
    for pod in pods:
        res = orch.apply(pod)
        print(f"pod/{res.pod} {res.action}")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    orch = Orchestrator.from_settings(args.socket)
    for name in args.pods:
        orch.delete(name)
        print(f"pod/{name} deleted")
    return 0


def cmd_agent(args: argparse.Namespace) -> int:
    watch_dir = _resolve_watch_dir(args.watch_dir)

    stop = Event()

    def _on_signal(signum, _frame) -> None:
        logger.info("Received signal, shutting down", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    orch = Orchestrator.from_settings(args.socket, cancel=stop)
    state = AgentState()
    if args.status_addr:
        from .status import serve_in_thread

        serve_in_thread(state, args.status_addr)

    watcher = FileWatcher(watch_dir, buffer=settings.event_buffer)
    return run_agent(watcher, orch, stop, state)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mads",
        description="Run pods in podman with consul services from a declarative definition.",
    )
    p.add_argument(
        "-s",
        "--socket",
        default=settings.podman_socket,
        help="Podman API socket path (env: MADS_PODMAN_SOCKET)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", aliases=["a"], help="Apply pod definition files")
    s_apply.add_argument("files", nargs="+", metavar="FILE")
    s_apply.set_defaults(func=cmd_apply)

    s_delete = sub.add_parser("delete", aliases=["d"], help="Delete pods by name and deregister their services")
    s_delete.add_argument("pods", nargs="+", metavar="POD")
    s_delete.set_defaults(func=cmd_delete)

    s_agent = sub.add_parser("agent", aliases=["ag"], help="Watch a directory of pod definitions and apply them")
    s_agent.add_argument("-w", "--watch-dir", default=settings.watch_dir, help="env: MADS_WATCH_DIR")
    s_agent.add_argument("--status-addr", default=settings.status_addr, help="Serve status API on HOST:PORT")
    s_agent.set_defaults(func=cmd_agent)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.socket:
        args.socket = os.path.expandvars(args.socket)
    try:
        return args.func(args)
    except (MadsError, ValueError, OSError) as e:
        logger.error("Command failed", command=args.cmd, err=str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
