from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class PodStatus:
    name: str
    action: str  # apply|delete
    ok: bool
    result: str | None = None  # created|replaced|unchanged|deleted
    error: str | None = None
    source: str | None = None
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AgentState:
    """In-memory record of what the agent last did, for the status API.

    Written by the agent loop only; nothing here feeds back into
    reconciliation.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.started_at = utc_now()
        self.watch_dir: str | None = None
        self.watcher_error: str | None = None
        self.pods: dict[str, PodStatus] = {}  # pod name -> last outcome

    def record(self, st: PodStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.pods[st.name] = st

    def get(self, name: str) -> PodStatus | None:
        with self.lock:
            return self.pods.get(name)

    def list_pods(self) -> list[PodStatus]:
        with self.lock:
            return [self.pods[k] for k in sorted(self.pods)]

    def set_watcher_error(self, err: str) -> None:
        with self.lock:
            self.watcher_error = err

    def healthy(self) -> bool:
        with self.lock:
            return self.watcher_error is None
