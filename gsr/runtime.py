from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class WatchStatus:
    connected: bool = False
    last_event_time: float | None = None
    last_resync_at: float | None = None
    reconnects: int = 0


class RuntimeState:
    """In-memory, process-scoped state shared by the ingest and apply paths.

    Created at process start and dropped at shutdown; nothing here is needed
    to recover after a restart.
    """

    def __init__(self, expected_delete_ttl_s: float = 300.0) -> None:
        self.lock = Lock()
        self.expected_delete_ttl_s = expected_delete_ttl_s
        self._expected_deletes: dict[str, float] = {}  # uid -> deadline
        self._deployment_locks: dict[str, Lock] = {}
        self.watch = WatchStatus()

    def expect_delete(self, uid: str) -> None:
        """Mark a UID as about to be deleted by us, so its watch event is not drift."""
        with self.lock:
            self._expected_deletes[uid] = time.monotonic() + self.expected_delete_ttl_s

    def forget_delete(self, uid: str) -> None:
        with self.lock:
            self._expected_deletes.pop(uid, None)

    def consume_expected_delete(self, uid: str) -> bool:
        with self.lock:
            now = time.monotonic()
            for k in [k for k, deadline in self._expected_deletes.items() if deadline < now]:
                del self._expected_deletes[k]
            return self._expected_deletes.pop(uid, None) is not None

    def deployment_lock(self, deployment_id: str) -> Lock:
        with self.lock:
            lk = self._deployment_locks.get(deployment_id)
            if lk is None:
                lk = Lock()
                self._deployment_locks[deployment_id] = lk
            return lk

    def mark_watch(self, connected: bool, event_time: float | None = None) -> None:
        with self.lock:
            if connected and not self.watch.connected:
                self.watch.reconnects += 1
            self.watch.connected = connected
            if event_time is not None:
                self.watch.last_event_time = max(self.watch.last_event_time or 0.0, event_time)

    def mark_resync(self) -> None:
        with self.lock:
            self.watch.last_resync_at = time.time()

    def watch_status(self) -> WatchStatus:
        with self.lock:
            return WatchStatus(**vars(self.watch))
