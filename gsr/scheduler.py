from __future__ import annotations

import logging
import random
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from threading import BoundedSemaphore, Event, Lock, Thread

from . import db
from .applier import FailureClass, LeaseLost
from .db import EventSource, EventType, LifecycleState
from .reconciler import ReconcileOutcome, Reconciler
from .runtime import RuntimeState
from .settings import settings

logger = logging.getLogger(__name__)


class ScheduleState(str, Enum):
    IDLE = "Idle"
    QUEUED = "Queued"
    RUNNING = "Running"
    QUEUED_WITH_BACKOFF = "QueuedWithBackoff"
    DEAD = "Dead"


def backoff_delay(attempts: int, base_s: float, max_s: float, jitter: bool = True) -> float:
    """Exponential backoff for the n-th consecutive failure (n >= 1), capped at ``max_s``."""
    delay = min(max_s, base_s * (2 ** max(0, attempts - 1)))
    if jitter:
        delay = random.uniform(delay / 2, delay)
    return delay


def schedule_state(deployment_id: str) -> ScheduleState:
    job = db.get_job(deployment_id)
    if job is None:
        return ScheduleState.IDLE
    if job.state == "running":
        return ScheduleState.RUNNING
    if job.state == "dead":
        return ScheduleState.DEAD
    return ScheduleState.QUEUED_WITH_BACKOFF if job.attempts > 0 else ScheduleState.QUEUED


class ReconcileScheduler:
    """Dispatches reconcile jobs to a worker pool.

    At most one reconcile per deployment runs at a time: the job row's lease
    keeps other processes out, the runtime's per-deployment lock keeps other
    threads of this process out. Failed runs go back to the queue with
    exponential backoff. A periodic tick enqueues every active deployment so
    missed notifications are eventually covered.
    """

    def __init__(self, reconciler: Reconciler, runtime: RuntimeState | None = None, jitter: bool = True):
        self.reconciler = reconciler
        self.runtime = runtime or reconciler.runtime
        self.jitter = jitter
        self.holder = settings.worker_id
        self._pool = ThreadPoolExecutor(max_workers=max(1, settings.workers), thread_name_prefix="gsr-reconcile")
        self._slots = BoundedSemaphore(max(1, settings.max_concurrent_reconciles))
        self._inflight: dict[str, Future] = {}
        self._inflight_lock = Lock()
        self._stop = Event()
        self._thr: Thread | None = None
        self._last_tick = 0.0

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="gsr-scheduler", daemon=True)
        self._thr.start()

    def stop(self, wait: bool = True) -> None:
        """Stop dispatching. Running reconciles finish their current plan."""
        self._stop.set()
        if self._thr:
            self._thr.join(timeout=max(1.0, settings.poll_interval_s * 2))
        self._pool.shutdown(wait=wait)

    def trigger(self, deployment_id: str, reason: str) -> None:
        db.enqueue_job(deployment_id, reason=reason)

    def _loop(self) -> None:
        logger.info("Scheduler started", extra={"holder": self.holder})
        while not self._stop.is_set():
            try:
                self.tick()
                self.dispatch()
            except Exception:
                logger.exception("Scheduler iteration failed")
            self._stop.wait(max(0.1, settings.poll_interval_s))

    def tick(self, now: float | None = None) -> int:
        """Enqueue a timer reconcile for idle active deployments. Returns how many were enqueued."""
        now = time.time() if now is None else now
        if now - self._last_tick < settings.reconcile_interval_s:
            return 0
        self._last_tick = now
        n = 0
        for dep in db.list_deployments():
            if dep.desired_lifecycle_state == LifecycleState.PAUSED:
                continue
            db.enqueue_job(dep.id, reason="timer", if_idle=True, now=now)
            n += 1
        return n

    def dispatch(self, now: float | None = None) -> list[str]:
        """Submit due jobs to the pool. Returns the deployment ids submitted."""
        submitted: list[str] = []
        for deployment_id in db.due_jobs(limit=max(1, settings.workers) * 2, lease_s=settings.job_lease_s, now=now):
            with self._inflight_lock:
                fut = self._inflight.get(deployment_id)
                if fut is not None and not fut.done():
                    continue
                self._inflight[deployment_id] = self._pool.submit(self.run_one, deployment_id)
            submitted.append(deployment_id)
        return submitted

    def run_one(self, deployment_id: str) -> ReconcileOutcome | None:
        """Claim, run and settle one deployment's job. None if the job could not be claimed."""
        lock = self.runtime.deployment_lock(deployment_id)
        if not lock.acquire(blocking=False):
            return None
        try:
            job = db.claim_job(deployment_id, self.holder, settings.job_lease_s)
            if job is None:
                return None
            with self._slots:
                outcome = self.reconciler.reconcile(deployment_id, heartbeat=lambda: self._heartbeat(deployment_id))
            if outcome.result == "aborted":
                # The job now belongs to whoever reclaimed the lease.
                return outcome
            self._settle(job, outcome)
            return outcome
        finally:
            lock.release()

    def _heartbeat(self, deployment_id: str) -> None:
        if not db.renew_lease(deployment_id, self.holder):
            raise LeaseLost(f"lease on {deployment_id} is no longer held by {self.holder}")

    def _settle(self, job: db.JobRow, outcome: ReconcileOutcome) -> None:
        deployment_id = job.deployment_id
        if outcome.ok:
            recheck = settings.progress_recheck_s if outcome.needs_recheck else None
            db.complete_job(deployment_id, self.holder, recheck_after_s=recheck)
            return

        error = outcome.error or "unknown error"
        attempts = job.attempts + 1
        give_up = outcome.failure == FailureClass.FATAL or (
            settings.max_attempts > 0 and attempts >= settings.max_attempts
        )
        if give_up:
            db.kill_job(deployment_id, self.holder, error)
            logger.error(
                "Reconcile job halted",
                extra={"deployment_id": deployment_id, "attempts": attempts, "error": error},
            )
            return

        delay = backoff_delay(attempts, settings.backoff_base_s, settings.backoff_max_s, self.jitter)
        db.defer_job(deployment_id, self.holder, delay, error)
        db.log_event(
            deployment_id,
            EventSource.RECONCILER,
            EventType.RECONCILE_DEFERRED,
            {"attempts": attempts, "delay_s": round(delay, 2), "failure": (outcome.failure or FailureClass.TRANSIENT).value},
        )
