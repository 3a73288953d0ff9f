"""
Level-triggered controller loop (process bootstrap).

Watches Profiles, Contributors and the objects they own, maps each event to the owning
entity's key, and drains keys with a small worker pool. The queue never hands the same
key to two workers at once; convergence itself lives in the reconcilers.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Optional, Set

from profile_manager.config import ManagerConfig
from profile_manager.controller.contributor import ContributorReconciler
from profile_manager.controller.engine import Reconciler
from profile_manager.controller.events import WorkKey, keys_for_event
from profile_manager.controller.profile import ProfileReconciler
from profile_manager.core.models import (
    AUTHORIZATION_POLICY,
    CONTRIBUTOR,
    NAMESPACE,
    PROFILE,
    RESOURCE_QUOTA,
    ROLE_BINDING,
    SERVICE_ACCOUNT,
    ResourceKind,
)
from profile_manager.errors import ReconcileError

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating FIFO of work keys.

    A key added while it is being processed is parked and re-queued by `done()`, so at
    most one worker handles a given key at any time.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: Deque[WorkKey] = deque()
        self._dirty: Set[WorkKey] = set()
        self._processing: Set[WorkKey] = set()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: WorkKey) -> None:
        with self._cond:
            if self._shutdown or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: WorkKey, delay_seconds: float) -> None:
        t = threading.Timer(delay_seconds, self.add, args=(key,))
        t.daemon = True
        t.start()

    def get(self, timeout: Optional[float] = None) -> Optional[WorkKey]:
        with self._cond:
            while not self._queue and not self._shutdown:
                if not self._cond.wait(timeout):
                    return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._dirty.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: WorkKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class ControllerRunner:
    def __init__(
        self,
        store: Any,
        config: ManagerConfig,
        *,
        workers: int = 4,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 300.0,
        watch_timeout_seconds: int = 300,
        reconcilers: Optional[Dict[str, Reconciler[Any]]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.workers = max(1, int(workers))
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.reconcilers: Dict[str, Reconciler[Any]] = reconcilers or {
            PROFILE.kind: ProfileReconciler(store, config),
            CONTRIBUTOR.kind: ContributorReconciler(store, config),
        }
        self.queue = WorkQueue()
        self._failures: Dict[WorkKey, int] = {}
        self._failures_lock = threading.Lock()
        self._stop = threading.Event()

    def watched_kinds(self) -> List[ResourceKind]:
        kinds = [PROFILE, CONTRIBUTOR, NAMESPACE, RESOURCE_QUOTA, SERVICE_ACCOUNT, ROLE_BINDING]
        if self.config.enable_istio:
            kinds.append(AUTHORIZATION_POLICY)
        return kinds

    def handle_event(self, kind: ResourceKind, event_type: str, manifest: Dict[str, Any]) -> None:
        for key in keys_for_event(kind, manifest):
            logger.debug("%s %s -> enqueue %s", event_type, kind.kind, key)
            self.queue.add(key)

    def retry_delay(self, key: WorkKey) -> float:
        with self._failures_lock:
            n = self._failures.get(key, 0) + 1
            self._failures[key] = n
        return min(self.retry_base_seconds * (2 ** (n - 1)), self.retry_max_seconds)

    def _forget(self, key: WorkKey) -> None:
        with self._failures_lock:
            self._failures.pop(key, None)

    def process(self, key: WorkKey) -> bool:
        """Reconcile one key. Returns True when the key should be retried with backoff."""
        reconciler = self.reconcilers.get(key.kind)
        if reconciler is None:
            logger.warning("no reconciler for %s", key)
            return False
        try:
            outcome = reconciler.reconcile(key.name, key.namespace)
        except ReconcileError as e:
            logger.warning("reconcile %s failed: %s", key, str(e))
            return e.retryable
        except Exception:
            logger.exception("reconcile %s failed unexpectedly", key)
            return True
        if outcome.stopped:
            logger.info("reconcile %s stopped at step %s", key, outcome.stopped_at)
        elif outcome.changed:
            logger.info("reconciled %s: %s", key, {k: v.value for k, v in outcome.results.items()})
        return False

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Take one key off the queue and process it. Returns False if nothing was queued."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            retry = self.process(key)
        finally:
            self.queue.done(key)
        if retry:
            delay = self.retry_delay(key)
            logger.debug("requeue %s in %.1fs", key, delay)
            self.queue.add_after(key, delay)
        else:
            self._forget(key)
        return True

    def _work(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=1.0)

    def _watch(self, kind: ResourceKind) -> None:
        # Each (re)started watch replays ADDED for every existing object: a free resync.
        while not self._stop.is_set():
            try:
                for event_type, manifest in self.store.watch(kind, timeout_seconds=self.watch_timeout_seconds):
                    self.handle_event(kind, event_type, manifest)
                    if self._stop.is_set():
                        return
            except Exception as e:
                logger.warning("watch %s failed: %s", kind.kind, str(e))
                self._stop.wait(self.retry_base_seconds)

    def stop(self) -> None:
        self._stop.set()
        self.queue.shutdown()

    def run_forever(self) -> None:
        kinds = self.watched_kinds()
        logger.info(
            "Starting controller (workers=%d, watching=%s)", self.workers, ",".join(k.kind for k in kinds)
        )
        for kind in kinds:
            threading.Thread(target=self._watch, args=(kind,), name=f"watch-{kind.kind}", daemon=True).start()

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="reconcile") as pool:
            for _ in range(self.workers):
                pool.submit(self._work)
            try:
                while not self._stop.wait(1.0):
                    pass
            except KeyboardInterrupt:
                logger.info("Shutting down controller")
                self.stop()
