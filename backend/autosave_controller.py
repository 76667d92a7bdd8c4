"""
Debounced autosave for one blueprint.

Local edits are observed, and after a quiet period (debounce) only the
top-level fields that differ from the last persisted snapshot are written.
Autosave is suspended while a task runs for the same video and resumes
after the task ends (success or failure).

Time comes from an injected clock and tick() drives the flush, so tests
never sleep. start() runs tick() on a daemon thread for real use.
"""

import copy
import threading
import time
from typing import Callable, Optional

from task_orchestrator import ACTIVE_STATUSES
from workflow_errors import PersistenceError


IGNORED_FIELDS = ("updatedAt",)


class AutosaveController:
    def __init__(
        self,
        video_id: str,
        writer: Callable[[str, dict], dict],
        initial_snapshot: Optional[dict] = None,
        debounce_seconds: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
        max_silent_failures: int = 3,
        on_error: Optional[Callable[[PersistenceError], None]] = None,
        poll_seconds: float = 0.25,
        task_active: Optional[Callable[[], bool]] = None,
    ):
        self.video_id = video_id
        self.writer = writer
        self.debounce_seconds = float(debounce_seconds)
        self.clock = clock
        self.max_silent_failures = int(max_silent_failures)
        self.on_error = on_error
        self.poll_seconds = float(poll_seconds)
        self.task_active = task_active

        self._lock = threading.RLock()
        self._local = copy.deepcopy(initial_snapshot or {})
        self._persisted = copy.deepcopy(initial_snapshot or {})
        self._dirty_at: Optional[float] = None
        self._suspended = False
        self._failures = 0
        self.last_error: Optional[PersistenceError] = None
        self.writes = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- state ---

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def last_persisted_snapshot(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._persisted)

    def local_state(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._local)

    def pending_diff(self) -> dict:
        with self._lock:
            return {
                k: copy.deepcopy(v)
                for k, v in self._local.items()
                if k not in IGNORED_FIELDS and (k not in self._persisted or self._persisted[k] != v)
            }

    def has_pending(self) -> bool:
        return bool(self.pending_diff())

    # --- inputs ---

    def observe(self, doc: dict) -> None:
        """Record local state; every call re-arms the debounce."""
        with self._lock:
            self._local = copy.deepcopy(doc)
            self._dirty_at = self.clock()

    def suspend(self) -> None:
        with self._lock:
            self._suspended = True

    def resume(self) -> None:
        with self._lock:
            self._suspended = False
            if self.pending_diff():
                # pending edits go out one debounce window after the task ends
                self._dirty_at = self.clock()

    def on_task_update(self, task: dict) -> None:
        if task.get("video_id") != self.video_id:
            return
        with self._lock:
            if task.get("status") in ACTIVE_STATUSES:
                self.suspend()
            elif self.task_active is not None and self.task_active():
                # late end notice of an earlier task; a newer one is running
                self.suspend()
            else:
                self.resume()

    def on_external_change(self, doc: dict) -> None:
        """
        A write landed in the store (ours or someone else's). Fields without
        pending local edits adopt the stored value.
        """
        with self._lock:
            for k, v in (doc or {}).items():
                if k in IGNORED_FIELDS:
                    continue
                local_pending = k in self._local and self._local[k] != self._persisted.get(k)
                if not local_pending:
                    self._local[k] = copy.deepcopy(v)
                self._persisted[k] = copy.deepcopy(v)

    def mark_persisted(self, doc: dict) -> None:
        """A merge that was written directly to the store (AI task result)."""
        with self._lock:
            for k, v in (doc or {}).items():
                self._local[k] = copy.deepcopy(v)
                self._persisted[k] = copy.deepcopy(v)
            if not self.pending_diff():
                self._dirty_at = None

    # --- flushing ---

    def tick(self) -> bool:
        """Returns True when a write happened."""
        with self._lock:
            if self._suspended or self._dirty_at is None:
                return False
            if self.clock() - self._dirty_at < self.debounce_seconds:
                return False
            return self._flush_locked()

    def flush_now(self) -> bool:
        """
        Immediate write, debounce ignored. Returns True when nothing is left
        pending afterwards.
        """
        with self._lock:
            if self._suspended:
                return not self.pending_diff()
            self._flush_locked()
            return not self.pending_diff()

    def _flush_locked(self) -> bool:
        diff = self.pending_diff()
        if not diff:
            self._dirty_at = None
            return False
        try:
            self.writer(self.video_id, diff)
        except Exception as e:
            err = e if isinstance(e, PersistenceError) else PersistenceError(
                f"Autosave failed for {self.video_id}", video_id=self.video_id, original_error=e
            )
            self._failures += 1
            self.last_error = err
            # stays pending; retried one debounce window later or on next edit
            self._dirty_at = self.clock()
            print(f"⚠️  Autosave {self.video_id}: write failed ({self._failures}x): {e}")
            if self._failures > self.max_silent_failures and self.on_error is not None:
                try:
                    self.on_error(err)
                except Exception as cb_err:
                    print(f"⚠️  Autosave {self.video_id}: on_error callback failed: {cb_err}")
            return False

        for k, v in diff.items():
            self._persisted[k] = v
        self._failures = 0
        self.last_error = None
        self._dirty_at = None
        self.writes += 1
        print(f"💾 Autosave {self.video_id}: {', '.join(sorted(diff.keys()))}")
        return True

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # --- background loop ---

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_seconds * 4)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_seconds):
            try:
                self.tick()
            except Exception as e:
                print(f"❌ Autosave {self.video_id}: tick crashed: {e}")
