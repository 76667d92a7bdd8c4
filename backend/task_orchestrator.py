"""
Task orchestrator: runs AI operations for a blueprint, one at a time.

A task is a plain dict:
    {id, type, name, video_id, status, payload, result, error, attempts,
     created_at, started_at, finished_at}

status: queued -> in-progress -> complete | failed

At most one non-terminal task per video. A second submit while one is
active raises TaskAlreadyActive (no queueing). The on_success merge hook
runs inside the task; if it raises, the task fails and nothing was merged.
"""

import copy
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from blueprint_model import _now_iso
from workflow_errors import PreconditionError, ScriptingWorkflowError, TaskAlreadyActive


TASK_QUEUED = "queued"
TASK_IN_PROGRESS = "in-progress"
TASK_COMPLETE = "complete"
TASK_FAILED = "failed"
ACTIVE_STATUSES = (TASK_QUEUED, TASK_IN_PROGRESS)


def _error_dict(error: BaseException) -> dict:
    if isinstance(error, ScriptingWorkflowError):
        return error.to_dict()
    return {"message": str(error), "code": "UNKNOWN_ERROR", "stage": None, "details": {"type": type(error).__name__}}


class TaskOrchestrator:
    def __init__(self, run_async: bool = True):
        self.run_async = run_async
        self._lock = threading.Lock()
        self._tasks: Dict[str, dict] = {}
        self._work: Dict[str, tuple] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._active: Dict[str, str] = {}
        self._observers: List[Callable[[dict], None]] = []

    # --- observers ---

    def subscribe(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        with self._lock:
            self._observers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return _unsubscribe

    def _notify(self, snapshot: dict) -> None:
        with self._lock:
            observers = list(self._observers)
        for cb in observers:
            try:
                cb(copy.deepcopy(snapshot))
            except Exception as e:
                print(f"⚠️  TaskOrchestrator: observer failed for {snapshot.get('id')}: {e}")

    # --- queries ---

    def get_task(self, task_id: str) -> Optional[dict]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def status(self, task_id: str) -> Optional[str]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task["status"] if task else None

    def list_tasks(self, video_id: Optional[str] = None) -> List[dict]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if video_id is None or t["video_id"] == video_id]
            return [copy.deepcopy(t) for t in sorted(tasks, key=lambda t: t["created_at"])]

    def active_task(self, video_id: str) -> Optional[dict]:
        with self._lock:
            task_id = self._active.get(video_id)
            return copy.deepcopy(self._tasks[task_id]) if task_id else None

    def is_active(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._active

    # --- lifecycle ---

    def _new_task_id(self, task_type: str, video_id: str) -> str:
        # timestamp + random suffix: unique under rapid resubmission
        return f"{task_type}-{video_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"

    def submit(
        self,
        video_id: str,
        task_type: str,
        payload: dict,
        runner: Callable[[dict], Any],
        on_success: Optional[Callable[[Any], Any]] = None,
        name: Optional[str] = None,
    ) -> dict:
        with self._lock:
            active_id = self._active.get(video_id)
            if active_id:
                raise TaskAlreadyActive(video_id, active_id)
            task_id = self._new_task_id(task_type, video_id)
            task = {
                "id": task_id,
                "type": task_type,
                "name": name or task_type,
                "video_id": video_id,
                "status": TASK_QUEUED,
                "payload": copy.deepcopy(payload),
                "result": None,
                "error": None,
                "attempts": 1,
                "created_at": _now_iso(),
                "started_at": None,
                "finished_at": None,
            }
            self._tasks[task_id] = task
            self._work[task_id] = (runner, on_success)
            self._active[video_id] = task_id
            snapshot = copy.deepcopy(task)

        print(f"📋 Task {task_id} queued ({task['name']})")
        self._notify(snapshot)
        self._start(task_id)
        return self.get_task(task_id)

    def retry(self, task_id: str) -> dict:
        """
        Re-runs a failed task with the identical stored payload and merge hook.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            if task["status"] != TASK_FAILED:
                raise PreconditionError(
                    f"Only failed tasks can be retried (task {task_id} is {task['status']})",
                    details={"task_id": task_id, "status": task["status"]},
                )
            video_id = task["video_id"]
            active_id = self._active.get(video_id)
            if active_id:
                raise TaskAlreadyActive(video_id, active_id)
            task["status"] = TASK_QUEUED
            task["error"] = None
            task["result"] = None
            task["started_at"] = None
            task["finished_at"] = None
            task["attempts"] += 1
            self._active[video_id] = task_id
            snapshot = copy.deepcopy(task)

        print(f"🔁 Task {task_id} retry #{snapshot['attempts'] - 1}")
        self._notify(snapshot)
        self._start(task_id)
        return self.get_task(task_id)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[dict]:
        with self._lock:
            thread = self._threads.get(task_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_task(task_id)

    def _start(self, task_id: str) -> None:
        if not self.run_async:
            self._run(task_id)
            return
        t = threading.Thread(target=self._run, args=(task_id,), daemon=True)
        with self._lock:
            self._threads[task_id] = t
        t.start()

    def _run(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks[task_id]
            task["status"] = TASK_IN_PROGRESS
            task["started_at"] = _now_iso()
            runner, on_success = self._work[task_id]
            payload = copy.deepcopy(task["payload"])
            snapshot = copy.deepcopy(task)
        self._notify(snapshot)

        result = None
        error: Optional[BaseException] = None
        try:
            result = runner(payload)
            if on_success is not None:
                on_success(copy.deepcopy(result))
        except Exception as e:
            error = e

        with self._lock:
            task = self._tasks[task_id]
            task["finished_at"] = _now_iso()
            if error is None:
                task["status"] = TASK_COMPLETE
                task["result"] = result
            else:
                task["status"] = TASK_FAILED
                task["error"] = _error_dict(error)
            if self._active.get(task["video_id"]) == task_id:
                del self._active[task["video_id"]]
            snapshot = copy.deepcopy(task)

        if error is None:
            print(f"✅ Task {task_id} complete")
        else:
            print(f"❌ Task {task_id} failed: {snapshot['error']['code']}: {snapshot['error']['message']}")
        self._notify(snapshot)

        with self._lock:
            # failed tasks keep their runner for retry()
            if error is None:
                self._work.pop(task_id, None)
            if self._threads.get(task_id) is threading.current_thread():
                del self._threads[task_id]
