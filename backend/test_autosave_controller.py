#!/usr/bin/env python3
"""
Debounced autosave with a fake clock (no sleeps).

Run:
  python3 -m pytest backend/test_autosave_controller.py
"""

import threading

import pytest

from autosave_controller import AutosaveController
from task_orchestrator import TaskOrchestrator
from workflow_errors import PersistenceError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class RecordingWriter:
    def __init__(self):
        self.writes = []
        self.fail_with = None

    def __call__(self, video_id, partial):
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append((video_id, partial))
        return partial


BASE = {"workflowStatus": "dialogue_mapping", "rawTranscript": "hi", "dialogueMap": [], "updatedAt": "t0"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def writer():
    return RecordingWriter()


@pytest.fixture
def autosave(clock, writer):
    return AutosaveController("vid_001", writer, BASE, debounce_seconds=1.5, clock=clock, max_silent_failures=3)


def test_writes_only_changed_fields_after_debounce(autosave, clock, writer) -> None:
    autosave.observe(dict(BASE, rawTranscript="hello", updatedAt="t1"))
    clock.now = 1.0
    assert autosave.tick() is False
    clock.now = 1.6
    assert autosave.tick() is True
    assert writer.writes == [("vid_001", {"rawTranscript": "hello"})]
    assert autosave.has_pending() is False
    assert autosave.last_persisted_snapshot["rawTranscript"] == "hello"


def test_rapid_edits_collapse_into_one_write(autosave, clock, writer) -> None:
    autosave.observe(dict(BASE, rawTranscript="h"))
    clock.now = 1.0
    autosave.observe(dict(BASE, rawTranscript="he"))
    clock.now = 2.0
    autosave.observe(dict(BASE, rawTranscript="hey"))
    clock.now = 3.0
    assert autosave.tick() is False
    clock.now = 3.6
    assert autosave.tick() is True
    assert writer.writes == [("vid_001", {"rawTranscript": "hey"})]


def test_suspended_while_task_runs(autosave, clock, writer) -> None:
    autosave.on_task_update({"video_id": "vid_001", "status": "in-progress"})
    assert autosave.suspended
    autosave.observe(dict(BASE, rawTranscript="edited during task"))
    clock.now = 10.0
    assert autosave.tick() is False
    assert autosave.flush_now() is False
    assert writer.writes == []

    # other videos' tasks do not touch this controller
    autosave.on_task_update({"video_id": "vid_002", "status": "complete"})
    assert autosave.suspended

    autosave.on_task_update({"video_id": "vid_001", "status": "failed"})
    assert not autosave.suspended
    clock.now = 11.0
    assert autosave.tick() is False
    clock.now = 11.5
    assert autosave.tick() is True
    assert writer.writes == [("vid_001", {"rawTranscript": "edited during task"})]


def test_failed_write_stays_pending_and_escalates(clock, writer) -> None:
    errors = []
    autosave = AutosaveController(
        "vid_001", writer, BASE, debounce_seconds=1.5, clock=clock, max_silent_failures=3, on_error=errors.append
    )
    writer.fail_with = OSError("disk full")
    autosave.observe(dict(BASE, rawTranscript="keep me"))

    for i in range(4):
        clock.now += 2.0
        assert autosave.tick() is False
    assert autosave.consecutive_failures == 4
    assert isinstance(autosave.last_error, PersistenceError)
    assert autosave.last_error.video_id == "vid_001"
    assert len(errors) == 1
    assert autosave.has_pending()

    writer.fail_with = None
    clock.now += 2.0
    assert autosave.tick() is True
    assert autosave.consecutive_failures == 0
    assert autosave.last_error is None
    assert autosave.local_state()["rawTranscript"] == "keep me"


def test_flush_now_ignores_debounce(autosave, writer) -> None:
    assert autosave.flush_now() is True
    autosave.observe(dict(BASE, dialogueMap=[{"dialogueChunk": "x", "locationTag": "Tower", "status": "confirmed"}]))
    assert autosave.flush_now() is True
    assert [list(w[1]) for w in writer.writes] == [["dialogueMap"]]


def test_external_change_keeps_pending_local_edits(autosave) -> None:
    autosave.observe(dict(BASE, rawTranscript="local edit"))
    autosave.on_external_change({"rawTranscript": "remote", "workflowStatus": "narrative_refinement"})
    local = autosave.local_state()
    assert local["rawTranscript"] == "local edit"
    assert local["workflowStatus"] == "narrative_refinement"
    assert autosave.pending_diff() == {"rawTranscript": "local edit"}


def test_mark_persisted_clears_pending_merge(autosave, clock, writer) -> None:
    merged = {"dialogueMap": [{"dialogueChunk": "x", "locationTag": "Tower", "status": "needs_review"}]}
    autosave.observe(dict(BASE, **merged))
    autosave.mark_persisted(merged)
    clock.now = 5.0
    assert autosave.tick() is False
    assert writer.writes == []
    assert autosave.local_state()["dialogueMap"] == merged["dialogueMap"]


def test_late_end_notice_does_not_resume_while_next_task_runs(clock, writer) -> None:
    orchestrator = TaskOrchestrator(run_async=True)
    autosave = AutosaveController(
        "vid_001", writer, BASE, debounce_seconds=1.5, clock=clock,
        task_active=lambda: orchestrator.is_active("vid_001"),
    )
    first_finished = threading.Event()
    gate = threading.Event()
    release_second = threading.Event()

    def slow_observer(task):
        # holds back the first task's end notice until the second task is running
        if task["name"] == "first" and task["status"] == "complete":
            first_finished.set()
            gate.wait(5)

    orchestrator.subscribe(slow_observer)
    orchestrator.subscribe(autosave.on_task_update)

    first = orchestrator.submit("vid_001", "op", {}, lambda p: "ok", name="first")
    assert first_finished.wait(5)
    second = orchestrator.submit("vid_001", "op", {}, lambda p: release_second.wait(5), name="second")
    assert orchestrator.is_active("vid_001")

    gate.set()
    orchestrator.wait(first["id"], timeout=5)
    assert autosave.suspended is True

    autosave.observe(dict(BASE, rawTranscript="edited"))
    clock.now = 10.0
    assert autosave.tick() is False
    assert writer.writes == []

    release_second.set()
    orchestrator.wait(second["id"], timeout=5)
    assert autosave.suspended is False
    clock.now = 20.0
    assert autosave.tick() is True
    assert writer.writes == [("vid_001", {"rawTranscript": "edited"})]
