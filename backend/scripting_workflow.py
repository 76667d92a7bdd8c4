"""
ScriptingWorkflowService: one entry point per video for every editorial
action.

Mutation paths:
- local edits (edit / set_location_tag / toggle_research_note / navigate_to)
  go into the autosave session and are written after the debounce;
- AI results are merged inside the task and written to the store at once,
  together with the new workflowStatus (all-or-nothing).

A new AI task is refused while another one runs for the same video, and
local edits are refused during that time as well.
"""

import copy
import os
import threading
import time
from typing import Any, Callable, Dict, Optional

import workflow_state as wf
from ai_gateway import (
    OP_ASSEMBLE_SCRIPT,
    OP_CONDUCT_RESEARCH,
    OP_CREATE_INITIAL_BLUEPRINT,
    OP_DRAFT_VOICEOVER,
    OP_GENERATE_SHOT_LIST,
    OP_MAP_DIALOGUE,
    OP_PROPOSE_NARRATIVE,
    OP_REFINE_NARRATIVE,
    OP_REFINE_SCRIPT,
    OP_REFINE_SCRIPT_BLOCK,
    AIOperationGateway,
    LLMCapability,
    build_operation_registry,
    footage_payload,
)
from autosave_controller import AutosaveController
from blueprint_store import BlueprintStore
from blueprint_model import (
    SCRIPT_FIELDS,
    _now_iso,
    _safe_str,
    approved_research,
    current_proposal,
    is_blank,
    location_tags,
    make_initial_blueprint,
    normalize_blueprint,
    normalize_dialogue_map,
    normalize_research_notes,
    normalize_script_blocks,
    rejected_note_texts,
)
from script_assembly import compose_scripts, interleave_script, voiceover_blocks
from settings_store import DEFAULT_WORKFLOW_SETTINGS, SettingsStore
from task_orchestrator import TaskOrchestrator
from workflow_errors import PersistenceError, TaskAlreadyActive, ValidationError


class _Session:
    def __init__(self, autosave: AutosaveController, unsubscribe: Callable[[], None]):
        self.autosave = autosave
        self.unsubscribe = unsubscribe
        self.last_error: Optional[PersistenceError] = None


class ScriptingWorkflowService:
    def __init__(
        self,
        store,
        gateway,
        orchestrator: Optional[TaskOrchestrator] = None,
        settings: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
        autosave_thread: bool = False,
    ):
        self.store = store
        self.gateway = gateway
        self.orchestrator = orchestrator or TaskOrchestrator()
        self.settings = {**DEFAULT_WORKFLOW_SETTINGS, **(settings or {})}
        self.clock = clock
        self.autosave_thread = autosave_thread
        self._lock = threading.RLock()
        self._sessions: Dict[str, _Session] = {}
        self.orchestrator.subscribe(self._on_task_update)

    # ------------------------------------------------------------------
    # sessions / reads
    # ------------------------------------------------------------------

    def _session(self, video_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(video_id)
            if session is not None:
                return session
            doc = normalize_blueprint(self.store.get(video_id))

            holder: Dict[str, _Session] = {}

            def _on_error(err: PersistenceError) -> None:
                print(f"❌ Autosave for {video_id} keeps failing: {err.message}")
                holder["session"].last_error = err

            autosave = AutosaveController(
                video_id,
                self.store.update,
                initial_snapshot=doc,
                debounce_seconds=self.settings["autosave_debounce_seconds"],
                clock=self.clock,
                max_silent_failures=self.settings["autosave_max_silent_failures"],
                on_error=_on_error,
                poll_seconds=self.settings["autosave_poll_seconds"],
                task_active=lambda: self.orchestrator.is_active(video_id),
            )
            unsubscribe = self.store.subscribe(video_id, autosave.on_external_change)
            session = _Session(autosave, unsubscribe)
            holder["session"] = session
            self._sessions[video_id] = session
            if self.orchestrator.is_active(video_id):
                autosave.suspend()
            if self.autosave_thread:
                autosave.start()
            return session

    def _on_task_update(self, task: dict) -> None:
        with self._lock:
            session = self._sessions.get(task.get("video_id"))
        if session is not None:
            session.autosave.on_task_update(task)

    def close(self, video_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(video_id, None)
        if session is None:
            return
        session.autosave.stop()
        session.autosave.flush_now()
        session.unsubscribe()

    def open(self, video_id: str) -> dict:
        if not self.store.exists(video_id):
            self.store.create(video_id, make_initial_blueprint())
            print(f"✅ Created blueprint for {video_id}")
        doc = self._session(video_id).autosave.local_state()
        return {"video_id": video_id, "status": wf.resolve_status(doc), "blueprint": doc}

    def get_blueprint(self, video_id: str) -> dict:
        """Local view, unsaved edits included."""
        return self._session(video_id).autosave.local_state()

    def current_stage(self, video_id: str) -> str:
        return wf.resolve_status(self.get_blueprint(video_id))

    def footage_inventory(self, video_id: str) -> dict:
        return self.store.read_footage_inventory(video_id)

    def _locations(self, video_id: str) -> list:
        return location_tags(self.footage_inventory(video_id))

    def autosave_status(self, video_id: str) -> dict:
        session = self._session(video_id)
        if session.autosave.consecutive_failures == 0:
            session.last_error = None
        err = session.last_error or session.autosave.last_error
        return {
            "pending": session.autosave.has_pending(),
            "suspended": session.autosave.suspended,
            "consecutive_failures": session.autosave.consecutive_failures,
            "error": err.to_dict() if err else None,
        }

    def tick(self, video_id: str) -> bool:
        return self._session(video_id).autosave.tick()

    def flush(self, video_id: str) -> bool:
        return self._session(video_id).autosave.flush_now()

    # ------------------------------------------------------------------
    # local edits
    # ------------------------------------------------------------------

    def _ensure_idle(self, video_id: str) -> None:
        active = self.orchestrator.active_task(video_id)
        if active:
            raise TaskAlreadyActive(video_id, active["id"])

    def _observe(self, video_id: str, doc: dict) -> dict:
        session = self._session(video_id)
        session.autosave.observe(doc)
        return session.autosave.local_state()

    def edit(self, video_id: str, patch: dict) -> dict:
        self._ensure_idle(video_id)
        doc = self.get_blueprint(video_id)
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("Edit patch must be a non-empty object", stage=wf.resolve_status(doc))
        wf.check_edit(doc, patch.keys())

        stage = wf.resolve_status(doc)
        clean = {}
        for field, value in patch.items():
            if field == "dialogueMap":
                clean[field] = normalize_dialogue_map(
                    value, known_locations=self._locations(video_id), default_status="needs_review", stage=stage
                )
            elif field == "researchNotes":
                clean[field] = normalize_research_notes(value, stage=stage)
            elif field == "draftScript":
                clean[field] = normalize_script_blocks(value, stage=stage)
            else:
                if not isinstance(value, str):
                    raise ValidationError(f"{field} must be a string", stage=stage, details={"field": field})
                clean[field] = value
        return self._observe(video_id, {**doc, **clean})

    def set_location_tag(self, video_id: str, index: int, tag: str) -> dict:
        self._ensure_idle(video_id)
        doc = wf.set_location_tag(self.get_blueprint(video_id), index, tag, self._locations(video_id))
        return self._observe(video_id, doc)

    def toggle_research_note(self, video_id: str, location: str, index: int, approved: Optional[bool] = None) -> dict:
        self._ensure_idle(video_id)
        doc = wf.toggle_research_note(self.get_blueprint(video_id), location, index, approved)
        return self._observe(video_id, doc)

    def navigate_to(self, video_id: str, stage: str) -> dict:
        # navigation stays available while a task runs; it only moves the view
        return self._observe(video_id, wf.navigate_to(self.get_blueprint(video_id), stage))

    # ------------------------------------------------------------------
    # direct commits
    # ------------------------------------------------------------------

    def _commit(self, video_id: str, doc: dict) -> dict:
        session = self._session(video_id)
        persisted = self.store.update(video_id, doc)
        session.autosave.mark_persisted(persisted)
        return session.autosave.local_state()

    def complete(self, video_id: str) -> dict:
        self._ensure_idle(video_id)
        doc = self.get_blueprint(video_id)
        wf.check_precondition(doc, wf.EV_COMPLETE)
        print(f"✅ {video_id}: workflow complete")
        return self._commit(video_id, wf.apply_transition(doc, wf.EV_COMPLETE))

    def reset_legacy(self, video_id: str) -> dict:
        self._ensure_idle(video_id)
        doc = wf.reset_blueprint(self.get_blueprint(video_id))
        print(f"⚠️  {video_id}: legacy blueprint reset to transcript_input")
        return self._commit(video_id, doc)

    # ------------------------------------------------------------------
    # AI tasks
    # ------------------------------------------------------------------

    def _record_revisions(self, before: dict, after: dict, operation: str) -> None:
        history = list(after.get("revisionHistory") or before.get("revisionHistory") or [])
        for field in SCRIPT_FIELDS:
            old = before.get(field)
            if not is_blank(old) and old != after.get(field):
                history.append({
                    "field": field,
                    "value": copy.deepcopy(old),
                    "replacedAt": _now_iso(),
                    "replacedBy": operation,
                })
        after["revisionHistory"] = history

    def _run_task(
        self,
        video_id: str,
        event: str,
        operation: str,
        payload: dict,
        merge: Callable[[dict, Any], dict],
        runner: Optional[Callable[[dict], Any]] = None,
        guards: Optional[dict] = None,
        **inputs: Any,
    ) -> dict:
        self._ensure_idle(video_id)
        doc = self.get_blueprint(video_id)
        wf.check_precondition(doc, event, **inputs)

        session = self._session(video_id)
        if not session.autosave.flush_now():
            raise PersistenceError("Unsaved edits could not be written; task not started", video_id=video_id)

        if runner is None:
            def runner(p: dict) -> Any:
                return self.gateway.run(operation, p, guards=guards)

        def on_success(result: Any) -> None:
            current = self.get_blueprint(video_id)
            updated = wf.apply_transition(current, event, merge(current, result))
            self._record_revisions(current, updated, operation)
            persisted = self.store.update(video_id, updated)
            session.autosave.mark_persisted(persisted)
            print(f"✅ {video_id}: {event} -> {persisted.get('workflowStatus')}")

        return self.orchestrator.submit(video_id, operation, payload, runner, on_success=on_success, name=event)

    def submit_transcript(self, video_id: str, transcript: Optional[str] = None) -> dict:
        doc = self.get_blueprint(video_id)
        text = transcript if transcript is not None else _safe_str(doc.get("rawTranscript"))
        locations = self._locations(video_id)
        return self._run_task(
            video_id,
            wf.EV_MAP_DIALOGUE,
            OP_MAP_DIALOGUE,
            {"transcript": text, "locations": locations},
            lambda cur, result: {"rawTranscript": text, "dialogueMap": result},
            transcript=text,
            locations=locations,
        )

    def confirm_mapping(self, video_id: str) -> dict:
        doc = self.get_blueprint(video_id)
        return self._run_task(
            video_id,
            wf.EV_CONFIRM_MAPPING,
            OP_PROPOSE_NARRATIVE,
            {"dialogueMap": doc.get("dialogueMap") or []},
            lambda cur, result: {"narrativeProposals": list(cur.get("narrativeProposals") or []) + [result]},
        )

    def refine_narrative(self, video_id: str, feedback: str) -> dict:
        doc = self.get_blueprint(video_id)
        return self._run_task(
            video_id,
            wf.EV_REFINE_NARRATIVE,
            OP_REFINE_NARRATIVE,
            {
                "proposals": doc.get("narrativeProposals") or [],
                "feedback": feedback,
                "dialogueMap": doc.get("dialogueMap") or [],
            },
            lambda cur, result: {"narrativeProposals": list(cur.get("narrativeProposals") or []) + [result]},
            feedback=feedback,
        )

    def approve_narrative(self, video_id: str) -> dict:
        """Compound: research runs first, approval and notes land together."""
        proposal = current_proposal(self.get_blueprint(video_id))
        return self._run_task(
            video_id,
            wf.EV_APPROVE_NARRATIVE,
            OP_CONDUCT_RESEARCH,
            {"approvedNarrative": proposal},
            lambda cur, result: {"approvedNarrative": copy.deepcopy(proposal), "researchNotes": result},
        )

    def approve_research(self, video_id: str) -> dict:
        doc = self.get_blueprint(video_id)
        approved = approved_research(doc.get("researchNotes"))
        approved_texts = {n.get(k) for notes in approved.values() for n in notes for k in ("fact", "story") if n.get(k)}
        rejected = [t for t in rejected_note_texts(doc.get("researchNotes")) if t not in approved_texts]
        return self._run_task(
            video_id,
            wf.EV_APPROVE_RESEARCH,
            OP_DRAFT_VOICEOVER,
            {"approvedNarrative": doc.get("approvedNarrative") or {}, "approvedResearch": approved},
            lambda cur, result: {"draftScript": voiceover_blocks(result)},
            guards={"rejected_notes": rejected},
        )

    def assemble_script(self, video_id: str) -> dict:
        doc = self.get_blueprint(video_id)
        interleaved = interleave_script(doc.get("approvedNarrative") or {}, doc.get("dialogueMap") or [], doc.get("draftScript") or [])
        payload = {"interleaved": interleaved, "approvedNarrative": doc.get("approvedNarrative") or {}}

        runner = None
        if not self.settings.get("assemble_polish", True):
            def runner(p: dict) -> dict:
                full, voiceover = compose_scripts(p["interleaved"])
                return {"fullScript": full, "recordableVoiceover": voiceover}

        return self._run_task(
            video_id,
            wf.EV_ASSEMBLE_SCRIPT,
            OP_ASSEMBLE_SCRIPT,
            payload,
            lambda cur, result: {"finalScript": result["fullScript"], "recordableVoiceover": result["recordableVoiceover"]},
            runner=runner,
        )

    def refine_script(self, video_id: str, feedback: str, view: str = "draftScript") -> dict:
        doc = self.get_blueprint(video_id)
        return self._run_task(
            video_id,
            wf.EV_REFINE_SCRIPT,
            OP_REFINE_SCRIPT,
            {"view": view, "content": doc.get(view), "feedback": feedback},
            lambda cur, result: {view: result},
            feedback=feedback,
            view=view,
        )

    def refine_block(self, video_id: str, index: int, feedback: Optional[str] = None) -> dict:
        doc = self.get_blueprint(video_id)
        blocks = doc.get("draftScript") or []
        content = blocks[index].get("content") if isinstance(index, int) and 0 <= index < len(blocks) else None

        def _merge(cur: dict, result: str) -> dict:
            new_blocks = copy.deepcopy(cur.get("draftScript") or [])
            new_blocks[index]["content"] = result
            return {"draftScript": new_blocks}

        return self._run_task(
            video_id,
            wf.EV_REFINE_BLOCK,
            OP_REFINE_SCRIPT_BLOCK,
            {"blockContent": content, "feedback": feedback or ""},
            _merge,
            index=index,
        )

    def finalize_script(self, video_id: str) -> dict:
        doc = self.get_blueprint(video_id)
        return self._run_task(
            video_id,
            wf.EV_FINALIZE_SCRIPT,
            OP_GENERATE_SHOT_LIST,
            {
                "approvedNarrative": doc.get("approvedNarrative") or {},
                "dialogueMap": doc.get("dialogueMap") or [],
                "footageInventory": footage_payload(self.footage_inventory(video_id)),
                "finalScript": doc.get("finalScript") or "",
                "recordableVoiceover": doc.get("recordableVoiceover") or "",
            },
            lambda cur, result: {"editingShotList": result},
        )

    def create_initial_blueprint(self, video_id: str, notes: str, title: Optional[str] = None) -> dict:
        inventory = self.footage_inventory(video_id)
        if is_blank(notes):
            raise ValidationError("Notes for the initial blueprint are empty", stage=self.current_stage(video_id))
        return self._run_task(
            video_id,
            wf.EV_CREATE_INITIAL_BLUEPRINT,
            OP_CREATE_INITIAL_BLUEPRINT,
            {"notes": notes, "title": title or "", "footageInventory": footage_payload(inventory)},
            lambda cur, result: {"shots": result},
            locations=location_tags(inventory),
        )

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    def retry(self, task_id: str) -> dict:
        return self.orchestrator.retry(task_id)

    def task_status(self, task_id: str) -> dict:
        task = self.orchestrator.get_task(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    def tasks(self, video_id: str) -> list:
        return self.orchestrator.list_tasks(video_id)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[dict]:
        return self.orchestrator.wait(task_id, timeout)

    # ------------------------------------------------------------------
    # action dispatch (HTTP / CLI)
    # ------------------------------------------------------------------

    def run_action(self, video_id: str, action: str, params: Optional[dict] = None) -> dict:
        params = params or {}
        handlers = {
            "submit_transcript": lambda: self.submit_transcript(video_id, params.get("transcript")),
            "confirm_mapping": lambda: self.confirm_mapping(video_id),
            "refine_narrative": lambda: self.refine_narrative(video_id, params.get("feedback")),
            "approve_narrative": lambda: self.approve_narrative(video_id),
            "approve_research": lambda: self.approve_research(video_id),
            "assemble_script": lambda: self.assemble_script(video_id),
            "refine_script": lambda: self.refine_script(video_id, params.get("feedback"), params.get("view") or "draftScript"),
            "refine_block": lambda: self.refine_block(video_id, params.get("index"), params.get("feedback")),
            "finalize_script": lambda: self.finalize_script(video_id),
            "complete": lambda: self.complete(video_id),
            "navigate_to": lambda: self.navigate_to(video_id, params.get("stage")),
            "reset_legacy": lambda: self.reset_legacy(video_id),
            "create_initial_blueprint": lambda: self.create_initial_blueprint(video_id, params.get("notes"), params.get("title")),
            "set_location_tag": lambda: self.set_location_tag(video_id, params.get("index"), params.get("locationTag")),
            "toggle_research_note": lambda: self.toggle_research_note(
                video_id, params.get("location"), params.get("index"), params.get("approved")
            ),
        }
        handler = handlers.get(action)
        if handler is None:
            raise KeyError(action)
        return handler()


ACTIONS_RETURNING_TASK = (
    "submit_transcript",
    "confirm_mapping",
    "refine_narrative",
    "approve_narrative",
    "approve_research",
    "assemble_script",
    "refine_script",
    "refine_block",
    "finalize_script",
    "create_initial_blueprint",
)


def default_data_dir() -> str:
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    return os.getenv("SCRIPTING_DATA_DIR") or os.path.join(os.path.dirname(backend_dir), "data")


def build_default_service(data_dir: Optional[str] = None, autosave_thread: bool = True, run_async: bool = True):
    """
    FS store + OpenAI/OpenRouter gateway wired from the settings files.
    Returns (service, settings_store).
    """
    data_dir = data_dir or default_data_dir()
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    settings_store = SettingsStore(data_dir, backend_dir)
    workflow_settings = settings_store.read_workflow_settings()

    capability = LLMCapability(settings_store.api_key_for, timeout_s=int(workflow_settings["llm_timeout_seconds"]))
    gateway = AIOperationGateway(build_operation_registry(), capability, settings_store.read_llm_defaults)
    service = ScriptingWorkflowService(
        BlueprintStore(data_dir),
        gateway,
        orchestrator=TaskOrchestrator(run_async=run_async),
        settings=workflow_settings,
        autosave_thread=autosave_thread,
    )
    return service, settings_store
