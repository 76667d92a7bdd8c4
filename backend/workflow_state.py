"""
Workflow state machine for the scripting pipeline.

Stages advance only through the TRANSITIONS table. Every function here is
pure: it takes a blueprint dict and returns a new one (or raises
PreconditionError), never touching the input.

Re-completing a stage that sits behind furthestStatus clears every dependent
downstream field and lists it in invalidatedFields, so stale data is never
kept silently.
"""

import copy
from typing import Any, Dict, Iterable, Optional

from blueprint_model import (
    CHUNK_CONFIRMED,
    CHUNK_NEEDS_REVIEW,
    LEGACY_SCRIPT_FIELDS,
    LEGACY_VIEW,
    STAGE_DIALOGUE_MAPPING,
    STAGE_DRAFT_REVIEW,
    STAGE_FIELDS,
    STAGE_FINAL,
    STAGE_NARRATIVE_REFINEMENT,
    STAGE_RESEARCH_APPROVAL,
    STAGE_TRANSCRIPT_INPUT,
    STAGE_VOICEOVER_RECORDING,
    STAGES,
    UNASSIGNED,
    _now_iso,
    _safe_str,
    current_proposal,
    empty_value,
    is_blank,
    normalize_blueprint,
    unassigned_chunks,
)
from workflow_errors import PreconditionError


EV_MAP_DIALOGUE = "map_dialogue"
EV_CONFIRM_MAPPING = "confirm_mapping"
EV_REFINE_NARRATIVE = "refine_narrative"
EV_APPROVE_NARRATIVE = "approve_narrative"
EV_APPROVE_RESEARCH = "approve_research"
EV_ASSEMBLE_SCRIPT = "assemble_script"
EV_REFINE_SCRIPT = "refine_script"
EV_REFINE_BLOCK = "refine_block"
EV_FINALIZE_SCRIPT = "finalize_script"
EV_COMPLETE = "complete"
EV_RESET = "reset"
EV_CREATE_INITIAL_BLUEPRINT = "create_initial_blueprint"

TRANSITIONS = {
    (STAGE_TRANSCRIPT_INPUT, EV_MAP_DIALOGUE): STAGE_DIALOGUE_MAPPING,
    (STAGE_TRANSCRIPT_INPUT, EV_CREATE_INITIAL_BLUEPRINT): STAGE_TRANSCRIPT_INPUT,
    (STAGE_DIALOGUE_MAPPING, EV_CONFIRM_MAPPING): STAGE_NARRATIVE_REFINEMENT,
    (STAGE_NARRATIVE_REFINEMENT, EV_REFINE_NARRATIVE): STAGE_NARRATIVE_REFINEMENT,
    (STAGE_NARRATIVE_REFINEMENT, EV_APPROVE_NARRATIVE): STAGE_RESEARCH_APPROVAL,
    (STAGE_RESEARCH_APPROVAL, EV_APPROVE_RESEARCH): STAGE_DRAFT_REVIEW,
    (STAGE_DRAFT_REVIEW, EV_ASSEMBLE_SCRIPT): STAGE_DRAFT_REVIEW,
    (STAGE_DRAFT_REVIEW, EV_REFINE_SCRIPT): STAGE_DRAFT_REVIEW,
    (STAGE_DRAFT_REVIEW, EV_REFINE_BLOCK): STAGE_DRAFT_REVIEW,
    (STAGE_DRAFT_REVIEW, EV_FINALIZE_SCRIPT): STAGE_VOICEOVER_RECORDING,
    (STAGE_VOICEOVER_RECORDING, EV_COMPLETE): STAGE_FINAL,
    (LEGACY_VIEW, EV_RESET): STAGE_TRANSCRIPT_INPUT,
}

_SCRIPT_AND_LATER = ("finalScript", "recordableVoiceover", "editingShotList")

# Fields that depend on what an event writes.
# narrativeProposals is history and is only ever cleared by the legacy reset.
DOWNSTREAM_FIELDS = {
    EV_MAP_DIALOGUE: ("approvedNarrative", "researchNotes", "draftScript") + _SCRIPT_AND_LATER,
    EV_CONFIRM_MAPPING: ("approvedNarrative", "researchNotes", "draftScript") + _SCRIPT_AND_LATER,
    EV_REFINE_NARRATIVE: (),
    EV_APPROVE_NARRATIVE: ("draftScript",) + _SCRIPT_AND_LATER,
    EV_APPROVE_RESEARCH: _SCRIPT_AND_LATER,
    EV_ASSEMBLE_SCRIPT: ("editingShotList",),
    EV_REFINE_SCRIPT: ("editingShotList",),
    EV_REFINE_BLOCK: ("editingShotList",),
    EV_FINALIZE_SCRIPT: (),
    EV_COMPLETE: (),
    EV_CREATE_INITIAL_BLUEPRINT: (),
}

EDITABLE_FIELDS = {
    STAGE_TRANSCRIPT_INPUT: frozenset({"rawTranscript"}),
    STAGE_DIALOGUE_MAPPING: frozenset({"dialogueMap"}),
    STAGE_NARRATIVE_REFINEMENT: frozenset(),
    STAGE_RESEARCH_APPROVAL: frozenset({"researchNotes"}),
    STAGE_DRAFT_REVIEW: frozenset({"draftScript", "finalScript", "recordableVoiceover"}),
    STAGE_VOICEOVER_RECORDING: frozenset(),
    STAGE_FINAL: frozenset(),
    LEGACY_VIEW: frozenset(),
}

SCRIPT_VIEWS = ("draftScript", "finalScript", "recordableVoiceover")


def stage_index(stage: str) -> int:
    return STAGES.index(stage) if stage in STAGES else -1


def resolve_status(doc: Optional[dict]) -> str:
    doc = doc or {}
    status = doc.get("workflowStatus")
    if status in STAGES:
        return status
    if status == LEGACY_VIEW:
        return LEGACY_VIEW
    if any(not is_blank(doc.get(f)) for f in LEGACY_SCRIPT_FIELDS):
        return LEGACY_VIEW
    return STAGE_TRANSCRIPT_INPUT


def furthest_status(doc: dict) -> str:
    current = resolve_status(doc)
    recorded = doc.get("furthestStatus")
    if recorded in STAGES and stage_index(recorded) >= stage_index(current):
        return recorded
    return current


def next_stage(stage: str, event: str) -> str:
    target = TRANSITIONS.get((stage, event))
    if target is None:
        raise PreconditionError(
            f"Action '{event}' is not available in stage '{stage}'",
            stage=stage,
            details={"event": event},
        )
    return target


def _fail(stage: str, event: str, message: str, **details: Any) -> None:
    details["event"] = event
    raise PreconditionError(message, stage=stage, details=details)


def check_precondition(doc: dict, event: str, **inputs: Any) -> str:
    """
    Validates that `event` may run now. Returns the target stage.
    Inputs not yet stored on the blueprint (transcript, locations, feedback,
    view, index) are passed as keyword arguments.
    """
    stage = resolve_status(doc)
    target = next_stage(stage, event)

    if event == EV_MAP_DIALOGUE:
        transcript = inputs.get("transcript", doc.get("rawTranscript"))
        if is_blank(transcript):
            _fail(stage, event, "Transcript is empty")
        if not list(inputs.get("locations") or []):
            _fail(stage, event, "Footage inventory has no locations; add locations before mapping dialogue")

    elif event == EV_CREATE_INITIAL_BLUEPRINT:
        if not list(inputs.get("locations") or []):
            _fail(stage, event, "Footage inventory has no locations")

    elif event == EV_CONFIRM_MAPPING:
        dialogue_map = doc.get("dialogueMap") or []
        if not dialogue_map:
            _fail(stage, event, "Dialogue map is empty")
        bad = unassigned_chunks(dialogue_map)
        if bad:
            _fail(stage, event, f"{len(bad)} dialogue chunk(s) are still '{UNASSIGNED}'", indexes=bad)

    elif event == EV_REFINE_NARRATIVE:
        if current_proposal(doc) is None:
            _fail(stage, event, "No narrative proposal to refine")
        if is_blank(inputs.get("feedback")):
            _fail(stage, event, "Refinement feedback is empty")

    elif event == EV_APPROVE_NARRATIVE:
        if current_proposal(doc) is None:
            _fail(stage, event, "No narrative proposal to approve")

    elif event == EV_APPROVE_RESEARCH:
        if is_blank(doc.get("approvedNarrative")):
            _fail(stage, event, "No approved narrative")
        if not isinstance(doc.get("researchNotes"), dict):
            _fail(stage, event, "Research notes are missing")

    elif event == EV_ASSEMBLE_SCRIPT:
        if is_blank(doc.get("draftScript")):
            _fail(stage, event, "Draft script is empty")
        if not doc.get("dialogueMap") or unassigned_chunks(doc.get("dialogueMap")):
            _fail(stage, event, "Dialogue map is not confirmed")

    elif event == EV_REFINE_SCRIPT:
        view = inputs.get("view") or "draftScript"
        if view not in SCRIPT_VIEWS:
            _fail(stage, event, f"Unknown script view '{view}'", view=view)
        if is_blank(inputs.get("feedback")):
            _fail(stage, event, "Refinement feedback is empty")
        if is_blank(doc.get(view)):
            _fail(stage, event, f"{view} is empty", view=view)

    elif event == EV_REFINE_BLOCK:
        blocks = doc.get("draftScript") or []
        index = inputs.get("index")
        if not isinstance(index, int) or isinstance(index, bool) or not (0 <= index < len(blocks)):
            _fail(stage, event, f"Block index {index!r} is out of range", index=index)
        if is_blank((blocks[index] or {}).get("content")):
            _fail(stage, event, f"Block {index} has no content", index=index)

    elif event == EV_FINALIZE_SCRIPT:
        if is_blank(doc.get("finalScript")) or is_blank(doc.get("recordableVoiceover")):
            _fail(stage, event, "Final script and recordable voiceover must both be assembled first")

    elif event == EV_COMPLETE:
        if is_blank(doc.get("editingShotList")):
            _fail(stage, event, "Editing shot list is empty")

    return target


def apply_transition(doc: dict, event: str, updates: Optional[Dict[str, Any]] = None) -> dict:
    """
    New document with `updates` merged and workflowStatus advanced.
    Preconditions are the caller's job (check_precondition); the transition
    itself is still looked up in the table.
    """
    stage = resolve_status(doc)
    target = next_stage(stage, event)
    furthest = furthest_status(doc)
    updates = copy.deepcopy(updates or {})

    out = normalize_blueprint(doc)
    invalidated = list(out.get("invalidatedFields") or [])

    if stage_index(stage) < stage_index(furthest):
        for field in DOWNSTREAM_FIELDS.get(event, ()):
            if field in updates:
                continue
            if not is_blank(out.get(field)) and field not in invalidated:
                invalidated.append(field)
            out[field] = empty_value(field)
        new_furthest = target
    else:
        new_furthest = target if stage_index(target) > stage_index(furthest) else furthest

    out.update(updates)
    out["invalidatedFields"] = [f for f in invalidated if f not in updates]
    out["workflowStatus"] = target
    out["furthestStatus"] = new_furthest
    out["updatedAt"] = _now_iso()
    return out


def navigate_to(doc: dict, stage: str) -> dict:
    current = resolve_status(doc)
    if current == LEGACY_VIEW:
        raise PreconditionError("Legacy blueprints must be reset before navigating", stage=current)
    if stage not in STAGES:
        raise PreconditionError(f"Unknown stage '{stage}'", stage=current, details={"target": stage})
    furthest = furthest_status(doc)
    if stage_index(stage) > stage_index(furthest):
        raise PreconditionError(
            f"Stage '{stage}' has not been reached yet",
            stage=current,
            details={"target": stage, "furthest": furthest},
        )
    out = normalize_blueprint(doc)
    out["workflowStatus"] = stage
    out["furthestStatus"] = furthest
    out["updatedAt"] = _now_iso()
    return out


def reset_blueprint(doc: dict) -> dict:
    """Destructive reset of a legacy blueprint back to the first stage."""
    stage = resolve_status(doc)
    target = next_stage(stage, EV_RESET)
    out = normalize_blueprint(doc)
    for field in STAGE_FIELDS:
        out[field] = empty_value(field)
    if "full_video_script_text" in out:
        out["full_video_script_text"] = ""
    out["invalidatedFields"] = []
    out["workflowStatus"] = target
    out["furthestStatus"] = target
    out["updatedAt"] = _now_iso()
    return out


def check_edit(doc: dict, fields: Iterable[str]) -> None:
    stage = resolve_status(doc)
    allowed = EDITABLE_FIELDS.get(stage, frozenset())
    denied = sorted(f for f in fields if f not in allowed)
    if denied:
        raise PreconditionError(
            f"Field(s) {', '.join(denied)} cannot be edited in stage '{stage}'",
            stage=stage,
            details={"fields": denied, "editable": sorted(allowed)},
        )


def set_location_tag(doc: dict, index: int, tag: str, known_locations: Iterable[str]) -> dict:
    check_edit(doc, ["dialogueMap"])
    stage = resolve_status(doc)
    dialogue_map = list(doc.get("dialogueMap") or [])
    if not isinstance(index, int) or not (0 <= index < len(dialogue_map)):
        raise PreconditionError(f"Dialogue chunk {index!r} does not exist", stage=stage)
    tag = _safe_str(tag).strip()
    if tag != UNASSIGNED and tag not in set(known_locations):
        raise PreconditionError(f"Unknown location '{tag}'", stage=stage, details={"locationTag": tag})

    out = copy.deepcopy(doc)
    chunk = out["dialogueMap"][index]
    chunk["locationTag"] = tag
    chunk["status"] = CHUNK_NEEDS_REVIEW if tag == UNASSIGNED else CHUNK_CONFIRMED
    return out


def toggle_research_note(doc: dict, location: str, index: int, approved: Optional[bool] = None) -> dict:
    check_edit(doc, ["researchNotes"])
    stage = resolve_status(doc)
    notes = (doc.get("researchNotes") or {}).get(location)
    if not isinstance(notes, list) or not isinstance(index, int) or not (0 <= index < len(notes)):
        raise PreconditionError(f"Research note {location!r}[{index!r}] does not exist", stage=stage)

    out = copy.deepcopy(doc)
    note = out["researchNotes"][location][index]
    note["approved"] = (not note.get("approved", True)) if approved is None else bool(approved)
    return out
