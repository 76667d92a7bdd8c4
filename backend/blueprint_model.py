"""
Blueprint data model shared by all scripting stages.

The blueprint is one JSON document per video. Document keys keep their
camelCase wire names (they are what the store persists); everything in here
works on plain dicts and returns new objects instead of mutating inputs.

Normalizers are the boundary checks: they either return a clean copy or
raise ValidationError naming the stage the data belongs to.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from workflow_errors import ValidationError


# Stage identifiers (values of blueprint.workflowStatus)
STAGE_TRANSCRIPT_INPUT = "transcript_input"
STAGE_DIALOGUE_MAPPING = "dialogue_mapping"
STAGE_NARRATIVE_REFINEMENT = "narrative_refinement"
STAGE_RESEARCH_APPROVAL = "research_approval"
STAGE_DRAFT_REVIEW = "draft_review"
STAGE_VOICEOVER_RECORDING = "voiceover_recording"
STAGE_FINAL = "final"
LEGACY_VIEW = "legacy_view"

STAGES = (
    STAGE_TRANSCRIPT_INPUT,
    STAGE_DIALOGUE_MAPPING,
    STAGE_NARRATIVE_REFINEMENT,
    STAGE_RESEARCH_APPROVAL,
    STAGE_DRAFT_REVIEW,
    STAGE_VOICEOVER_RECORDING,
    STAGE_FINAL,
)

UNASSIGNED = "Unassigned"
CHUNK_NEEDS_REVIEW = "needs_review"
CHUNK_CONFIRMED = "confirmed"
CHUNK_STATUSES = (CHUNK_NEEDS_REVIEW, CHUNK_CONFIRMED)

BLOCK_ON_CAMERA = "On-Camera"
BLOCK_VOICEOVER = "VO"

FOOTAGE_TYPES = ("onCamera", "bRoll", "drone")
_FOOTAGE_TYPE_ALIASES = {
    "oncamera": "onCamera",
    "on-camera": "onCamera",
    "on camera": "onCamera",
    "on_camera": "onCamera",
    "broll": "bRoll",
    "b-roll": "bRoll",
    "b roll": "bRoll",
    "b_roll": "bRoll",
    "drone": "drone",
}

SEQUENCE_TYPES = ("hook", "intro", "content", "conclusion")

# Everything a stage writes. Cleared wholesale by the legacy reset.
STAGE_FIELDS = (
    "rawTranscript",
    "dialogueMap",
    "narrativeProposals",
    "approvedNarrative",
    "researchNotes",
    "draftScript",
    "finalScript",
    "recordableVoiceover",
    "editingShotList",
    "shots",
)

# Fields whose previous value goes to revisionHistory when an AI result replaces it.
SCRIPT_FIELDS = ("draftScript", "finalScript", "recordableVoiceover")

# Older blueprint formats stored the whole script in one of these.
LEGACY_SCRIPT_FIELDS = ("finalScript", "full_video_script_text")

DEFAULT_SHOT_SECONDS = 5


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _safe_str(x: Any) -> str:
    return "" if x is None else str(x)


def _require(condition: bool, message: str, stage: Optional[str] = None, field: Optional[str] = None) -> None:
    if not condition:
        details = {"field": field} if field else None
        raise ValidationError(message, stage=stage, details=details)


def _coerce_list(val: Any) -> list:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [val]


def is_blank(value: Any) -> bool:
    """True for None, whitespace-only strings and empty containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def empty_value(field: str) -> Any:
    if field in ("rawTranscript", "finalScript", "recordableVoiceover"):
        return ""
    if field in ("approvedNarrative", "researchNotes"):
        return {}
    return []


def make_initial_blueprint() -> dict:
    doc = {
        "workflowStatus": STAGE_TRANSCRIPT_INPUT,
        "furthestStatus": STAGE_TRANSCRIPT_INPUT,
    }
    for field in STAGE_FIELDS:
        doc[field] = empty_value(field)
    doc["invalidatedFields"] = []
    doc["revisionHistory"] = []
    doc["updatedAt"] = _now_iso()
    return doc


def normalize_blueprint(doc: Optional[dict]) -> dict:
    """
    Backward compatibility helper.
    Older documents may miss newer fields; this fills them with empty values.
    workflowStatus is left as found, legacy detection needs the raw value.
    """
    out = copy.deepcopy(doc) if isinstance(doc, dict) else {}
    for field in STAGE_FIELDS:
        if field not in out or out[field] is None:
            out[field] = empty_value(field)
    if not isinstance(out.get("invalidatedFields"), list):
        out["invalidatedFields"] = []
    if not isinstance(out.get("revisionHistory"), list):
        out["revisionHistory"] = []
    return out


# ---------------------------------------------------------------------------
# Footage inventory
# ---------------------------------------------------------------------------

def normalize_footage_type(value: Any) -> Optional[str]:
    """Canonical footage type name, or None when the value is not a known type."""
    raw = _safe_str(value).strip()
    if raw in FOOTAGE_TYPES:
        return raw
    return _FOOTAGE_TYPE_ALIASES.get(raw.lower())


def normalize_footage_inventory(obj: Any) -> Dict[str, Dict[str, bool]]:
    _require(isinstance(obj, dict), "Footage inventory must be an object of location -> footage flags", field="footage_inventory")
    out: Dict[str, Dict[str, bool]] = {}
    for name, flags in obj.items():
        location = _safe_str(name).strip()
        _require(bool(location), "Footage inventory location name must not be empty", field="footage_inventory")
        _require(isinstance(flags, dict), f"Footage flags for '{location}' must be an object", field="footage_inventory")
        out[location] = {ft: bool(flags.get(ft, False)) for ft in FOOTAGE_TYPES}
    return out


def location_tags(inventory: Optional[dict]) -> List[str]:
    return [name for name in (inventory or {}).keys() if _safe_str(name).strip()]


def available_footage_types(inventory: Optional[dict], location: str) -> List[str]:
    flags = (inventory or {}).get(location) or {}
    return [ft for ft in FOOTAGE_TYPES if flags.get(ft)]


# ---------------------------------------------------------------------------
# Dialogue map
# ---------------------------------------------------------------------------

def normalize_dialogue_map(
    items: Any,
    known_locations: Optional[Iterable[str]] = None,
    default_status: str = CHUNK_NEEDS_REVIEW,
    stage: str = STAGE_DIALOGUE_MAPPING,
) -> List[dict]:
    _require(isinstance(items, list), "Dialogue map must be an array", stage, "dialogueMap")
    known = set(known_locations) if known_locations is not None else None
    out = []
    for i, item in enumerate(items):
        _require(isinstance(item, dict), f"dialogueMap[{i}] must be an object", stage, "dialogueMap")
        chunk = _safe_str(item.get("dialogueChunk")).strip()
        _require(bool(chunk), f"dialogueMap[{i}].dialogueChunk is required", stage, "dialogueMap")
        _require("locationTag" in item and isinstance(item.get("locationTag"), str), f"dialogueMap[{i}].locationTag is required", stage, "dialogueMap")
        tag = item["locationTag"].strip()
        if known is not None:
            _require(
                tag == UNASSIGNED or tag in known,
                f"dialogueMap[{i}].locationTag '{tag}' is not a known location",
                stage,
                "dialogueMap",
            )
        status = item.get("status")
        if status not in CHUNK_STATUSES:
            status = default_status
        out.append({"dialogueChunk": chunk, "locationTag": tag, "status": status})
    return out


def unassigned_chunks(dialogue_map: Optional[list]) -> List[int]:
    """Indexes of chunks that still block the mapping stage."""
    bad = []
    for i, item in enumerate(dialogue_map or []):
        tag = _safe_str((item or {}).get("locationTag")).strip()
        if not tag or tag == UNASSIGNED:
            bad.append(i)
    return bad


# ---------------------------------------------------------------------------
# Narrative
# ---------------------------------------------------------------------------

def normalize_narrative_proposal(obj: Any, stage: str = STAGE_NARRATIVE_REFINEMENT) -> dict:
    _require(isinstance(obj, dict), "Narrative proposal must be an object", stage, "narrativeProposals")
    core_angle = _safe_str(obj.get("coreAngle")).strip()
    _require(bool(core_angle), "Narrative proposal coreAngle is required", stage, "coreAngle")
    arc = obj.get("narrativeArc")
    _require(isinstance(arc, list) and len(arc) > 0, "Narrative proposal narrativeArc[] is required", stage, "narrativeArc")

    arc_out = []
    for i, step in enumerate(arc):
        _require(isinstance(step, dict), f"narrativeArc[{i}] must be an object", stage, "narrativeArc")
        name = _safe_str(step.get("step")).strip()
        description = _safe_str(step.get("description")).strip()
        _require(bool(name), f"narrativeArc[{i}].step is required", stage, "narrativeArc")
        _require(bool(description), f"narrativeArc[{i}].description is required", stage, "narrativeArc")
        locations = []
        for loc in _coerce_list(step.get("locations_featured")):
            loc_name = _safe_str(loc).strip()
            _require(bool(loc_name), f"narrativeArc[{i}].locations_featured contains an empty name", stage, "narrativeArc")
            if loc_name not in locations:
                locations.append(loc_name)
        arc_out.append({"step": name, "description": description, "locations_featured": locations})

    _require(isinstance(obj.get("valueAddResearch"), list), "Narrative proposal valueAddResearch[] is required", stage, "valueAddResearch")
    research_out = []
    for i, item in enumerate(obj["valueAddResearch"]):
        if isinstance(item, dict):
            location = _safe_str(item.get("location")).strip()
            topic = _safe_str(item.get("topic")).strip()
            _require(bool(topic), f"valueAddResearch[{i}].topic is required", stage, "valueAddResearch")
            research_out.append({"location": location, "topic": topic})
        else:
            topic = _safe_str(item).strip()
            _require(bool(topic), f"valueAddResearch[{i}] must not be empty", stage, "valueAddResearch")
            research_out.append(topic)

    return {"coreAngle": core_angle, "narrativeArc": arc_out, "valueAddResearch": research_out}


def current_proposal(doc: dict) -> Optional[dict]:
    proposals = doc.get("narrativeProposals") or []
    return proposals[-1] if proposals else None


def narrative_locations(proposal: Optional[dict]) -> List[str]:
    """Unique locations referenced by the narrative arc, in arc order."""
    seen: List[str] = []
    for step in (proposal or {}).get("narrativeArc") or []:
        for loc in step.get("locations_featured") or []:
            if loc and loc not in seen:
                seen.append(loc)
    return seen


# ---------------------------------------------------------------------------
# Research notes
# ---------------------------------------------------------------------------

def note_text(note: dict) -> str:
    parts = [_safe_str(note.get(k)).strip() for k in ("fact", "story")]
    return " ".join(p for p in parts if p)


def normalize_research_notes(
    obj: Any,
    allowed_locations: Optional[Iterable[str]] = None,
    default_approved: bool = True,
    stage: str = STAGE_RESEARCH_APPROVAL,
) -> Dict[str, List[dict]]:
    """
    Structural check only: object of arrays of {fact|story, approved}.
    Location keys are data, never enumerated up front.
    """
    _require(isinstance(obj, dict), "Research notes must be an object of location -> notes[]", stage, "researchNotes")
    allowed = set(allowed_locations) if allowed_locations is not None else None
    out: Dict[str, List[dict]] = {}
    for location, notes in obj.items():
        loc = _safe_str(location).strip()
        _require(bool(loc), "Research notes contain an empty location key", stage, "researchNotes")
        if allowed is not None:
            _require(loc in allowed, f"Research notes reference location '{loc}' which is not in the approved narrative", stage, "researchNotes")
        _require(isinstance(notes, list), f"researchNotes['{loc}'] must be an array", stage, "researchNotes")
        notes_out = []
        for i, note in enumerate(notes):
            _require(isinstance(note, dict), f"researchNotes['{loc}'][{i}] must be an object", stage, "researchNotes")
            clean = {}
            for key in ("fact", "story"):
                text = _safe_str(note.get(key)).strip()
                if text:
                    clean[key] = text
            _require(bool(clean), f"researchNotes['{loc}'][{i}] needs a fact or a story", stage, "researchNotes")
            approved = note.get("approved", default_approved)
            _require(isinstance(approved, bool), f"researchNotes['{loc}'][{i}].approved must be a boolean", stage, "researchNotes")
            clean["approved"] = approved
            notes_out.append(clean)
        out[loc] = notes_out
    return out


def approved_research(research_notes: Optional[dict]) -> Dict[str, List[dict]]:
    """Only approved:true notes; locations left without notes are dropped."""
    out: Dict[str, List[dict]] = {}
    for location, notes in (research_notes or {}).items():
        kept = [copy.deepcopy(n) for n in notes or [] if isinstance(n, dict) and n.get("approved") is True]
        if kept:
            out[location] = kept
    return out


def rejected_note_texts(research_notes: Optional[dict]) -> List[str]:
    texts = []
    for notes in (research_notes or {}).values():
        for note in notes or []:
            if isinstance(note, dict) and note.get("approved") is not True:
                for key in ("fact", "story"):
                    text = _safe_str(note.get(key)).strip()
                    if text:
                        texts.append(text)
    return texts


# ---------------------------------------------------------------------------
# Script blocks, shot list, shots
# ---------------------------------------------------------------------------

def normalize_script_blocks(blocks: Any, stage: str = STAGE_DRAFT_REVIEW, field: str = "draftScript") -> List[dict]:
    _require(isinstance(blocks, list) and len(blocks) > 0, f"{field} must be a non-empty array of blocks", stage, field)
    out = []
    for i, block in enumerate(blocks):
        _require(isinstance(block, dict), f"{field}[{i}] must be an object", stage, field)
        block_type = _safe_str(block.get("type")).strip()
        _require(bool(block_type), f"{field}[{i}].type is required", stage, field)
        _require(isinstance(block.get("content"), str), f"{field}[{i}].content must be a string", stage, field)
        clean = {"type": block_type, "content": block["content"]}
        location = _safe_str(block.get("locationTag")).strip()
        if location:
            clean["locationTag"] = location
        out.append(clean)
    return out


def normalize_shot_list(sequences: Any, inventory: Optional[dict], stage: str = STAGE_VOICEOVER_RECORDING) -> List[dict]:
    field = "editingShotList"
    _require(isinstance(sequences, list) and len(sequences) > 0, "Shot list sequences[] must be a non-empty array", stage, field)
    out = []
    for i, seq in enumerate(sequences):
        _require(isinstance(seq, dict), f"sequences[{i}] must be an object", stage, field)
        name = _safe_str(seq.get("name")).strip()
        _require(bool(name), f"sequences[{i}].name is required", stage, field)
        seq_type = _safe_str(seq.get("type")).strip().lower()
        _require(seq_type in SEQUENCE_TYPES, f"sequences[{i}].type must be one of {', '.join(SEQUENCE_TYPES)}", stage, field)
        for key in ("voiceover_script", "on_camera_dialogue"):
            _require(isinstance(seq.get(key), str), f"sequences[{i}].{key} must be a string", stage, field)
        _require(isinstance(seq.get("locations"), list), f"sequences[{i}].locations[] is required", stage, field)

        locations_out = []
        for j, loc in enumerate(seq["locations"]):
            _require(isinstance(loc, dict), f"sequences[{i}].locations[{j}] must be an object", stage, field)
            loc_name = _safe_str(loc.get("name")).strip()
            _require(loc_name in (inventory or {}), f"sequences[{i}].locations[{j}] '{loc_name}' is not in the footage inventory", stage, field)
            available = available_footage_types(inventory, loc_name)
            types_out = []
            for ft in _coerce_list(loc.get("footage_types")):
                canonical = normalize_footage_type(ft)
                _require(
                    canonical is not None and canonical in available,
                    f"sequences[{i}].locations[{j}] asks for '{ft}' footage but '{loc_name}' only has {', '.join(available) or 'none'}",
                    stage,
                    field,
                )
                if canonical not in types_out:
                    types_out.append(canonical)
            _require(bool(types_out), f"sequences[{i}].locations[{j}].footage_types[] must not be empty", stage, field)
            locations_out.append({"name": loc_name, "footage_types": types_out})

        out.append({
            "name": name,
            "type": seq_type,
            "voiceover_script": seq["voiceover_script"],
            "on_camera_dialogue": seq["on_camera_dialogue"],
            "locations": locations_out,
        })
    return out


def _gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def normalize_shots(shots: Any, inventory: Optional[dict], stage: str = STAGE_TRANSCRIPT_INPUT) -> List[dict]:
    """
    Initial-blueprint variant. shot_type must be footage the inventory really
    has for that location; ids are generated when the model left them out.
    """
    field = "shots"
    _require(isinstance(shots, list) and len(shots) > 0, "shots[] must be a non-empty array", stage, field)
    out = []
    for i, shot in enumerate(shots):
        _require(isinstance(shot, dict), f"shots[{i}] must be an object", stage, field)
        location = _safe_str(shot.get("location_tag") or shot.get("location")).strip()
        _require(location in (inventory or {}), f"shots[{i}].location_tag '{location}' is not in the footage inventory", stage, field)
        shot_type = normalize_footage_type(shot.get("shot_type"))
        available = available_footage_types(inventory, location)
        _require(
            shot_type is not None and shot_type in available,
            f"shots[{i}].shot_type '{_safe_str(shot.get('shot_type'))}' is not available for '{location}' (has {', '.join(available) or 'none'})",
            stage,
            field,
        )
        seconds = shot.get("estimated_time_seconds")
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds <= 0:
            seconds = DEFAULT_SHOT_SECONDS
        out.append({
            "shot_id": _safe_str(shot.get("shot_id")).strip() or _gen_id("shot"),
            "scene_id": _safe_str(shot.get("scene_id")).strip() or _gen_id("scene"),
            "scene_narrative_purpose": _safe_str(shot.get("scene_narrative_purpose")).strip() or "Narrative Not Assigned",
            "location_tag": location,
            "shot_type": shot_type,
            "shot_description": _safe_str(shot.get("shot_description")).strip() or "Description Not Assigned",
            "on_camera_dialogue": _safe_str(shot.get("on_camera_dialogue")),
            "voiceover_script": _safe_str(shot.get("voiceover_script")),
            "ai_research_notes": [_safe_str(n) for n in _coerce_list(shot.get("ai_research_notes")) if _safe_str(n).strip()],
            "estimated_time_seconds": seconds,
        })
    return out
