import json
import os
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import requests

from blueprint_model import (
    CHUNK_NEEDS_REVIEW,
    STAGE_DIALOGUE_MAPPING,
    STAGE_DRAFT_REVIEW,
    STAGE_NARRATIVE_REFINEMENT,
    STAGE_RESEARCH_APPROVAL,
    STAGE_TRANSCRIPT_INPUT,
    UNASSIGNED,
    _safe_str,
    location_tags,
    narrative_locations,
    normalize_dialogue_map,
    normalize_narrative_proposal,
    normalize_research_notes,
    normalize_script_blocks,
    normalize_shot_list,
    normalize_shots,
)
from script_assembly import check_dialogue_coverage, chunks_in_voiceover
from workflow_errors import AIOperationError, InvalidAIResponse, ValidationError


OP_MAP_DIALOGUE = "map-dialogue"
OP_PROPOSE_NARRATIVE = "propose-narrative"
OP_REFINE_NARRATIVE = "refine-narrative"
OP_CONDUCT_RESEARCH = "conduct-research"
OP_DRAFT_VOICEOVER = "draft-voiceover"
OP_ASSEMBLE_SCRIPT = "assemble-script"
OP_GENERATE_SHOT_LIST = "generate-shot-list"
OP_REFINE_SCRIPT = "refine-script"
OP_REFINE_SCRIPT_BLOCK = "refine-script-block"
OP_CREATE_INITIAL_BLUEPRINT = "create-initial-blueprint"

_DEFAULT_LLM_CONFIG = {"provider": "openai", "model": "gpt-4o", "temperature": 0.4, "prompt_template": None}


# ---------------------------------------------------------------------------
# LLM capability (OpenAI / OpenRouter chat completions)
# ---------------------------------------------------------------------------

def _parse_json_from_text(text: str) -> Any:
    """
    Best-effort JSON parse (object or array):
    - direct json.loads
    - strip ```json fences
    - extract the first {...} or [...] block, whichever starts first
    """
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        pass

    fenced = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE).strip()
    fenced = re.sub(r"\s*```$", "", fenced).strip()
    if fenced != raw:
        try:
            return json.loads(fenced)
        except ValueError:
            pass

    candidates = []
    for pattern in (r"\{[\s\S]*\}", r"\[[\s\S]*\]"):
        m = re.search(pattern, raw)
        if m:
            candidates.append((m.start(), m.group(0).strip()))
    for _, candidate in sorted(candidates):
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def _llm_chat_json_raw(
    provider: str,
    prompt: str,
    api_key: str,
    model: str = "gpt-4o",
    temperature: float = 0.4,
    timeout_s: int = 600,
) -> Tuple[str, Any, dict]:
    """
    Calls provider Chat Completions.
    We do not rely on response_format (OpenRouter multi-provider), JSON is
    parsed from the returned text instead.
    Returns: (raw_text, parsed_json_or_none, meta)
    """
    provider = (provider or "").strip().lower()
    if provider not in ("openai", "openrouter"):
        raise AIOperationError(f"Unsupported provider: {provider}")

    if provider == "openai":
        url = "https://api.openai.com/v1/chat/completions"
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
    else:
        url = "https://openrouter.ai/api/v1/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": os.getenv("OPENROUTER_HTTP_REFERER", "http://localhost"),
            "X-Title": os.getenv("OPENROUTER_APP_TITLE", "scripting-workflow"),
        }

    payload = {
        "model": model,
        "messages": [
            {
                "role": "system",
                "content": "Return ONLY valid JSON matching the requested schema. Do not include markdown.",
            },
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature,
        "max_tokens": 16000,
    }
    resp = requests.post(url, headers=headers, json=payload, timeout=timeout_s)

    meta: dict = {"provider": provider, "http_status": resp.status_code}

    if resp.status_code != 200:
        raise AIOperationError(
            f"{provider} API error {resp.status_code}",
            details={"http_status": resp.status_code, "response_head": _safe_str(resp.text)[:2000]},
        )

    try:
        resp_json = resp.json()
    except ValueError:
        resp_json = None
        meta["provider_response_text_head"] = _safe_str(resp.text)[:1500]

    if isinstance(resp_json, dict):
        meta["provider_response"] = {
            "id": resp_json.get("id"),
            "model": resp_json.get("model"),
            "usage": resp_json.get("usage"),
        }

    choices = (resp_json or {}).get("choices") if isinstance(resp_json, dict) else None
    c0 = choices[0] if isinstance(choices, list) and choices else {}
    msg = (c0.get("message") or {}) if isinstance(c0, dict) else {}
    meta["finish_reason"] = c0.get("finish_reason") if isinstance(c0, dict) else None

    content = msg.get("content")
    reasoning = msg.get("reasoning")
    # OpenRouter sometimes returns empty content and puts the text into reasoning.
    text_for_parse = ""
    if isinstance(content, str) and content.strip():
        text_for_parse = content
        meta["response_text_source"] = "content"
    elif isinstance(reasoning, str) and reasoning.strip():
        text_for_parse = reasoning
        meta["response_text_source"] = "reasoning"
    else:
        meta["response_text_source"] = "none"

    return text_for_parse, _parse_json_from_text(text_for_parse), meta


class LLMCapability:
    """
    Default AI capability: invoke(prompt_spec) -> parsed JSON, or raises
    AIOperationError. API keys come from key_resolver(provider).
    """

    def __init__(self, key_resolver: Callable[[str], Optional[str]], timeout_s: int = 600):
        self.key_resolver = key_resolver
        self.timeout_s = timeout_s

    def invoke(self, prompt_spec: dict) -> Any:
        provider = _safe_str(prompt_spec.get("provider") or "openai").lower()
        operation = prompt_spec.get("operation")
        api_key = self.key_resolver(provider)
        if not api_key:
            raise AIOperationError(f"API key for provider '{provider}' is not configured", details={"operation": operation})

        prompt = prompt_spec["prompt"]
        schema = prompt_spec.get("response_schema")
        if schema:
            prompt = f"{prompt}\n\nResponse JSON schema:\n{json.dumps(schema, ensure_ascii=False)}"

        try:
            raw_text, parsed, meta = _llm_chat_json_raw(
                provider,
                prompt,
                api_key,
                model=prompt_spec.get("model") or "gpt-4o",
                temperature=float(prompt_spec.get("temperature", 0.4)),
                timeout_s=self.timeout_s,
            )
        except requests.RequestException as e:
            raise AIOperationError(f"{provider} request failed: {e}", details={"operation": operation})

        if parsed is None:
            raise AIOperationError(
                f"{operation}: model output is not valid JSON",
                details={"operation": operation, "finish_reason": meta.get("finish_reason"), "raw_head": raw_text[:400]},
            )
        return parsed


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def _j(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2)


def _prompt_map_dialogue(payload: dict) -> str:
    return f"""
You are a video editor's assistant. Split the creator's transcript into on-camera dialogue chunks
and assign each chunk to the location where it was most likely filmed.

Return a JSON array:
[{{"dialogueChunk": string, "locationTag": string}}]

Rules:
- Keep the transcript order. Every sentence belongs to exactly one chunk; do not rewrite the text.
- locationTag MUST be one of the known locations below, or exactly "{UNASSIGNED}" when unsure.
- Never invent a location.

Known locations:
{_j(payload.get("locations") or [])}

Transcript:
{payload.get("transcript") or ""}
""".strip()


_NARRATIVE_SCHEMA_TEXT = """{
  "coreAngle": string,
  "narrativeArc": [{"step": string, "description": string, "locations_featured": [string]}],
  "valueAddResearch": [{"location": string, "topic": string}]
}"""


def _prompt_propose_narrative(payload: dict) -> str:
    return f"""
You are a documentary story editor. Propose ONE narrative for this travel video, built around
the creator's confirmed on-camera dialogue.

Return a JSON object:
{_NARRATIVE_SCHEMA_TEXT}

Rules:
- narrativeArc is ordered; each step lists the locations it features (names from the dialogue map only).
- valueAddResearch suggests research topics that would enrich the voiceover, per location.

Dialogue map:
{_j(payload.get("dialogueMap") or [])}
""".strip()


def _prompt_refine_narrative(payload: dict) -> str:
    return f"""
You are a documentary story editor. Write a NEW narrative proposal that applies the creator's feedback
to the latest proposal. Earlier proposals are history; learn from them, do not repeat rejected ideas.

Return a JSON object:
{_NARRATIVE_SCHEMA_TEXT}

Creator feedback (must follow):
{payload.get("feedback") or ""}

Proposal history (oldest first, last one is current):
{_j(payload.get("proposals") or [])}

Dialogue map:
{_j(payload.get("dialogueMap") or [])}
""".strip()


def _prompt_conduct_research(payload: dict) -> str:
    narrative = payload.get("approvedNarrative") or {}
    return f"""
You are a research assistant for a travel documentary. For each location featured in the approved
narrative, collect short, verifiable facts or anecdotes that add value to the voiceover.

Return a JSON object keyed by location name:
{{"<location>": [{{"fact": string}} or {{"story": string}}]}}

Rules:
- Use ONLY these location keys: {_j(narrative_locations(narrative))}
- Each note is one self-contained fact or story. No opinions, no filler.

Approved narrative:
{_j(narrative)}
""".strip()


def _prompt_draft_voiceover(payload: dict) -> str:
    research = payload.get("approvedResearch") or {}
    return f"""
You are a voiceover writer. Draft the voiceover text for each location of the approved narrative.

Return a JSON object keyed by location name, values are the voiceover text (string).

Rules:
- Source facts ONLY from the approved research below. Never add facts that are not listed.
- A location without approved research gets an empty string "".
- Use ONLY these location keys: {_j(narrative_locations(payload.get("approvedNarrative")))}

Approved narrative:
{_j(payload.get("approvedNarrative") or {})}

Approved research:
{_j(research)}
""".strip()


def _prompt_assemble_script(payload: dict) -> str:
    return f"""
You are a script editor. Assemble the final video script from the interleaved blocks below and polish
the voiceover transitions.

Return a JSON object:
{{"fullScript": string, "recordableVoiceover": string}}

Rules:
- fullScript keeps the block order below. Each block starts with a header line "[<type> - <location>]".
- On-Camera blocks are recorded already: copy their text VERBATIM, never reword, drop or repeat them.
- recordableVoiceover contains ONLY the voiceover text (no on-camera dialogue, no headers), in order.

Interleaved blocks:
{_j(payload.get("interleaved") or [])}

Approved narrative:
{_j(payload.get("approvedNarrative") or {})}
""".strip()


def _prompt_generate_shot_list(payload: dict) -> str:
    return f"""
You are a video editor. Turn the final script into an ordered editing shot list.

Return a JSON object:
{{"sequences": [{{"name": string, "type": "hook"|"intro"|"content"|"conclusion", "voiceover_script": string,
  "on_camera_dialogue": string, "locations": [{{"name": string, "footage_types": ["bRoll"|"onCamera"|"drone"]}}]}}]}}

Rules:
- Location names MUST come from the footage inventory.
- footage_types MUST be ones the inventory marks true for that location. Never invent footage.

Footage inventory:
{_j(payload.get("footageInventory") or {})}

Approved narrative:
{_j(payload.get("approvedNarrative") or {})}

Dialogue map:
{_j(payload.get("dialogueMap") or [])}

Final script:
{payload.get("finalScript") or ""}

Recordable voiceover:
{payload.get("recordableVoiceover") or ""}
""".strip()


def _prompt_refine_script(payload: dict) -> str:
    view = payload.get("view") or "draftScript"
    if view == "draftScript":
        shape = '[{"type": string, "locationTag": string, "content": string}]  (same blocks, same order)'
    else:
        shape = '{"content": string}'
    return f"""
You are a script editor. Rewrite the script below as a whole, following the creator's style feedback.

Return JSON: {shape}

Rules:
- Keep On-Camera dialogue verbatim; change only voiceover wording.
- Do not add facts that are not already in the script.

Creator feedback (must follow):
{payload.get("feedback") or ""}

Script:
{payload.get("content") if isinstance(payload.get("content"), str) else _j(payload.get("content"))}
""".strip()


def _prompt_refine_script_block(payload: dict) -> str:
    feedback = _safe_str(payload.get("feedback")).strip()
    feedback_part = f"\nCreator feedback (must follow):\n{feedback}\n" if feedback else ""
    return f"""
You are a script editor. Improve this single voiceover block: tighter, more vivid, same facts.

Return a JSON object: {{"content": string}}
{feedback_part}
Block:
{payload.get("blockContent") or ""}
""".strip()


def _prompt_create_initial_blueprint(payload: dict) -> str:
    inventory = payload.get("footageInventory") or {}
    footage_notes = []
    for name, flags in inventory.items():
        types = [ft for ft in ("bRoll", "onCamera", "drone") if (flags or {}).get(ft)]
        footage_notes.append(f"- {name}: {', '.join(types) or 'no footage'}")
    return f"""
You are a YouTube scriptwriter and director. Structure the creator's brain dump into a shot list.

Return a JSON object:
{{"shots": [{{"scene_id": string, "scene_narrative_purpose": string, "shot_id": string, "location_tag": string,
  "shot_type": "bRoll"|"onCamera"|"drone", "shot_description": string, "on_camera_dialogue": string,
  "voiceover_script": string, "ai_research_notes": [string], "estimated_time_seconds": number}}]}}

Rules:
- location_tag MUST be one of the inventory locations.
- shot_type MUST be footage that location actually has. Do not assume any footage exists unless listed.

Video title: {payload.get("title") or "(untitled)"}

Available footage:
{chr(10).join(footage_notes) or "none"}

Creator's brain dump:
{payload.get("notes") or ""}
""".strip()


# ---------------------------------------------------------------------------
# Response schemas (hints for the model; validation is done in Python)
# ---------------------------------------------------------------------------

_BLOCKS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"type": {"type": "string"}, "locationTag": {"type": "string"}, "content": {"type": "string"}},
        "required": ["type", "content"],
    },
}

_NARRATIVE_SCHEMA = {
    "type": "object",
    "properties": {
        "coreAngle": {"type": "string"},
        "narrativeArc": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "step": {"type": "string"},
                    "description": {"type": "string"},
                    "locations_featured": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["step", "description"],
            },
        },
        "valueAddResearch": {
            "type": "array",
            "items": {"type": "object", "properties": {"location": {"type": "string"}, "topic": {"type": "string"}}},
        },
    },
    "required": ["coreAngle", "narrativeArc", "valueAddResearch"],
}

_CONTENT_SCHEMA = {"type": "object", "properties": {"content": {"type": "string"}}, "required": ["content"]}


def _schema_map_dialogue(payload: dict) -> dict:
    return {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "dialogueChunk": {"type": "string"},
                "locationTag": {"type": "string", "enum": list(payload.get("locations") or []) + [UNASSIGNED]},
            },
            "required": ["dialogueChunk", "locationTag"],
        },
    }


def _schema_research(payload: dict) -> dict:
    note = {"type": "object", "properties": {"fact": {"type": "string"}, "story": {"type": "string"}}}
    return {"type": "object", "additionalProperties": {"type": "array", "items": note}}


def _schema_draft_voiceover(payload: dict) -> dict:
    return {"type": "object", "additionalProperties": {"type": "string"}}


def _schema_refine_script(payload: dict) -> dict:
    return _BLOCKS_SCHEMA if (payload.get("view") or "draftScript") == "draftScript" else _CONTENT_SCHEMA


# ---------------------------------------------------------------------------
# Validators: (result, payload, guards) -> normalized result
# Raise ValidationError; the gateway re-raises it as InvalidAIResponse.
# ---------------------------------------------------------------------------

def _unwrap(result: Any, key: str) -> Any:
    """Accept {key: value} wrappers some models add around arrays."""
    if isinstance(result, dict) and set(result.keys()) == {key}:
        return result[key]
    return result


def _text_result(result: Any, what: str, stage: str) -> str:
    if isinstance(result, dict) and isinstance(result.get("content"), str):
        result = result["content"]
    if not isinstance(result, str) or not result.strip():
        raise ValidationError(f"{what} must be a non-empty string", stage=stage)
    return result.strip()


def _validate_map_dialogue(result: Any, payload: dict, guards: dict) -> List[dict]:
    items = normalize_dialogue_map(_unwrap(result, "dialogueMap"), known_locations=payload.get("locations") or [])
    if not items and _safe_str(payload.get("transcript")).strip():
        raise ValidationError("Dialogue map is empty for a non-empty transcript", stage=STAGE_DIALOGUE_MAPPING)
    for item in items:
        item["status"] = CHUNK_NEEDS_REVIEW
    return items


def _validate_narrative(result: Any, payload: dict, guards: dict) -> dict:
    return normalize_narrative_proposal(result)


def _validate_research(result: Any, payload: dict, guards: dict) -> dict:
    allowed = narrative_locations(payload.get("approvedNarrative"))
    notes = normalize_research_notes(result, allowed_locations=allowed)
    for location_notes in notes.values():
        for note in location_notes:
            note["approved"] = True
    return notes


def _validate_draft_voiceover(result: Any, payload: dict, guards: dict) -> Dict[str, str]:
    if not isinstance(result, dict):
        raise ValidationError("Drafted voiceover must be an object of location -> text")
    research = payload.get("approvedResearch") or {}
    locations = narrative_locations(payload.get("approvedNarrative"))
    allowed = set(locations) | set(research.keys())

    out: Dict[str, str] = {}
    for location, text in result.items():
        if location not in allowed:
            raise ValidationError(f"Drafted voiceover references unknown location '{location}'")
        if not isinstance(text, str):
            raise ValidationError(f"Drafted voiceover for '{location}' must be a string")
        # only approved research may feed a draft
        out[location] = text.strip() if research.get(location) else ""
    for location in locations:
        out.setdefault(location, "")

    for rejected in guards.get("rejected_notes") or []:
        for location, text in out.items():
            if rejected and rejected in text:
                raise ValidationError(
                    f"Drafted voiceover for '{location}' repeats a rejected research note",
                    details={"location": location, "rejected_note": rejected[:120]},
                )
    return out


def _validate_assemble_script(result: Any, payload: dict, guards: dict) -> dict:
    if not isinstance(result, dict):
        raise ValidationError("Assembled script must be an object with fullScript and recordableVoiceover")
    full = result.get("fullScript")
    if full is None:
        full = result.get("finalScript")
    voiceover = result.get("recordableVoiceover")
    if not isinstance(full, str) or not full.strip():
        raise ValidationError("fullScript must be a non-empty string")
    if not isinstance(voiceover, str) or not voiceover.strip():
        raise ValidationError("recordableVoiceover must be a non-empty string")

    blocks = payload.get("interleaved") or []
    problems = check_dialogue_coverage(full, blocks)
    if problems:
        raise ValidationError("Assembled script lost or reordered on-camera dialogue", details={"problems": problems})
    leaked = chunks_in_voiceover(voiceover, blocks)
    if leaked:
        raise ValidationError(
            "recordableVoiceover contains on-camera dialogue",
            details={"chunks": [c[:80] for c in leaked]},
        )
    return {"fullScript": full.strip(), "recordableVoiceover": voiceover.strip()}


def _validate_shot_list(result: Any, payload: dict, guards: dict) -> List[dict]:
    return normalize_shot_list(_unwrap(result, "sequences"), payload.get("footageInventory") or {})


def _validate_refine_script(result: Any, payload: dict, guards: dict) -> Union[List[dict], str]:
    view = payload.get("view") or "draftScript"
    if view == "draftScript":
        return normalize_script_blocks(_unwrap(result, "blocks"))
    return _text_result(result, f"Refined {view}", STAGE_DRAFT_REVIEW)


def _validate_refine_block(result: Any, payload: dict, guards: dict) -> str:
    return _text_result(result, "Refined block", STAGE_DRAFT_REVIEW)


def _validate_initial_blueprint(result: Any, payload: dict, guards: dict) -> List[dict]:
    return normalize_shots(_unwrap(result, "shots"), payload.get("footageInventory") or {})


# ---------------------------------------------------------------------------
# Registry + gateway
# ---------------------------------------------------------------------------

class OperationSpec:
    def __init__(
        self,
        name: str,
        stage: str,
        build_prompt: Callable[[dict], str],
        response_schema: Union[dict, Callable[[dict], dict]],
        validate: Callable[[Any, dict, dict], Any],
    ):
        self.name = name
        self.stage = stage
        self.build_prompt = build_prompt
        self.response_schema = response_schema
        self.validate = validate

    def schema_for(self, payload: dict) -> dict:
        if callable(self.response_schema):
            return self.response_schema(payload)
        return self.response_schema


def build_operation_registry() -> Dict[str, OperationSpec]:
    specs = [
        OperationSpec(OP_MAP_DIALOGUE, STAGE_TRANSCRIPT_INPUT, _prompt_map_dialogue, _schema_map_dialogue, _validate_map_dialogue),
        OperationSpec(OP_PROPOSE_NARRATIVE, STAGE_DIALOGUE_MAPPING, _prompt_propose_narrative, _NARRATIVE_SCHEMA, _validate_narrative),
        OperationSpec(OP_REFINE_NARRATIVE, STAGE_NARRATIVE_REFINEMENT, _prompt_refine_narrative, _NARRATIVE_SCHEMA, _validate_narrative),
        OperationSpec(OP_CONDUCT_RESEARCH, STAGE_NARRATIVE_REFINEMENT, _prompt_conduct_research, _schema_research, _validate_research),
        OperationSpec(OP_DRAFT_VOICEOVER, STAGE_RESEARCH_APPROVAL, _prompt_draft_voiceover, _schema_draft_voiceover, _validate_draft_voiceover),
        OperationSpec(
            OP_ASSEMBLE_SCRIPT,
            STAGE_DRAFT_REVIEW,
            _prompt_assemble_script,
            {
                "type": "object",
                "properties": {"fullScript": {"type": "string"}, "recordableVoiceover": {"type": "string"}},
                "required": ["fullScript", "recordableVoiceover"],
            },
            _validate_assemble_script,
        ),
        OperationSpec(
            OP_GENERATE_SHOT_LIST,
            STAGE_DRAFT_REVIEW,
            _prompt_generate_shot_list,
            {"type": "object", "properties": {"sequences": {"type": "array"}}, "required": ["sequences"]},
            _validate_shot_list,
        ),
        OperationSpec(OP_REFINE_SCRIPT, STAGE_DRAFT_REVIEW, _prompt_refine_script, _schema_refine_script, _validate_refine_script),
        OperationSpec(OP_REFINE_SCRIPT_BLOCK, STAGE_DRAFT_REVIEW, _prompt_refine_script_block, _CONTENT_SCHEMA, _validate_refine_block),
        OperationSpec(
            OP_CREATE_INITIAL_BLUEPRINT,
            STAGE_TRANSCRIPT_INPUT,
            _prompt_create_initial_blueprint,
            {"type": "object", "properties": {"shots": {"type": "array"}}, "required": ["shots"]},
            _validate_initial_blueprint,
        ),
    ]
    return {s.name: s for s in specs}


def _safe_format_template(template: str, values: dict) -> str:
    """
    Replaces {key} ONLY if key is in values; JSON examples like {"a": 1}
    in the template stay untouched.
    """

    def replacer(match):
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return re.sub(r"\{(\w+)\}", replacer, template)


def _template_values(payload: dict) -> dict:
    values = {}
    for key, val in (payload or {}).items():
        values[key] = val if isinstance(val, str) else json.dumps(val, ensure_ascii=False)
    return values


class AIOperationGateway:
    """
    run(operation, payload) -> validated result.
    Never returns unvalidated model output.
    """

    def __init__(
        self,
        registry: Dict[str, OperationSpec],
        capability,
        llm_defaults: Union[dict, Callable[[], dict], None] = None,
    ):
        self.registry = registry
        self.capability = capability
        self._llm_defaults = llm_defaults or {}

    def operations(self) -> List[str]:
        return list(self.registry.keys())

    def config_for(self, operation: str) -> dict:
        defaults = self._llm_defaults() if callable(self._llm_defaults) else self._llm_defaults
        cfg = (defaults or {}).get(operation)
        return {**_DEFAULT_LLM_CONFIG, **(cfg if isinstance(cfg, dict) else {})}

    def build_prompt_spec(self, operation: str, payload: dict) -> dict:
        spec = self.registry[operation]
        config = self.config_for(operation)
        template = config.get("prompt_template")
        if template:
            prompt = _safe_format_template(template, _template_values(payload))
        else:
            prompt = spec.build_prompt(payload)
        return {
            "operation": operation,
            "prompt": prompt,
            "response_schema": spec.schema_for(payload),
            "provider": config.get("provider"),
            "model": config.get("model"),
            "temperature": config.get("temperature"),
        }

    def run(self, operation: str, payload: dict, guards: Optional[dict] = None) -> Any:
        """
        guards carry validation-only context (e.g. rejected note texts) that
        must never be sent to the model.
        """
        spec = self.registry.get(operation)
        if spec is None:
            raise ValueError(f"Unknown AI operation: {operation}")

        prompt_spec = self.build_prompt_spec(operation, payload)
        print(f"🤖 {operation}: {prompt_spec['provider']}/{prompt_spec['model']}")
        try:
            raw = self.capability.invoke(prompt_spec)
        except AIOperationError as e:
            if e.stage is None:
                e.stage = spec.stage
            raise
        except InvalidAIResponse:
            raise
        except Exception as e:
            raise AIOperationError(f"{operation} failed: {e}", stage=spec.stage, details={"operation": operation})

        try:
            return spec.validate(raw, payload or {}, guards or {})
        except InvalidAIResponse:
            raise
        except ValidationError as e:
            print(f"❌ {operation}: invalid AI response: {e.message}")
            raise InvalidAIResponse(e.message, operation=operation, stage=spec.stage, details=e.details)


def footage_payload(inventory: dict) -> dict:
    """Inventory as sent to the model: only locations, only flags."""
    return {name: dict(inventory[name]) for name in location_tags(inventory)}
