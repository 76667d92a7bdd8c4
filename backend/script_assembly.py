"""
Script assembly (NO LLM): interleaves on-camera dialogue with drafted
voiceover in the order of the approved narrative arc.

Rules:
- every dialogue chunk is emitted exactly once
- dialogue text is never rewritten
- ordering comes from the arc, not from dialogue-map order
"""

import re
from typing import Dict, List, Tuple

from blueprint_model import BLOCK_ON_CAMERA, BLOCK_VOICEOVER, UNASSIGNED, _safe_str, narrative_locations


def _type_key(block_type: str) -> str:
    return re.sub(r"[^a-z]", "", _safe_str(block_type).lower())


def is_on_camera(block: dict) -> bool:
    return _type_key(block.get("type")) == "oncamera"


def is_voiceover(block: dict) -> bool:
    return _type_key(block.get("type")) in ("vo", "voiceover")


def voiceover_blocks(drafts: Dict[str, str]) -> List[dict]:
    """Draft-voiceover result -> VO blocks. Empty drafts produce no block."""
    out = []
    for location, text in (drafts or {}).items():
        if _safe_str(text).strip():
            out.append({"type": BLOCK_VOICEOVER, "locationTag": location, "content": text.strip()})
    return out


def interleave_script(approved_narrative: dict, dialogue_map: List[dict], draft_blocks: List[dict]) -> List[dict]:
    """
    Walk the arc in step order. At the first step featuring a location, emit
    that location's on-camera chunks (dialogue-map order), then its drafted
    blocks. Whatever the arc never features goes to the end: chunks first
    (map order), then drafted blocks (draft order).
    """
    chunks_by_location: Dict[str, List[int]] = {}
    for i, item in enumerate(dialogue_map or []):
        tag = _safe_str(item.get("locationTag")).strip() or UNASSIGNED
        chunks_by_location.setdefault(tag, []).append(i)

    drafts_by_location: Dict[str, List[int]] = {}
    for j, block in enumerate(draft_blocks or []):
        tag = _safe_str(block.get("locationTag")).strip()
        drafts_by_location.setdefault(tag, []).append(j)

    emitted_chunks = set()
    emitted_drafts = set()
    out: List[dict] = []

    def _emit_chunk(i: int) -> None:
        if i in emitted_chunks:
            return
        emitted_chunks.add(i)
        item = dialogue_map[i]
        out.append({
            "type": BLOCK_ON_CAMERA,
            "locationTag": _safe_str(item.get("locationTag")).strip(),
            "content": _safe_str(item.get("dialogueChunk")),
        })

    def _emit_draft(j: int) -> None:
        if j in emitted_drafts:
            return
        emitted_drafts.add(j)
        block = draft_blocks[j]
        if _safe_str(block.get("content")).strip():
            out.append(dict(block))

    for location in narrative_locations(approved_narrative):
        for i in chunks_by_location.get(location, []):
            _emit_chunk(i)
        for j in drafts_by_location.get(location, []):
            _emit_draft(j)

    for i in range(len(dialogue_map or [])):
        _emit_chunk(i)
    for j in range(len(draft_blocks or [])):
        _emit_draft(j)

    return out


def _block_header(block: dict) -> str:
    location = _safe_str(block.get("locationTag")).strip()
    block_type = _safe_str(block.get("type")).strip()
    return f"[{block_type} - {location}]" if location else f"[{block_type}]"


def compose_scripts(blocks: List[dict]) -> Tuple[str, str]:
    """
    Deterministic (finalScript, recordableVoiceover) from interleaved blocks.
    """
    full_parts = []
    vo_parts = []
    for block in blocks or []:
        content = _safe_str(block.get("content")).strip()
        if not content:
            continue
        full_parts.append(f"{_block_header(block)}\n{content}")
        if is_voiceover(block):
            vo_parts.append(content)
    return "\n\n".join(full_parts), "\n\n".join(vo_parts)


def check_dialogue_coverage(full_script: str, blocks: List[dict]) -> List[str]:
    """
    Problems with on-camera chunks in an assembled script: each must appear
    verbatim, in the interleave order, and no more often than the blocks
    hold it. Empty list means the script is fine.
    """
    problems = []
    text = _safe_str(full_script)
    pos = 0
    for block in blocks or []:
        if not is_on_camera(block):
            continue
        chunk = _safe_str(block.get("content")).strip()
        if not chunk:
            continue
        found = text.find(chunk, pos)
        if found < 0:
            if text.find(chunk) >= 0:
                problems.append(f"On-camera chunk out of order: {chunk[:80]!r}")
            else:
                problems.append(f"On-camera chunk missing: {chunk[:80]!r}")
            continue
        pos = found + len(chunk)

    # baseline: occurrences in the deterministic composition of the same blocks
    expected_text = compose_scripts(blocks)[0]
    seen = set()
    for block in blocks or []:
        chunk = _safe_str(block.get("content")).strip()
        if not is_on_camera(block) or not chunk or chunk in seen:
            continue
        seen.add(chunk)
        if text.count(chunk) > expected_text.count(chunk):
            problems.append(f"On-camera chunk duplicated: {chunk[:80]!r}")
    return problems


def chunks_in_voiceover(recordable_voiceover: str, blocks: List[dict]) -> List[str]:
    """On-camera chunks that leaked into the voiceover-only transcript."""
    text = _safe_str(recordable_voiceover)
    leaked = []
    for block in blocks or []:
        chunk = _safe_str(block.get("content")).strip()
        if is_on_camera(block) and chunk and chunk in text:
            leaked.append(chunk)
    return leaked
