#!/usr/bin/env python3
"""
Deterministic script assembly: arc-ordered interleave of on-camera
dialogue and drafted voiceover.

Run:
  python3 -m pytest backend/test_script_assembly.py
"""

import script_assembly as sa


NARRATIVE = {
    "coreAngle": "angle",
    "narrativeArc": [
        {"step": "Hook", "description": "d", "locations_featured": ["Market"]},
        {"step": "Climb", "description": "d", "locations_featured": ["Tower"]},
        {"step": "Wrap", "description": "d", "locations_featured": ["Market", "Harbour"]},
    ],
    "valueAddResearch": [],
}

DIALOGUE = [
    {"dialogueChunk": "Hi from the tower.", "locationTag": "Tower", "status": "confirmed"},
    {"dialogueChunk": "Later: market chaos.", "locationTag": "Market", "status": "confirmed"},
    {"dialogueChunk": "Tower again.", "locationTag": "Tower", "status": "confirmed"},
    {"dialogueChunk": "Bus stop rant.", "locationTag": "Bus Stop", "status": "confirmed"},
]

DRAFT = [
    {"type": "VO", "locationTag": "Tower", "content": "The tower was built in 1350."},
    {"type": "VO", "locationTag": "Market", "content": "The market opened in 1700."},
    {"type": "VO", "locationTag": "Harbour", "content": ""},
    {"type": "VO", "locationTag": "Lighthouse", "content": "A lighthouse nobody filmed."},
]


def test_interleave_follows_arc_order_not_map_order() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE, DRAFT)
    assert [(b["type"], b["locationTag"]) for b in blocks] == [
        ("On-Camera", "Market"),
        ("VO", "Market"),
        ("On-Camera", "Tower"),
        ("On-Camera", "Tower"),
        ("VO", "Tower"),
        ("On-Camera", "Bus Stop"),
        ("VO", "Lighthouse"),
    ]


def test_every_chunk_is_emitted_exactly_once() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE, DRAFT)
    on_camera = [b["content"] for b in blocks if sa.is_on_camera(b)]
    assert sorted(on_camera) == sorted(d["dialogueChunk"] for d in DIALOGUE)


def test_interleave_with_empty_narrative_keeps_map_order() -> None:
    blocks = sa.interleave_script({}, DIALOGUE, [])
    assert [b["content"] for b in blocks] == [d["dialogueChunk"] for d in DIALOGUE]


def test_voiceover_blocks_skip_empty_drafts() -> None:
    blocks = sa.voiceover_blocks({"Tower": "", "Market": "  Stalls everywhere. "})
    assert blocks == [{"type": "VO", "locationTag": "Market", "content": "Stalls everywhere."}]


def test_compose_scripts_builds_both_views() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE[:2], DRAFT[:2])
    full, voiceover = sa.compose_scripts(blocks)
    assert full.startswith("[On-Camera - Market]\nLater: market chaos.\n\n[VO - Market]\nThe market opened in 1700.")
    assert voiceover == "The market opened in 1700.\n\nThe tower was built in 1350."
    assert "Hi from the tower." not in voiceover
    assert sa.check_dialogue_coverage(full, blocks) == []
    assert sa.chunks_in_voiceover(voiceover, blocks) == []


def test_coverage_detects_missing_and_reordered_chunks() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE[:2], [])
    # Market chunk comes first in the interleave
    swapped = "Hi from the tower.\nLater: market chaos."
    problems = sa.check_dialogue_coverage(swapped, blocks)
    assert len(problems) == 1 and "out of order" in problems[0]

    missing = sa.check_dialogue_coverage("Later: market chaos.", blocks)
    assert len(missing) == 1 and "missing" in missing[0]


def test_leaked_chunk_in_voiceover_is_reported() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE[:1], [])
    assert sa.chunks_in_voiceover("Intro. Hi from the tower.", blocks) == ["Hi from the tower."]


def test_coverage_detects_duplicated_chunks() -> None:
    blocks = sa.interleave_script(NARRATIVE, DIALOGUE[:2], DRAFT[:2])
    full, _ = sa.compose_scripts(blocks)
    assert sa.check_dialogue_coverage(full, blocks) == []

    doubled = full + "\n\nLater: market chaos."
    problems = sa.check_dialogue_coverage(doubled, blocks)
    assert problems == ["On-camera chunk duplicated: 'Later: market chaos.'"]
