#!/usr/bin/env python3
"""
Workflow state machine: transitions, preconditions, navigation,
downstream invalidation and the legacy reset.

Run:
  python3 -m pytest backend/test_workflow_state.py
"""

import copy
import unittest

import blueprint_model as bm
import workflow_state as wf
from workflow_errors import PreconditionError


def _doc(**fields) -> dict:
    doc = bm.make_initial_blueprint()
    doc.update(fields)
    return doc


def _mapped(tags=("Tower", "Market")) -> list:
    return [
        {"dialogueChunk": f"chunk {i}", "locationTag": tag, "status": bm.CHUNK_CONFIRMED}
        for i, tag in enumerate(tags)
    ]


PROPOSAL = {
    "coreAngle": "angle",
    "narrativeArc": [{"step": "s1", "description": "d", "locations_featured": ["Tower", "Market"]}],
    "valueAddResearch": [],
}


def _draft_review_doc() -> dict:
    return _doc(
        workflowStatus=bm.STAGE_DRAFT_REVIEW,
        furthestStatus=bm.STAGE_DRAFT_REVIEW,
        rawTranscript="t",
        dialogueMap=_mapped(),
        narrativeProposals=[PROPOSAL],
        approvedNarrative=PROPOSAL,
        researchNotes={"Tower": [{"fact": "f", "approved": True}]},
        draftScript=[{"type": "VO", "locationTag": "Tower", "content": "vo"}],
        finalScript="[VO - Tower]\nvo",
        recordableVoiceover="vo",
    )


class TestResolveStatus(unittest.TestCase):
    def test_new_blueprint_starts_at_transcript_input(self):
        self.assertEqual(wf.resolve_status({}), bm.STAGE_TRANSCRIPT_INPUT)
        self.assertEqual(wf.resolve_status(bm.make_initial_blueprint()), bm.STAGE_TRANSCRIPT_INPUT)

    def test_missing_status_with_final_script_is_legacy(self):
        self.assertEqual(wf.resolve_status({"finalScript": "old script"}), bm.LEGACY_VIEW)
        self.assertEqual(wf.resolve_status({"full_video_script_text": "older"}), bm.LEGACY_VIEW)
        self.assertEqual(wf.resolve_status({"workflowStatus": "bogus", "finalScript": "x"}), bm.LEGACY_VIEW)

    def test_known_status_wins_over_legacy_content(self):
        self.assertEqual(wf.resolve_status({"workflowStatus": bm.STAGE_FINAL, "finalScript": "x"}), bm.STAGE_FINAL)


class TestTransitions(unittest.TestCase):
    def test_unknown_pair_is_rejected(self):
        with self.assertRaises(PreconditionError):
            wf.next_stage(bm.STAGE_TRANSCRIPT_INPUT, wf.EV_COMPLETE)

    def test_legacy_only_allows_reset(self):
        for event in wf.DOWNSTREAM_FIELDS:
            with self.assertRaises(PreconditionError):
                wf.next_stage(bm.LEGACY_VIEW, event)
        self.assertEqual(wf.next_stage(bm.LEGACY_VIEW, wf.EV_RESET), bm.STAGE_TRANSCRIPT_INPUT)

    def test_happy_path_reaches_final(self):
        expected = [
            (wf.EV_MAP_DIALOGUE, bm.STAGE_DIALOGUE_MAPPING),
            (wf.EV_CONFIRM_MAPPING, bm.STAGE_NARRATIVE_REFINEMENT),
            (wf.EV_APPROVE_NARRATIVE, bm.STAGE_RESEARCH_APPROVAL),
            (wf.EV_APPROVE_RESEARCH, bm.STAGE_DRAFT_REVIEW),
            (wf.EV_FINALIZE_SCRIPT, bm.STAGE_VOICEOVER_RECORDING),
            (wf.EV_COMPLETE, bm.STAGE_FINAL),
        ]
        doc = bm.make_initial_blueprint()
        for event, stage in expected:
            doc = wf.apply_transition(doc, event)
            self.assertEqual(doc["workflowStatus"], stage)
            self.assertEqual(doc["furthestStatus"], stage)

    def test_apply_transition_does_not_mutate_input(self):
        doc = _doc(rawTranscript="hello")
        before = copy.deepcopy(doc)
        out = wf.apply_transition(doc, wf.EV_MAP_DIALOGUE, {"dialogueMap": _mapped()})
        self.assertEqual(doc, before)
        self.assertEqual(out["dialogueMap"], _mapped())


class TestPreconditions(unittest.TestCase):
    def test_map_dialogue_needs_transcript_and_locations(self):
        doc = _doc()
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_MAP_DIALOGUE, transcript="  ", locations=["Tower"])
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_MAP_DIALOGUE, transcript="Hi", locations=[])
        target = wf.check_precondition(doc, wf.EV_MAP_DIALOGUE, transcript="Hi", locations=["Tower"])
        self.assertEqual(target, bm.STAGE_DIALOGUE_MAPPING)

    def test_one_unassigned_chunk_blocks_confirm_mapping(self):
        doc = _doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING, dialogueMap=_mapped(("Tower", bm.UNASSIGNED)))
        with self.assertRaises(PreconditionError) as ctx:
            wf.check_precondition(doc, wf.EV_CONFIRM_MAPPING)
        self.assertEqual(ctx.exception.details["indexes"], [1])
        self.assertEqual(ctx.exception.stage, bm.STAGE_DIALOGUE_MAPPING)
        self.assertEqual(doc["workflowStatus"], bm.STAGE_DIALOGUE_MAPPING)

    def test_empty_tag_blocks_confirm_mapping(self):
        doc = _doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING, dialogueMap=_mapped(("Tower", "")))
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_CONFIRM_MAPPING)

    def test_refine_narrative_needs_feedback(self):
        doc = _doc(workflowStatus=bm.STAGE_NARRATIVE_REFINEMENT, narrativeProposals=[PROPOSAL])
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_REFINE_NARRATIVE, feedback="")
        wf.check_precondition(doc, wf.EV_REFINE_NARRATIVE, feedback="funnier")

    def test_approve_research_allows_zero_approved_notes(self):
        doc = _doc(
            workflowStatus=bm.STAGE_RESEARCH_APPROVAL,
            approvedNarrative=PROPOSAL,
            researchNotes={"Tower": [{"fact": "f", "approved": False}], "Market": []},
        )
        self.assertEqual(wf.check_precondition(doc, wf.EV_APPROVE_RESEARCH), bm.STAGE_DRAFT_REVIEW)

    def test_finalize_needs_both_scripts(self):
        doc = _draft_review_doc()
        doc["recordableVoiceover"] = ""
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_FINALIZE_SCRIPT)

    def test_refine_block_index_must_exist(self):
        doc = _draft_review_doc()
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_REFINE_BLOCK, index=5)
        wf.check_precondition(doc, wf.EV_REFINE_BLOCK, index=0)

    def test_complete_needs_shot_list(self):
        doc = _doc(workflowStatus=bm.STAGE_VOICEOVER_RECORDING)
        with self.assertRaises(PreconditionError):
            wf.check_precondition(doc, wf.EV_COMPLETE)


class TestNavigationAndInvalidation(unittest.TestCase):
    def test_navigate_back_keeps_forward_data(self):
        doc = _draft_review_doc()
        back = wf.navigate_to(doc, bm.STAGE_DIALOGUE_MAPPING)
        self.assertEqual(back["workflowStatus"], bm.STAGE_DIALOGUE_MAPPING)
        self.assertEqual(back["furthestStatus"], bm.STAGE_DRAFT_REVIEW)
        self.assertEqual(back["finalScript"], doc["finalScript"])

    def test_navigate_forward_past_furthest_is_rejected(self):
        doc = _doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING, furthestStatus=bm.STAGE_DIALOGUE_MAPPING)
        with self.assertRaises(PreconditionError):
            wf.navigate_to(doc, bm.STAGE_RESEARCH_APPROVAL)

    def test_navigate_from_legacy_is_rejected(self):
        with self.assertRaises(PreconditionError):
            wf.navigate_to({"finalScript": "x"}, bm.STAGE_TRANSCRIPT_INPUT)

    def test_recompleting_from_behind_clears_downstream_and_flags_it(self):
        doc = wf.navigate_to(_draft_review_doc(), bm.STAGE_DIALOGUE_MAPPING)
        out = wf.apply_transition(doc, wf.EV_CONFIRM_MAPPING, {"narrativeProposals": [PROPOSAL, PROPOSAL]})

        self.assertEqual(out["workflowStatus"], bm.STAGE_NARRATIVE_REFINEMENT)
        self.assertEqual(out["furthestStatus"], bm.STAGE_NARRATIVE_REFINEMENT)
        self.assertEqual(out["approvedNarrative"], {})
        self.assertEqual(out["draftScript"], [])
        self.assertEqual(out["finalScript"], "")
        self.assertEqual(len(out["narrativeProposals"]), 2)
        for field in ("approvedNarrative", "researchNotes", "draftScript", "finalScript", "recordableVoiceover"):
            self.assertIn(field, out["invalidatedFields"])
        # nothing was stored there, so nothing to flag
        self.assertNotIn("editingShotList", out["invalidatedFields"])

    def test_rewritten_field_leaves_invalidated_list(self):
        doc = _doc(invalidatedFields=["draftScript", "finalScript"], workflowStatus=bm.STAGE_DRAFT_REVIEW,
                   furthestStatus=bm.STAGE_DRAFT_REVIEW)
        out = wf.apply_transition(doc, wf.EV_ASSEMBLE_SCRIPT, {"finalScript": "new", "recordableVoiceover": "vo"})
        self.assertEqual(out["invalidatedFields"], ["draftScript"])

    def test_transition_at_the_frontier_does_not_clear(self):
        doc = _draft_review_doc()
        out = wf.apply_transition(doc, wf.EV_ASSEMBLE_SCRIPT, {"finalScript": "new", "recordableVoiceover": "vo"})
        self.assertEqual(out["invalidatedFields"], [])
        self.assertEqual(out["draftScript"], doc["draftScript"])


class TestLegacyReset(unittest.TestCase):
    def test_reset_clears_all_stage_fields(self):
        legacy = {
            "rawTranscript": "t",
            "dialogueMap": _mapped(),
            "narrativeProposals": [PROPOSAL],
            "approvedNarrative": PROPOSAL,
            "researchNotes": {"Tower": []},
            "draftScript": [{"type": "VO", "content": "x"}],
            "finalScript": "old final script",
        }
        self.assertEqual(wf.resolve_status(legacy), bm.LEGACY_VIEW)
        out = wf.reset_blueprint(legacy)
        self.assertEqual(out["workflowStatus"], bm.STAGE_TRANSCRIPT_INPUT)
        self.assertEqual(out["rawTranscript"], "")
        self.assertEqual(out["dialogueMap"], [])
        self.assertEqual(out["narrativeProposals"], [])
        self.assertEqual(out["approvedNarrative"], {})
        self.assertEqual(out["researchNotes"], {})
        self.assertEqual(out["draftScript"], [])
        self.assertEqual(out["finalScript"], "")
        self.assertEqual(wf.resolve_status(out), bm.STAGE_TRANSCRIPT_INPUT)

    def test_reset_outside_legacy_is_rejected(self):
        with self.assertRaises(PreconditionError):
            wf.reset_blueprint(bm.make_initial_blueprint())


class TestLocalEdits(unittest.TestCase):
    def test_set_location_tag_confirms_chunk(self):
        doc = _doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING, dialogueMap=_mapped((bm.UNASSIGNED,)))
        doc["dialogueMap"][0]["status"] = bm.CHUNK_NEEDS_REVIEW
        out = wf.set_location_tag(doc, 0, "Market", ["Tower", "Market"])
        self.assertEqual(out["dialogueMap"][0], {"dialogueChunk": "chunk 0", "locationTag": "Market", "status": bm.CHUNK_CONFIRMED})
        self.assertEqual(doc["dialogueMap"][0]["locationTag"], bm.UNASSIGNED)

    def test_set_location_tag_rejects_unknown_location(self):
        doc = _doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING, dialogueMap=_mapped(("Tower",)))
        with self.assertRaises(PreconditionError):
            wf.set_location_tag(doc, 0, "Castle", ["Tower"])

    def test_toggle_research_note(self):
        doc = _doc(workflowStatus=bm.STAGE_RESEARCH_APPROVAL, researchNotes={"Tower": [{"fact": "f", "approved": True}]})
        off = wf.toggle_research_note(doc, "Tower", 0)
        self.assertFalse(off["researchNotes"]["Tower"][0]["approved"])
        on = wf.toggle_research_note(off, "Tower", 0, approved=True)
        self.assertTrue(on["researchNotes"]["Tower"][0]["approved"])

    def test_approved_narrative_is_never_editable(self):
        for stage in bm.STAGES:
            doc = _doc(workflowStatus=stage)
            with self.assertRaises(PreconditionError):
                wf.check_edit(doc, ["approvedNarrative"])

    def test_transcript_only_editable_in_first_stage(self):
        wf.check_edit(_doc(), ["rawTranscript"])
        with self.assertRaises(PreconditionError):
            wf.check_edit(_doc(workflowStatus=bm.STAGE_DIALOGUE_MAPPING), ["rawTranscript"])


if __name__ == "__main__":
    unittest.main()
