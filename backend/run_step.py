#!/usr/bin/env python3
"""
Minimal step runner for debugging individual workflow actions.

Runs one action synchronously against the FS store and prints the result.

Usage (from repo root):
  python backend/run_step.py --video vid_001 --operation submit_transcript
  python backend/run_step.py --video vid_001 --operation refine_narrative --feedback "more humour"

Exit codes: 0 ok, 2 video missing, 3 precondition/validation failure,
4 AI or persistence failure.
"""

import argparse

from scripting_workflow import build_default_service
from workflow_errors import PreconditionError, TaskAlreadyActive, ValidationError

OPERATIONS = [
    "submit_transcript",
    "confirm_mapping",
    "refine_narrative",
    "approve_narrative",
    "approve_research",
    "assemble_script",
    "refine_script",
    "refine_block",
    "finalize_script",
    "complete",
    "reset_legacy",
    "create_initial_blueprint",
]

_TASK_ERROR_EXIT = {"VALIDATION_ERROR": 3, "INVALID_AI_RESPONSE": 3, "PRECONDITION_FAILED": 3}


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--video", required=True, help="Video ID, e.g. vid_001")
    p.add_argument("--operation", required=True, choices=OPERATIONS, help="Workflow action to run")
    p.add_argument("--feedback", default=None, help="Free-text feedback (refine_narrative / refine_script / refine_block)")
    p.add_argument("--view", default="draftScript", help="Script view for refine_script")
    p.add_argument("--index", type=int, default=None, help="Block index for refine_block")
    p.add_argument("--notes", default=None, help="Brain-dump notes for create_initial_blueprint")
    p.add_argument("--data-dir", default=None, help="Overrides SCRIPTING_DATA_DIR")
    return p.parse_args(argv)


def main(argv=None, service=None) -> int:
    args = _parse_args(argv)
    if service is None:
        service, _ = build_default_service(args.data_dir, autosave_thread=False, run_async=False)

    video_id = args.video
    if not service.store.exists(video_id):
        print(f"❌ Video not found: {video_id} (expected {service.store.blueprint_path(video_id)})")
        return 2

    params = {"feedback": args.feedback, "view": args.view, "index": args.index, "notes": args.notes}
    try:
        result = service.run_action(video_id, args.operation, params)
    except (PreconditionError, ValidationError, TaskAlreadyActive) as e:
        print(f"❌ {e.code}: {e.message}")
        return 3
    except Exception as e:
        print(f"❌ {args.operation} failed: {e}")
        return 4

    if isinstance(result, dict) and "status" in result and "id" in result:
        task = service.wait(result["id"])
        if task["status"] == "failed":
            err = task.get("error") or {}
            print(f"❌ Task {task['id']} failed: {err.get('code')}: {err.get('message')}")
            return _TASK_ERROR_EXIT.get(err.get("code"), 4)
        print(f"✅ Task {task['id']} complete")

    service.close(video_id)
    print(f"✅ {video_id}: stage = {service.current_stage(video_id)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
