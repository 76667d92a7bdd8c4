import copy
import json
import os
import tempfile
import threading
from typing import Callable, Dict, List

from werkzeug.utils import secure_filename

from blueprint_model import _now_iso, normalize_footage_inventory
from workflow_errors import PersistenceError


def _atomic_write_json(path: str, obj, prefix: str) -> None:
    """
    Atomic write: write to temp file in same dir, then replace.
    """
    target_dir = os.path.dirname(path)
    os.makedirs(target_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=prefix, suffix=".json", dir=target_dir)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=2)
            f.write("\n")
        os.replace(tmp_path, path)
    finally:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            pass


class BlueprintStore:
    """
    FS-based per-video document store.
    Source of truth: <data_dir>/videos/<video_id>/blueprint.json

    update() merges top-level fields only, so two writers touching
    different fields never clobber each other.
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self.videos_dir = os.path.join(self.base_dir, "videos")
        os.makedirs(self.videos_dir, exist_ok=True)
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Callable[[dict], None]]] = {}

    def _safe_id(self, video_id: str) -> str:
        safe = secure_filename(str(video_id or ""))
        if not safe:
            raise ValueError(f"Invalid video id: {video_id!r}")
        return safe

    def video_dir(self, video_id: str) -> str:
        return os.path.join(self.videos_dir, self._safe_id(video_id))

    def blueprint_path(self, video_id: str) -> str:
        return os.path.join(self.video_dir(video_id), "blueprint.json")

    def footage_inventory_path(self, video_id: str) -> str:
        return os.path.join(self.video_dir(video_id), "footage_inventory.json")

    def exists(self, video_id: str) -> bool:
        return os.path.exists(self.blueprint_path(video_id))

    def get(self, video_id: str) -> dict:
        path = self.blueprint_path(video_id)
        if not os.path.exists(path):
            raise FileNotFoundError(path)
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def create(self, video_id: str, blueprint: dict) -> dict:
        doc = copy.deepcopy(blueprint)
        doc.setdefault("updatedAt", _now_iso())
        with self._lock:
            self._write(video_id, doc)
        self._notify(video_id, doc)
        return copy.deepcopy(doc)

    def update(self, video_id: str, partial: dict) -> dict:
        """
        Read-merge-write under the store lock. Returns the merged document.
        """
        with self._lock:
            try:
                current = self.get(video_id) if self.exists(video_id) else {}
            except (OSError, ValueError) as e:
                raise PersistenceError(f"Cannot read blueprint for {video_id}", video_id=video_id, original_error=e)
            merged = {**current, **copy.deepcopy(partial or {})}
            merged["updatedAt"] = _now_iso()
            self._write(video_id, merged)
        self._notify(video_id, merged)
        return copy.deepcopy(merged)

    def _write(self, video_id: str, doc: dict) -> None:
        try:
            _atomic_write_json(self.blueprint_path(video_id), doc, prefix="blueprint_")
        except OSError as e:
            print(f"❌ BlueprintStore: write failed for {video_id}: {e}")
            raise PersistenceError(f"Cannot write blueprint for {video_id}", video_id=video_id, original_error=e)

    def subscribe(self, video_id: str, callback: Callable[[dict], None]) -> Callable[[], None]:
        key = self._safe_id(video_id)
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(key) or []
                if callback in subs:
                    subs.remove(callback)

        return _unsubscribe

    def _notify(self, video_id: str, doc: dict) -> None:
        with self._lock:
            subs = list(self._subscribers.get(self._safe_id(video_id)) or [])
        for cb in subs:
            try:
                cb(copy.deepcopy(doc))
            except Exception as e:
                print(f"⚠️  BlueprintStore: subscriber failed for {video_id}: {e}")

    # === Footage inventory ===

    def read_footage_inventory(self, video_id: str) -> dict:
        path = self.footage_inventory_path(video_id)
        if not os.path.exists(path):
            return {}
        with open(path, "r", encoding="utf-8") as f:
            return normalize_footage_inventory(json.load(f))

    def write_footage_inventory(self, video_id: str, inventory: dict) -> dict:
        clean = normalize_footage_inventory(inventory)
        try:
            _atomic_write_json(self.footage_inventory_path(video_id), clean, prefix="footage_")
        except OSError as e:
            raise PersistenceError(f"Cannot write footage inventory for {video_id}", video_id=video_id, original_error=e)
        return clean
