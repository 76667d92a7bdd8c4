import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


DEFAULT_WORKFLOW_SETTINGS = {
    "autosave_debounce_seconds": 1.5,
    "autosave_poll_seconds": 0.25,
    "autosave_max_silent_failures": 3,
    # False = compose finalScript / recordableVoiceover locally, no AI call
    "assemble_polish": True,
    "llm_timeout_seconds": 600,
}


class SettingsStore:
    """
    FS-backed global settings store.
    - LLM defaults per operation: <data_dir>/config/llm_defaults.json
    - Workflow knobs (autosave, assembly): <data_dir>/config/workflow_settings.json
    - API keys: backend/.env (server-side only; never returned)
    """

    def __init__(self, base_dir: str, backend_dir: str):
        self.base_dir = base_dir
        self.config_dir = os.path.join(self.base_dir, "config")
        self.backend_dir = backend_dir
        os.makedirs(self.config_dir, exist_ok=True)
        dotenv_path = os.path.join(self.backend_dir, ".env")
        if os.path.exists(dotenv_path):
            load_dotenv(dotenv_path)

    def llm_defaults_path(self) -> str:
        return os.path.join(self.config_dir, "llm_defaults.json")

    def workflow_settings_path(self) -> str:
        return os.path.join(self.config_dir, "workflow_settings.json")

    def _write_json(self, path: str, obj: dict, prefix: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=prefix, suffix=".json", dir=os.path.dirname(path))
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

    # === LLM defaults ===

    def read_llm_defaults(self) -> dict:
        path = self.llm_defaults_path()
        if not os.path.exists(path):
            defaults = self._default_llm_defaults()
            self.write_llm_defaults(defaults)
            return defaults
        with open(path, "r", encoding="utf-8") as f:
            stored = json.load(f)
        # operations added after the file was written get their defaults
        merged = self._default_llm_defaults()
        merged.update(stored if isinstance(stored, dict) else {})
        return merged

    def write_llm_defaults(self, defaults: dict) -> None:
        if isinstance(defaults, dict):
            defaults = {**defaults, "updated_at": _now_iso()}
        self._write_json(self.llm_defaults_path(), defaults, prefix="llm_defaults_")

    def _default_llm_defaults(self) -> dict:
        base = {"provider": "openai", "model": "gpt-4o", "temperature": 0.4, "prompt_template": None}
        return {
            # Mapping and shot lists must stick to given locations; keep them cold.
            "map-dialogue": {**base, "temperature": 0.1},
            "propose-narrative": {**base, "temperature": 0.7},
            "refine-narrative": {**base, "temperature": 0.7},
            "conduct-research": {**base, "temperature": 0.3},
            "draft-voiceover": {**base, "temperature": 0.6},
            "assemble-script": {**base, "temperature": 0.2},
            "generate-shot-list": {**base, "temperature": 0.2},
            "refine-script": {**base},
            "refine-script-block": {**base},
            "create-initial-blueprint": {**base, "model": "gpt-4o-mini", "temperature": 0.3},
            "updated_at": _now_iso(),
        }

    # === Workflow settings ===

    def read_workflow_settings(self) -> dict:
        path = self.workflow_settings_path()
        if not os.path.exists(path):
            self.write_workflow_settings(dict(DEFAULT_WORKFLOW_SETTINGS))
            return dict(DEFAULT_WORKFLOW_SETTINGS)
        with open(path, "r", encoding="utf-8") as f:
            stored = json.load(f)
        return {**DEFAULT_WORKFLOW_SETTINGS, **(stored if isinstance(stored, dict) else {})}

    def write_workflow_settings(self, settings: dict) -> None:
        self._write_json(self.workflow_settings_path(), {**settings, "updated_at": _now_iso()}, prefix="workflow_settings_")

    # === API keys ===

    def _env_key_configured(self, env_var: str) -> bool:
        val = (os.getenv(env_var) or "").strip()
        if not val:
            return False
        # Avoid treating wrong-key-in-wrong-slot as "configured"
        if env_var == "OPENAI_API_KEY" and val.startswith("sk-or-"):
            return False
        if env_var == "OPENROUTER_API_KEY" and not val.startswith("sk-or-"):
            return False
        return True

    def openai_key_configured(self) -> bool:
        return self._env_key_configured("OPENAI_API_KEY")

    def openrouter_key_configured(self) -> bool:
        return self._env_key_configured("OPENROUTER_API_KEY")

    def api_key_for(self, provider: str) -> Optional[str]:
        env_var = "OPENROUTER_API_KEY" if (provider or "").lower() == "openrouter" else "OPENAI_API_KEY"
        if not self._env_key_configured(env_var):
            return None
        return os.getenv(env_var).strip()

    def public_view(self) -> dict:
        return {
            "llm_defaults": self.read_llm_defaults(),
            "workflow": self.read_workflow_settings(),
            "openai_key_configured": self.openai_key_configured(),
            "openrouter_key_configured": self.openrouter_key_configured(),
        }
