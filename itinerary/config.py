import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "ITINERARY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_MASK = "********"


class StagePromptConfig(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 2000


class ContentGenerationConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    model: str = "gpt-4"
    timeout_s: float = 60.0
    research: StagePromptConfig = Field(default_factory=StagePromptConfig)
    curation: StagePromptConfig = Field(
        default_factory=lambda: StagePromptConfig(temperature=0.4, max_tokens=3000)
    )


class PlacesConfig(BaseModel):
    base_url: str = "https://maps.googleapis.com/maps/api/place"
    api_key: Optional[str] = None
    radius_m: int = 5000
    timeout_s: float = 15.0


class AppSettings(BaseModel):
    database_path: str = "itinerary_data.db"
    host: str = "0.0.0.0"
    port: int = 8000
    internal_api_key: str = ""
    # Stage endpoints live under {stage_base_url}/agents/{agent}.
    stage_base_url: str = "http://127.0.0.1:8000"
    request_ttl_s: int = 3600
    result_ttl_s: int = 3600
    timeout_budget_ms: int = 20000
    timeout_grace_s: int = 10
    timeout_sweep_interval_s: float = 5.0
    validation_delay_ms: int = 100
    handoff_timeout_s: float = 120.0
    handoff_retries: int = 1
    content: ContentGenerationConfig = Field(default_factory=ContentGenerationConfig)
    places: PlacesConfig = Field(default_factory=PlacesConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("internal_api_key"):
            data["internal_api_key"] = SECRET_MASK
        for section in ("content", "places"):
            if data[section].get("api_key"):
                data[section]["api_key"] = SECRET_MASK
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "internal_api_key": os.getenv("INTERNAL_API_KEY"),
        "stage_base_url": os.getenv("STAGE_BASE_URL"),
        "request_ttl_s": os.getenv("REQUEST_TTL_S"),
        "result_ttl_s": os.getenv("RESULT_TTL_S"),
        "timeout_budget_ms": os.getenv("TIMEOUT_BUDGET_MS"),
        "timeout_grace_s": os.getenv("TIMEOUT_GRACE_S"),
        "timeout_sweep_interval_s": os.getenv("TIMEOUT_SWEEP_INTERVAL_S"),
        "validation_delay_ms": os.getenv("VALIDATION_DELAY_MS"),
        "handoff_timeout_s": os.getenv("HANDOFF_TIMEOUT_S"),
        "handoff_retries": os.getenv("HANDOFF_RETRIES"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "openai_model": os.getenv("OPENAI_MODEL"),
        "google_places_api_key": os.getenv("GOOGLE_PLACES_API_KEY"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "port",
        "request_ttl_s",
        "result_ttl_s",
        "timeout_budget_ms",
        "timeout_grace_s",
        "validation_delay_ms",
        "handoff_retries",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("timeout_sweep_interval_s", "handoff_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _nest_collaborator_keys(merged: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Fold flat OPENAI_*/GOOGLE_* env values into the nested collaborator sections."""
    mapping = {
        "openai_base_url": ("content", "base_url"),
        "openai_api_key": ("content", "api_key"),
        "openai_model": ("content", "model"),
        "google_places_api_key": ("places", "api_key"),
    }
    for flat_key, (section, field) in mapping.items():
        value = merged.pop(flat_key, None)
        if value is None:
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            target = {}
        if allow_env_overrides or not target.get(field):
            target[field] = value
        merged[section] = target


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    _nest_collaborator_keys(merged, allow_env_overrides)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
