import json

import pytest

from itinerary.config import AppSettings, load_settings, save_settings

ENV_KEYS = (
    "STAGE_BASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "GOOGLE_PLACES_API_KEY",
    "TIMEOUT_BUDGET_MS",
    "ITINERARY_ENV_OVERRIDES_CONFIG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    # load_dotenv reads .env from the working directory.
    monkeypatch.chdir(tmp_path)
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"stage_base_url": "http://config", "content": {"api_key": "sk-config"}}))
    monkeypatch.setenv("STAGE_BASE_URL", "http://env")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    settings = load_settings(config_path=config_path)
    assert settings.stage_base_url == "http://config"
    assert settings.content.api_key == "sk-config"


def test_env_override_when_itinerary_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"stage_base_url": "http://config", "content": {"api_key": "sk-config"}}))
    monkeypatch.setenv("STAGE_BASE_URL", "http://env")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("ITINERARY_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.stage_base_url == "http://env"
    assert settings.content.api_key == "sk-env"


def test_env_fills_collaborator_sections_and_casts(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4o")
    monkeypatch.setenv("GOOGLE_PLACES_API_KEY", "places-env")
    monkeypatch.setenv("TIMEOUT_BUDGET_MS", "15000")
    settings = load_settings(config_path=tmp_path / "absent.json")
    assert settings.content.model == "gpt-4o"
    assert settings.places.api_key == "places-env"
    assert settings.timeout_budget_ms == 15000
    assert settings.content.curation.max_tokens == 3000


def test_unreadable_config_falls_back_to_defaults(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path=config_path)
    assert settings == AppSettings()


def test_safe_dict_masks_secrets():
    settings = AppSettings(internal_api_key="internal", content={"api_key": "sk"}, places={"api_key": "pk"})
    safe = settings.to_safe_dict()
    assert safe["internal_api_key"] == "********"
    assert safe["content"]["api_key"] == "********"
    assert safe["places"]["api_key"] == "********"
    assert AppSettings().to_safe_dict()["places"]["api_key"] is None


def test_save_settings_round_trips(tmp_path):
    config_path = tmp_path / "config.json"
    settings = AppSettings(validation_delay_ms=250, places={"radius_m": 2000})
    save_settings(settings, config_path=config_path)
    assert json.loads(config_path.read_text())["validation_delay_ms"] == 250
    assert load_settings(config_path=config_path) == settings
