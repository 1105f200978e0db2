import pytest
from pydantic import ValidationError
from omnidiag.config import Settings, get_settings, reset_settings
from omnidiag.core.errors import MissingCredentialError


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


def test_settings_load_from_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "test-project")
    monkeypatch.setenv("GOOGLE_CLOUD_LOCATION", "europe-west4")

    settings = Settings(_env_file=None)
    assert settings.google_cloud_project == "test-project"
    assert settings.google_cloud_location == "europe-west4"
    assert settings.require_project() == "test-project"


def test_settings_singleton():
    s1 = get_settings()
    s2 = get_settings()
    assert s1 is s2


def test_reset_settings_rereads_environment(monkeypatch):
    monkeypatch.setenv("DIAGNOSTIC_MODEL", "gemini-2.5-pro")
    first = get_settings()
    reset_settings()
    second = get_settings()
    assert first is not second
    assert second.diagnostic_model == "gemini-2.5-pro"


def test_model_defaults(monkeypatch):
    for var in ("DIAGNOSTIC_MODEL", "CHAT_MODEL", "DIAGNOSTIC_TEMPERATURE"):
        monkeypatch.delenv(var, raising=False)
    settings = Settings(_env_file=None)
    assert settings.diagnostic_model == "gemini-2.5-flash"
    assert settings.chat_model == "gemini-2.5-flash"
    assert settings.diagnostic_temperature == 0.2


def test_missing_project_is_reported(monkeypatch):
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    settings = Settings(_env_file=None)
    with pytest.raises(MissingCredentialError, match="GOOGLE_CLOUD_PROJECT"):
        settings.require_project()


@pytest.mark.parametrize("raw, expected", [
    ("high", "High"),
    ("Critical", "Critical"),
    ("none", None),
    ("", None),
    ("off", None),
])
def test_alert_threshold_normalized(monkeypatch, raw, expected):
    monkeypatch.setenv("ALERT_THRESHOLD", raw)
    assert Settings(_env_file=None).alert_threshold == expected


def test_unknown_alert_threshold_is_rejected(monkeypatch):
    monkeypatch.setenv("ALERT_THRESHOLD", "Severe")
    with pytest.raises(ValidationError, match="Unknown alert threshold"):
        Settings(_env_file=None)
