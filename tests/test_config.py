import pytest
from pydantic import ValidationError

from config import Settings


def test_yaml_defaults_are_loaded(monkeypatch):
    for name in ("PLANNER_OUTPUT", "EVIDENCE_SUBSTITUTION", "MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.planner_output == "text"
    assert settings.evidence_substitution == "token"
    assert settings.max_attempts == 3


def test_environment_overrides_yaml(monkeypatch):
    monkeypatch.setenv("EVIDENCE_SUBSTITUTION", "literal")
    monkeypatch.setenv("MAX_ATTEMPTS", "5")
    settings = Settings(_env_file=None)
    assert settings.evidence_substitution == "literal"
    assert settings.max_attempts == 5


def test_attempt_limits_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_attempts=0)
