"""Settings: config/config.yml defaults, overridden by .env, the environment and explicit arguments."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource
from pydantic_settings.sources import InitSettingsSource


def _strip_quotes(v: str) -> str:
    return v.strip().strip("\"'").strip()


_YAML_SECTIONS = {
    "app": (
        "openai_model",
        "openai_strong_model",
        "max_history_turns",
        "structured_output_retries",
    ),
    "orchestrator": (
        "planner_output",
        "evidence_substitution",
        "recursion_limit",
        "tool_response_timeout",
    ),
    "subworkflows": ("max_attempts", "max_insufficient_info", "sample_rows"),
    "server": ("cors_origins", "session_ttl_seconds"),
}


def _load_yaml_config() -> dict:
    """Load config/config.yml and flatten to Settings field names. Missing file -> {}."""
    base = Path(__file__).resolve().parent.parent
    path = base / os.environ.get("CONFIG_FILE", "config/config.yml")
    if not path.is_file():
        return {}
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    flat: dict = {}
    for section, keys in _YAML_SECTIONS.items():
        values = data.get(section) or {}
        for key in keys:
            if values.get(key) is not None:
                flat[key] = values[key]
    langsmith = data.get("langsmith") or {}
    if langsmith.get("project") is not None:
        flat["langsmith_project"] = langsmith["project"]
    if langsmith.get("endpoint") is not None:
        flat["langsmith_endpoint"] = langsmith["endpoint"]
    return flat


class Settings(BaseSettings):
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_strong_model: str = "gpt-4o"
    planner_output: Literal["text", "structured"] = "text"
    evidence_substitution: Literal["token", "literal"] = "token"
    max_attempts: int = 3
    max_insufficient_info: int = 3
    sample_rows: int = 10
    tool_response_timeout: float = 300.0
    recursion_limit: int = 100
    max_history_turns: int = 10
    structured_output_retries: int = 1
    database_url: str = ""
    session_ttl_seconds: int = 300
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    langsmith_tracing: bool = False
    langsmith_api_key: str = ""
    langsmith_project: str = "rewoo-orchestrator"
    langsmith_endpoint: str = "https://api.smith.langchain.com"
    langsmith_workspace_id: str = ""

    @field_validator(
        "openai_api_key",
        "openai_model",
        "openai_strong_model",
        "database_url",
        "langsmith_project",
        "langsmith_endpoint",
        "langsmith_workspace_id",
        mode="before",
    )
    @classmethod
    def strip_quoted_strings(cls, v: str | None) -> str:
        # Values pasted into .env often keep their quotes.
        if not isinstance(v, str):
            return ""
        return _strip_quotes(v)

    @field_validator("max_attempts", "max_insufficient_info", "sample_rows")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Explicit arguments > env > .env > config.yml
        yaml_source = InitSettingsSource(settings_cls, _load_yaml_config())
        return (init_settings, env_settings, dotenv_settings, yaml_source)


settings = Settings()
