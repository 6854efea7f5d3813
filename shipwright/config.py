"""Configuration management for Shipwright."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipwright.exceptions import ConfigurationError


# Paths
GLOBAL_CONFIG_PATH = Path("~/.config/shipwright/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.config/shipwright/sessions.db").expanduser()
STATE_DIR_NAME = ".shipwright"
PROJECT_CONFIG_FILENAME = "config.yaml"

PermissionAction = Literal["allow", "deny", "confirm"]


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0


class BridgeConfig(BaseModel):
    """Tool-call bridge configuration."""

    enabled: bool = True
    max_followups: int = 3
    backoff_ms: list[int] = [1000, 2000, 4000]
    retry_status: list[int] = [502, 503, 504, 429]
    fatal_status: list[int] = [400, 401, 403, 404]
    timeout_seconds: float = 30.0
    fallback_prefix: str = ".well-known/mcp"


class RuleMatch(BaseModel):
    """Fields a permission rule matches on; unset fields are ignored."""

    tool: str | None = None
    path: str | None = None
    command: str | None = None


class PermissionRule(BaseModel):
    """Ordered permission rule."""

    match: RuleMatch = Field(default_factory=RuleMatch)
    action: PermissionAction


class PermissionsConfig(BaseModel):
    """Permission rules, per-tool defaults and the prompt override."""

    disable_prompts: bool = False
    defaults: dict[str, PermissionAction] = Field(default_factory=dict)
    rules: list[PermissionRule] = Field(default_factory=list)


class PatchConfig(BaseModel):
    """Patch engine configuration."""

    state_dir: str = STATE_DIR_NAME
    journal_file: str = "journal.json"


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 120000
    compaction_threshold: float = 0.8
    keep_last: int = 12


class SessionConfig(BaseModel):
    """Session snapshot configuration."""

    path: str = str(DEFAULT_DB_PATH)
    auto_save: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


def read_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML mapping, treating a missing or empty file as empty."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        return {}
    return data


def write_yaml_file(path: Path, data: dict[str, Any]) -> None:
    """Write a YAML mapping, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge mappings recursively; values from override win."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def project_config_path(project_root: Path | str | None = None) -> Path:
    """Return `<project>/.shipwright/config.yaml`."""
    root = Path(project_root).expanduser() if project_root is not None else Path.cwd()
    return root / STATE_DIR_NAME / PROJECT_CONFIG_FILENAME


class Config(BaseSettings):
    """Main configuration for Shipwright."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    patch: PatchConfig = Field(default_factory=PatchConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SHIPWRIGHT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def from_layers(
        cls,
        global_path: Path | str | None = None,
        project_path: Path | str | None = None,
    ) -> "Config":
        """Load global YAML, then overlay project YAML on top of it."""
        global_file = Path(global_path).expanduser() if global_path else GLOBAL_CONFIG_PATH
        project_file = Path(project_path).expanduser() if project_path else project_config_path()
        data = deep_merge(read_yaml_file(global_file), read_yaml_file(project_file))
        return cls(**data)

    @classmethod
    def load(cls, project_root: Path | str | None = None) -> "Config":
        """Load layered configuration for a project root (defaults to cwd)."""
        return cls.from_layers(GLOBAL_CONFIG_PATH, project_config_path(project_root))

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else GLOBAL_CONFIG_PATH
        write_yaml_file(config_path, self.model_dump(exclude_none=True))

    def state_dir(self, project_root: Path | str | None = None) -> Path:
        """Resolve the per-project state directory (journal, server catalog)."""
        raw = Path(self.patch.state_dir).expanduser()
        if raw.is_absolute():
            return raw
        anchor = Path(project_root).expanduser() if project_root is not None else Path.cwd()
        return anchor.resolve() / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config | None) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
