"""Configuration management for Shellpilot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shellpilot.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.shellpilot/config.yaml").expanduser()
DEFAULT_STATE_DIR = Path("~/.shellpilot").expanduser()
LOCAL_CONFIG_FILENAME = "shellpilot.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "gpt-oss:20b"
    temperature: float = 0.2
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    context_window: int = 128000


class AgentConfig(BaseModel):
    """Turn orchestration behaviour."""

    auto_approve: bool = False
    no_human: bool = False
    plan_merge: bool = True
    no_human_auto_message: str = "continue or say 'done'"
    plan_reminder_message: str = (
        "The plan is not completed, either send a command to continue, update the plan, "
        "take a deep breath and reanalyze the situation, add/remove steps or sub-steps, "
        "or abandon the plan if we don't know how to continue"
    )
    plan_reminder_limit: int = 3
    id_prefix: str = "key"
    debug: bool = False
    plan_path: str = ""


class MemoryConfig(BaseModel):
    """History pruning configuration."""

    amnesia_threshold: int = 10
    dementia_limit: int = 30
    preserve_system_messages: bool = True
    compaction_threshold: float = 0.5


class AllowlistEntry(BaseModel):
    """Pre-approved command, optionally restricted to sub-commands."""

    name: str
    subcommands: list[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    """Command approval configuration."""

    allowlist: list[AllowlistEntry] = Field(
        default_factory=lambda: [
            AllowlistEntry(name="ls"),
            AllowlistEntry(name="pwd"),
            AllowlistEntry(name="cat"),
            AllowlistEntry(name="head"),
            AllowlistEntry(name="tail"),
            AllowlistEntry(name="wc"),
            AllowlistEntry(name="grep"),
            AllowlistEntry(name="git", subcommands=["status", "diff", "log", "show"]),
        ]
    )


class ShellConfig(BaseModel):
    """Shell execution configuration."""

    default_timeout_sec: int = 60
    default_cwd: str = "."
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class GuardConfig(BaseModel):
    """Request payload growth guard."""

    enabled: bool = True
    growth_factor: float = 5.0
    min_growth_bytes: int = 1024
    history_dump_dir: str = ".shellpilot/failsafe-history"


class StatsConfig(BaseModel):
    """Command usage statistics."""

    enabled: bool = True
    path: str = str(DEFAULT_STATE_DIR / "command-stats.json")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Shellpilot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SHELLPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, env vars are applied on top by BaseSettings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
