"""Configuration management for Maxian."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from maxian.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.maxian/config.yaml").expanduser()
DEFAULT_TASKS_PATH = Path("~/.maxian/tasks").expanduser()
DEFAULT_HISTORY_DB_PATH = Path("~/.maxian/history.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai_compatible"
    model: str = "qwen-plus"
    temperature: float = 0.2
    max_tokens: int = 8192
    context_window: int = 128000
    api_key: str = ""
    base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    native_tools: bool = False
    request_timeout: float = 120.0


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_messages: int = 50
    truncation_fraction: float = 0.5
    auto_condense: bool = True
    auto_condense_percent: int = 100
    profile_thresholds: dict[str, int] = Field(default_factory=dict)
    current_profile: str = "default"
    custom_condensing_prompt: str = ""


class TaskConfig(BaseModel):
    """Task loop configuration."""

    consecutive_mistake_limit: int = 3
    repetition_limit: int = 3
    api_max_retries: int = 3
    retry_base_delay: float = 1.0
    ask_on_mistake_limit: bool = False
    mode: str = "code"


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 60
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ToolsConfig(BaseModel):
    """Tools configuration."""

    require_approval: list[str] = [
        "write_to_file",
        "execute_command",
    ]
    auto_approve: bool = False
    max_read_bytes: int = 100_000
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class StorageConfig(BaseModel):
    """Task storage configuration."""

    path: str = str(DEFAULT_TASKS_PATH)
    history_db: str = str(DEFAULT_HISTORY_DB_PATH)
    size_cache_ttl: float = 30.0


class WatcherConfig(BaseModel):
    """File watcher configuration."""

    poll_interval: float = 0.5


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Maxian."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    task: TaskConfig = Field(default_factory=TaskConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MAXIAN_",
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
            raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_tasks_path(self) -> Path:
        """Resolve the task storage root."""
        return Path(self.storage.path).expanduser().resolve()


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
