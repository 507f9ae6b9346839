"""Configuration management for codehelm."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.codehelm/config.yaml").expanduser()
DEFAULT_MEMORY_DB_PATH = Path("~/.codehelm/memory.db").expanduser()
DEFAULT_AUDIT_LOG_PATH = Path("~/.codehelm/audit.jsonl").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = ""
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    temperature: float = 0.7
    top_p: float | None = None
    max_tokens: int = 4096
    fallback_models: list[str] = Field(default_factory=list)
    fallback_timeout: float = 60.0
    request_timeout: float = 120.0
    max_retries: int = 2
    retry_backoff: float = 1.0


class MemoryConfig(BaseModel):
    """Tiered memory configuration."""

    max_short_term_items: int = 20
    max_working_items: int = 50
    max_long_term_items: int = 100
    max_context_tokens: int = 8000
    compression_trigger: int = 15
    storage_path: str = str(DEFAULT_MEMORY_DB_PATH)


class PermissionsConfig(BaseModel):
    """Tool permission and approval configuration."""

    allowed_tools: list[str] = ["*"]
    sensitive_tools: list[str] = [
        "write_file",
        "edit_file",
        "delete_file",
        "shell",
        "run_command",
        "git_commit",
        "git_push",
        "install_package",
    ]
    denied_commands: list[str] = [
        "rm -rf /",
        "rm -rf /*",
        "mkfs*",
        "dd if=*of=/dev/*",
        ":(){:|:&};:",
        "shutdown*",
        "reboot*",
    ]
    require_approval_for_all: bool = False
    auto_approve_non_sensitive: bool = True
    approval_timeout: float = 60.0
    audit_enabled: bool = True
    audit_log_path: str = str(DEFAULT_AUDIT_LOG_PATH)


class AgentConfig(BaseModel):
    """Orchestration loop limits."""

    max_tool_depth: int = 50
    max_continuations: int = 5
    max_parallel_tools: int = 8
    insight_interval: int = 6
    context_trim_fraction: float = 0.3
    working_memory_decay: float = 0.05
    streaming: bool = True


class HeartbeatConfig(BaseModel):
    """Background heartbeat configuration."""

    interval: int = 0
    reflection_every: int = 5
    test_command: str = ""
    build_command: str = ""
    task_file: str = "task.md"


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30


class ReadToolConfig(BaseModel):
    """Read tool configuration."""

    max_bytes: int = 100_000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = ["read_file", "write_file", "shell"]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    read: ReadToolConfig = Field(default_factory=ReadToolConfig)


class DebugConfig(BaseModel):
    """Tool execution tracing configuration."""

    level: Literal["off", "basic", "verbose", "trace"] = "off"
    max_traces: int = 1000


class WorkspaceConfig(BaseModel):
    """Project root the agent operates on."""

    path: str = "."


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for codehelm."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="HELM_",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from the local or default config path."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


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
