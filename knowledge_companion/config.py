"""Configuration management for Knowledge Companion."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from knowledge_companion.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.knowledge-companion/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"
MODE_ENV_VAR = "KNOWLEDGE_COMPANION_MODE"

PROVIDER_DEFAULTS: dict[str, tuple[str, str]] = {
    "minimax": ("https://api.minimax.io/v1", "MiniMax-M2"),
    "grok": ("https://api.x.ai/v1", "grok-4-1-fast"),
    "openai": ("https://api.openai.com/v1", "gpt-4o-mini"),
}


class ModelConfig(BaseModel):
    """Chat-completion model configuration."""

    provider: str = "minimax"
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    temperature: float = 1.0
    top_p: float = 0.95
    max_tokens: int = 8192
    stream_max_tokens: int = 32768
    timeout: float = 120.0
    stream_timeout: float = 300.0


class AgentConfig(BaseModel):
    """Conversation loop limits and prompt settings."""

    max_iterations: int = 30
    autonomous_max_iterations: int = 30
    max_context_tokens: int = 90000
    min_messages: int = 10
    timestamp_annotations: bool = True
    timezone_offset_hours: int = -5
    user_id: str = "guest"
    user_name: str | None = None


class ModeConfig(BaseModel):
    """Operating mode and tool policy."""

    mode: Literal["developer", "student"] = "developer"
    safe_mode: bool | None = None
    enabled_tools: dict[str, bool] = Field(default_factory=dict)
    student_disabled_tools: list[str] = [
        "run_terminal_command",
        "write_file_batch",
    ]
    write_prefixes: list[str] = [
        "src/",
        "src-tauri/",
        "public/",
        "docs/",
        "research/",
        "generated-guides/",
        "KnowledgeCompanion/",
    ]
    write_files: list[str] = ["README.md", "package.json"]
    student_write_prefixes: list[str] = ["research", "generated-guides"]

    @property
    def is_student(self) -> bool:
        return self.mode == "student"

    @property
    def effective_safe_mode(self) -> bool:
        """Safe mode defaults to on for student deployments."""
        if self.safe_mode is None:
            return self.is_student
        return self.safe_mode


class WamaCriterion(BaseModel):
    """One weighted keyword criterion."""

    name: str
    weight: float
    keywords: list[str]
    min_length: int = 0


def _default_wama_criteria() -> list[WamaCriterion]:
    return [
        WamaCriterion(
            name="Learning & Growth",
            weight=0.95,
            keywords=["learning", "studying", "practicing", "trying to"],
        ),
        WamaCriterion(
            name="Reminders & Deadlines",
            weight=0.95,
            keywords=[
                "remind me",
                "don't forget",
                "remember to",
                "todo",
                "deadline",
                "by ",
                "before ",
                "need to",
            ],
        ),
        WamaCriterion(
            name="Personal Preference",
            weight=0.9,
            keywords=["prefer", "like", "use ", "love"],
        ),
        WamaCriterion(
            name="Goals & Objectives",
            weight=0.85,
            keywords=["goal", "plan", "want to", "need to"],
        ),
        WamaCriterion(
            name="Important Facts",
            weight=0.85,
            keywords=["important", "key", "critical", "vital"],
        ),
        WamaCriterion(
            name="Technical Details",
            weight=0.8,
            keywords=["command", "code", "setup", "config", "install"],
        ),
        WamaCriterion(
            name="Names & Specifics",
            weight=0.8,
            keywords=["'", '"'],
        ),
        WamaCriterion(
            name="Context-Rich Content",
            weight=0.7,
            keywords=["because", "since", "however"],
            min_length=51,
        ),
    ]


class WamaConfig(BaseModel):
    """Memory admission scoring weights, thresholds and boosts."""

    criteria: list[WamaCriterion] = Field(default_factory=_default_wama_criteria)
    immediate_cascade_threshold: float = 0.9
    priority_save_threshold: float = 0.7
    batch_queue_threshold: float = 0.5
    consider_threshold: float = 0.3
    personal_boost: float = 0.1
    personal_keywords: list[str] = ["user", "my"]
    emphasis_boost: float = 0.15
    emphasis_keywords: list[str] = ["!", "important"]
    length_boost: float = 0.1
    length_threshold: int = 100

    @model_validator(mode="after")
    def _check_band_order(self) -> "WamaConfig":
        bands = [
            self.immediate_cascade_threshold,
            self.priority_save_threshold,
            self.batch_queue_threshold,
            self.consider_threshold,
        ]
        if bands != sorted(bands, reverse=True):
            raise ValueError("WAMA thresholds must be in descending band order")
        return self


class CascadeConfig(BaseModel):
    """Recursive cascade brainstorm settings."""

    max_depth: int = 5
    satisfaction_threshold: float = 0.9
    beam_width: int | None = 3
    enable_pruning: bool = True
    prune_threshold: float = 0.3
    enable_memoization: bool = True


class KnowledgeStoreConfig(BaseModel):
    """Vector store and embedding provider configuration."""

    qdrant_url: str = ""
    qdrant_port: int = 6333
    qdrant_api_key: str = ""
    collection: str = "knowledge_graph"
    embedding_provider: Literal["cohere", "openai"] = "cohere"
    embedding_model: str = "embed-v4.0"
    embedding_api_key: str = ""
    embedding_base_url: str = ""
    dimension: int = 1536
    max_input_chars: int = 8000
    search_default_limit: int = 5
    search_max_limit: int = 20
    timeout: float = 30.0
    cascade: CascadeConfig = Field(default_factory=CascadeConfig)

    def qdrant_base_url(self) -> str:
        """Return the Qdrant URL with scheme and port filled in."""
        raw = self.qdrant_url.strip().rstrip("/")
        if not raw:
            return ""
        if "://" not in raw:
            raw = f"https://{raw}"
        host_part = raw.split("://", 1)[1]
        if ":" not in host_part.split("/", 1)[0] and self.qdrant_port:
            raw = f"{raw}:{self.qdrant_port}"
        return raw


class WebSearchToolConfig(BaseModel):
    """Tavily web search configuration."""

    api_key: str = ""
    base_url: str = "https://api.tavily.com/search"
    max_results: int = 5
    max_results_ceiling: int = 10
    timeout: int = 30


class GrokToolConfig(BaseModel):
    """Grok second-opinion endpoints."""

    api_key: str = ""
    base_url: str = "https://api.x.ai/v1"
    brainstorm_model: str = "grok-4-1-fast-non-reasoning"
    study_guide_model: str = "grok-4-1-fast-non-reasoning"
    timeout: float = 120.0


class ToolsConfig(BaseModel):
    """Tools configuration."""

    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)
    grok: GrokToolConfig = Field(default_factory=GrokToolConfig)
    terminal_timeout: int = 60
    timeout: float = 300.0


class KnowledgeBaseConfig(BaseModel):
    """Markdown knowledge base on disk."""

    path: str = "."
    search_folders: list[str] = [
        "research",
        "dumps",
        "developer-reference",
        "ai-agents",
        "collections",
        "generated-guides",
    ]
    agents_registry: str = "agents.json"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Knowledge Companion."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    mode: ModeConfig = Field(default_factory=ModeConfig)
    wama: WamaConfig = Field(default_factory=WamaConfig)
    knowledge_store: KnowledgeStoreConfig = Field(default_factory=KnowledgeStoreConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    knowledge_base: KnowledgeBaseConfig = Field(default_factory=KnowledgeBaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="KC_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML values arrive as init kwargs; environment wins over them.
        return (env_settings, dotenv_settings, init_settings, file_secret_settings)

    @model_validator(mode="after")
    def _apply_mode_env(self) -> "Config":
        """Honor the deployment-wide mode switch."""
        if os.environ.get(MODE_ENV_VAR, "").strip().lower() == "student":
            self.mode.mode = "student"
        return self

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
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

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

    def resolved_knowledge_base_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the knowledge base root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.knowledge_base.path).expanduser()
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
