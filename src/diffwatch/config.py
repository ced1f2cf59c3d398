"""Configuration management for diffwatch using pydantic-settings.

Supports hierarchical configuration from:
1. Environment variables (highest priority)
2. JSON config file
3. Default values (lowest priority)

Environment variables use the format: DIFFWATCH_<SECTION>__<FIELD>
Example: DIFFWATCH_WATCHER__DEBOUNCE_SECONDS=0.5
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


APP_NAME = "diffwatch"

DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    "node_modules/",
    ".DS_Store",
    "thumbs.db",
    "*.swp",
    "*.swo",
    "*~",
    ".#*",
    "#*#",
]


class JsonConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source for loading from JSON file."""

    def __init__(self, settings_cls: type[BaseSettings], json_file: Path):
        super().__init__(settings_cls)
        self.json_file = json_file

    def get_field_value(
        self, field: Any, field_name: str
    ) -> tuple[Any, str, bool]:
        """Get field value - required by base class but not used in v2."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load configuration from JSON file."""
        if self.json_file.exists():
            with open(self.json_file, encoding="utf-8") as f:
                return _strip_comment_fields(json.load(f))
        return {}


class GitConfig(BaseModel):
    """Git executable configuration section."""

    executable: str | None = None  # None = look up "git" on PATH
    command_timeout: float = Field(default=10.0, gt=0)
    max_buffer_bytes: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB


class DiffConfig(BaseModel):
    """Diff capture and parsing configuration section."""

    max_file_bytes: int = Field(default=5 * 1024 * 1024, gt=0)  # 5MB per file section
    history_limit: int = Field(default=50, ge=1)
    exclude_revision: str = "main"
    untracked_file_mode: str = "100644"

    @field_validator('exclude_revision')
    @classmethod
    def exclude_revision_must_not_be_empty(cls, v: str) -> str:
        """Validate that the exclusion revision is not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError('exclude_revision must be a non-empty string')
        return v.strip()


class WatcherConfig(BaseModel):
    """Working-tree watcher configuration section."""

    enabled: bool = True
    debounce_seconds: float = Field(default=1.5, gt=0, le=1.5)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=30.0, gt=0, le=30.0)
    ignore_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    force_polling: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration section."""

    level: str = "INFO"
    log_dir: str | None = None  # None = console only
    serialize_file: bool = True

    @field_validator('level')
    @classmethod
    def level_must_be_known(cls, v: str) -> str:
        """Validate the level against loguru's standard level names."""
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f'unknown log level: {v}')
        return level


# Module-level variables
_json_config_file: Path | None = None  # For settings_customise_sources
_settings_cache: "Settings | None" = None  # For singleton pattern


def _strip_comment_fields(data: Any) -> Any:
    """Recursively strip keys starting with _ or $ from dict.

    Args:
        data: Dictionary to clean (or any other type, which is returned as-is)

    Returns:
        Dictionary with comment fields removed, or original value if not a dict
    """
    if not isinstance(data, dict):
        return data
    return {
        k: _strip_comment_fields(v) if isinstance(v, dict) else v
        for k, v in data.items()
        if not k.startswith('_') and not k.startswith('$')
    }


class Settings(BaseSettings):
    """Root configuration model with nested sections.

    Loads configuration from (in priority order):
    1. Environment variables with DIFFWATCH_ prefix
    2. JSON config file (if provided)
    3. Default values
    """

    git: GitConfig = Field(default_factory=GitConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DIFFWATCH_",
        env_nested_delimiter="__",
    )

    @classmethod
    def from_file(cls, config_path: Path | str) -> "Settings":
        """Load settings from a JSON config file.

        Args:
            config_path: Path to JSON config file

        Returns:
            Settings instance loaded from file, or default Settings if file doesn't exist
        """
        path = Path(config_path)
        if not path.exists():
            return cls()
        raw = json.loads(path.read_text(encoding='utf-8'))
        cleaned = _strip_comment_fields(raw)
        return cls(**cleaned)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to add JSON config file support.

        Priority order (highest to lowest):
        1. Environment variables
        2. JSON config file (if _json_config_file module variable is set)
        3. Default values
        """
        global _json_config_file
        if _json_config_file is not None:
            json_source = JsonConfigSettingsSource(settings_cls, json_file=_json_config_file)
            return (env_settings, json_source, init_settings)
        return (env_settings, init_settings)


def get_settings(config_path: Path | str | None = None, *, _force_reload: bool = False) -> Settings:
    """Load settings from optional JSON config file and environment variables.

    Returns cached settings unless _force_reload=True or config_path is provided.

    Args:
        config_path: Optional path to JSON config file. If provided, bypasses cache.
        _force_reload: If True, bypasses cache and creates fresh Settings instance

    Returns:
        Settings instance with merged configuration
    """
    global _json_config_file, _settings_cache

    if _settings_cache is not None and not _force_reload and config_path is None:
        return _settings_cache

    if config_path:
        _json_config_file = Path(config_path)
        try:
            settings = Settings()
        finally:
            _json_config_file = None  # Reset after use
    else:
        settings = Settings()

    # Cache the settings if no config_path was provided
    if config_path is None:
        _settings_cache = settings

    return settings
