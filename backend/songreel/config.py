"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ProviderConfig(BaseModel):
    """Content provider selection and model identifiers.

    api_key may be left empty when GOOGLE_API_KEY / GEMINI_API_KEY is set in
    the environment or when use_vertex_ai relies on Application Default
    Credentials.
    """

    name: str = "gemini"
    analysis_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image"
    api_key: Optional[str] = None
    use_vertex_ai: bool = False
    project_id: Optional[str] = None
    location: str = "us-central1"
    retry_max_attempts: int = 4


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    fast_segment_seconds: int = 5
    high_segment_seconds: int = 4
    default_track_seconds: int = 30
    segment_concurrency: int = Field(default=1, ge=1)
    poll_interval_seconds: float = 2.0
    encoder_timeout_seconds: int = 600


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///songreel.db"
    tmp_dir: Path = Path("tmp")
    uploads_dir: Path = Path("uploads")

    @field_validator("tmp_dir", "uploads_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: SONGREEL_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="SONGREEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit keyword arguments)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
