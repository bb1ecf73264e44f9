"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """LLM configuration."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4.1-mini"
    temperature: float = 0.0
    max_tokens: int = 1000
    timeout: int = 60
    base_url: str | None = None

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class PDFTextConfig(BaseSettings):
    """Docling PDF-to-text configuration."""

    ocr_enabled: bool = True
    extract_tables: bool = True


class ExtractionConfig(BaseSettings):
    """Billing extraction configuration."""

    strategy: Literal["heuristic", "llm"] = "heuristic"
    rules_file: str = "config/billing_rules.yaml"
    llm_prompt_template: str = "config/extraction_prompts.yaml"
    llm: LLMConfig = Field(default_factory=LLMConfig)
    pdf: PDFTextConfig = Field(default_factory=PDFTextConfig)
    billable_document_types: List[str] = Field(
        default=["legal_invoice", "invoice", "phone_bill"]
    )


class BillingConfig(BaseSettings):
    """Suggested-duration defaults for generated billable events (hours)."""

    email_hours: float = Field(default=0.1, gt=0.0)
    document_hours: float = Field(default=0.2, gt=0.0)
    minimum_increment_hours: float = Field(default=0.1, gt=0.0)


class PipelineConfig(BaseSettings):
    """Pipeline coordinator configuration."""

    max_workers: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=60.0, ge=0.0)
    unit_timeout_seconds: float = Field(default=300.0, gt=0.0)
    merged_history: int = Field(default=10000, ge=1)


class StorageConfig(BaseSettings):
    """Raw payload and graph backend selection."""

    graph_backend: Literal["neo4j", "memory"] = "neo4j"
    payload_root: Path = Field(default=Path("data/payloads"))


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = "logs/billgraph.log"
    max_size_mb: int = 100
    backup_count: int = 5


class DatabaseConfig(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_user: str = Field(default="neo4j")
    neo4j_password: str = Field(default="billgraph")
    neo4j_database: str = Field(default="neo4j")


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    openai_api_key: str = ""
    anthropic_api_key: str = ""

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win)."""
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If the YAML root is not a mapping
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        env_overrides = cls().model_dump(exclude_defaults=True)

        # Nested DatabaseConfig reads plain NEO4J_* env vars only when built directly.
        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            yaml_db = yaml_config.get("database", {})
            env_overrides["database"] = cls._deep_merge_dict(
                yaml_db if isinstance(yaml_db, dict) else {},
                db_env_overrides,
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)
        return cls(**merged)

    def validate_config(self) -> None:
        """Validate cross-field settings.

        Raises:
            ValueError: If configuration is invalid
        """
        from billgraph.extraction.models import DocumentType

        known_types = {t.value for t in DocumentType}
        unknown = sorted(set(self.extraction.billable_document_types) - known_types)
        if unknown:
            raise ValueError(f"Unknown billable document types: {', '.join(unknown)}")

        if self.pipeline.backoff_max_seconds < self.pipeline.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")

        if self.extraction.strategy == "llm":
            llm = self.extraction.llm
            if llm.provider == "anthropic" and not self.anthropic_api_key:
                raise ValueError("Anthropic API key required when using anthropic provider")
            if llm.provider == "openai" and not self.openai_api_key and not llm.base_url:
                raise ValueError("OpenAI API key required when using openai provider")


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration."""
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
