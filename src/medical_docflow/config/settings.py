"""
Configuration settings for the Medical Document Workflow engine

This module provides configuration management using Pydantic for type
validation and environment variable support. Every threshold the pipeline
uses lives here so a deployment can tune it without code changes.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path


class PipelineConfig(BaseSettings):
    """
    Configuration for the orchestration pipeline and cross-validation.
    """

    # Routing
    feature_detection_threshold: float = Field(
        default=0.5,
        description="Detection confidence above which the document is dispatched to nodes"
    )

    # Cross-validation voting
    detection_vote_confidence: float = Field(
        default=0.8,
        description="Confidence of the vote contributed by feature detection"
    )
    default_refinement_confidence: float = Field(
        default=0.7,
        description="Confidence assumed for a node refinement that reports none"
    )
    unanimous_boost: float = Field(
        default=1.1,
        description="Multiplier applied to mean confidence when all votes agree"
    )
    discovery_promotion_threshold: float = Field(
        default=0.8,
        description="Confidence above which a discovered feature is promoted to a tag"
    )
    critical_issue_penalty: float = Field(
        default=0.7,
        description="Multiplier for flags implicated in critical schema issues"
    )
    consistency_boost_threshold: float = Field(
        default=0.8,
        description="Overall consistency above which all confidences get a boost"
    )

    # Post-processing
    enable_external_validation: bool = Field(
        default=False,
        description="Run the external validation stage before the quality gate"
    )
    max_failed_node_ratio: float = Field(
        default=0.5,
        description="Maximum share of failed nodes for the quality gate to pass"
    )

    # Node execution
    node_timeout: Optional[float] = Field(
        default=120.0,
        description="Per-node timeout in seconds (None disables the timeout)"
    )

    class Config:
        env_prefix = "PIPELINE_"
        case_sensitive = False


class RecordingConfig(BaseSettings):
    """
    Configuration for workflow recording and replay.
    """

    enabled: bool = Field(
        default=False,
        description="Record every live run"
    )
    directory: Path = Field(
        default=Path("./test-data/workflows"),
        description="Directory recordings are written to"
    )
    replay_delay_ms: int = Field(
        default=0,
        description="Delay between replayed steps in milliseconds (0-5000)"
    )

    @field_validator("replay_delay_ms")
    @classmethod
    def clamp_replay_delay(cls, value: int) -> int:
        return max(0, min(value, 5000))

    class Config:
        env_prefix = "RECORDING_"
        case_sensitive = False


class LLMConfig(BaseSettings):
    """
    Configuration for the AI inference collaborator.
    """

    # Provider selection
    default_provider: str = Field(
        default="ollama",
        description="Preferred inference provider"
    )
    fallback_providers: List[str] = Field(
        default=["ollama-small"],
        description="Providers tried in order when the preferred one fails"
    )

    # Ollama settings
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server URL"
    )
    ollama_model: str = Field(
        default="llama3.2:3b",
        description="Ollama model name"
    )

    # Generation settings
    temperature: float = Field(
        default=0.1,
        description="Temperature for generation"
    )
    timeout: int = Field(
        default=60,
        description="Request timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        description="Attempts per inference call before giving up"
    )

    class Config:
        env_prefix = "LLM_"
        case_sensitive = False


class LoggingConfig(BaseSettings):
    """
    Configuration for logging system.
    """

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    file_path: Optional[str] = Field(
        default=None,
        description="Log file path (None for stderr only)"
    )
    max_file_size: int = Field(
        default=10_000_000,  # 10MB
        description="Maximum log file size in bytes"
    )
    backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep"
    )

    class Config:
        env_prefix = "LOG_"
        case_sensitive = False


class Settings(BaseSettings):
    """
    Main settings class that combines all configuration sections.
    """

    # Project info
    project_name: str = "Medical Document Workflow"
    version: str = "0.1.0"
    description: str = "Multi-node medical document processing with cross-validation and replay"

    # Component configurations
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "allow"  # Allow extra fields from environment variables


# Global settings instance (lazy initialization)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (lazy initialization).

    Returns:
        Settings: Global settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings_from_file(file_path: str) -> Settings:
    """
    Load settings from a specific file.

    Args:
        file_path: Path to the settings file

    Returns:
        Settings: Settings instance loaded from file
    """
    return Settings(_env_file=file_path)
