from .settings import (
    PipelineConfig,
    RecordingConfig,
    LLMConfig,
    LoggingConfig,
    Settings,
    get_settings,
    load_settings_from_file
)
from .logging_config import configure_logging

__all__ = [
    'PipelineConfig',
    'RecordingConfig',
    'LLMConfig',
    'LoggingConfig',
    'Settings',
    'get_settings',
    'load_settings_from_file',
    'configure_logging'
]
