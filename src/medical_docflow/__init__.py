"""
Medical Document Workflow

Orchestration engine that routes medical documents through feature
detection, schema-driven processing nodes, cross-validation and a quality
gate, recording every step for deterministic replay.
"""

from .config import Settings, get_settings, configure_logging
from .workflow import (
    DocumentPipeline,
    PipelineResult,
    WorkflowState,
    NodeRegistry,
    Dispatcher,
    create_document_pipeline
)
from .core.document_ingestion import MedicalDocument, DocumentValidator
from .nodes import FEATURE_FLAGS, build_default_registry
from .analysis import CrossValidationAggregator, SchemaDependencyAnalyzer
from .recording import WorkflowRecorder, Replayer
from .inference import InferenceClient, InferenceResult, OllamaInferenceClient

__version__ = "1.0.0"

__all__ = [
    'Settings',
    'get_settings',
    'configure_logging',
    'DocumentPipeline',
    'PipelineResult',
    'WorkflowState',
    'NodeRegistry',
    'Dispatcher',
    'create_document_pipeline',
    'MedicalDocument',
    'DocumentValidator',
    'FEATURE_FLAGS',
    'build_default_registry',
    'CrossValidationAggregator',
    'SchemaDependencyAnalyzer',
    'WorkflowRecorder',
    'Replayer',
    'InferenceClient',
    'InferenceResult',
    'OllamaInferenceClient'
]
