"""
LangGraph Workflow Orchestration for Medical Document Processing

This package provides the orchestration engine: the channel-based workflow
state, the processing node registry and dispatcher, the pipeline stages and
the LangGraph driver that chains them together.

Key Components:
- WorkflowState: State shared between stages and merged through channel reducers
- NodeRegistry / Dispatcher: Selection and grouped concurrent execution of processing nodes
- DocumentPipeline: Main workflow orchestrator
"""

from .errors import (
    DocflowError,
    NodeExecutionError,
    RegistryConfigurationError,
    PipelineCancelled,
    ReplayIntegrityError,
    RecordingError,
    RecordingNotFoundError,
    UnknownChannelError,
    InferenceError,
    InputValidationError
)

from .state import (
    MergePolicy,
    DocumentProcessingState,
    WorkflowState,
    CHANNELS,
    apply_update,
    error_entry
)

from .events import ProgressEvent, ProgressReporter, STAGE_PROGRESS_RANGES

from .registry import (
    NodeContext,
    NodeDefinition,
    ExecutionPlan,
    NodeRegistry
)

from .dispatcher import Dispatcher, DispatchOutcome, NO_PROCESSING_MESSAGE

from .stages import PipelineRunContext, PipelineStage

from .workflow import (
    DocumentPipeline,
    PipelineResult,
    create_document_pipeline
)

__all__ = [
    # Errors
    'DocflowError',
    'NodeExecutionError',
    'RegistryConfigurationError',
    'PipelineCancelled',
    'ReplayIntegrityError',
    'RecordingError',
    'RecordingNotFoundError',
    'UnknownChannelError',
    'InferenceError',
    'InputValidationError',

    # State
    'MergePolicy',
    'DocumentProcessingState',
    'WorkflowState',
    'CHANNELS',
    'apply_update',
    'error_entry',

    # Progress
    'ProgressEvent',
    'ProgressReporter',
    'STAGE_PROGRESS_RANGES',

    # Registry and dispatch
    'NodeContext',
    'NodeDefinition',
    'ExecutionPlan',
    'NodeRegistry',
    'Dispatcher',
    'DispatchOutcome',
    'NO_PROCESSING_MESSAGE',

    # Pipeline
    'PipelineRunContext',
    'PipelineStage',
    'DocumentPipeline',
    'PipelineResult',
    'create_document_pipeline'
]
