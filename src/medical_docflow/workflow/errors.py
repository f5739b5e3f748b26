"""
Error taxonomy for the document processing engine.

Node and registry errors are recovered locally by the engine (the run
continues with degraded coverage). Routing and replay-integrity errors are
fatal and surface to the caller.
"""

from typing import Optional


class DocflowError(Exception):
    """Base class for all engine errors."""


class NodeExecutionError(DocflowError):
    """A processing node failed. Caught per node and turned into an errors entry."""

    def __init__(self, node_name: str, message: str):
        super().__init__(f"{node_name}: {message}")
        self.node_name = node_name


class RegistryConfigurationError(DocflowError):
    """A node definition cannot be planned (unknown trigger, unmet dependency)."""


class PipelineCancelled(DocflowError):
    """The run was cancelled through its cancellation event."""

    def __init__(self, stage: Optional[str] = None):
        super().__init__(f"Pipeline cancelled before stage '{stage}'" if stage else "Pipeline cancelled")
        self.stage = stage


class ReplayIntegrityError(DocflowError):
    """Recorded replay was mixed with live execution."""


class RecordingError(DocflowError):
    """A recording operation was used out of its lifecycle."""


class RecordingNotFoundError(RecordingError):
    """No recording exists for the requested id or path."""


class UnknownChannelError(DocflowError, KeyError):
    """An update wrote to a channel that was never declared."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InferenceError(DocflowError):
    """The AI inference collaborator failed (rate limit, malformed output, transport)."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class InputValidationError(DocflowError):
    """The submitted document cannot be processed."""
