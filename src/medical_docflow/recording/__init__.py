"""
Workflow recording and deterministic replay.
"""

from .models import StepRecord, WorkflowRecording, to_json_safe
from .replay import Replayer
from .recorder import WorkflowRecorder, compute_state_diff

__all__ = [
    'StepRecord',
    'WorkflowRecording',
    'to_json_safe',
    'Replayer',
    'WorkflowRecorder',
    'compute_state_diff'
]
