"""
Workflow Replayer

Deterministic read of a sealed recording. The replayer never invokes a node
or an inference call; it only walks the recorded steps.
"""

from typing import Any, Callable, Dict, List, Optional
import copy
import logging
import time

from ..workflow.errors import ReplayIntegrityError
from ..workflow.events import ProgressEvent
from ..workflow.state import CHANNELS, WorkflowState
from .models import StepRecord, WorkflowRecording

logger = logging.getLogger(__name__)


class Replayer:
    """
    Steps through a sealed WorkflowRecording in recorded order.
    """

    def __init__(self, recording: WorkflowRecording, delay_ms: int = 0):
        """
        Initialize the replayer.

        Args:
            recording: Sealed recording to replay
            delay_ms: Pause between steps in replay()

        Raises:
            ReplayIntegrityError: if the recording was never sealed
        """
        if not recording.sealed:
            raise ReplayIntegrityError(f"Recording {recording.recording_id} is not sealed")
        self.recording = recording
        self.delay_ms = max(0, min(delay_ms, 5000))
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    @property
    def total_steps(self) -> int:
        return len(self.recording.steps)

    def has_next(self) -> bool:
        return self._position < len(self.recording.steps)

    def execute_next_step(self) -> Optional[StepRecord]:
        """Next recorded step, or None when the recording is exhausted."""
        if not self.has_next():
            return None
        step = self.recording.steps[self._position]
        self._position += 1
        logger.debug(f"Replaying step {self._position}/{self.total_steps}: {step.node_name}")
        return step

    def reset(self) -> None:
        self._position = 0

    def replay(self, progress_callback: Optional[Callable[[ProgressEvent], None]] = None) -> Dict[str, Any]:
        """
        Walk all remaining steps and return the recorded final result.

        Args:
            progress_callback: Receives one progress event per replayed step

        Returns:
            Deep copy of the recorded final result
        """
        total = self.total_steps
        while self.has_next():
            step = self.execute_next_step()
            if progress_callback is not None:
                progress_callback(ProgressEvent(
                    type="progress",
                    stage=step.node_name,
                    progress=round(self._position / total * 100, 2),
                    message=f"Replayed {step.kind} {step.node_name}",
                    data={"success": step.success, "duration_ms": step.duration_ms},
                ))
            if self.delay_ms:
                time.sleep(self.delay_ms / 1000)

        logger.info(f"Replayed {total} steps from {self.recording.recording_id}")
        return copy.deepcopy(self.recording.final_result or {})

    def reconstruct_state(self) -> WorkflowState:
        """
        Rebuild the final workflow state from the recorded inputs and step diffs.

        Stage steps carry the net update of each pipeline stage (the dispatch
        stage includes its nodes), so only they are applied. A recording with
        no stage steps falls back to its node steps.
        """
        state = WorkflowState(is_replay=True)
        state.apply({key: value for key, value in self.recording.inputs.items() if key in CHANNELS})

        steps = [step for step in self.recording.steps if step.kind == "stage"]
        if not steps:
            steps = list(self.recording.steps)

        for step in steps:
            state.apply(step.output_diff)
        return state

    def summary(self) -> Dict[str, Any]:
        """Counts and timings of the recording."""
        steps = self.recording.steps
        failed: List[str] = [step.node_name for step in steps if not step.success]
        return {
            "recording_id": self.recording.recording_id,
            "phase": self.recording.phase,
            "created_at": self.recording.created_at,
            "total_steps": len(steps),
            "stage_steps": sum(1 for step in steps if step.kind == "stage"),
            "node_steps": sum(1 for step in steps if step.kind == "node"),
            "failed_steps": failed,
            "total_duration_ms": self.recording.total_duration_ms,
            "total_token_usage": self.recording.total_token_usage,
            "ai_calls": sum(step.ai_call_count for step in steps),
            "status": (self.recording.final_result or {}).get("status"),
        }
