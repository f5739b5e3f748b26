"""
Workflow Recorder

Durably logs every stage and node of a run so it can be replayed later
without re-invoking any node or AI call. A recorder instance can hold several
open recordings at once, keyed by recording id.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import logging
import time
import uuid

from pydantic import ValidationError

from ..workflow.errors import RecordingError, RecordingNotFoundError, ReplayIntegrityError
from ..workflow.state import CHANNELS, MergePolicy
from .models import StepRecord, WorkflowRecording, to_json_safe
from .replay import Replayer

logger = logging.getLogger(__name__)


def compute_state_diff(before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Express the change between two full states as a reducer-compatible update.

    Accumulate channels contribute only their new tail and sum channels only
    their increment, so applying the diff to `before` through the channel
    reducers yields `after`.
    """
    diff: Dict[str, Any] = {}
    for key, new_value in after.items():
        old_value = before.get(key)
        if old_value == new_value:
            continue

        policy = CHANNELS.get(key, MergePolicy.REPLACE)
        if policy is MergePolicy.ACCUMULATE and isinstance(new_value, list):
            old_list = list(old_value or [])
            if new_value[:len(old_list)] == old_list:
                tail = new_value[len(old_list):]
                if tail:
                    diff[key] = tail
                continue
        elif policy is MergePolicy.SUM and isinstance(new_value, (int, float)):
            diff[key] = new_value - (old_value or 0)
            continue

        diff[key] = new_value
    return diff


class WorkflowRecorder:
    """
    Records workflow runs to JSON files in a directory.
    """

    def __init__(self, directory: Union[str, Path] = "./test-data/workflows", replay_delay_ms: int = 0):
        """
        Initialize the recorder.

        Args:
            directory: Directory recordings are written to and loaded from
            replay_delay_ms: Delay between steps for replayers created here
        """
        self.directory = Path(directory)
        self.replay_delay_ms = replay_delay_ms
        self._active: Dict[str, WorkflowRecording] = {}

    def start_recording(self, phase: str = "analysis", inputs: Optional[Mapping[str, Any]] = None) -> str:
        """
        Open a new recording.

        Args:
            phase: Phase tag stored on the recording
            inputs: Run inputs (JSON-safe copy is stored)

        Returns:
            The new recording id
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        recording_id = f"workflow-{phase}-{timestamp}-{uuid.uuid4().hex[:6]}"
        self._active[recording_id] = WorkflowRecording(
            recording_id=recording_id,
            phase=phase,
            inputs=to_json_safe(dict(inputs or {})),
        )
        logger.info(f"Started recording {recording_id}")
        return recording_id

    def is_active(self, recording_id: str) -> bool:
        """True while the recording is open for a live run."""
        return recording_id in self._active

    def record_step(
        self,
        recording_id: str,
        node_name: str,
        output_diff: Optional[Mapping[str, Any]] = None,
        duration_ms: float = 0.0,
        errors: Iterable[str] = (),
        success: Optional[bool] = None,
        kind: str = "stage",
        ai_call_count: int = 0,
        state_before: Optional[Mapping[str, Any]] = None
    ) -> StepRecord:
        """
        Append one step to an open recording.

        Args:
            recording_id: Open recording id
            node_name: Stage or node name
            output_diff: Partial update written by the step, or the full
                state after the step when state_before is given
            duration_ms: Execution time
            errors: Error messages raised by the step
            success: Defaults to "no errors"
            kind: "stage" or "node"
            ai_call_count: Inference calls made by the step
            state_before: Full state before the step; turns output_diff
                into a reducer-compatible diff

        Returns:
            The appended StepRecord

        Raises:
            RecordingError: if the recording is unknown or already sealed
        """
        recording = self._active.get(recording_id)
        if recording is None:
            raise RecordingError(f"No open recording with id {recording_id}")

        output = dict(output_diff or {})
        if state_before is not None:
            output = compute_state_diff(state_before, output)

        errors = [str(error) for error in errors]
        step = StepRecord(
            node_name=node_name,
            kind=kind,
            timestamp_ms=int(time.time() * 1000 - duration_ms),
            duration_ms=max(0.0, float(duration_ms)),
            success=(not errors) if success is None else success,
            output_diff=to_json_safe(output),
            errors=errors,
            ai_call_count=ai_call_count,
        )
        recording.steps.append(step)
        logger.debug(f"Recorded {kind} step {node_name} on {recording_id} ({len(recording.steps)} steps)")
        return step

    def finish_recording(self, recording_id: str, final_result: Mapping[str, Any]) -> Path:
        """
        Seal the recording and write it to disk.

        Args:
            recording_id: Open recording id
            final_result: Final aggregated result of the run

        Returns:
            Path of the written recording file

        Raises:
            RecordingError: if the recording is unknown or already sealed
        """
        recording = self._active.get(recording_id)
        if recording is None:
            raise RecordingError(f"No open recording with id {recording_id}")

        recording.final_result = to_json_safe(dict(final_result))
        recording.total_token_usage = self._total_token_usage(recording)
        recording.sealed = True

        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{recording_id}.json"
        path.write_text(recording.to_json(), encoding="utf-8")

        del self._active[recording_id]
        logger.info(f"Recording {recording_id} sealed with {len(recording.steps)} steps: {path}")
        return path

    def load_recording(self, recording: Union[str, Path]) -> WorkflowRecording:
        """
        Load a sealed recording by id or file path.

        Raises:
            RecordingNotFoundError: if no such recording exists
            RecordingError: if the file is not a valid recording
        """
        path = Path(recording)
        if not path.is_file():
            path = self.directory / f"{recording}.json"
        if not path.is_file():
            raise RecordingNotFoundError(f"Recording not found: {recording}")

        try:
            return WorkflowRecording.from_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise RecordingError(f"Invalid recording file {path}: {e}") from e

    def list_recordings(self) -> List[Dict[str, Any]]:
        """Summaries of all readable recordings in the directory, newest first."""
        if not self.directory.is_dir():
            return []

        summaries = []
        for path in sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                recording = WorkflowRecording.from_json(path.read_text(encoding="utf-8"))
            except (ValidationError, ValueError, OSError) as e:
                logger.warning(f"Skipping unreadable recording {path.name}: {e}")
                continue
            summaries.append({
                "recording_id": recording.recording_id,
                "phase": recording.phase,
                "created_at": recording.created_at,
                "steps": len(recording.steps),
                "total_token_usage": recording.total_token_usage,
                "path": str(path),
            })
        return summaries

    def create_replay(self, recording_id: str) -> Replayer:
        """
        Create a replayer for a sealed recording.

        Raises:
            ReplayIntegrityError: if the recording is still open for a live run
            RecordingNotFoundError: if no such recording exists
        """
        if self.is_active(recording_id):
            raise ReplayIntegrityError(f"Recording {recording_id} is still active in a live run")
        return Replayer(self.load_recording(recording_id), delay_ms=self.replay_delay_ms)

    @staticmethod
    def _total_token_usage(recording: WorkflowRecording) -> int:
        final_usage = (recording.final_result or {}).get("token_usage")
        if isinstance(final_usage, int) and not isinstance(final_usage, bool):
            return final_usage

        stage_steps = [step for step in recording.steps if step.kind == "stage"]
        steps = stage_steps or recording.steps
        total = 0
        for step in steps:
            usage = step.output_diff.get("token_usage")
            if isinstance(usage, int) and not isinstance(usage, bool):
                total += usage
        return total
