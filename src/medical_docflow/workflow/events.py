"""
Progress events emitted while a document moves through the pipeline.

Events go to an injected callback. The reporter maps each stage's local
0-100 progress into the stage's slice of the overall run and clamps the
result so the overall percentage never decreases.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


# Overall progress range owned by each pipeline stage
STAGE_PROGRESS_RANGES: Dict[str, Tuple[int, int]] = {
    "input_validation": (30, 40),
    "document_type_routing": (40, 50),
    "provider_selection": (50, 60),
    "feature_detection": (60, 70),
    "dispatch": (70, 85),
    "results_aggregation": (85, 87),
    "cross_validation": (87, 88),
    "medical_terms_generation": (88, 90),
    "external_validation": (90, 98),
    "quality_gate": (98, 100),
}


@dataclass
class ProgressEvent:
    """Single progress notification."""
    type: str  # progress | complete | error
    stage: str
    progress: float
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """
    Progress sink for a single run.

    Callback failures are logged and never interrupt processing.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.last_progress = 0.0

    def stage_progress(
        self,
        stage: str,
        local_progress: float,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> float:
        """
        Report progress within a stage.

        Args:
            stage: Stage name (key of STAGE_PROGRESS_RANGES)
            local_progress: Progress inside the stage, 0-100
            message: Human readable status
            data: Optional structured payload

        Returns:
            The overall percentage that was emitted
        """
        start, end = STAGE_PROGRESS_RANGES.get(stage, (0, 100))
        local_progress = max(0.0, min(float(local_progress), 100.0))
        overall = start + (end - start) * local_progress / 100.0
        return self.emit("progress", stage, overall, message, data)

    def emit(
        self,
        event_type: str,
        stage: str,
        progress: float,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> float:
        progress = round(max(self.last_progress, min(float(progress), 100.0)), 2)
        self.last_progress = progress

        if self.callback is None:
            return progress

        event = ProgressEvent(
            type=event_type,
            stage=stage,
            progress=progress,
            message=message,
            data=data or {},
        )
        try:
            self.callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed for stage {stage}: {e}")
        return progress

    def complete(self, message: str, data: Optional[Dict[str, Any]] = None) -> float:
        return self.emit("complete", "complete", 100.0, message, data)

    def error(self, stage: str, message: str, data: Optional[Dict[str, Any]] = None) -> float:
        return self.emit("error", stage, self.last_progress, message, data)
