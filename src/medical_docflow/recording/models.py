"""
Recording data models.

Recordings persist as camelCase JSON, one object per run. Unknown fields are
kept on load; the order of `steps` is authoritative for replay.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
import json

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def to_json_safe(value: Any) -> Any:
    """Deep copy of a value restricted to JSON types (non-JSON leaves become strings)."""
    return json.loads(json.dumps(value, default=str))


class StepRecord(BaseModel):
    """One executed stage or node. Immutable once appended."""

    node_name: str = Field(..., description="Stage or processing node name")
    kind: Literal["stage", "node"] = Field("stage", description="Pipeline stage or dispatched node")
    timestamp_ms: int = Field(..., description="Wall-clock start time in epoch milliseconds")
    duration_ms: float = Field(0.0, ge=0, description="Execution time in milliseconds")
    success: bool = Field(True, description="Whether the step completed without error")
    output_diff: Dict[str, Any] = Field(default_factory=dict, description="Partial state written by the step")
    errors: List[str] = Field(default_factory=list, description="Error messages raised by the step")
    ai_call_count: int = Field(0, ge=0, description="Number of inference calls made by the step")

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class WorkflowRecording(BaseModel):
    """Ordered log of a single run."""

    recording_id: str = Field(..., description="Unique recording identifier")
    phase: str = Field("analysis", description="Pipeline phase tag")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Run inputs")
    steps: List[StepRecord] = Field(default_factory=list, description="Steps in execution order")
    final_result: Optional[Dict[str, Any]] = Field(None, description="Final aggregated result")
    total_token_usage: int = Field(0, ge=0, description="Tokens used across all steps")
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="Recording start time"
    )
    sealed: bool = Field(False, description="True once the run has finished")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @property
    def total_duration_ms(self) -> float:
        return round(sum(step.duration_ms for step in self.steps), 2)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, data: str) -> "WorkflowRecording":
        return cls.model_validate_json(data)
