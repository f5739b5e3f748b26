# tests/conftest.py
"""Shared test fixtures and helpers.

Fakes:
- FakeInferenceClient: canned responses keyed by schema name, no model needed
- make_node: NodeDefinition around a scripted async function

Hypothesis Configuration:
- "ci" profile: Fast tests (50 examples) - default
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=debug pytest tests/
"""

import asyncio
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytest
from hypothesis import HealthCheck, Verbosity, settings as hypothesis_settings

from medical_docflow.config import PipelineConfig, RecordingConfig, Settings
from medical_docflow.inference import InferenceResult
from medical_docflow.recording import WorkflowRecorder
from medical_docflow.workflow import InferenceError, NodeDefinition

hypothesis_settings.register_profile(
    "ci",
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
hypothesis_settings.register_profile("debug", max_examples=10, deadline=None, verbosity=Verbosity.verbose)
hypothesis_settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "ci"))


class FakeInferenceClient:
    """Inference client returning canned data per schema name."""

    provider_name = "fake"

    def __init__(
        self,
        responses: Optional[Mapping[str, Any]] = None,
        tokens: int = 10,
        failures: Iterable[str] = ()
    ):
        self.responses = dict(responses or {})
        self.tokens = tokens
        self.failures = set(failures)
        self.calls: List[str] = []

    async def infer(self, content, schema, language, on_progress=None) -> InferenceResult:
        name = schema.get("name", "")
        self.calls.append(name)
        if on_progress is not None:
            on_progress("request", 50, f"fake request for {name}")
        if name in self.failures:
            raise InferenceError(f"Provider unavailable for {name}")
        return InferenceResult(data=self.responses.get(name, {}), tokens_used=self.tokens, provider="fake")


def make_node(
    name: str,
    triggers: Iterable[str] = ("hasSignals",),
    priority: int = 1,
    update: Optional[Dict[str, Any]] = None,
    delay: float = 0.0,
    error: Optional[str] = None,
    dependencies: Iterable[str] = (),
    on_call=None
) -> NodeDefinition:
    """NodeDefinition whose function sleeps, then returns `update` or raises."""

    async def function(state, context):
        if on_call is not None:
            on_call(name, state, context)
        if delay:
            await asyncio.sleep(delay)
        if error:
            raise RuntimeError(error)
        return dict(update or {})

    return NodeDefinition(
        name=name,
        description=f"Test node {name}",
        triggers=frozenset(triggers),
        priority=priority,
        function=function,
        dependencies=tuple(dependencies),
    )


SIGNALS_RESPONSE = {
    "signals": [
        {"signal": "Hemoglobin", "value": 13.5, "unit": "g/dL", "referenceRange": "12-16", "date": "2024-03-01"},
    ],
    "hasSignals": True,
}

LAB_REPORT_TEXT = (
    "Laboratory results for patient John Doe.\n"
    "Hemoglobin: 13.5 g/dL (reference range 12-16)\n"
    "Glucose: 5.2 mmol/L\n"
    "Blood count within normal limits."
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with recordings in a temporary directory."""
    return Settings(
        pipeline=PipelineConfig(node_timeout=5.0),
        recording=RecordingConfig(enabled=False, directory=tmp_path / "workflows"),
    )


@pytest.fixture
def recorder(tmp_path) -> WorkflowRecorder:
    return WorkflowRecorder(tmp_path / "workflows")


@pytest.fixture
def lab_inference() -> FakeInferenceClient:
    """Feature detection answers with signals only."""
    return FakeInferenceClient({
        "feature_detection": {
            "isMedical": True,
            "hasSignals": True,
            "hasImaging": False,
            "documentType": "laboratory_report",
            "language": "en",
            "tags": ["laboratory"],
        },
        "signals_extraction": SIGNALS_RESPONSE,
    })
