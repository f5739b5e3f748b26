"""
Main LangGraph Workflow for Medical Document Processing

This module wires the pipeline stages into a LangGraph state machine:
input validation, document type routing, provider selection and feature
detection, then the multi-node dispatch and the post-processing stages
(aggregation, cross-validation, medical terms, optional external
validation) ending in the quality gate.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import asyncio
import json
import logging
import time
from pathlib import Path

from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, END

from .dispatcher import Dispatcher
from .errors import PipelineCancelled, ReplayIntegrityError
from .events import ProgressCallback, ProgressReporter
from .registry import NodeRegistry
from .stages import (
    CrossValidationStage,
    DispatchStage,
    DocumentTypeRoutingStage,
    ExternalValidationStage,
    FeatureDetectionStage,
    InputValidationStage,
    MedicalTermsStage,
    PipelineErrorStage,
    PipelineRunContext,
    PipelineStage,
    ProviderSelectionStage,
    QualityGateStage,
    ResultsAggregationStage,
    stage_duration_ms
)
from .state import DocumentProcessingState, apply_update, error_entry

logger = logging.getLogger(__name__)

# Stages whose outcome is not recorded as a step
UNRECORDED_STAGES = ("pipeline_error",)


@dataclass
class PipelineResult:
    """Final result of one document processing run."""
    status: str
    document_id: Optional[str]
    report: Dict[str, Any] = field(default_factory=dict)
    feature_flags: Dict[str, Any] = field(default_factory=dict)
    signals: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    processed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    section_counts: Dict[str, int] = field(default_factory=dict)
    section_coverage: Dict[str, Any] = field(default_factory=dict)
    cross_validation: Dict[str, Any] = field(default_factory=dict)
    medical_terms: Dict[str, Any] = field(default_factory=dict)
    quality: Dict[str, Any] = field(default_factory=dict)
    token_usage: int = 0
    processing_time_ms: float = 0.0
    recording_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("completed", "completed_with_errors")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for serialization."""
        from ..recording.models import to_json_safe

        return to_json_safe({
            "status": self.status,
            "document_id": self.document_id,
            "report": self.report,
            "feature_flags": self.feature_flags,
            "signals": self.signals,
            "errors": self.errors,
            "processed_nodes": self.processed_nodes,
            "failed_nodes": self.failed_nodes,
            "section_counts": self.section_counts,
            "section_coverage": self.section_coverage,
            "cross_validation": self.cross_validation,
            "medical_terms": self.medical_terms,
            "quality": self.quality,
            "token_usage": self.token_usage,
            "processing_time_ms": self.processing_time_ms,
            "recording_id": self.recording_id,
        })

    def save_report(self, output_path: Union[str, Path]) -> bool:
        """Save the processing result to a JSON file."""
        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
            logger.info(f"Processing report saved to {output_path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save report: {e}")
            return False


class DocumentPipeline:
    """
    Medical document processing pipeline using LangGraph.

    Run-scoped collaborators (inference client, recorder, progress sink,
    cancel event) travel in the graph config, so one pipeline instance can
    process many documents.
    """

    def __init__(
        self,
        inference: Any = None,
        settings: Any = None,
        registry: Optional[NodeRegistry] = None,
        recorder: Any = None,
        record: Optional[bool] = None
    ):
        """
        Initialize the pipeline.

        Args:
            inference: InferenceClient used by feature detection and the nodes
            settings: Settings instance (defaults to the global settings)
            registry: Node registry (defaults to the full node catalogue)
            recorder: WorkflowRecorder receiving every stage and node step
            record: Force recording on or off; None follows the recording settings
        """
        from ..config.settings import get_settings

        self.settings = settings or get_settings()
        self.inference = inference

        if registry is None:
            from ..nodes.factory import build_default_registry
            registry = build_default_registry()
        self.registry = registry

        if record is False:
            recorder = None
        elif recorder is None and (record or self.settings.recording.enabled):
            from ..recording.recorder import WorkflowRecorder
            recorder = WorkflowRecorder(
                self.settings.recording.directory,
                replay_delay_ms=self.settings.recording.replay_delay_ms,
            )
        self.recorder = recorder

        self.dispatcher = Dispatcher(
            self.registry,
            recorder=self.recorder,
            node_timeout=self.settings.pipeline.node_timeout,
        )

        self.workflow_graph = self._build_workflow()
        logger.info(f"DocumentPipeline initialized with {len(self.registry)} processing nodes")

    def _build_workflow(self):
        """Build the LangGraph workflow."""
        from ..nodes.factory import FEATURE_FLAGS

        workflow = StateGraph(DocumentProcessingState)

        stages: List[PipelineStage] = [
            InputValidationStage(),
            DocumentTypeRoutingStage(),
            ProviderSelectionStage(),
            FeatureDetectionStage(self._detection_flags(FEATURE_FLAGS)),
            DispatchStage(),
            ResultsAggregationStage(),
            CrossValidationStage(),
            MedicalTermsStage(),
            ExternalValidationStage(),
            QualityGateStage(),
            PipelineErrorStage(),
        ]
        for stage in stages:
            workflow.add_node(stage.name, self._stage_node(stage))

        workflow.set_entry_point("input_validation")

        workflow.add_conditional_edges("input_validation", self._route_after_validation, {
            "valid": "document_type_routing",
            "invalid": "pipeline_error",
        })
        workflow.add_edge("document_type_routing", "provider_selection")
        workflow.add_edge("provider_selection", "feature_detection")
        workflow.add_conditional_edges("feature_detection", self._should_process_medical, {
            "medical": "dispatch",
            "error": "pipeline_error",
        })
        workflow.add_edge("dispatch", "results_aggregation")
        workflow.add_edge("results_aggregation", "cross_validation")
        workflow.add_edge("cross_validation", "medical_terms_generation")
        workflow.add_conditional_edges("medical_terms_generation", self._should_validate_externally, {
            "validate": "external_validation",
            "skip": "quality_gate",
        })
        workflow.add_edge("external_validation", "quality_gate")
        workflow.add_edge("quality_gate", END)
        workflow.add_edge("pipeline_error", END)

        return workflow.compile()

    def _stage_node(self, stage: PipelineStage):
        """Wrap a stage as a graph node with cancellation, timing and recording."""

        async def run_stage(state: Dict[str, Any], config: RunnableConfig) -> Dict[str, Any]:
            run: PipelineRunContext = config["configurable"]["run_context"]
            if run.cancel_event is not None and run.cancel_event.is_set():
                raise PipelineCancelled(stage.name)

            logger.info(f"Starting {stage.name} step")
            start_time = time.time()
            update = await stage.execute(state, run) or {}
            duration_ms = stage_duration_ms(start_time)
            logger.info(f"Completed {stage.name} step in {duration_ms:.0f}ms")

            update.setdefault("current_stage", stage.name)
            if run.recorder is not None and run.recording_id and stage.name not in UNRECORDED_STAGES:
                errors = [entry.get("error") for entry in update.get("errors", []) if isinstance(entry, dict)]
                run.recorder.record_step(
                    run.recording_id,
                    stage.name,
                    output_diff=update,
                    duration_ms=duration_ms,
                    errors=errors,
                    success=not errors,
                    kind="stage",
                )
            return update

        run_stage.__name__ = f"{stage.name}_stage"
        return run_stage

    def _detection_flags(self, known_flags) -> tuple:
        """Catalogue flags first, then any extra flags the registry knows."""
        vocabulary = self.registry.flag_vocabulary
        if vocabulary is None:
            return tuple(known_flags)
        extras = sorted(flag for flag in vocabulary if flag not in known_flags)
        return tuple(flag for flag in known_flags if flag in vocabulary) + tuple(extras)

    @staticmethod
    def _route_after_validation(state: Dict[str, Any]) -> str:
        validation = state.get("input_validation") or {}
        return "valid" if validation.get("is_valid") else "invalid"

    def _should_process_medical(self, state: Dict[str, Any]) -> str:
        threshold = self.settings.pipeline.feature_detection_threshold
        detection = state.get("feature_detection") or {}
        flags = state.get("feature_detection_results") or {}

        if detection.get("confidence", 0) > threshold or flags.get("isMedical") is True:
            logger.info("Medical content detected - proceeding to multi-node processing")
            return "medical"

        logger.info("Non-medical content - skipping processing")
        return "error"

    def _should_validate_externally(self, state: Dict[str, Any]) -> str:
        return "validate" if self.settings.pipeline.enable_external_validation else "skip"

    async def run(
        self,
        document,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> PipelineResult:
        """
        Process one document through the complete pipeline.

        Args:
            document: MedicalDocument, or plain text
            progress_callback: Receives ProgressEvent objects
            cancel_event: asyncio.Event; once set, no new stage or node group starts

        Returns:
            PipelineResult

        Raises:
            ReplayIntegrityError: if a recorded replay state reaches the dispatcher
        """
        from ..core.document_ingestion import MedicalDocument

        if isinstance(document, str):
            document = MedicalDocument(text=document)

        start_time = time.time()
        reporter = ProgressReporter(progress_callback)
        initial_state = document.to_state()

        recording_id = None
        if self.recorder is not None:
            recording_id = self.recorder.start_recording("analysis", inputs=initial_state)

        run = PipelineRunContext(
            settings=self.settings,
            registry=self.registry,
            dispatcher=self.dispatcher,
            reporter=reporter,
            inference=self.inference,
            recorder=self.recorder,
            recording_id=recording_id,
            cancel_event=cancel_event,
        )

        logger.info(f"Starting document pipeline for {document.document_id}")
        final_state: Dict[str, Any] = dict(initial_state)
        status_override = None

        try:
            async for values in self.workflow_graph.astream(
                initial_state,
                config={"configurable": {"run_context": run}},
                stream_mode="values",
            ):
                final_state = dict(values)

        except PipelineCancelled as e:
            logger.warning(f"Pipeline cancelled before {e.stage}")
            apply_update(final_state, {"errors": [error_entry(e.stage or "pipeline", "Processing cancelled")]})
            status_override = "cancelled"

        except ReplayIntegrityError:
            raise

        except Exception as e:
            logger.error(f"Workflow execution failed: {e}")
            apply_update(final_state, {"errors": [error_entry("pipeline", e)]})
            status_override = "failed"

        result = self._build_result(final_state, status_override, start_time, recording_id)

        if self.recorder is not None and recording_id:
            path = self.recorder.finish_recording(recording_id, result.to_dict())
            logger.info(f"Workflow recording saved to {path}")

        if result.succeeded:
            reporter.complete("Document processing completed", {"status": result.status})
        else:
            reporter.error("pipeline", f"Document processing {result.status}", {"status": result.status})

        logger.info(f"Document pipeline finished with status {result.status} in {result.processing_time_ms:.0f}ms")
        return result

    async def process_text(self, text: str, language: str = "en", **kwargs) -> PipelineResult:
        """Convenience wrapper for plain text documents."""
        from ..core.document_ingestion import MedicalDocument
        return await self.run(MedicalDocument(text=text, language=language), **kwargs)

    @staticmethod
    def _build_result(
        state: Dict[str, Any],
        status_override: Optional[str],
        start_time: float,
        recording_id: Optional[str]
    ) -> PipelineResult:
        status = status_override or state.get("status")
        if status not in ("completed", "completed_with_errors", "rejected", "failed", "cancelled"):
            status = "failed"

        summary = state.get("multi_node_results") or {}
        cross_validation = state.get("cross_validation") or {}

        return PipelineResult(
            status=status,
            document_id=state.get("document_id"),
            report=dict(state.get("report") or {}),
            feature_flags=dict(state.get("feature_detection_results") or {}),
            signals=list(state.get("signals") or []),
            errors=list(state.get("errors") or []),
            processed_nodes=list(summary.get("processed_nodes") or []),
            failed_nodes=list(summary.get("failed_nodes") or []),
            section_counts=dict(summary.get("section_counts") or {}),
            section_coverage=dict(summary.get("section_coverage") or {}),
            cross_validation={
                "final_flags": cross_validation.get("final_flags", {}),
                "confidence_scores": cross_validation.get("confidence_scores", {}),
                "resolved_conflicts": cross_validation.get("resolved_conflicts", []),
                "discovered_features": cross_validation.get("discovered_features", []),
            } if cross_validation else {},
            medical_terms=dict(state.get("medical_terms") or {}),
            quality=dict(state.get("quality") or {}),
            token_usage=int(state.get("token_usage") or 0),
            processing_time_ms=stage_duration_ms(start_time),
            recording_id=recording_id,
        )

    def get_workflow_status(self) -> Dict[str, Any]:
        """Get pipeline configuration and status."""
        return {
            "registered_nodes": len(self.registry),
            "recording_enabled": self.recorder is not None,
            "external_validation": self.settings.pipeline.enable_external_validation,
            "feature_detection_threshold": self.settings.pipeline.feature_detection_threshold,
            "node_timeout": self.settings.pipeline.node_timeout,
        }


def create_document_pipeline(
    inference: Any = None,
    settings: Any = None,
    record: Optional[bool] = None
) -> DocumentPipeline:
    """
    Factory function to create a complete document pipeline.

    Args:
        inference: Inference client; an Ollama client is built from settings when omitted
        settings: Settings instance
        record: Force recording on or off (defaults to the recording settings)

    Returns:
        Configured DocumentPipeline instance
    """
    from ..config.settings import get_settings

    settings = settings or get_settings()
    if inference is None:
        from ..inference.client import OllamaInferenceClient
        inference = OllamaInferenceClient.from_settings(settings.llm)

    pipeline = DocumentPipeline(inference=inference, settings=settings, record=record)

    logger.info(f"Created document pipeline (recording {'on' if pipeline.recorder else 'off'})")
    return pipeline
