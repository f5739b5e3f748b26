"""End-to-end tests of the LangGraph document pipeline with a fake inference client."""

import asyncio

from medical_docflow.core.document_ingestion import MedicalDocument
from medical_docflow.workflow import DocumentPipeline, create_document_pipeline

from tests.conftest import LAB_REPORT_TEXT, FakeInferenceClient

MAIN_STAGES = [
    "input_validation",
    "document_type_routing",
    "provider_selection",
    "feature_detection",
]


def recorded_steps(pipeline, recording_id):
    return [step.node_name for step in pipeline.recorder.load_recording(recording_id).steps]


class TestMedicalDocument:

    async def test_signals_only_document(self, settings, lab_inference):
        pipeline = DocumentPipeline(inference=lab_inference, settings=settings, record=True)
        events = []

        result = await pipeline.run(MedicalDocument(text=LAB_REPORT_TEXT), progress_callback=events.append)

        assert result.status == "completed"
        assert result.processed_nodes == ["signal-processing"]
        assert result.failed_nodes == []
        assert result.errors == []
        assert result.signals[0]["signal"] == "Hemoglobin"
        assert result.feature_flags["hasSignals"] is True
        assert result.feature_flags["hasImaging"] is False
        assert result.cross_validation["resolved_conflicts"] == []
        assert result.token_usage == 20
        assert "hemoglobin" in result.medical_terms["terms"]
        assert lab_inference.calls == ["feature_detection", "signals_extraction"]

        progress = [event.progress for event in events]
        assert progress == sorted(progress)
        assert events[-1].type == "complete"
        assert events[-1].progress == 100

    async def test_recording_replays_to_the_same_result(self, settings, lab_inference):
        pipeline = DocumentPipeline(inference=lab_inference, settings=settings, record=True)
        result = await pipeline.run(LAB_REPORT_TEXT)

        assert recorded_steps(pipeline, result.recording_id) == MAIN_STAGES + [
            "signal-processing",
            "dispatch",
            "results_aggregation",
            "cross_validation",
            "medical_terms_generation",
            "quality_gate",
        ]

        calls_before = list(lab_inference.calls)
        replayed = pipeline.recorder.create_replay(result.recording_id).replay()

        assert replayed == result.to_dict()
        assert lab_inference.calls == calls_before

    async def test_external_validation_when_enabled(self, settings, lab_inference):
        settings.pipeline.enable_external_validation = True
        pipeline = DocumentPipeline(inference=lab_inference, settings=settings, record=True)
        result = await pipeline.run(LAB_REPORT_TEXT)

        steps = recorded_steps(pipeline, result.recording_id)
        assert steps.index("external_validation") == steps.index("quality_gate") - 1
        assert result.status == "completed"

    async def test_failed_node_rejects_document(self, settings):
        inference = FakeInferenceClient(
            {"feature_detection": {"isMedical": True, "hasSignals": True}},
            failures=["signals_extraction"],
        )
        result = await DocumentPipeline(inference=inference, settings=settings).run(LAB_REPORT_TEXT)

        assert result.status == "rejected"
        assert result.failed_nodes == ["signal-processing"]
        assert result.errors[0]["node"] == "signal-processing"
        assert result.quality["passed"] is False

    async def test_no_matching_nodes(self, settings):
        inference = FakeInferenceClient({"feature_detection": {"isMedical": True}})
        result = await DocumentPipeline(inference=inference, settings=settings).run(LAB_REPORT_TEXT)

        assert result.status == "completed"
        assert result.processed_nodes == []
        assert inference.calls == ["feature_detection"]


class TestRejectedDocuments:

    async def test_non_medical_document(self, settings):
        inference = FakeInferenceClient({"feature_detection": {"notMedical": True}})
        pipeline = DocumentPipeline(inference=inference, settings=settings, record=True)
        events = []

        result = await pipeline.run("Shopping list: eggs, milk, bread", progress_callback=events.append)

        assert result.status == "failed"
        assert result.processed_nodes == []
        assert result.errors[-1]["node"] == "pipeline_error"
        assert recorded_steps(pipeline, result.recording_id) == MAIN_STAGES
        assert events[-1].type == "error"

    async def test_empty_document(self, settings):
        inference = FakeInferenceClient()
        pipeline = DocumentPipeline(inference=inference, settings=settings, record=True)

        result = await pipeline.run(MedicalDocument(text=""))

        assert result.status == "failed"
        assert inference.calls == []
        assert recorded_steps(pipeline, result.recording_id) == ["input_validation"]

    async def test_feature_detection_failure(self, settings):
        inference = FakeInferenceClient(failures=["feature_detection"])
        result = await DocumentPipeline(inference=inference, settings=settings).run(LAB_REPORT_TEXT)

        assert result.status == "failed"
        assert [entry["node"] for entry in result.errors] == ["feature_detection", "pipeline_error"]

    async def test_cancelled_before_start(self, settings, lab_inference):
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await DocumentPipeline(inference=lab_inference, settings=settings).run(
            LAB_REPORT_TEXT, cancel_event=cancel_event
        )

        assert result.status == "cancelled"
        assert lab_inference.calls == []


class TestPipelineFactory:

    def test_recording_off_by_default(self, settings, lab_inference):
        pipeline = create_document_pipeline(inference=lab_inference, settings=settings)
        assert pipeline.recorder is None
        assert pipeline.get_workflow_status()["recording_enabled"] is False

    def test_recording_from_settings(self, settings, lab_inference):
        settings.recording.enabled = True
        assert create_document_pipeline(inference=lab_inference, settings=settings).recorder is not None
        assert create_document_pipeline(inference=lab_inference, settings=settings, record=False).recorder is None

    async def test_save_report(self, settings, lab_inference, tmp_path):
        result = await DocumentPipeline(inference=lab_inference, settings=settings).run(LAB_REPORT_TEXT)
        assert result.save_report(tmp_path / "report.json")
        assert not result.save_report(tmp_path / "missing" / "report.json")
