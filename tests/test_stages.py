"""Tests for individual pipeline stages."""

import pytest

from medical_docflow.workflow import Dispatcher, NodeRegistry, PipelineRunContext, ProgressReporter
from medical_docflow.workflow.stages import (
    DocumentTypeRoutingStage,
    ExternalValidationStage,
    FeatureDetectionStage,
    InputValidationStage,
    PipelineErrorStage,
    ProviderSelectionStage,
    QualityGateStage,
    parse_reference_range
)

from tests.conftest import LAB_REPORT_TEXT, FakeInferenceClient


@pytest.fixture
def run(settings):
    registry = NodeRegistry([])
    return PipelineRunContext(
        settings=settings,
        registry=registry,
        dispatcher=Dispatcher(registry),
        reporter=ProgressReporter(),
    )


class TestInputValidation:

    async def test_valid_text(self, run):
        update = await InputValidationStage().execute({"text": LAB_REPORT_TEXT, "language": "en"}, run)
        assert update["status"] == "processing"
        assert update["input_validation"]["is_valid"]
        assert "errors" not in update

    async def test_empty_document(self, run):
        update = await InputValidationStage().execute({"text": "   "}, run)
        assert update["status"] == "invalid_input"
        assert update["errors"][0]["node"] == "input_validation"
        assert update["language"] == "en"


class TestDocumentTypeRouting:

    def test_laboratory_report(self):
        analysis = DocumentTypeRoutingStage().analyze(LAB_REPORT_TEXT)
        assert analysis["document_type"] == "laboratory_report"
        assert "endocrinology" in analysis["specialty_indicators"]
        assert analysis["structured_lines"] >= 2
        assert analysis["processing_complexity"] == "low"

    def test_unknown_text_is_general_medical(self):
        assert DocumentTypeRoutingStage().analyze("Nothing in particular here")["document_type"] == "general_medical"

    def test_images_only(self):
        assert DocumentTypeRoutingStage().analyze("", image_count=2)["document_type"] == "image_document"

    @pytest.mark.parametrize("words, specialties, lines, images, expected", [
        (100, 0, 0, 0, "low"),
        (500, 1, 0, 0, "low"),
        (500, 2, 0, 0, "medium"),
        (2000, 3, 0, 0, "high"),
        (2000, 0, 25, 4, "high"),
    ])
    def test_processing_complexity(self, words, specialties, lines, images, expected):
        assert DocumentTypeRoutingStage.processing_complexity(words, specialties, lines, images) == expected


class TestProviderSelection:

    async def test_uses_inference_provider(self, run):
        run.inference = FakeInferenceClient()
        update = await ProviderSelectionStage().execute({}, run)
        assert update["selected_provider"] == "fake"
        assert update["fallback_providers"][0] == "ollama"


class TestFeatureDetection:

    async def test_flags_are_strict_booleans(self, run):
        run.inference = FakeInferenceClient({"feature_detection": {"hasSignals": True, "hasECG": "yes"}})
        update = await FeatureDetectionStage(("isMedical", "hasSignals", "hasECG")).execute({"text": "x"}, run)

        results = update["feature_detection_results"]
        assert results["isMedical"] is True
        assert results["hasSignals"] is True
        assert results["hasECG"] is False
        assert update["feature_detection"]["confidence"] == 0.9
        assert update["token_usage"] == 10

    async def test_not_medical(self, run):
        run.inference = FakeInferenceClient({"feature_detection": {"notMedical": True}})
        update = await FeatureDetectionStage(("isMedical",)).execute({"text": "Shopping list"}, run)
        assert update["feature_detection_results"]["isMedical"] is False
        assert update["feature_detection"]["confidence"] == 0.0

    async def test_inference_failure(self, run):
        run.inference = FakeInferenceClient(failures=["feature_detection"])
        update = await FeatureDetectionStage(("isMedical",)).execute({"text": "x"}, run)
        assert update["feature_detection"]["confidence"] == 0.0
        assert update["errors"][0]["node"] == "feature_detection"


class TestExternalValidation:

    def test_parse_reference_range(self):
        assert parse_reference_range("12-16") == (12.0, 16.0)
        assert parse_reference_range("3,5 - 5,1") == (3.5, 5.1)
        assert parse_reference_range("<5") == (None, 5.0)
        assert parse_reference_range(">60") == (60.0, None)
        assert parse_reference_range("negative") is None

    @pytest.mark.parametrize("signal, status", [
        ({"signal": "Hemoglobin", "value": 13.5, "referenceRange": "12-16"}, "validated"),
        ({"signal": "Hemoglobin", "value": 11.0, "referenceRange": "12-16"}, "validated"),
        ({"signal": "Hemoglobin", "value": 1350, "referenceRange": "12-16"}, "suspicious"),
        ({"signal": "Hemoglobin", "value": "13.5 g/dL"}, "unvalidated"),
        ({"signal": "Culture", "value": "negative", "referenceRange": "negative"}, "unvalidated"),
    ])
    def test_validate_signal(self, signal, status):
        assert ExternalValidationStage.validate_signal(signal)["status"] == status

    async def test_counts(self, run):
        update = await ExternalValidationStage().execute({"signals": [
            {"signal": "A", "value": 5, "referenceRange": "1-10"},
            {"signal": "B", "value": 500, "referenceRange": "1-10"},
        ]}, run)
        external = update["validation_results"]["external"]
        assert external["validated"] == 1
        assert external["suspicious"] == 1


class TestQualityGate:

    async def test_clean_run_completes(self, run):
        update = await QualityGateStage().execute({
            "feature_detection_results": {"isMedical": True},
            "multi_node_results": {"executed_nodes": ["signal-processing"], "failed_nodes": []},
        }, run)
        assert update["status"] == "completed"
        assert update["quality"]["passed"]
        assert update["quality_checks"] == [
            "feature_detection_present", "failed_node_ratio", "cross_validation_consistency"
        ]

    async def test_too_many_failed_nodes_rejects(self, run):
        update = await QualityGateStage().execute({
            "feature_detection_results": {"isMedical": True},
            "multi_node_results": {"executed_nodes": ["a", "b"], "failed_nodes": ["a", "b"]},
            "errors": [{"node": "a"}, {"node": "b"}],
        }, run)
        assert update["status"] == "rejected"
        assert update["quality"]["failed_node_ratio"] == 1.0

    async def test_partial_failure_completes_with_errors(self, run):
        update = await QualityGateStage().execute({
            "feature_detection_results": {"isMedical": True},
            "multi_node_results": {"executed_nodes": ["a", "b"], "failed_nodes": ["b"]},
            "errors": [{"node": "b"}],
        }, run)
        assert update["status"] == "completed_with_errors"

    async def test_critical_consistency_issues_are_warnings(self, run):
        update = await QualityGateStage().execute({
            "feature_detection_results": {"isMedical": True},
            "cross_validation": {"cross_validation_insights": {
                "critical_issues": [{"severity": "error", "field": "ecg", "message": "ECG heart rate disagrees"}]
            }},
        }, run)
        assert update["status"] == "completed"
        assert update["quality"]["warnings"] == ["Cross-validation: ECG heart rate disagrees"]
        assert "cross_validation_consistency" not in update["quality_checks"]


class TestPipelineError:

    async def test_non_medical_reason(self, run):
        events = []
        run.reporter = ProgressReporter(events.append)
        update = await PipelineErrorStage().execute({"input_validation": {"is_valid": True}}, run)

        assert update["status"] == "failed"
        assert "Non-medical" in update["errors"][0]["error"]
        assert events[-1].type == "error"
