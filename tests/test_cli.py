"""Tests for the command line interface: recording inspection and document processing."""

import argparse

import pytest

import docflow_cli

from medical_docflow.core.document_ingestion import DocumentValidator, MedicalDocument
from medical_docflow.workflow import DocumentPipeline, InputValidationError

from tests.conftest import LAB_REPORT_TEXT, FakeInferenceClient


async def recorded_result(settings, inference):
    pipeline = DocumentPipeline(inference=inference, settings=settings, record=True)
    result = await pipeline.run(LAB_REPORT_TEXT)
    return pipeline.recorder, result


async def test_analyze_recording(settings, lab_inference):
    recorder, result = await recorded_result(settings, lab_inference)
    analysis = docflow_cli.analyze_recording(recorder.load_recording(result.recording_id))

    assert analysis["recording_id"] == result.recording_id
    assert analysis["total_token_usage"] == 20
    assert analysis["ai_calls"] == 1
    assert analysis["token_usage_by_step"]["signal-processing"] == 10
    assert analysis["failed_steps"] == []
    assert [stage["name"] for stage in analysis["stages"]][0] == "input_validation"


async def test_compare_identical_runs(settings, lab_inference):
    recorder, first = await recorded_result(settings, lab_inference)
    _, second = await recorded_result(settings, lab_inference)

    comparison = docflow_cli.compare_recordings(
        recorder.load_recording(first.recording_id),
        recorder.load_recording(second.recording_id),
    )

    assert comparison["metrics"]["steps"] == [10, 10]
    assert all(row["step"] and "present_in" not in row for row in comparison["steps"])
    # recording ids and timings differ between runs
    assert comparison["same_final_result"] is False


async def test_compare_different_lengths(settings, lab_inference):
    recorder, first = await recorded_result(settings, lab_inference)
    _, second = await recorded_result(settings, FakeInferenceClient({"feature_detection": {"notMedical": True}}))

    comparison = docflow_cli.compare_recordings(
        recorder.load_recording(first.recording_id),
        recorder.load_recording(second.recording_id),
    )
    assert comparison["steps"][-1] == {"step": "quality_gate", "present_in": "A"}


def test_validator_rejects_empty_document():
    with pytest.raises(InputValidationError, match="neither text nor images"):
        DocumentValidator().validate_document(MedicalDocument(text="  "))
    assert DocumentValidator().validate_document(MedicalDocument(text=LAB_REPORT_TEXT))


def test_process_rejects_empty_file_before_building_pipeline(tmp_path, monkeypatch):
    def fail_if_called(**kwargs):
        raise AssertionError("pipeline must not be built for an invalid document")

    monkeypatch.setattr("medical_docflow.workflow.create_document_pipeline", fail_if_called)
    empty = tmp_path / "empty.txt"
    empty.write_text("", encoding="utf-8")
    args = argparse.Namespace(file=str(empty), language="en", record=False, output=None, verbose=False)

    with pytest.raises(InputValidationError):
        docflow_cli.cmd_process(args)
