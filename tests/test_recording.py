"""Tests for workflow recording and deterministic replay."""

import json

import pytest

from medical_docflow.recording import Replayer, WorkflowRecording, compute_state_diff
from medical_docflow.workflow import (
    Dispatcher,
    NodeRegistry,
    RecordingError,
    RecordingNotFoundError,
    ReplayIntegrityError
)


def record_run(recorder, final_result=None):
    recording_id = recorder.start_recording("analysis", {"text": "Hemoglobin 13.5 g/dL", "language": "en"})
    recorder.record_step(recording_id, "input_validation", {"status": "processing"}, duration_ms=2.5)
    recorder.record_step(
        recording_id, "signal-processing",
        {"signals": [{"signal": "Hemoglobin", "value": 13.5}], "token_usage": 40},
        duration_ms=120.0, kind="node", ai_call_count=1,
    )
    recorder.record_step(
        recording_id, "dispatch",
        {"signals": [{"signal": "Hemoglobin", "value": 13.5}], "token_usage": 40},
        duration_ms=125.0,
    )
    recorder.record_step(recording_id, "quality_gate", {"status": "completed"}, duration_ms=1.0)
    path = recorder.finish_recording(recording_id, final_result or {"status": "completed", "signals": [{"signal": "Hemoglobin"}]})
    return recording_id, path


class TestRecorder:

    def test_finish_writes_camel_case_json(self, recorder):
        recording_id, path = record_run(recorder)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["recordingId"] == recording_id
        assert data["sealed"] is True
        assert data["steps"][1]["outputDiff"]["token_usage"] == 40
        assert data["steps"][1]["aiCallCount"] == 1

    def test_token_usage_counts_stage_steps_only(self, recorder):
        recording_id, _ = record_run(recorder)
        assert recorder.load_recording(recording_id).total_token_usage == 40

    def test_final_result_token_usage_wins(self, recorder):
        recording_id, _ = record_run(recorder, {"status": "completed", "token_usage": 99})
        assert recorder.load_recording(recording_id).total_token_usage == 99

    def test_record_on_unknown_recording_fails(self, recorder):
        with pytest.raises(RecordingError):
            recorder.record_step("workflow-missing", "input_validation", {})

    def test_sealed_recording_rejects_steps(self, recorder):
        recording_id, _ = record_run(recorder)
        with pytest.raises(RecordingError):
            recorder.record_step(recording_id, "late", {})

    def test_step_success_defaults_to_no_errors(self, recorder):
        recording_id = recorder.start_recording()
        step = recorder.record_step(recording_id, "feature_detection", {}, errors=["timeout"])
        assert step.success is False

    def test_load_unknown_recording(self, recorder):
        with pytest.raises(RecordingNotFoundError):
            recorder.load_recording("workflow-does-not-exist")

    def test_load_by_path(self, recorder):
        recording_id, path = record_run(recorder)
        assert recorder.load_recording(str(path)).recording_id == recording_id

    def test_list_recordings(self, recorder, tmp_path):
        assert recorder.list_recordings() == []
        recording_id, _ = record_run(recorder)
        (tmp_path / "workflows" / "broken.json").write_text("{not json", encoding="utf-8")

        listing = recorder.list_recordings()
        assert [item["recording_id"] for item in listing] == [recording_id]
        assert listing[0]["steps"] == 4

    def test_state_diff_is_reducer_compatible(self):
        before = {"signals": [{"signal": "A"}], "token_usage": 10, "status": "processing"}
        after = {"signals": [{"signal": "A"}, {"signal": "B"}], "token_usage": 25, "status": "processing"}

        assert compute_state_diff(before, after) == {"signals": [{"signal": "B"}], "token_usage": 15}

    def test_record_step_with_state_before(self, recorder):
        recording_id = recorder.start_recording()
        step = recorder.record_step(
            recording_id, "dispatch",
            {"token_usage": 30, "status": "processing"},
            state_before={"token_usage": 10, "status": "processing"},
        )
        assert step.output_diff == {"token_usage": 20}


class TestReplay:

    def test_replay_returns_recorded_final_result(self, recorder):
        final = {"status": "completed", "signals": [{"signal": "Hemoglobin"}]}
        recording_id, _ = record_run(recorder, final)

        events = []
        replayed = recorder.create_replay(recording_id).replay(events.append)

        assert replayed == final
        assert [event.stage for event in events] == [
            "input_validation", "signal-processing", "dispatch", "quality_gate"
        ]
        assert events[-1].progress == 100

    def test_replay_result_is_a_copy(self, recorder):
        recording_id, _ = record_run(recorder)
        replayer = recorder.create_replay(recording_id)
        replayer.replay()["signals"].clear()

        replayer.reset()
        assert replayer.replay()["signals"] == [{"signal": "Hemoglobin"}]

    def test_active_recording_cannot_be_replayed(self, recorder):
        recording_id = recorder.start_recording()
        with pytest.raises(ReplayIntegrityError):
            recorder.create_replay(recording_id)

    def test_unsealed_recording_is_rejected(self):
        with pytest.raises(ReplayIntegrityError):
            Replayer(WorkflowRecording(recording_id="workflow-open"))

    def test_step_by_step(self, recorder):
        recording_id, _ = record_run(recorder)
        replayer = recorder.create_replay(recording_id)

        names = []
        while replayer.has_next():
            names.append(replayer.execute_next_step().node_name)

        assert replayer.execute_next_step() is None
        assert replayer.position == replayer.total_steps == 4
        assert names[0] == "input_validation"

    def test_reconstructed_state_applies_stage_steps(self, recorder):
        recording_id, _ = record_run(recorder)
        state = recorder.create_replay(recording_id).reconstruct_state()

        assert state.is_replay
        assert state["status"] == "completed"
        assert state["token_usage"] == 40
        assert len(state["signals"]) == 1
        assert state["text"] == "Hemoglobin 13.5 g/dL"

    async def test_reconstructed_state_cannot_be_dispatched(self, recorder):
        recording_id, _ = record_run(recorder)
        state = recorder.create_replay(recording_id).reconstruct_state()

        with pytest.raises(ReplayIntegrityError):
            await Dispatcher(NodeRegistry([])).dispatch_features({"hasSignals": True}, state)

    def test_summary(self, recorder):
        recording_id, _ = record_run(recorder)
        summary = recorder.create_replay(recording_id).summary()

        assert summary["total_steps"] == 4
        assert summary["stage_steps"] == 3
        assert summary["node_steps"] == 1
        assert summary["ai_calls"] == 1
        assert summary["failed_steps"] == []
        assert summary["status"] == "completed"
        assert summary["total_duration_ms"] == 248.5
