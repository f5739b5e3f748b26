"""Tests for cross-schema consistency rules."""

from medical_docflow.analysis import (
    IssueSeverity,
    SchemaDependency,
    SchemaDependencyAnalyzer
)


def run(extracted):
    analyzer = SchemaDependencyAnalyzer()
    return {result.rule: result for result in analyzer.validate_cross_schema_consistency(extracted)}


class TestRules:

    def test_rules_skip_missing_sections(self):
        assert run({"signals": [{"signal": "Hemoglobin", "value": 13.5}]}) == {}

    def test_all_diagnosed_body_parts_missing_is_blocking(self):
        results = run({
            "diagnosis": [{"description": "Fracture", "bodyPart": "left femur"}],
            "bodyParts": [{"identification": "skull"}],
        })
        result = results["diagnosis-body-parts"]

        assert not result.is_valid
        assert result.confidence == 0.7
        assert result.issues[0].severity is IssueSeverity.ERROR
        assert result.implicated_flags == ("hasDiagnosis", "hasBodyParts")

    def test_some_diagnosed_body_parts_missing_is_a_warning(self):
        results = run({
            "diagnosis": [
                {"description": "Fracture", "bodyPart": "femur"},
                {"description": "Contusion", "bodyPart": "knee"},
            ],
            "bodyParts": [{"identification": "Left femur"}],
        })
        result = results["diagnosis-body-parts"]

        assert result.is_valid
        assert result.confidence == 0.9
        assert [issue.severity for issue in result.issues] == [IssueSeverity.WARNING]

    def test_summary_without_diagnosis_words_warns(self):
        results = run({
            "summary": "Routine follow-up visit, patient feels well.",
            "diagnosis": [{"description": "Essential hypertension"}],
        })
        result = results["summary-diagnosis"]
        assert result.is_valid
        assert result.issues[0].field == "summary"

    def test_summary_mentioning_diagnosis_passes(self):
        results = run({
            "summary": "Patient treated for essential hypertension.",
            "diagnosis": [{"description": "Essential hypertension"}],
        })
        assert results["summary-diagnosis"].issues == []

    def test_unrelated_recommendations_warn(self):
        results = run({
            "recommendations": [{"description": "Schedule dermatology consultation"}],
            "diagnosis": [{"description": "Essential hypertension"}],
        })
        assert results["recommendations-diagnosis"].issues[0].severity is IssueSeverity.WARNING

    def test_nameless_signal_warns(self):
        results = run({
            "signals": [{"value": 5}, {"signal": "Glucose", "value": None}],
            "summary": "Glucose measured.",
        })
        assert len(results["signals-summary"].issues) == 2

    def test_ecg_rate_within_tolerance(self):
        results = run({
            "ecg": {"heartRate": "72"},
            "signals": [{"signal": "Pulse", "value": 78}],
        })
        assert results["ecg-signals"].is_valid

    def test_ecg_rate_disagreement_is_blocking(self):
        results = run({
            "ecg": {"heartRate": 60},
            "signals": [{"signal": "Heart rate", "value": 120}],
        })
        assert not results["ecg-signals"].is_valid
        assert results["ecg-signals"].issues[0].severity is IssueSeverity.ERROR
        assert results["ecg-signals"].confidence == 0.7

    def test_implausible_ecg_rate_is_critical(self):
        results = run({
            "ecg": {"heartRate": 50},
            "signals": [{"signal": "Pulse", "value": 150}],
        })
        [issue] = results["ecg-signals"].issues
        assert issue.severity is IssueSeverity.CRITICAL
        assert issue.is_blocking()
        assert results["ecg-signals"].confidence == 0.5


class TestAnalyzer:

    def test_failing_rule_becomes_invalid_result(self):
        def explode(source, target):
            raise ValueError("boom")

        analyzer = SchemaDependencyAnalyzer([
            SchemaDependency("broken", "a", "b", "relates_to", ("hasA",), explode),
        ])
        [result] = analyzer.validate_cross_schema_consistency({"a": [1], "b": [2]})

        assert not result.is_valid
        assert result.confidence == 0.0
        assert result.issues[0].message == "Validation failed: boom"
        assert result.suggestions == ["Review data extraction for this section"]

    def test_insights_without_checks(self):
        insights = SchemaDependencyAnalyzer().generate_insights([])
        assert insights["overall_consistency"] == 1.0
        assert insights["checks_run"] == 0
        assert insights["critical_issues"] == []

    def test_insights_collect_blocking_issues(self):
        analyzer = SchemaDependencyAnalyzer()
        results = analyzer.validate_cross_schema_consistency({
            "ecg": {"heartRate": 60},
            "signals": [{"signal": "Heart rate", "value": 120}],
            "summary": "Heart rate 120 bpm.",
        })
        insights = analyzer.generate_insights(results)

        assert insights["checks_run"] == 2
        assert insights["checks_passed"] == 1
        assert insights["overall_consistency"] == 0.5
        assert insights["critical_issues"][0]["severity"] == "error"
        assert insights["critical_issues"][0]["field"] == "ecg"
