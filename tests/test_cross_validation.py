"""Tests for feature flag vote resolution."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from medical_docflow.analysis import (
    CrossValidationAggregator,
    RefinementVote,
    build_updated_feature_detection
)
from medical_docflow.config import PipelineConfig


@pytest.fixture
def aggregator():
    return CrossValidationAggregator(PipelineConfig())


class TestResolve:

    def test_single_vote_passes_through(self, aggregator):
        value, confidence, conflict = aggregator.resolve("hasECG", [RefinementVote("ecg-processing", True, 0.6)])
        assert (value, confidence, conflict) == (True, 0.6, None)

    @given(
        st.booleans(),
        st.lists(st.floats(min_value=0.0, max_value=1.0, allow_nan=False), min_size=2, max_size=6)
    )
    def test_unanimous_votes_boost_mean_confidence(self, value, confidences):
        aggregator = CrossValidationAggregator()
        votes = [RefinementVote(f"voter-{i}", value, c) for i, c in enumerate(confidences)]

        resolved, confidence, conflict = aggregator.resolve("hasSignals", votes)

        assert resolved is value
        assert conflict is None
        boosted = min(sum(confidences) / len(confidences) * 1.1, 1.0)
        assert confidence == pytest.approx(max(boosted, max(confidences)))
        assert max(confidences) <= confidence <= 1.0

    def test_unanimous_votes_keep_the_strongest_confidence(self, aggregator):
        votes = [RefinementVote("signal-processing", True, 0.9), RefinementVote("medical-analysis", True, 0.1)]
        value, confidence, conflict = aggregator.resolve("hasSignals", votes)
        assert value is True
        assert confidence == pytest.approx(0.9)
        assert conflict is None

    def test_weighted_voting_settles_disagreement(self, aggregator):
        votes = [
            RefinementVote("ai-feature-detection", True, 0.9),
            RefinementVote("ecg-processing", False, 0.6),
        ]
        value, confidence, conflict = aggregator.resolve("hasECG", votes)

        assert value is True
        assert confidence == pytest.approx(0.6)
        assert conflict.feature == "hasECG"
        assert conflict.resolution is True
        assert conflict.reason == "Weighted voting: 0.90 (true) vs 0.60 (false)"

    def test_tie_resolves_to_false(self, aggregator):
        votes = [RefinementVote("a", True, 0.5), RefinementVote("b", False, 0.5)]
        value, confidence, conflict = aggregator.resolve("hasECG", votes)
        assert value is False
        assert confidence == pytest.approx(0.5)
        assert conflict is not None

    def test_zero_weight_gives_zero_confidence(self, aggregator):
        votes = [RefinementVote("a", True, 0.0), RefinementVote("b", False, 0.0)]
        value, confidence, _ = aggregator.resolve("hasECG", votes)
        assert value is False
        assert confidence == 0.0


class TestAggregate:

    def test_conflicting_refinement_is_recorded(self, aggregator):
        aggregated = aggregator.aggregate(
            {"isMedical": True, "hasECG": False},
            [{
                "processor_id": "ecg-processing",
                "refined_flags": {"hasECG": True},
                "confidence_adjustments": {"hasECG": 0.9},
            }],
        )

        assert aggregated.had_conflicts
        assert aggregated.final_flags["hasECG"] is True
        assert aggregated.contributors["hasECG"] == ("ai-feature-detection", "ecg-processing")
        # 0.9 / 1.7 plus the full-consistency boost of 0.1
        assert aggregated.confidence_scores["hasECG"] == pytest.approx(0.9 / 1.7 + 0.1)

    def test_missing_adjustment_uses_default_confidence(self, aggregator):
        aggregated = aggregator.aggregate(
            {},
            [{"processor_id": "signal-processing", "refined_flags": {"hasSignals": True}}],
        )
        assert aggregated.confidence_scores["hasSignals"] == pytest.approx(0.7 + 0.1)

    def test_zero_confidence_vote_is_kept(self, aggregator):
        aggregated = aggregator.aggregate(
            {"hasECG": True},
            [{
                "processor_id": "ecg-processing",
                "refined_flags": {"hasECG": False},
                "confidence_adjustments": {"hasECG": 0.0},
            }],
        )
        [conflict] = aggregated.resolved_conflicts
        assert [vote.confidence for vote in conflict.votes] == [0.8, 0.0]
        assert aggregated.final_flags["hasECG"] is True

    def test_out_of_range_confidence_is_clamped(self, aggregator):
        aggregated = aggregator.aggregate(
            {},
            [{"processor_id": "x", "refined_flags": {"hasDental": True}, "confidence_adjustments": {"hasDental": 1.7}}],
        )
        assert aggregated.confidence_scores["hasDental"] <= 1.0

    def test_discovered_feature_is_promoted(self, aggregator):
        original = {"isMedical": True, "hasSignals": True, "tags": ["lab"]}
        aggregated = aggregator.aggregate(
            original,
            [{
                "processor_id": "allergies-processing",
                "refined_flags": {"hasAllergies": True},
                "confidence_adjustments": {"hasAllergies": 0.95},
                "newly_detected_features": ["hasAllergies"],
            }],
        )

        assert aggregated.discovered_features == ["hasAllergies"]
        assert aggregated.promoted_tags == ["hasAllergies"]

        updated = build_updated_feature_detection(original, aggregated)
        assert "hasAllergies" not in updated
        assert updated["tags"] == ["lab", "hasAllergies"]
        assert original["tags"] == ["lab"]

    def test_low_confidence_discovery_is_not_promoted(self, aggregator):
        aggregated = aggregator.aggregate(
            {},
            [{"processor_id": "x", "refined_flags": {"hasDental": True}, "confidence_adjustments": {"hasDental": 0.3}}],
        )
        assert aggregated.discovered_features == ["hasDental"]
        assert aggregated.promoted_tags == []

    def test_critical_issue_penalizes_implicated_flags(self, aggregator):
        aggregated = aggregator.aggregate(
            {"hasECG": True, "hasSignals": True},
            [],
            {
                "ecg": {"heartRate": "72 bpm"},
                "signals": [{"signal": "Heart rate", "value": 110}],
            },
        )

        insights = aggregated.cross_validation_insights
        assert insights["overall_consistency"] == 0.0
        assert insights["implicated_flags"] == ["hasECG", "hasSignals"]
        assert aggregated.confidence_scores["hasECG"] == pytest.approx(0.8 * 0.7)
        assert aggregated.confidence_scores["hasSignals"] == pytest.approx(0.8 * 0.7)

    def test_malformed_refinements_are_ignored(self, aggregator):
        aggregated = aggregator.aggregate({"hasSignals": True}, ["not a refinement", {"refined_flags": {"hasX": "yes"}}])
        assert dict(aggregated.final_flags) == {"hasSignals": True}

    def test_result_is_immutable(self, aggregator):
        aggregated = aggregator.aggregate({"hasSignals": True}, [])
        with pytest.raises(TypeError):
            aggregated.final_flags["hasSignals"] = False

    def test_to_dict_is_plain(self, aggregator):
        data = aggregator.aggregate({"hasSignals": True}, []).to_dict()
        assert data["final_flags"] == {"hasSignals": True}
        assert data["resolved_conflicts"] == []
        assert isinstance(data["cross_validation_insights"], dict)
