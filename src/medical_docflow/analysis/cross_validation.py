"""
Cross-Validation of Feature Refinements

Feature detection makes a first guess at which sections a document contains;
each processing node that ran can confirm or contradict those flags. This
module collects those opinions as votes, resolves disagreements with
confidence-weighted voting and adjusts the resulting confidences using the
cross-schema consistency checks.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np

from .schema_dependencies import SchemaDependencyAnalyzer

logger = logging.getLogger(__name__)

DETECTION_VOTER = "ai-feature-detection"


@dataclass(frozen=True)
class RefinementVote:
    """One participant's opinion on a boolean feature flag."""
    voter: str
    value: bool
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"voter": self.voter, "value": self.value, "confidence": self.confidence}


@dataclass(frozen=True)
class ConflictResolution:
    """Record of a flag whose votes disagreed and how it was settled."""
    feature: str
    votes: List[RefinementVote]
    resolution: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "votes": [vote.to_dict() for vote in self.votes],
            "resolution": self.resolution,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AggregatedRefinements:
    """Reconciled feature flags. Built once per run, never mutated."""
    final_flags: Mapping[str, bool]
    confidence_scores: Mapping[str, float]
    contributors: Mapping[str, Tuple[str, ...]]
    resolved_conflicts: List[ConflictResolution] = field(default_factory=list)
    discovered_features: List[str] = field(default_factory=list)
    promoted_tags: List[str] = field(default_factory=list)
    cross_validation_insights: Mapping[str, Any] = field(default_factory=dict)

    @property
    def had_conflicts(self) -> bool:
        return bool(self.resolved_conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_flags": dict(self.final_flags),
            "confidence_scores": dict(self.confidence_scores),
            "contributors": {flag: list(names) for flag, names in self.contributors.items()},
            "resolved_conflicts": [conflict.to_dict() for conflict in self.resolved_conflicts],
            "discovered_features": list(self.discovered_features),
            "promoted_tags": list(self.promoted_tags),
            "cross_validation_insights": dict(self.cross_validation_insights),
        }


def is_feature_flag(name: str, value: Any) -> bool:
    return isinstance(value, bool) and (name.startswith("has") or name.startswith("is"))


class CrossValidationAggregator:
    """
    Reconciles feature-flag votes from detection and processing nodes.

    Voting rules:
    - a single vote passes through unchanged;
    - unanimous votes average their confidence and get a boost (capped at 1.0),
      never ending below the strongest vote;
    - disagreements are settled by summed confidence, ties resolve to False.
    """

    def __init__(self, settings=None, analyzer: Optional[SchemaDependencyAnalyzer] = None):
        self.detection_confidence = getattr(settings, "detection_vote_confidence", 0.8)
        self.default_confidence = getattr(settings, "default_refinement_confidence", 0.7)
        self.unanimous_boost = getattr(settings, "unanimous_boost", 1.1)
        self.promotion_threshold = getattr(settings, "discovery_promotion_threshold", 0.8)
        self.consistency_threshold = getattr(settings, "consistency_boost_threshold", 0.8)
        self.critical_penalty = getattr(settings, "critical_issue_penalty", 0.7)
        self.analyzer = analyzer or SchemaDependencyAnalyzer()

    def aggregate(
        self,
        original_flags: Optional[Mapping[str, Any]],
        refinements: Iterable[Mapping[str, Any]],
        extracted_data: Optional[Mapping[str, Any]] = None
    ) -> AggregatedRefinements:
        """
        Aggregate detection flags and node refinements into final flags.

        Args:
            original_flags: Feature detection results
            refinements: Feature refinements emitted by processing nodes
            extracted_data: Report sections keyed by schema name, for consistency checks

        Returns:
            AggregatedRefinements
        """
        original_flags = original_flags or {}
        votes, contributors, discovered = self._collect_votes(original_flags, refinements)

        final_flags: Dict[str, bool] = {}
        confidences: Dict[str, float] = {}
        conflicts: List[ConflictResolution] = []

        for flag, flag_votes in votes.items():
            value, confidence, conflict = self.resolve(flag, flag_votes)
            final_flags[flag] = value
            confidences[flag] = confidence
            if conflict is not None:
                conflicts.append(conflict)

        results = self.analyzer.validate_cross_schema_consistency(extracted_data or {})
        insights = self.analyzer.generate_insights(results)
        self._adjust_for_consistency(confidences, insights)

        promoted = [
            feature for feature in discovered
            if confidences.get(feature, 0.0) > self.promotion_threshold
        ]

        aggregated = AggregatedRefinements(
            final_flags=MappingProxyType(final_flags),
            confidence_scores=MappingProxyType(confidences),
            contributors=MappingProxyType({flag: tuple(names) for flag, names in contributors.items()}),
            resolved_conflicts=conflicts,
            discovered_features=discovered,
            promoted_tags=promoted,
            cross_validation_insights=MappingProxyType(insights),
        )
        self._log_results(aggregated)
        return aggregated

    def _collect_votes(
        self,
        original_flags: Mapping[str, Any],
        refinements: Iterable[Mapping[str, Any]]
    ) -> Tuple[Dict[str, List[RefinementVote]], Dict[str, List[str]], List[str]]:
        votes: Dict[str, List[RefinementVote]] = {}
        contributors: Dict[str, List[str]] = {}
        discovered: List[str] = []

        for flag, value in original_flags.items():
            if is_feature_flag(flag, value):
                votes.setdefault(flag, []).append(RefinementVote(DETECTION_VOTER, value, self.detection_confidence))
                contributors.setdefault(flag, []).append(DETECTION_VOTER)

        for refinement in refinements:
            if not isinstance(refinement, Mapping):
                logger.warning(f"Ignoring malformed feature refinement: {refinement!r}")
                continue
            processor = refinement.get("processor_id") or "unknown-processor"
            adjustments = refinement.get("confidence_adjustments") or {}

            for flag, value in (refinement.get("refined_flags") or {}).items():
                if not isinstance(value, bool):
                    continue
                confidence = adjustments.get(flag)
                if confidence is None:
                    confidence = self.default_confidence
                confidence = min(max(float(confidence), 0.0), 1.0)
                votes.setdefault(flag, []).append(RefinementVote(processor, value, confidence))
                contributors.setdefault(flag, []).append(processor)
                if flag not in original_flags and flag not in discovered:
                    discovered.append(flag)

            for feature in refinement.get("newly_detected_features") or []:
                if feature not in discovered:
                    discovered.append(feature)

        return votes, contributors, discovered

    def resolve(self, flag: str, votes: List[RefinementVote]) -> Tuple[bool, float, Optional[ConflictResolution]]:
        """
        Resolve the votes cast for one flag.

        Returns:
            Tuple of (value, confidence, conflict record or None)
        """
        if len(votes) == 1:
            return votes[0].value, votes[0].confidence, None

        values = {vote.value for vote in votes}
        if len(values) == 1:
            confidences = [vote.confidence for vote in votes]
            boosted = min(float(np.mean(confidences)) * self.unanimous_boost, 1.0)
            # agreement never lowers the strongest vote
            return votes[0].value, max(boosted, float(np.max(confidences))), None

        true_weight = float(sum(vote.confidence for vote in votes if vote.value))
        false_weight = float(sum(vote.confidence for vote in votes if not vote.value))
        value = true_weight > false_weight
        total = true_weight + false_weight
        winning = true_weight if value else false_weight
        confidence = winning / total if total > 0 else 0.0

        conflict = ConflictResolution(
            feature=flag,
            votes=list(votes),
            resolution=value,
            reason=f"Weighted voting: {true_weight:.2f} (true) vs {false_weight:.2f} (false)",
        )
        logger.info(f"Resolved conflict on {flag}: {value} ({conflict.reason})")
        return value, confidence, conflict

    def _adjust_for_consistency(self, confidences: Dict[str, float], insights: Mapping[str, Any]) -> None:
        overall = insights.get("overall_consistency", 1.0)
        if overall > self.consistency_threshold:
            boost = overall * 0.1
            for flag, confidence in confidences.items():
                confidences[flag] = min(confidence + boost, 1.0)

        for flag in insights.get("implicated_flags", []):
            if flag in confidences:
                confidences[flag] *= self.critical_penalty

    @staticmethod
    def _log_results(aggregated: AggregatedRefinements) -> None:
        logger.info(
            f"Cross-validation: {len(aggregated.final_flags)} flags, "
            f"{len(aggregated.resolved_conflicts)} conflicts resolved, "
            f"{len(aggregated.discovered_features)} new features discovered"
        )
        insights = aggregated.cross_validation_insights
        if insights.get("critical_issues"):
            logger.warning(f"Cross-validation critical issues: {len(insights['critical_issues'])}")


def build_updated_feature_detection(
    original: Optional[Mapping[str, Any]],
    aggregated: AggregatedRefinements
) -> Dict[str, Any]:
    """
    Feature detection results with refined flag values and promoted tags.

    Only flags already present in the original detection are overwritten;
    discovered features show up as tags once they clear the promotion threshold.
    """
    updated = dict(original or {})
    for flag, value in aggregated.final_flags.items():
        if flag in updated:
            updated[flag] = value

    tags = list(updated.get("tags") or [])
    for feature in aggregated.promoted_tags:
        if feature not in tags:
            tags.append(feature)
    updated["tags"] = tags
    return updated
