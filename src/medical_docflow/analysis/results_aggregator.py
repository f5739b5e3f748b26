"""
Results aggregation after dispatch.

The reducers have already merged every node's output into the state; this
step only counts what was produced, lists what failed and compares the
sections found against the sections feature detection asked for.
"""

from typing import Any, Dict, List, Mapping, Optional
import logging

logger = logging.getLogger(__name__)

# Dedicated list channels counted next to the report sections
SECTION_CHANNELS = ("signals", "medications", "procedures", "diagnosis", "body_parts")


def _has_content(value: Any) -> bool:
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


class ResultsAggregator:
    """Summarizes the merged dispatch results."""

    def __init__(self, registry=None):
        self.registry = registry

    def aggregate(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Build the multi-node summary for the merged state.

        Args:
            state: Workflow state after dispatch

        Returns:
            Partial update for the multi_node_results channel
        """
        dispatch = state.get("multi_node_results") or {}
        processed_nodes = list(dispatch.get("succeeded_nodes") or [])

        processed_sections: List[str] = []
        section_counts: Dict[str, int] = {}

        for channel in SECTION_CHANNELS:
            value = state.get(channel)
            if _has_content(value):
                processed_sections.append(channel)
                section_counts[channel] = len(value)

        if _has_content(state.get("imaging")):
            processed_sections.append("imaging")

        report = state.get("report") or {}
        for section, value in report.items():
            if not _has_content(value) or section in processed_sections:
                continue
            processed_sections.append(section)
            if isinstance(value, list):
                section_counts[section] = len(value)

        errors = state.get("errors") or []
        failed_nodes = sorted({entry.get("node") for entry in errors if isinstance(entry, Mapping) and entry.get("node")})

        coverage = self.section_coverage(state.get("feature_detection_results"), processed_nodes)

        if processed_nodes:
            message = f"Successfully processed {len(processed_sections)} medical sections"
        else:
            message = dispatch.get("message") or "No specialized processing required"

        logger.info(f"Aggregated {len(processed_sections)} sections: {', '.join(processed_sections) or 'none'}")
        if failed_nodes:
            logger.warning(f"{len(failed_nodes)} nodes reported errors: {', '.join(failed_nodes)}")

        return {
            "processed_nodes": processed_nodes,
            "processed_sections": processed_sections,
            "successful_nodes": len(processed_nodes),
            "failed_node_names": failed_nodes,
            "section_counts": section_counts,
            "section_coverage": coverage,
            "message": message,
        }

    def section_coverage(self, flags: Optional[Mapping[str, Any]], processed_nodes: List[str]) -> Dict[str, Any]:
        """Share of the nodes selected by the detected flags that produced results."""
        if self.registry is None or not flags:
            return {"expected": [], "covered": [], "missing": [], "ratio": 1.0}

        expected = [node.name for node in self.registry.select_nodes(flags)]
        covered = [name for name in expected if name in processed_nodes]
        missing = [name for name in expected if name not in processed_nodes]
        ratio = len(covered) / len(expected) if expected else 1.0
        return {
            "expected": expected,
            "covered": covered,
            "missing": missing,
            "ratio": round(ratio, 4),
        }
