"""
Schema-driven processing node.

One class serves every catalogue entry: it sends the document to the
inference collaborator with the entry's schema, unwraps and scores the
answer, and returns a partial state update plus a feature refinement that
the cross-validation stage uses as a vote.
"""

from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING
import logging

from ..workflow.errors import NodeExecutionError
from ..workflow.registry import NodeContext
from .schemas import WRAPPER_PROPERTIES, get_schema

if TYPE_CHECKING:
    from .factory import NodeConfig

logger = logging.getLogger(__name__)


class SchemaExtractionNode:
    """
    Processing node built from a NodeConfig.

    Instances are callables with the node function signature
    `(snapshot, context) -> partial update`.
    """

    def __init__(self, config: "NodeConfig"):
        self.config = config
        self.name = config.name
        self.schema = get_schema(config.schema)

    @property
    def section_name(self) -> str:
        return self.config.output.report_field or self.name.replace("-processing", "")

    async def __call__(self, state: Mapping[str, Any], context: NodeContext) -> Dict[str, Any]:
        """
        Run the extraction.

        Args:
            state: Read-only snapshot of the merged workflow state
            context: Run-scoped collaborators

        Returns:
            Partial state update

        Raises:
            NodeExecutionError: if no inference client is configured
            InferenceError: if the inference call fails
        """
        label = self.section_name
        context.report(self.name, 0, f"Loading {label} analysis schema")

        if context.inference is None:
            raise NodeExecutionError(self.name, "No inference client configured")

        context.report(self.name, 20, f"Extracting {label} data with AI using structured schema")
        context.count_ai_call()
        result = await context.inference.infer(
            self._build_content(state),
            self.schema,
            state.get("language") or context.language,
            on_progress=lambda stage, progress, message: context.report(
                f"{self.name}_ai_{stage}", 20 + progress * 0.7, f"AI: {message}"
            ),
        )

        raw = result.data
        data = self.unwrap(raw)
        confidence = self.calculate_confidence(data)
        tokens = int(result.tokens_used or 0)

        context.report(self.name, 100, f"{self.config.description} completed")
        logger.info(f"{self.name}: extracted {label} (confidence {confidence:.2f}, {tokens} tokens)")

        return self.build_update(state, raw, data, confidence, tokens)

    def _build_content(self, state: Mapping[str, Any]) -> Any:
        images = list(state.get("images") or [])
        text = state.get("text") or ""
        if not images:
            return text
        content: List[Any] = [{"type": "image_url", "image_url": {"url": image}} for image in images]
        if text:
            content.append({"type": "text", "text": text})
        return content

    def unwrap(self, result: Any) -> Any:
        """Extract the configured field from the AI wrapper and drop wrapper metadata."""
        if result is None:
            logger.warning(f"{self.name}: AI returned no result")
            return None

        if isinstance(result, list):
            return result

        if not isinstance(result, dict) or not result:
            logger.warning(f"{self.name}: AI returned empty result")
            return None

        unwrap_field = self.config.output.unwrap_field
        if unwrap_field and unwrap_field in result:
            return result[unwrap_field]

        return {key: value for key, value in result.items() if key not in WRAPPER_PROPERTIES}

    def calculate_confidence(self, data: Any) -> float:
        """Confidence from data completeness."""
        if data is None:
            return 0.0

        if isinstance(data, list):
            if not data:
                return 0.0
            return min(0.5 + len(data) * 0.1, 1.0)

        if not isinstance(data, dict):
            return 0.5

        confidence = 0.5
        if data:
            confidence += 0.1

        # Boolean trigger field echoed by the model (e.g. hasECG)
        if any(data.get(trigger) is True for trigger in self.config.triggers):
            confidence += 0.2

        structured = [key for key, value in data.items() if isinstance(value, (dict, list)) and value]
        confidence += min(len(structured) * 0.1, 0.2)

        return round(min(confidence, 1.0), 4)

    def build_feature_refinement(
        self,
        state: Mapping[str, Any],
        raw: Any,
        confidence: float
    ) -> Optional[Dict[str, Any]]:
        """
        Feature flags this node can vouch for, as reported by the model.

        Returns:
            Refinement dict or None when the node has no opinion on any flag
        """
        if not isinstance(raw, dict):
            return None

        refined = {
            key: value for key, value in raw.items()
            if isinstance(value, bool) and (key.startswith("has") or key.startswith("is"))
        }
        if not refined:
            return None

        detected = state.get("feature_detection_results") or {}
        newly_detected = [flag for flag, value in refined.items() if value is True and detected.get(flag) is not True]
        vote_confidence = confidence if confidence > 0 else None

        return {
            "processor_id": self.name,
            "refined_flags": refined,
            "confidence_adjustments": {flag: vote_confidence for flag in refined} if vote_confidence else {},
            "newly_detected_features": newly_detected,
        }

    def build_update(
        self,
        state: Mapping[str, Any],
        raw: Any,
        data: Any,
        confidence: float,
        tokens: int
    ) -> Dict[str, Any]:
        output = self.config.output
        update: Dict[str, Any] = {
            "token_usage": tokens,
            "token_usage_by_node": {self.name: tokens},
        }

        if data is not None:
            if output.is_main_report and isinstance(data, dict):
                update["report"] = dict(data)
            else:
                update["report"] = {output.report_field: data}
            update["extracted_data"] = {self.name: {"data": data, "confidence": confidence}}

            if output.channel:
                update[output.channel] = self._channel_value(output.channel, data)

        refinement = self.build_feature_refinement(state, raw, confidence)
        if refinement:
            update["feature_refinements"] = [refinement]

        return update

    @staticmethod
    def _channel_value(channel: str, data: Any) -> Any:
        if channel == "imaging":
            return data if isinstance(data, dict) else {"items": data}
        if isinstance(data, list):
            return data
        return [data]
