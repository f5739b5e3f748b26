"""
Pipeline Stages for Medical Document Processing

Each stage handles one step of the outer pipeline. Stages read the merged
state and return a partial update; the driver merges it through the channel
reducers, records it and moves on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging
import re
import time

from .dispatcher import Dispatcher
from .errors import InferenceError
from .events import ProgressReporter
from .registry import NodeContext, NodeRegistry
from .state import WorkflowState, error_entry

logger = logging.getLogger(__name__)


@dataclass
class PipelineRunContext:
    """
    Run-scoped collaborators for one pipeline execution.

    Passed to the graph through `config["configurable"]`, never stored in
    the workflow state.
    """
    settings: Any
    registry: NodeRegistry
    dispatcher: Dispatcher
    reporter: ProgressReporter
    inference: Any = None
    recorder: Any = None
    recording_id: Optional[str] = None
    cancel_event: Any = None

    def node_context(self, language: str = "en") -> NodeContext:
        return NodeContext(
            inference=self.inference,
            language=language,
            settings=self.settings,
            on_progress=self._node_progress,
            cancel_event=self.cancel_event,
        )

    def _node_progress(self, stage: str, progress: float, message: str) -> None:
        # Node-level progress stays inside the dispatch range
        self.reporter.emit("progress", stage, self.reporter.last_progress, message, {"node_progress": progress})


class PipelineStage(ABC):
    """Base class for pipeline stages."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        """Run the stage and return a partial state update."""
        pass

    def _report(self, run: PipelineRunContext, progress: float, message: str) -> None:
        run.reporter.stage_progress(self.name, progress, message)


class InputValidationStage(PipelineStage):
    """Checks that the document has usable content."""

    def __init__(self, validator=None):
        super().__init__("input_validation")
        from ..core.document_ingestion import DocumentValidator
        self.validator = validator or DocumentValidator()

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        from ..core.document_ingestion import MedicalDocument

        self._report(run, 0, "Validating document input")
        document = MedicalDocument(
            text=state.get("text") or "",
            images=list(state.get("images") or []),
            language=state.get("language") or "en",
            metadata=dict(state.get("metadata") or {}),
            document_id=state.get("document_id"),
        )
        report = self.validator.check(document)
        for warning in report["warnings"]:
            logger.warning(f"Input validation: {warning}")

        update: Dict[str, Any] = {
            "status": "processing" if report["is_valid"] else "invalid_input",
            "input_validation": report,
        }
        if not state.get("language"):
            update["language"] = "en"
        if not report["is_valid"]:
            update["errors"] = [error_entry(self.name, message) for message in report["errors"]]

        self._report(run, 100, "Input valid" if report["is_valid"] else "Input rejected")
        return update


# Document type keyword tables (lower-case, matched on word boundaries)
DOCUMENT_TYPE_KEYWORDS: Dict[str, List[str]] = {
    "laboratory_report": ["laboratory", "lab results", "hemoglobin", "reference range", "blood count", "cholesterol", "glucose"],
    "radiology_report": ["radiology", "x-ray", "ct scan", "mri", "ultrasound", "impression", "contrast"],
    "discharge_summary": ["discharge", "admitted", "admission", "hospital course", "discharged"],
    "prescription": ["prescription", "rx", "dispense", "refills", "sig"],
    "pathology_report": ["pathology", "specimen", "biopsy", "histology", "microscopic", "margins"],
    "ecg_report": ["ecg", "ekg", "electrocardiogram", "sinus rhythm", "qrs"],
    "consultation_note": ["consultation", "referred", "history of present illness", "assessment and plan"],
    "vaccination_record": ["vaccination", "vaccine", "immunization", "booster"],
}

SPECIALTY_KEYWORDS: Dict[str, List[str]] = {
    "cardiology": ["cardiac", "heart", "ecg", "echocardiogram", "arrhythmia", "coronary"],
    "oncology": ["tumor", "tumour", "carcinoma", "metastasis", "oncology", "chemotherapy"],
    "radiology": ["x-ray", "ct", "mri", "ultrasound", "radiograph"],
    "pathology": ["biopsy", "histology", "specimen", "cytology"],
    "neurology": ["neurolog", "seizure", "stroke", "cerebral", "migraine"],
    "endocrinology": ["diabetes", "thyroid", "insulin", "hba1c", "glucose"],
    "pulmonology": ["pulmonary", "lung", "asthma", "copd", "spirometry"],
    "dentistry": ["dental", "tooth", "teeth", "periodontal", "caries"],
}

MEDICAL_TERMS = [
    "diagnosis", "patient", "treatment", "mg", "dose", "symptom", "therapy", "clinical",
    "blood", "pressure", "examination", "history", "medication", "chronic", "acute",
    "laboratory", "physician", "hospital", "infection", "pain", "surgery", "findings",
]

STRUCTURED_LINE = re.compile(r"^\s*[\w ()/.-]{2,40}[:\t|]\s*-?\d+(?:[.,]\d+)?\s*[\w/%^µ]*", re.MULTILINE)


def _keyword_hits(text: str, keywords: List[str]) -> int:
    return sum(1 for keyword in keywords if re.search(rf"(?<!\w){re.escape(keyword)}", text))


class DocumentTypeRoutingStage(PipelineStage):
    """Keyword heuristics for document type, specialty and processing complexity."""

    def __init__(self):
        super().__init__("document_type_routing")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Analyzing document type")
        analysis = self.analyze(state.get("text") or "", len(state.get("images") or []))
        self._report(run, 100, f"Document type: {analysis['document_type']}")
        logger.info(
            f"Routed document as {analysis['document_type']} "
            f"(complexity {analysis['processing_complexity']}, density {analysis['medical_term_density']:.3f})"
        )
        return {
            "document_type_analysis": analysis,
            "processing_complexity": analysis["processing_complexity"],
        }

    def analyze(self, text: str, image_count: int = 0) -> Dict[str, Any]:
        lowered = text.lower()
        words = lowered.split()

        type_scores = {
            doc_type: _keyword_hits(lowered, keywords)
            for doc_type, keywords in DOCUMENT_TYPE_KEYWORDS.items()
        }
        best_type, best_score = max(type_scores.items(), key=lambda item: item[1])
        document_type = best_type if best_score > 0 else ("image_document" if image_count and not words else "general_medical")

        specialties = [
            specialty for specialty, keywords in SPECIALTY_KEYWORDS.items()
            if _keyword_hits(lowered, keywords) > 0
        ]

        term_hits = sum(lowered.count(term) for term in MEDICAL_TERMS)
        density = term_hits / len(words) if words else 0.0
        structured_lines = len(STRUCTURED_LINE.findall(text))

        complexity = self.processing_complexity(len(words), len(specialties), structured_lines, image_count)

        return {
            "document_type": document_type,
            "type_scores": type_scores,
            "specialty_indicators": specialties,
            "medical_term_density": round(density, 4),
            "has_structured_data": structured_lines >= 3,
            "structured_lines": structured_lines,
            "word_count": len(words),
            "image_count": image_count,
            "processing_complexity": complexity,
        }

    @staticmethod
    def processing_complexity(word_count: int, specialty_count: int, structured_lines: int, image_count: int) -> str:
        score = 0
        if word_count > 1500:
            score += 2
        elif word_count > 400:
            score += 1
        if specialty_count >= 3:
            score += 2
        elif specialty_count == 2:
            score += 1
        if structured_lines > 20:
            score += 1
        if image_count > 3:
            score += 1

        if score >= 4:
            return "high"
        if score >= 2:
            return "medium"
        return "low"


class ProviderSelectionStage(PipelineStage):
    """Chooses the inference provider and its fallbacks."""

    def __init__(self):
        super().__init__("provider_selection")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Selecting AI provider")
        llm = getattr(run.settings, "llm", None)
        preferred = getattr(llm, "default_provider", "ollama")
        fallbacks = [name for name in getattr(llm, "fallback_providers", []) if name != preferred]

        provider = getattr(run.inference, "provider_name", None) or preferred
        if provider != preferred and preferred not in fallbacks:
            fallbacks.insert(0, preferred)

        complexity = state.get("processing_complexity") or "low"
        self._report(run, 100, f"Selected provider {provider}")
        logger.info(f"Selected provider {provider} for {complexity} complexity document (fallbacks: {fallbacks})")
        return {
            "selected_provider": provider,
            "fallback_providers": fallbacks,
        }


class FeatureDetectionStage(PipelineStage):
    """Asks the inference collaborator which sections the document contains."""

    def __init__(self, flags: Tuple[str, ...]):
        super().__init__("feature_detection")
        from ..nodes.schemas import build_feature_detection_schema
        self.flags = tuple(flags)
        self.schema = build_feature_detection_schema(self.flags)

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Starting feature detection analysis")
        if run.inference is None:
            return self._failure("No inference client configured")

        content = state.get("text") or ""
        images = list(state.get("images") or [])
        if images:
            content = [{"type": "image_url", "image_url": {"url": image}} for image in images] + (
                [{"type": "text", "text": content}] if content else []
            )

        self._report(run, 40, "Analyzing document features with AI")
        try:
            result = await run.inference.infer(
                content,
                self.schema,
                state.get("language") or "en",
                on_progress=lambda stage, progress, message: self._report(run, 40 + progress * 0.3, f"AI: {message}"),
            )
        except InferenceError as e:
            logger.error(f"Feature detection failed: {e}")
            return self._failure(str(e))

        raw = result.data if isinstance(result.data, dict) else {}
        is_medical = not raw.get("notMedical", False) and raw.get("isMedical", True) is not False
        confidence = 0.9 if is_medical else 0.0

        results: Dict[str, Any] = {
            "isMedical": is_medical,
            "language": raw.get("language") or state.get("language") or "en",
            "documentType": raw.get("documentType") or raw.get("category") or "unknown",
            "medicalSpecialty": list(raw.get("medicalSpecialty") or []),
            "urgencyLevel": raw.get("urgencyLevel") or 1,
            "tags": list(raw.get("tags") or []),
        }
        for flag in self.flags:
            if flag != "isMedical":
                results[flag] = raw.get(flag) is True

        tokens = int(result.tokens_used or 0)
        self._report(run, 100, "Feature detection completed")
        detected = [flag for flag in self.flags if results.get(flag) is True]
        logger.info(f"Feature detection: medical={is_medical}, flags={detected}")

        return {
            "feature_detection": {
                "type": raw.get("category") or "unknown",
                "confidence": confidence,
                "features": list(raw.get("tags") or []),
            },
            "feature_detection_results": results,
            "token_usage": tokens,
            "token_usage_by_node": {self.name: tokens},
        }

    def _failure(self, message: str) -> Dict[str, Any]:
        return {
            "feature_detection": {"type": "unknown", "confidence": 0.0, "features": []},
            "errors": [error_entry(self.name, message)],
        }


class DispatchStage(PipelineStage):
    """Fans out to the processing nodes selected by the detected features."""

    def __init__(self):
        super().__init__("dispatch")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Selecting specialized processing nodes")
        live_state = WorkflowState.initial(state)
        outcome = await run.dispatcher.dispatch_features(
            state.get("feature_detection_results") or {},
            live_state,
            progress=lambda percent, message: self._report(run, percent, message),
            context=run.node_context(state.get("language") or "en"),
            recording_id=run.recording_id,
        )
        self._report(run, 100, f"Dispatch finished: {len(outcome.succeeded)} succeeded, {len(outcome.failed)} failed")
        return outcome.delta


class ResultsAggregationStage(PipelineStage):

    def __init__(self, aggregator=None):
        super().__init__("results_aggregation")
        from ..analysis.results_aggregator import ResultsAggregator
        self.aggregator = aggregator or ResultsAggregator()

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Aggregating results from specialized processing nodes")
        if self.aggregator.registry is None:
            self.aggregator.registry = run.registry
        summary = self.aggregator.aggregate(state)
        self._report(run, 100, summary["message"])
        return {"multi_node_results": summary}


class CrossValidationStage(PipelineStage):
    """Reconciles feature flags and checks cross-section consistency."""

    def __init__(self, aggregator=None):
        super().__init__("cross_validation")
        self.aggregator = aggregator

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        from ..analysis.cross_validation import CrossValidationAggregator, build_updated_feature_detection

        self._report(run, 0, "Cross-validating feature refinements")
        aggregator = self.aggregator or CrossValidationAggregator(getattr(run.settings, "pipeline", None))
        original = state.get("feature_detection_results") or {}

        try:
            aggregated = aggregator.aggregate(
                original,
                state.get("feature_refinements") or [],
                self.collect_sections(state),
            )
        except Exception as e:
            logger.error(f"Cross-validation failed: {e}")
            return {"errors": [error_entry(self.name, e)]}

        self._report(run, 100, f"Resolved {len(aggregated.resolved_conflicts)} conflicts")
        return {
            "feature_detection_results": build_updated_feature_detection(original, aggregated),
            "cross_validation": aggregated.to_dict(),
            "metadata": {
                "cross_validation": {
                    "processors_contributed": len(state.get("feature_refinements") or []),
                    "features_refined": len(aggregated.final_flags),
                    "new_features_discovered": len(aggregated.discovered_features),
                    "conflicts_resolved": len(aggregated.resolved_conflicts),
                }
            },
        }

    @staticmethod
    def collect_sections(state: Mapping[str, Any]) -> Dict[str, Any]:
        """Report sections keyed by schema name, for the consistency rules."""
        sections = dict(state.get("report") or {})
        for channel, section in (("signals", "signals"), ("diagnosis", "diagnosis"), ("body_parts", "bodyParts")):
            if state.get(channel) and not sections.get(section):
                sections[section] = state[channel]
        return sections


class MedicalTermsStage(PipelineStage):

    def __init__(self, generator=None):
        super().__init__("medical_terms_generation")
        from ..analysis.medical_terms import MedicalTermsGenerator
        self.generator = generator or MedicalTermsGenerator()

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Extracting medical terms from analysis results")
        terms = self.generator.generate(state)
        self._report(run, 100, "Medical terms generation completed")
        return {"medical_terms": terms}


RANGE_PATTERN = re.compile(r"(-?\d+(?:[.,]\d+)?)\s*(?:-|–|to)\s*(-?\d+(?:[.,]\d+)?)")
UPPER_BOUND_PATTERN = re.compile(r"^\s*(?:<|<=|≤)\s*(\d+(?:[.,]\d+)?)")
LOWER_BOUND_PATTERN = re.compile(r"^\s*(?:>|>=|≥)\s*(\d+(?:[.,]\d+)?)")

# A value this many range-widths outside its reference range is treated as an extraction error
SUSPICIOUS_SPAN = 10


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:[.,]\d+)?", value)
        if match:
            return float(match.group(0).replace(",", "."))
    return None


def parse_reference_range(text: Any) -> Optional[Tuple[Optional[float], Optional[float]]]:
    """Parse '12-16', '<5' or '>60' into (low, high)."""
    if not isinstance(text, str):
        return None
    match = RANGE_PATTERN.search(text)
    if match:
        low, high = (float(group.replace(",", ".")) for group in match.groups())
        return (min(low, high), max(low, high))
    match = UPPER_BOUND_PATTERN.search(text)
    if match:
        return (None, float(match.group(1).replace(",", ".")))
    match = LOWER_BOUND_PATTERN.search(text)
    if match:
        return (float(match.group(1).replace(",", ".")), None)
    return None


class ExternalValidationStage(PipelineStage):
    """Validates extracted signal values against their reference ranges."""

    def __init__(self):
        super().__init__("external_validation")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Validating signals against reference ranges")
        signals = [signal for signal in state.get("signals") or [] if isinstance(signal, dict)]
        validated = [self.validate_signal(signal) for signal in signals]

        counts = {"validated": 0, "suspicious": 0, "unvalidated": 0}
        for item in validated:
            counts[item["status"]] += 1

        self._report(run, 100, f"Validated {counts['validated']} of {len(validated)} signals")
        if counts["suspicious"]:
            logger.warning(f"External validation flagged {counts['suspicious']} suspicious signal values")

        return {"validation_results": {"external": {"signals": validated, **counts}}}

    @staticmethod
    def validate_signal(signal: Mapping[str, Any]) -> Dict[str, Any]:
        name = signal.get("signal") or "unknown"
        value = _number(signal.get("value"))
        bounds = parse_reference_range(signal.get("referenceRange"))
        if value is None or bounds is None:
            return {"signal": name, "status": "unvalidated", "reason": "No numeric value or reference range"}

        low, high = bounds
        span = (high - low) if low is not None and high is not None and high > low else abs(high if high is not None else low) or 1.0
        in_range = (low is None or value >= low) and (high is None or value <= high)
        if in_range:
            return {"signal": name, "status": "validated", "in_range": True}

        distance = (low - value) if low is not None and value < low else (value - high)
        if distance > span * SUSPICIOUS_SPAN:
            return {"signal": name, "status": "suspicious", "in_range": False,
                    "reason": f"Value {value:g} is implausibly far outside {signal.get('referenceRange')}"}
        return {"signal": name, "status": "validated", "in_range": False}


class QualityGateStage(PipelineStage):
    """Final acceptance check on the processed document."""

    def __init__(self):
        super().__init__("quality_gate")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        self._report(run, 0, "Running quality checks")
        pipeline = getattr(run.settings, "pipeline", None)
        max_failed_ratio = getattr(pipeline, "max_failed_node_ratio", 0.5)

        checks: List[str] = []
        issues: List[str] = []

        if state.get("feature_detection_results"):
            checks.append("feature_detection_present")
        else:
            issues.append("Feature detection results missing")

        dispatch = state.get("multi_node_results") or {}
        executed = len(dispatch.get("executed_nodes") or [])
        failed = len(dispatch.get("failed_nodes") or [])
        failed_ratio = failed / executed if executed else 0.0
        if failed_ratio <= max_failed_ratio:
            checks.append("failed_node_ratio")
        else:
            issues.append(f"{failed}/{executed} processing nodes failed")

        insights = (state.get("cross_validation") or {}).get("cross_validation_insights") or {}
        critical = insights.get("critical_issues") or []
        warnings = [f"Cross-validation: {issue.get('message')}" for issue in critical]
        if not critical:
            checks.append("cross_validation_consistency")

        suspicious = ((state.get("validation_results") or {}).get("external") or {}).get("suspicious", 0)
        if suspicious:
            warnings.append(f"{suspicious} signal values failed external validation")

        passed = not issues
        score = max(0.0, 1.0 - failed_ratio * 0.5 - 0.1 * len(critical))
        if not passed:
            status = "rejected"
        elif state.get("errors"):
            status = "completed_with_errors"
        else:
            status = "completed"

        self._report(run, 100, f"Quality gate {'passed' if passed else 'failed'}")
        logger.info(f"Quality gate {status}: score {score:.2f}, {len(issues)} issues, {len(warnings)} warnings")
        return {
            "status": status,
            "quality_checks": checks,
            "quality": {
                "passed": passed,
                "score": round(score, 4),
                "failed_node_ratio": round(failed_ratio, 4),
                "issues": issues,
                "warnings": warnings,
            },
        }


class PipelineErrorStage(PipelineStage):
    """Terminal stage for documents that cannot be processed."""

    def __init__(self):
        super().__init__("pipeline_error")

    async def execute(self, state: Mapping[str, Any], run: PipelineRunContext) -> Dict[str, Any]:
        validation = state.get("input_validation") or {}
        if validation and not validation.get("is_valid", True):
            reason = "Input validation failed"
        elif state.get("errors"):
            reason = f"Processing stopped after errors in {state['errors'][-1].get('node')}"
        else:
            reason = "Non-medical content - specialized processing skipped"

        logger.warning(f"Pipeline stopped: {reason}")
        run.reporter.error(self.name, reason)
        return {
            "status": "failed",
            "errors": [error_entry(self.name, reason)],
        }


def stage_duration_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)
