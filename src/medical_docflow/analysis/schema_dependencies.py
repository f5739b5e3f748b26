"""
Cross-Schema Consistency Analysis

Checks that the sections extracted by independent processing nodes agree
with each other: a diagnosis should name a body part the body-parts node
also found, an ECG heart rate should not contradict the pulse among the
signals, and so on. Each rule yields a ValidationResult; the aggregate feeds
the confidence adjustments of cross-validation.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple
import logging

logger = logging.getLogger(__name__)


class IssueSeverity(Enum):
    """Severity of a consistency issue."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


BLOCKING_SEVERITIES = (IssueSeverity.ERROR, IssueSeverity.CRITICAL)

# Units that mark a measurement in free text
MEASUREMENT_PATTERN = re.compile(
    r"\b\d+(?:[.,]\d+)?\s*(?:mg/dl|mmol/l|g/dl|g/l|u/l|iu/l|mmhg|bpm|%|x10\^?9/l|ng/ml|pg/ml|meq/l)",
    re.IGNORECASE,
)
NUMBER_PATTERN = re.compile(r"-?\d+(?:[.,]\d+)?")
WORD_PATTERN = re.compile(r"[a-z]{4,}")

HEART_RATE_SIGNALS = ("heart rate", "pulse", "hr", "srdeční frekvence", "tep")


@dataclass
class ValidationIssue:
    """A single inconsistency between two sections."""
    severity: IssueSeverity
    field: str
    message: str

    def is_blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES

    def to_dict(self) -> Dict[str, str]:
        return {"severity": self.severity.value, "field": self.field, "message": self.message}


@dataclass
class ValidationResult:
    """Outcome of one consistency rule."""
    rule: str
    is_valid: bool
    confidence: float
    issues: List[ValidationIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    implicated_flags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "issues": [issue.to_dict() for issue in self.issues],
            "suggestions": list(self.suggestions),
            "implicated_flags": list(self.implicated_flags),
        }


RuleCheck = Callable[[Any, Any], Tuple[List[ValidationIssue], List[str]]]


@dataclass(frozen=True)
class SchemaDependency:
    """A consistency rule between a source and a target section."""
    name: str
    source: str
    target: str
    relationship: str
    flags: Tuple[str, ...]
    check: RuleCheck = field(compare=False, repr=False)


def _as_items(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return " ".join(_text(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return " ".join(_text(item) for item in value)
    return str(value)


def _words(value: Any) -> Set[str]:
    return set(WORD_PATTERN.findall(_text(value).lower()))


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = NUMBER_PATTERN.search(_text(value))
    if not match:
        return None
    return float(match.group(0).replace(",", "."))


def _matches_any(term: str, candidates: Iterable[str]) -> bool:
    term = term.strip().lower()
    if not term:
        return True
    for candidate in candidates:
        candidate = candidate.strip().lower()
        if candidate and (term in candidate or candidate in term):
            return True
    return False


def check_diagnosis_body_parts(diagnoses: Any, body_parts: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """Body parts named by diagnoses should appear in the body-parts section."""
    issues: List[ValidationIssue] = []
    suggestions: List[str] = []
    known = [_text(part.get("identification")) for part in _as_items(body_parts)]

    located = [item for item in _as_items(diagnoses) if _text(item.get("bodyPart")).strip()]
    missing = [item for item in located if not _matches_any(_text(item["bodyPart"]), known)]

    if located and len(missing) == len(located):
        issues.append(ValidationIssue(
            IssueSeverity.ERROR, "bodyParts",
            "None of the body parts referenced by diagnoses were extracted as body parts"
        ))
        suggestions.append("Re-run body part extraction with the diagnosed locations")
    else:
        for item in missing:
            issues.append(ValidationIssue(
                IssueSeverity.WARNING, "bodyParts",
                f"Diagnosis '{_text(item.get('description'))}' references unlisted body part '{_text(item['bodyPart'])}'"
            ))
    return issues, suggestions


def check_summary_diagnosis(summary: Any, diagnoses: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """The summary should mention at least one extracted diagnosis."""
    summary_words = _words(summary)
    described = [_words(item.get("description")) for item in _as_items(diagnoses)]
    described = [words for words in described if words]
    if not summary_words or not described:
        return [], []

    if not any(words & summary_words for words in described):
        return [ValidationIssue(
            IssueSeverity.WARNING, "summary",
            "Summary does not mention any extracted diagnosis"
        )], ["Check that the summary and diagnosis refer to the same document section"]
    return [], []


def check_recommendations_diagnosis(recommendations: Any, diagnoses: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """At least one recommendation should relate to an extracted diagnosis."""
    recommended = [_words(item) for item in _as_items(recommendations)]
    diagnosed: Set[str] = set()
    for item in _as_items(diagnoses):
        diagnosed |= _words(item.get("description"))
    if not any(recommended) or not diagnosed:
        return [], []

    if not any(words & diagnosed for words in recommended):
        return [ValidationIssue(
            IssueSeverity.WARNING, "recommendations",
            "No recommendation relates to an extracted diagnosis"
        )], ["Verify diagnosis extraction for this document"]
    return [], []


def check_signals_summary(signals: Any, summary: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """Measurements quoted in the summary should be present among the signals."""
    issues: List[ValidationIssue] = []
    items = _as_items(signals)
    measurements = MEASUREMENT_PATTERN.findall(_text(summary))

    if measurements and not items:
        issues.append(ValidationIssue(
            IssueSeverity.ERROR, "signals",
            f"Summary quotes {len(measurements)} measurement(s) but no signals were extracted"
        ))
        return issues, ["Review data extraction for this section"]

    for item in items:
        if not _text(item.get("signal")).strip():
            issues.append(ValidationIssue(IssueSeverity.WARNING, "signals", "Signal without a name"))
        elif item.get("value") is None or _text(item.get("value")).strip() == "":
            issues.append(ValidationIssue(
                IssueSeverity.WARNING, "signals", f"Signal '{item['signal']}' has no value"
            ))
    return issues, []


def check_specimens_body_parts(specimens: Any, body_parts: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """Specimen sites should correspond to extracted body parts."""
    known = [_text(part.get("identification")) for part in _as_items(body_parts)]
    issues = [
        ValidationIssue(
            IssueSeverity.WARNING, "specimens",
            f"Specimen site '{_text(item.get('site'))}' is not among the extracted body parts"
        )
        for item in _as_items(specimens)
        if _text(item.get("site")).strip() and not _matches_any(_text(item.get("site")), known)
    ]
    return issues, []


def check_ecg_signals(ecg: Any, signals: Any) -> Tuple[List[ValidationIssue], List[str]]:
    """ECG heart rate should agree with a pulse/heart rate signal within 20%; over 50% apart is critical."""
    ecg_rate = None
    for item in _as_items(ecg):
        ecg_rate = _to_number(item.get("heartRate"))
        if ecg_rate is not None:
            break
    if ecg_rate is None:
        return [], []

    for item in _as_items(signals):
        name = _text(item.get("signal")).strip().lower()
        if name not in HEART_RATE_SIGNALS:
            continue
        value = _to_number(item.get("value"))
        if value is None or value <= 0:
            continue
        difference = abs(ecg_rate - value) / max(ecg_rate, value)
        if difference > 0.2:
            # more than half apart cannot be the same measurement
            severity = IssueSeverity.CRITICAL if difference > 0.5 else IssueSeverity.ERROR
            return [ValidationIssue(
                severity, "ecg",
                f"ECG heart rate {ecg_rate:g} disagrees with {name} signal {value:g}"
            )], ["Check whether the ECG and the vital signs were taken at the same visit"]
    return [], []


SCHEMA_DEPENDENCIES: Tuple[SchemaDependency, ...] = (
    SchemaDependency("diagnosis-body-parts", "diagnosis", "bodyParts", "located_in",
                     ("hasDiagnosis", "hasBodyParts"), check_diagnosis_body_parts),
    SchemaDependency("summary-diagnosis", "summary", "diagnosis", "describes",
                     ("hasSummary",), check_summary_diagnosis),
    SchemaDependency("recommendations-diagnosis", "recommendations", "diagnosis", "justified_by",
                     ("hasRecommendations",), check_recommendations_diagnosis),
    SchemaDependency("signals-summary", "signals", "summary", "quoted_in",
                     ("hasSignals",), check_signals_summary),
    SchemaDependency("specimens-body-parts", "specimens", "bodyParts", "taken_from",
                     ("hasSpecimens",), check_specimens_body_parts),
    SchemaDependency("ecg-signals", "ecg", "signals", "agrees_with",
                     ("hasECG", "hasSignals"), check_ecg_signals),
)


class SchemaDependencyAnalyzer:
    """Runs the consistency rules over extracted report sections."""

    def __init__(self, dependencies: Optional[Iterable[SchemaDependency]] = None):
        self.dependencies = tuple(dependencies) if dependencies is not None else SCHEMA_DEPENDENCIES

    def validate_cross_schema_consistency(self, extracted: Mapping[str, Any]) -> List[ValidationResult]:
        """
        Validate every rule whose source and target sections are both present.

        Args:
            extracted: Report sections keyed by schema name (e.g. "signals", "bodyParts")

        Returns:
            One ValidationResult per rule that ran
        """
        results: List[ValidationResult] = []
        for dependency in self.dependencies:
            source = extracted.get(dependency.source)
            target = extracted.get(dependency.target)
            if not source or not target:
                continue

            try:
                issues, suggestions = dependency.check(source, target)
            except Exception as e:
                logger.warning(f"Consistency rule {dependency.name} failed: {e}")
                results.append(ValidationResult(
                    rule=dependency.name,
                    is_valid=False,
                    confidence=0.0,
                    issues=[ValidationIssue(IssueSeverity.ERROR, dependency.target, f"Validation failed: {e}")],
                    suggestions=["Review data extraction for this section"],
                    implicated_flags=dependency.flags,
                ))
                continue

            results.append(ValidationResult(
                rule=dependency.name,
                is_valid=not any(issue.is_blocking() for issue in issues),
                confidence=self._rule_confidence(issues),
                issues=issues,
                suggestions=suggestions,
                implicated_flags=dependency.flags,
            ))

        logger.debug(f"Ran {len(results)} cross-schema consistency checks")
        return results

    @staticmethod
    def _rule_confidence(issues: List[ValidationIssue]) -> float:
        confidence = 1.0
        for issue in issues:
            if issue.severity == IssueSeverity.CRITICAL:
                confidence -= 0.5
            elif issue.is_blocking():
                confidence -= 0.3
            elif issue.severity == IssueSeverity.WARNING:
                confidence -= 0.1
        return round(max(confidence, 0.0), 4)

    def generate_insights(self, results: List[ValidationResult]) -> Dict[str, Any]:
        """
        Summarize rule results for cross-validation.

        Returns:
            Dict with overall_consistency, critical_issues, suggestions and
            the flags implicated in blocking issues
        """
        total = len(results)
        successful = sum(1 for result in results if result.is_valid)
        overall = successful / total if total else 1.0

        critical_issues: List[Dict[str, str]] = []
        implicated: List[str] = []
        suggestions: List[str] = []
        for result in results:
            for suggestion in result.suggestions:
                if suggestion not in suggestions:
                    suggestions.append(suggestion)
            blocking = [issue for issue in result.issues if issue.is_blocking()]
            if not blocking:
                continue
            critical_issues.extend(issue.to_dict() for issue in blocking)
            for flag in result.implicated_flags:
                if flag not in implicated:
                    implicated.append(flag)

        return {
            "overall_consistency": round(overall, 4),
            "checks_run": total,
            "checks_passed": successful,
            "critical_issues": critical_issues,
            "suggestions": suggestions,
            "implicated_flags": implicated,
            "results": [result.to_dict() for result in results],
        }
