"""
Medical Terms Generation

Builds a flat, searchable list of medical terms from results that are already
in the state (no additional AI calls) and classifies the document in time as
latest, recent or historical.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set
import logging

logger = logging.getLogger(__name__)

LATEST_DAYS = 7
RECENT_DAYS = 30

LATEST_KEYWORDS = [
    "latest", "newest", "most recent", "last", "current",
    "poslední", "nejnovější", "aktuální",
    "neueste", "letzte", "aktuellste",
]

RECENT_KEYWORDS = [
    "recent", "recently", "this month", "past month", "new",
    "nedávné", "nedávno", "tento měsíc",
    "kürzlich", "neulich", "diesen monat",
]

# Fields searched for a document date, in order of preference
DATE_SOURCES = (
    ("report", "documentDate"),
    ("report", "date"),
    ("diagnosis", "date"),
    ("signals", "date"),
    ("procedures", "date"),
    ("medications", "date"),
)


def _contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    return any(re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", text) for keyword in keywords)


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO date or datetime string; None when unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in ("%d.%m.%Y", "%d/%m/%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class MedicalTermsGenerator:
    """Aggregates search terms and the temporal type for a processed document."""

    def generate(self, state: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        """
        Generate the medical terms summary.

        Args:
            state: Workflow state after cross-validation
            today: Reference date for temporal classification (defaults to UTC today)

        Returns:
            Dict stored in the medical_terms channel
        """
        flags = state.get("feature_detection_results") or {}
        detection = state.get("feature_detection") or {}
        if not (flags.get("isMedical") or detection.get("confidence", 0) > 0.5):
            logger.info("Skipping medical terms for non-medical content")
            return {"skipped": True, "reason": "Non-medical content"}

        terms = self.collect_terms(state)
        temporal_type = self.determine_temporal_type(state, today)
        terms.add(temporal_type)

        final_terms = sorted(term for term in terms if term and term.strip())
        logger.info(f"Generated {len(final_terms)} medical terms ({temporal_type})")

        analysis = state.get("document_type_analysis") or {}
        return {
            "success": True,
            "terms": final_terms,
            "terms_count": len(final_terms),
            "temporal_type": temporal_type,
            "language": state.get("language") or "en",
            "document_type": analysis.get("document_type") or "document",
        }

    def collect_terms(self, state: Mapping[str, Any]) -> Set[str]:
        terms: Set[str] = set()
        report = state.get("report") or {}

        analysis = state.get("document_type_analysis") or {}
        if analysis.get("document_type"):
            terms.add(str(analysis["document_type"]).lower())
        for specialty in analysis.get("specialty_indicators") or []:
            terms.add(str(specialty).lower())

        for part in self._items(state, report, "body_parts", "bodyParts"):
            self._add(terms, part.get("identification"))

        for diagnosis in self._items(state, report, "diagnosis", "diagnosis"):
            if diagnosis.get("code"):
                terms.add(str(diagnosis["code"]).upper())
            self._add(terms, diagnosis.get("description"))

        for procedure in self._items(state, report, "procedures", "procedures"):
            self._add(terms, procedure.get("name"))
            if procedure.get("code"):
                terms.add(str(procedure["code"]).upper())

        for medication in self._items(state, report, "medications", "medications"):
            self._add(terms, medication.get("name"))

        for signal in self._items(state, report, "signals", "signals"):
            self._add(terms, signal.get("signal"))

        imaging = state.get("imaging") or report.get("imaging") or {}
        if isinstance(imaging, dict):
            self._add(terms, imaging.get("modality"))
            self._add(terms, imaging.get("bodyRegion"))

        return terms

    def determine_temporal_type(self, state: Mapping[str, Any], today: Optional[date] = None) -> str:
        """latest (<= 7 days), recent (<= 30 days), keyword hints, else historical."""
        today = today or datetime.now(timezone.utc).date()
        document_date = self.extract_document_date(state)

        if document_date is not None:
            days = (today - document_date).days
            if days <= LATEST_DAYS:
                return "latest"
            if days <= RECENT_DAYS:
                return "recent"

        text = (state.get("text") or "").lower()
        if _contains_keyword(text, LATEST_KEYWORDS):
            return "latest"
        if _contains_keyword(text, RECENT_KEYWORDS):
            return "recent"
        return "historical"

    def extract_document_date(self, state: Mapping[str, Any]) -> Optional[date]:
        report = state.get("report") or {}
        for source, key in DATE_SOURCES:
            if source == "report":
                parsed = parse_date(report.get(key))
                if parsed:
                    return parsed
                continue
            for item in state.get(source) or []:
                if isinstance(item, dict):
                    parsed = parse_date(item.get(key))
                    if parsed:
                        return parsed
        return None

    @staticmethod
    def _items(state: Mapping[str, Any], report: Mapping[str, Any], channel: str, section: str) -> List[Dict[str, Any]]:
        value = state.get(channel) or report.get(section) or []
        if isinstance(value, dict):
            value = [value]
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _add(terms: Set[str], value: Any) -> None:
        if isinstance(value, str) and value.strip():
            terms.add(value.strip().lower())
