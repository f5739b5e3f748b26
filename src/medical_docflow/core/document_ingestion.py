"""
Document Ingestion

Text and page images arrive already extracted by an upstream collaborator.
This module wraps them in a MedicalDocument, derives a stable document id
and validates the input before it enters the pipeline.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
import hashlib
import logging

from ..workflow.errors import InputValidationError

logger = logging.getLogger(__name__)


@dataclass
class MedicalDocument:
    """
    Standardized document representation for the processing pipeline.

    Args:
        text: Extracted text content of the document.
        images: Page images (base64 data URLs or storage references).
        language: ISO language code of the document.
        metadata: Caller-supplied metadata (source, upload time, etc.).
        document_id: Unique identifier; derived from content when omitted.
    """
    text: str = ""
    images: List[str] = field(default_factory=list)
    language: str = "en"
    metadata: Dict[str, Any] = field(default_factory=dict)
    document_id: Optional[str] = None

    def __post_init__(self):
        """Initialize document with computed metadata."""
        if not self.document_id:
            self.document_id = self._generate_document_id()

        self.metadata.setdefault('word_count', len(self.text.split()))
        self.metadata.setdefault('char_count', len(self.text))
        self.metadata.setdefault('image_count', len(self.images))
        self.metadata.setdefault('received_at', datetime.now(timezone.utc).isoformat())

    def _generate_document_id(self) -> str:
        """Generate a document ID based on content hash."""
        digest = hashlib.md5()
        digest.update(self.text[:1000].encode("utf-8"))
        for image in self.images:
            digest.update(image[:256].encode("utf-8"))
        return f"doc_{digest.hexdigest()[:16]}"

    @property
    def word_count(self) -> int:
        return self.metadata.get('word_count', 0)

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    def to_state(self) -> Dict[str, Any]:
        """Initial pipeline channel values for this document."""
        return {
            "document_id": self.document_id,
            "text": self.text,
            "images": list(self.images),
            "language": self.language,
            "metadata": dict(self.metadata),
        }


class DocumentValidator:
    """
    Validate documents before processing.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.min_content_length = self.config.get('min_content_length', 10)
        self.max_content_length = self.config.get('max_content_length', 1_000_000)
        self.max_images = self.config.get('max_images', 50)

    def validate_document(self, document: MedicalDocument) -> bool:
        """
        Validate the document.

        Args:
            document: MedicalDocument to validate.

        Returns:
            True if the document is valid.

        Raises:
            InputValidationError: If validation fails.
        """
        report = self.check(document)
        if not report["is_valid"]:
            raise InputValidationError("; ".join(report["errors"]))
        return True

    def check(self, document: MedicalDocument) -> Dict[str, Any]:
        """
        Collect validation errors and warnings without raising.

        Returns:
            Dictionary with is_valid, errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not document.has_text and not document.images:
            errors.append("Document has neither text nor images")

        if document.has_text and len(document.text) < self.min_content_length:
            warnings.append(
                f"Document text is very short: {len(document.text)} characters "
                f"(minimum: {self.min_content_length})"
            )

        if len(document.text) > self.max_content_length:
            errors.append(
                f"Document text is too long: {len(document.text)} characters "
                f"(maximum: {self.max_content_length})"
            )

        if len(document.images) > self.max_images:
            errors.append(f"Too many images: {len(document.images)} (maximum: {self.max_images})")

        if not document.language or len(document.language) < 2:
            warnings.append(f"Unrecognised language code '{document.language}', defaulting to 'en'")

        if errors:
            logger.warning(f"Document {document.document_id} failed validation: {errors}")

        return {
            "is_valid": not errors,
            "errors": errors,
            "warnings": warnings,
        }
