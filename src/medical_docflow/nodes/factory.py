"""
Processing Node Factory

Single source of truth for the processing node catalogue. Every node is a
SchemaExtractionNode built from a NodeConfig; adding a feature flag only
needs a new entry here.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from ..workflow.registry import NodeDefinition, NodeRegistry
from .base import SchemaExtractionNode

logger = logging.getLogger(__name__)


# Boolean feature flags produced by feature detection
FEATURE_FLAGS: Tuple[str, ...] = (
    "isMedical",
    "isMedicalImaging",
    # Core sections
    "hasSummary",
    "hasDiagnosis",
    "hasBodyParts",
    "hasPerformer",
    "hasPatient",
    "hasRecommendations",
    "hasSignals",
    "hasPrescriptions",
    "hasImmunizations",
    # Specialty sections
    "hasImaging",
    "hasDental",
    "hasAdmission",
    "hasProcedures",
    "hasAnesthesia",
    "hasSpecimens",
    "hasMicroscopic",
    "hasMolecular",
    "hasECG",
    "hasEcho",
    "hasTriage",
    "hasTreatments",
    "hasAssessment",
    # Enhanced specialty sections
    "hasTumorCharacteristics",
    "hasTreatmentPlan",
    "hasTreatmentResponse",
    "hasImagingFindings",
    "hasGrossFindings",
    "hasSpecialStains",
    "hasAllergies",
    "hasMedications",
    "hasSocialHistory",
)


@dataclass(frozen=True)
class OutputMapping:
    """Where a node's extracted data lands in the workflow state."""
    report_field: str
    unwrap_field: Optional[str] = None
    channel: Optional[str] = None  # dedicated state channel besides the report section
    is_main_report: bool = False


@dataclass(frozen=True)
class NodeConfig:
    name: str
    description: str
    schema: str
    triggers: Tuple[str, ...]
    priority: int
    output: OutputMapping
    dependencies: Tuple[str, ...] = ()


def _config(name: str, description: str, schema: str, triggers: Iterable[str], priority: int,
            report_field: Optional[str] = None, unwrap_field: Optional[str] = None,
            channel: Optional[str] = None, is_main_report: bool = False) -> NodeConfig:
    return NodeConfig(
        name=name,
        description=description,
        schema=schema,
        triggers=tuple(triggers),
        priority=priority,
        output=OutputMapping(
            report_field=report_field or schema,
            unwrap_field=unwrap_field,
            channel=channel,
            is_main_report=is_main_report,
        ),
    )


NODE_CONFIGURATIONS: Dict[str, NodeConfig] = {config.name: config for config in [
    # Core medical processing (priority 1)
    _config("medical-analysis", "General medical content analysis and core sections", "summary",
            ["hasSummary", "hasRecommendations"], 1, is_main_report=True),
    _config("diagnosis-processing", "Medical diagnosis extraction and analysis", "diagnosis",
            ["hasDiagnosis"], 1, unwrap_field="diagnosis", channel="diagnosis"),
    _config("performer-processing", "Performing clinician and institution", "performer",
            ["hasPerformer"], 1, unwrap_field="performer"),
    _config("patient-processing", "Patient demographics", "patient",
            ["hasPatient"], 1, unwrap_field="patient"),
    _config("body-parts-processing", "Affected body parts and their status", "bodyParts",
            ["hasBodyParts"], 1, unwrap_field="bodyParts", channel="body_parts"),
    _config("signal-processing", "Lab results and medical signals analysis (includes laboratory data)", "signals",
            ["hasSignals"], 1, unwrap_field="signals", channel="signals"),

    # Specialized medical domains (priority 2)
    _config("ecg-processing", "ECG analysis using schema-driven extraction", "ecg", ["hasECG"], 2),
    _config("imaging-processing", "Medical imaging analysis", "imaging", ["hasImaging"], 2, channel="imaging"),
    _config("imaging-findings-processing", "Detailed radiology findings and measurements analysis", "imagingFindings",
            ["hasImagingFindings"], 2),
    _config("echo-processing", "Echocardiography analysis", "echo", ["hasEcho"], 2),
    _config("allergies-processing", "Allergies and intolerances", "allergies", ["hasAllergies"], 2),
    _config("medications-processing", "Prescriptions and medication lists", "medications",
            ["hasPrescriptions", "hasMedications"], 2, unwrap_field="medications", channel="medications"),

    # Procedures and clinical care (priority 3)
    _config("procedures-processing", "Medical procedures", "procedures",
            ["hasProcedures"], 3, unwrap_field="procedures", channel="procedures"),
    _config("anesthesia-processing", "Anesthesia records", "anesthesia", ["hasAnesthesia"], 3),
    _config("microscopic-processing", "Microscopic pathology analysis", "microscopic", ["hasMicroscopic"], 3),
    _config("triage-processing", "Emergency triage assessment", "triage", ["hasTriage"], 3),
    _config("immunization-processing", "Vaccination records", "immunizations", ["hasImmunizations"], 3),

    # Specialized records (priority 4)
    _config("specimens-processing", "Pathology specimen details", "specimens", ["hasSpecimens"], 4),
    _config("admission-processing", "Hospital admission and discharge", "admission", ["hasAdmission"], 4),
    _config("dental-processing", "Dental records", "dental", ["hasDental"], 4),

    # Enhanced specialty analysis (priority 5)
    _config("tumor-characteristics-processing", "Tumor staging and grading", "tumorCharacteristics",
            ["hasTumorCharacteristics"], 5),
    _config("treatment-plan-processing", "Treatment planning", "treatmentPlan", ["hasTreatmentPlan"], 5),
    _config("treatment-response-processing", "Response to treatment", "treatmentResponse",
            ["hasTreatmentResponse"], 5),
    _config("gross-findings-processing", "Gross pathology findings", "grossFindings", ["hasGrossFindings"], 5),
    _config("special-stains-processing", "Special stains and immunohistochemistry", "specialStains",
            ["hasSpecialStains"], 5),
    _config("social-history-processing", "Social history", "socialHistory", ["hasSocialHistory"], 5),
    _config("treatments-processing", "Administered treatments", "treatments", ["hasTreatments"], 5),
    _config("assessment-processing", "Clinical assessment", "assessment", ["hasAssessment"], 5),
    _config("molecular-processing", "Molecular and genetic testing", "molecular", ["hasMolecular"], 5),
]}


def create_node(config: NodeConfig) -> NodeDefinition:
    """Build a registry definition for one catalogue entry."""
    node = SchemaExtractionNode(config)
    return NodeDefinition(
        name=config.name,
        description=config.description,
        triggers=frozenset(config.triggers),
        priority=config.priority,
        function=node,
        dependencies=config.dependencies,
    )


def build_node_definitions(configs: Optional[Iterable[NodeConfig]] = None) -> List[NodeDefinition]:
    configs = list(configs) if configs is not None else list(NODE_CONFIGURATIONS.values())
    return [create_node(config) for config in configs]


def build_default_registry(configs: Optional[Iterable[NodeConfig]] = None) -> NodeRegistry:
    """Registry of the catalogue nodes over the standard feature flag vocabulary."""
    return NodeRegistry(build_node_definitions(configs), flag_vocabulary=FEATURE_FLAGS)
