"""
Extraction schemas handed to the inference collaborator.

Each schema is a function-definition style dict: name, description and a
JSON-schema `parameters` block describing the expected output.
"""

import copy
from typing import Any, Dict, Iterable, List

# Wrapper properties every extraction may add; stripped from node output
WRAPPER_PROPERTIES = ("processingConfidence", "processingNotes", "documentContext")


def _string_fields(fields: Iterable[str]) -> Dict[str, Any]:
    return {field: {"type": "string"} for field in fields}


def _object_schema(name: str, description: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
        },
    }


def _list_schema(name: str, description: str, field: str, item_properties: Dict[str, Any],
                 required: List[str]) -> Dict[str, Any]:
    return _object_schema(name, description, {
        field: {
            "type": "array",
            "items": {
                "type": "object",
                "properties": item_properties,
                "required": required,
            },
        },
    })


def _section_schema(name: str, description: str, flag: str, fields: Iterable[str]) -> Dict[str, Any]:
    properties = {flag: {"type": "boolean", "description": f"True when the document contains {description.lower()}"}}
    properties.update(_string_fields(fields))
    return _object_schema(name, description, properties)


SIGNAL_ITEM = {
    "signal": {"type": "string", "description": "Measured quantity, e.g. Hemoglobin"},
    "value": {"type": ["number", "string"]},
    "unit": {"type": "string"},
    "referenceRange": {"type": "string", "description": "Reference range as printed, e.g. 12-16"},
    "date": {"type": "string", "description": "ISO date of the measurement"},
    "urgency": {"type": "integer", "minimum": 1, "maximum": 5},
}

DIAGNOSIS_ITEM = {
    "code": {"type": "string", "description": "ICD-10 code"},
    "description": {"type": "string"},
    "bodyPart": {"type": "string"},
    "date": {"type": "string"},
    "origin": {"type": "string", "enum": ["principal", "secondary", "suspected"]},
}

BODY_PART_ITEM = {
    "identification": {"type": "string", "description": "Anatomy tag"},
    "status": {"type": "string"},
    "diagnosis": {"type": "string"},
    "urgency": {"type": "integer", "minimum": 1, "maximum": 5},
}

MEDICATION_ITEM = {
    "name": {"type": "string"},
    "dosage": {"type": "string"},
    "frequency": {"type": "string"},
    "route": {"type": "string"},
    "date": {"type": "string"},
}

PROCEDURE_ITEM = {
    "name": {"type": "string"},
    "code": {"type": "string"},
    "bodyPart": {"type": "string"},
    "date": {"type": "string"},
    "outcome": {"type": "string"},
}


SCHEMAS: Dict[str, Dict[str, Any]] = {
    "summary": _object_schema("report_summary", "Core medical analysis: summary and recommendations", {
        "summary": {"type": "string"},
        "recommendations": {"type": "array", "items": {"type": "object", "properties": _string_fields(["description", "urgency"])}},
        "documentType": {"type": "string"},
        "documentDate": {"type": "string"},
    }),
    "diagnosis": _list_schema("diagnosis_extraction", "Diagnoses", "diagnosis", DIAGNOSIS_ITEM, ["description"]),
    "performer": _object_schema("performer_extraction", "Performing clinician and institution", {
        "performer": {"type": "object", "properties": _string_fields(["name", "role", "institution", "address", "phone"])},
    }),
    "patient": _object_schema("patient_extraction", "Patient demographics", {
        "patient": {"type": "object", "properties": _string_fields(["fullName", "birthDate", "gender", "identifier"])},
    }),
    "bodyParts": _list_schema("body_parts_extraction", "Affected body parts", "bodyParts", BODY_PART_ITEM, ["identification"]),
    "signals": _list_schema("signals_extraction", "Laboratory values and vital signs", "signals", SIGNAL_ITEM, ["signal", "value"]),
    "ecg": _section_schema("ecg", "ECG recordings", "hasECG", ["rhythm", "heartRate", "prInterval", "qrsDuration", "qtInterval", "interpretation"]),
    "imaging": _section_schema("imaging", "Medical imaging studies", "hasImaging", ["modality", "bodyRegion", "technique", "findings", "impression"]),
    "imagingFindings": _section_schema("imaging_findings", "Radiology findings and measurements", "hasImagingFindings", ["finding", "location", "size", "comparison"]),
    "echo": _section_schema("echo", "Echocardiography", "hasEcho", ["ejectionFraction", "chambers", "valves", "conclusion"]),
    "allergies": _section_schema("allergies", "Allergies and intolerances", "hasAllergies", ["substance", "reaction", "severity"]),
    "medications": _list_schema("medications_extraction", "Prescriptions and medications", "medications", MEDICATION_ITEM, ["name"]),
    "procedures": _list_schema("procedures_extraction", "Medical procedures", "procedures", PROCEDURE_ITEM, ["name"]),
    "anesthesia": _section_schema("anesthesia", "Anesthesia records", "hasAnesthesia", ["type", "agents", "asaClass", "complications"]),
    "microscopic": _section_schema("microscopic", "Microscopic pathology", "hasMicroscopic", ["description", "cellularity", "margins", "conclusion"]),
    "triage": _section_schema("triage", "Emergency triage", "hasTriage", ["acuity", "chiefComplaint", "vitals", "disposition"]),
    "immunizations": _section_schema("immunizations", "Vaccination records", "hasImmunizations", ["vaccine", "dose", "date", "lot"]),
    "specimens": _section_schema("specimens", "Pathology specimens", "hasSpecimens", ["specimenType", "site", "collectionDate", "fixation"]),
    "admission": _section_schema("admission", "Hospital admission and discharge", "hasAdmission", ["admissionDate", "dischargeDate", "reason", "ward"]),
    "dental": _section_schema("dental", "Dental records", "hasDental", ["teeth", "procedures", "periodontal", "notes"]),
    "tumorCharacteristics": _section_schema("tumor_characteristics", "Tumor staging and grading", "hasTumorCharacteristics", ["histology", "grade", "stage", "size", "markers"]),
    "treatmentPlan": _section_schema("treatment_plan", "Treatment plans", "hasTreatmentPlan", ["goal", "modalities", "schedule", "followUp"]),
    "treatmentResponse": _section_schema("treatment_response", "Response to treatment", "hasTreatmentResponse", ["criteria", "response", "assessmentDate"]),
    "grossFindings": _section_schema("gross_findings", "Gross pathology findings", "hasGrossFindings", ["description", "dimensions", "weight"]),
    "specialStains": _section_schema("special_stains", "Special stains and immunohistochemistry", "hasSpecialStains", ["stain", "result", "interpretation"]),
    "socialHistory": _section_schema("social_history", "Social history", "hasSocialHistory", ["smoking", "alcohol", "occupation", "livingSituation"]),
    "treatments": _section_schema("treatments", "Administered treatments", "hasTreatments", ["treatment", "startDate", "endDate", "outcome"]),
    "assessment": _section_schema("assessment", "Clinical assessment", "hasAssessment", ["assessment", "plan", "prognosis"]),
    "molecular": _section_schema("molecular", "Molecular and genetic testing", "hasMolecular", ["gene", "variant", "method", "interpretation"]),
}


FEATURE_DETECTION_SCHEMA = _object_schema(
    "feature_detection",
    "Classify the document and report which medical sections it contains",
    {
        "notMedical": {"type": "boolean", "description": "True when the document is not medical"},
        "category": {"type": "string"},
        "documentType": {"type": "string"},
        "language": {"type": "string"},
        "medicalSpecialty": {"type": "array", "items": {"type": "string"}},
        "urgencyLevel": {"type": "integer", "minimum": 1, "maximum": 5},
        "tags": {"type": "array", "items": {"type": "string"}},
        "isMedicalImaging": {"type": "boolean"},
    },
)


def build_feature_detection_schema(flags: Iterable[str]) -> Dict[str, Any]:
    """Feature detection schema with one boolean property per section flag."""
    schema = copy.deepcopy(FEATURE_DETECTION_SCHEMA)
    properties = schema["parameters"]["properties"]
    for flag in flags:
        properties.setdefault(flag, {"type": "boolean"})
    return schema


def get_schema(name: str) -> Dict[str, Any]:
    """
    Look up an extraction schema.

    Raises:
        KeyError: if no schema is registered under the name
    """
    if name not in SCHEMAS:
        raise KeyError(f"Unknown extraction schema: {name}")
    return SCHEMAS[name]
