"""
Post-dispatch analysis: results aggregation, cross-validation of feature
flags, cross-schema consistency and medical terms generation.
"""

from .schema_dependencies import (
    IssueSeverity,
    SchemaDependency,
    SchemaDependencyAnalyzer,
    ValidationIssue,
    ValidationResult,
    SCHEMA_DEPENDENCIES
)
from .cross_validation import (
    AggregatedRefinements,
    ConflictResolution,
    CrossValidationAggregator,
    RefinementVote,
    build_updated_feature_detection
)
from .results_aggregator import ResultsAggregator
from .medical_terms import MedicalTermsGenerator

__all__ = [
    'IssueSeverity',
    'SchemaDependency',
    'SchemaDependencyAnalyzer',
    'ValidationIssue',
    'ValidationResult',
    'SCHEMA_DEPENDENCIES',
    'AggregatedRefinements',
    'ConflictResolution',
    'CrossValidationAggregator',
    'RefinementVote',
    'build_updated_feature_detection',
    'ResultsAggregator',
    'MedicalTermsGenerator'
]
