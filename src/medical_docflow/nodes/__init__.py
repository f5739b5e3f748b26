"""
Processing node catalogue and the schema-driven node implementation.
"""

from .base import SchemaExtractionNode
from .factory import (
    FEATURE_FLAGS,
    NODE_CONFIGURATIONS,
    NodeConfig,
    OutputMapping,
    build_default_registry,
    build_node_definitions,
    create_node
)

__all__ = [
    'SchemaExtractionNode',
    'FEATURE_FLAGS',
    'NODE_CONFIGURATIONS',
    'NodeConfig',
    'OutputMapping',
    'build_default_registry',
    'build_node_definitions',
    'create_node'
]
