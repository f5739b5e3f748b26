"""
Workflow State and Channel Merge Policies

The state threaded through the document pipeline is a mapping of named
channels to values. Every channel is declared exactly once, on the
DocumentProcessingState TypedDict below, together with one of four named
merge policies. The same declaration drives the LangGraph graph (which reads
the Annotated reducers) and the WorkflowState used by the Dispatcher when it
merges the partial updates of concurrently executed nodes.

Reducers are associative, so the order in which concurrent nodes complete
never changes the multiset of accumulated values, only their positions.
"""

import copy
import logging
from datetime import datetime, timezone
from enum import Enum
from numbers import Number
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, get_type_hints

from typing_extensions import Annotated, TypedDict

from .errors import UnknownChannelError

logger = logging.getLogger(__name__)


class MergePolicy(Enum):
    """Closed set of channel merge policies."""
    REPLACE = "replace"               # newest non-empty write wins
    ACCUMULATE = "accumulate"         # concatenate sequences from all writers
    MERGE_OBJECT = "merge-object"     # shallow key union, later keys win
    SUM = "sum"                       # numeric addition


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    return False


def replace_values(current: Any, update: Any) -> Any:
    """Newest non-empty write wins."""
    if _is_empty(update):
        return current
    return update


def accumulate_values(current: Optional[List[Any]], update: Optional[Iterable[Any]]) -> List[Any]:
    """Concatenate the update onto the current sequence."""
    base = list(current) if current else []
    if update is None:
        return base
    if not isinstance(update, (list, tuple)):
        logger.warning(f"Accumulate channel received non-sequence update ({type(update).__name__}), ignoring")
        return base
    return base + list(update)


def merge_objects(current: Optional[Mapping[str, Any]], update: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Shallow key-union merge; the update's keys win on conflict."""
    merged = dict(current) if current else {}
    if not update:
        return merged
    if not isinstance(update, Mapping):
        logger.warning(f"Merge-object channel received non-mapping update ({type(update).__name__}), ignoring")
        return merged
    merged.update(update)
    return merged


def sum_values(current: Optional[Number], update: Optional[Number]) -> Number:
    """Numeric addition; missing values count as zero."""
    base = current or 0
    if update is None:
        return base
    if isinstance(update, bool) or not isinstance(update, Number):
        logger.warning(f"Sum channel received non-numeric update ({type(update).__name__}), ignoring")
        return base
    return base + update


POLICY_REDUCERS = MappingProxyType({
    MergePolicy.REPLACE: replace_values,
    MergePolicy.ACCUMULATE: accumulate_values,
    MergePolicy.MERGE_OBJECT: merge_objects,
    MergePolicy.SUM: sum_values,
})

REDUCER_POLICIES = MappingProxyType({reducer: policy for policy, reducer in POLICY_REDUCERS.items()})


class DocumentProcessingState(TypedDict, total=False):
    """
    Channel declarations for the document processing pipeline.

    Each field is a channel; its Annotated reducer is the channel's merge
    policy and must not change within a run.
    """
    # Input
    document_id: Annotated[Optional[str], replace_values]
    text: Annotated[Optional[str], replace_values]
    images: Annotated[List[str], replace_values]
    language: Annotated[Optional[str], replace_values]
    metadata: Annotated[Dict[str, Any], merge_objects]

    # Pipeline control
    status: Annotated[Optional[str], replace_values]
    current_stage: Annotated[Optional[str], replace_values]
    input_validation: Annotated[Optional[Dict[str, Any]], replace_values]

    # Routing and detection
    document_type_analysis: Annotated[Optional[Dict[str, Any]], replace_values]
    processing_complexity: Annotated[Optional[str], replace_values]
    selected_provider: Annotated[Optional[str], replace_values]
    fallback_providers: Annotated[List[str], replace_values]
    feature_detection: Annotated[Optional[Dict[str, Any]], replace_values]
    feature_detection_results: Annotated[Optional[Dict[str, Any]], replace_values]

    # Multi-node results
    multi_node_results: Annotated[Dict[str, Any], merge_objects]
    report: Annotated[Dict[str, Any], merge_objects]
    imaging: Annotated[Dict[str, Any], merge_objects]
    extracted_data: Annotated[Dict[str, Any], merge_objects]
    signals: Annotated[List[Dict[str, Any]], accumulate_values]
    medications: Annotated[List[Dict[str, Any]], accumulate_values]
    procedures: Annotated[List[Dict[str, Any]], accumulate_values]
    diagnosis: Annotated[List[Dict[str, Any]], accumulate_values]
    body_parts: Annotated[List[Dict[str, Any]], accumulate_values]
    feature_refinements: Annotated[List[Dict[str, Any]], accumulate_values]

    # Post-processing
    cross_validation: Annotated[Optional[Dict[str, Any]], replace_values]
    medical_terms: Annotated[Optional[Dict[str, Any]], replace_values]
    validation_results: Annotated[Dict[str, Any], merge_objects]
    quality_checks: Annotated[List[str], accumulate_values]
    quality: Annotated[Optional[Dict[str, Any]], replace_values]

    # Accounting
    token_usage: Annotated[int, sum_values]
    token_usage_by_node: Annotated[Dict[str, int], merge_objects]
    errors: Annotated[List[Dict[str, Any]], accumulate_values]


def _derive_channel_policies(schema: type) -> Mapping[str, MergePolicy]:
    policies: Dict[str, MergePolicy] = {}
    for name, hint in get_type_hints(schema, include_extras=True).items():
        reducers = [meta for meta in getattr(hint, "__metadata__", ()) if meta in REDUCER_POLICIES]
        if len(reducers) != 1:
            raise TypeError(f"Channel '{name}' must declare exactly one merge policy")
        policies[name] = REDUCER_POLICIES[reducers[0]]
    return MappingProxyType(policies)


CHANNELS: Mapping[str, MergePolicy] = _derive_channel_policies(DocumentProcessingState)


def channels_with_policy(policy: MergePolicy) -> List[str]:
    """Names of all declared channels using the given policy."""
    return [name for name, channel_policy in CHANNELS.items() if channel_policy is policy]


def error_entry(node: str, error: Any) -> Dict[str, str]:
    """Entry appended to the errors channel."""
    return {
        "node": node,
        "error": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def apply_update(
    values: Dict[str, Any],
    update: Mapping[str, Any],
    channels: Mapping[str, MergePolicy] = CHANNELS
) -> Dict[str, Any]:
    """
    Merge a partial update into a plain values dict through channel reducers.

    Args:
        values: Mapping to merge into (modified in place and returned)
        update: Partial state update
        channels: Channel policy table

    Returns:
        The merged values dict

    Raises:
        UnknownChannelError: if the update writes an undeclared channel
    """
    for key, value in update.items():
        policy = channels.get(key)
        if policy is None:
            raise UnknownChannelError(f"Update writes undeclared channel '{key}'")
        values[key] = POLICY_REDUCERS[policy](values.get(key), value)
    return values


class WorkflowState:
    """
    Mutable record threaded through the pipeline.

    Only `apply` changes the state, and only through channel reducers.
    Processing nodes receive `snapshot()` copies and return partial updates.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        channels: Mapping[str, MergePolicy] = CHANNELS,
        is_replay: bool = False
    ):
        self._channels = channels
        self._values: Dict[str, Any] = {}
        self._is_replay = is_replay
        if values:
            self.apply(values)

    @classmethod
    def initial(cls, values: Optional[Mapping[str, Any]] = None) -> "WorkflowState":
        return cls(values)

    @property
    def is_replay(self) -> bool:
        """True for states reconstructed from a recording."""
        return self._is_replay

    @property
    def channels(self) -> Mapping[str, MergePolicy]:
        return self._channels

    def apply(self, update: Mapping[str, Any]) -> "WorkflowState":
        apply_update(self._values, update, self._channels)
        return self

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only deep copy of the current values."""
        return MappingProxyType(copy.deepcopy(self._values))

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def keys(self):
        return self._values.keys()

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def __repr__(self) -> str:
        return f"WorkflowState(channels={sorted(self._values)}, is_replay={self._is_replay})"
