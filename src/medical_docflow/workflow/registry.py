"""
Processing Node Registry

Immutable catalogue of processing node definitions. The registry answers two
questions for the Dispatcher: which nodes apply to a document's feature flags,
and in which priority groups they should run.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
from types import MappingProxyType
import logging

from .errors import RegistryConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class NodeContext:
    """
    Run-scoped collaborators handed to every node invocation.

    Nothing in here is part of the workflow state; nodes read the state from
    the snapshot they receive and return partial updates.
    """
    inference: Any = None
    language: str = "en"
    settings: Any = None
    on_progress: Optional[Callable[[str, float, str], None]] = None
    cancel_event: Any = None
    ai_calls: int = 0

    def report(self, stage: str, progress: float, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(stage, progress, message)

    def count_ai_call(self) -> None:
        self.ai_calls += 1

    def for_node(self) -> "NodeContext":
        """Fresh copy for a single node invocation (own AI call counter)."""
        return replace(self, ai_calls=0)


NodeFunction = Callable[[Mapping[str, Any], NodeContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class NodeDefinition:
    """A processing node: trigger flags, priority tier and its async function."""
    name: str
    description: str
    triggers: FrozenSet[str]
    priority: int
    function: NodeFunction = field(compare=False, repr=False)
    dependencies: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "triggers", frozenset(self.triggers))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    def should_execute(self, feature_flags: Optional[Mapping[str, Any]]) -> bool:
        """True when at least one trigger flag is exactly True."""
        if not feature_flags:
            return False
        return any(feature_flags.get(trigger) is True for trigger in self.triggers)


@dataclass(frozen=True)
class ConfigurationIssue:
    """A node excluded from an execution plan and why."""
    node_name: str
    reason: str

    def to_error(self) -> RegistryConfigurationError:
        return RegistryConfigurationError(f"{self.node_name}: {self.reason}")


@dataclass(frozen=True)
class ExecutionPlan:
    """Priority groups run strictly in order; members of a group run concurrently."""
    groups: Tuple[Tuple[NodeDefinition, ...], ...] = ()
    excluded: Tuple[ConfigurationIssue, ...] = ()

    @property
    def execution_order(self) -> List[str]:
        return [node.name for group in self.groups for node in group]

    @property
    def total_nodes(self) -> int:
        return sum(len(group) for group in self.groups)

    @property
    def is_empty(self) -> bool:
        return self.total_nodes == 0

    def stats(self) -> Dict[str, Any]:
        """Execution statistics for logging and reports."""
        nodes_by_priority: Dict[int, int] = {}
        for group in self.groups:
            for node in group:
                nodes_by_priority[node.priority] = nodes_by_priority.get(node.priority, 0) + 1

        group_sizes = [len(group) for group in self.groups]
        return {
            "total_nodes": self.total_nodes,
            "parallel_groups": len(self.groups),
            "max_parallel_nodes": max(group_sizes) if group_sizes else 0,
            "average_parallel_nodes": self.total_nodes / len(self.groups) if self.groups else 0.0,
            "nodes_by_priority": nodes_by_priority,
            "excluded": [issue.node_name for issue in self.excluded],
        }


class NodeRegistry:
    """
    Immutable table of node definitions built once at startup.

    The registry is passed explicitly to the Dispatcher; there is no global
    instance.
    """

    def __init__(
        self,
        definitions: Iterable[NodeDefinition],
        flag_vocabulary: Optional[Iterable[str]] = None
    ):
        """
        Initialize the registry.

        Args:
            definitions: Node definitions to register
            flag_vocabulary: Known feature flags; triggers outside it are
                configuration errors. None accepts any trigger.

        Raises:
            ValueError: if two definitions share a name
        """
        nodes: Dict[str, NodeDefinition] = {}
        for definition in definitions:
            if definition.name in nodes:
                raise ValueError(f"Duplicate node definition: {definition.name}")
            nodes[definition.name] = definition

        self._nodes = MappingProxyType(nodes)
        self.flag_vocabulary: Optional[FrozenSet[str]] = (
            frozenset(flag_vocabulary) if flag_vocabulary is not None else None
        )
        logger.info(f"NodeRegistry initialized with {len(nodes)} nodes")

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def get_node(self, name: str) -> Optional[NodeDefinition]:
        return self._nodes.get(name)

    def get_all_nodes(self) -> List[NodeDefinition]:
        return list(self._nodes.values())

    def select_nodes(self, feature_flags: Optional[Mapping[str, Any]]) -> List[NodeDefinition]:
        """
        Determine which nodes should execute for the given feature flags.

        Args:
            feature_flags: Feature detection results (flag name -> value)

        Returns:
            Every node with at least one trigger flag set to True
        """
        selected = []
        for node in self._nodes.values():
            if node.should_execute(feature_flags):
                selected.append(node)
                logger.debug(f"Selected node for execution: {node.name}")
            else:
                logger.debug(f"Skipping node: {node.name} (features not detected)")
        return selected

    def create_execution_plan(self, nodes: Iterable[NodeDefinition]) -> ExecutionPlan:
        """
        Group nodes by priority tier, ascending.

        Nodes with unknown triggers, or whose dependencies are not satisfied
        by a node in a strictly earlier group of the same plan, are excluded
        and reported as configuration issues.

        Args:
            nodes: Selected node definitions

        Returns:
            ExecutionPlan with the runnable groups and the excluded nodes
        """
        excluded: List[ConfigurationIssue] = []
        candidates: List[NodeDefinition] = []

        for node in nodes:
            unknown = self._unknown_triggers(node)
            if unknown:
                excluded.append(ConfigurationIssue(node.name, f"unknown trigger(s): {', '.join(sorted(unknown))}"))
                continue
            candidates.append(node)

        priority_groups: Dict[int, List[NodeDefinition]] = {}
        for node in candidates:
            priority_groups.setdefault(node.priority, []).append(node)

        groups: List[Tuple[NodeDefinition, ...]] = []
        scheduled: set = set()

        for priority in sorted(priority_groups):
            group = []
            for node in priority_groups[priority]:
                missing = [dep for dep in node.dependencies if dep not in scheduled]
                if missing:
                    excluded.append(ConfigurationIssue(node.name, f"unmet dependencies: {', '.join(missing)}"))
                    continue
                group.append(node)
            if group:
                groups.append(tuple(group))
                scheduled.update(node.name for node in group)

        for issue in excluded:
            logger.warning(f"Excluding node from execution plan - {issue.node_name}: {issue.reason}")

        plan = ExecutionPlan(groups=tuple(groups), excluded=tuple(excluded))
        logger.info(
            f"Created execution plan: {plan.total_nodes} nodes in {len(plan.groups)} groups "
            f"({len(excluded)} excluded)"
        )
        return plan

    def _unknown_triggers(self, node: NodeDefinition) -> FrozenSet[str]:
        if self.flag_vocabulary is None:
            return frozenset()
        return node.triggers - self.flag_vocabulary
