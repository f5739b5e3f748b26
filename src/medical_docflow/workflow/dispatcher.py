"""
Multi-Node Dispatcher

Executes an ExecutionPlan against the workflow state. Groups run strictly in
order; the nodes of a group run concurrently as asyncio tasks, each against a
snapshot of the state merged so far. A failing node becomes one entry in the
errors channel and never stops its siblings or later groups.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional
import asyncio
import logging
import time

from .errors import ReplayIntegrityError, UnknownChannelError
from .registry import ExecutionPlan, NodeContext, NodeDefinition, NodeRegistry
from .state import CHANNELS, WorkflowState, apply_update, error_entry

logger = logging.getLogger(__name__)

NO_PROCESSING_MESSAGE = "No specialized processing required"
CANCELLED_MESSAGE = "Cancelled before completion"

DispatchProgress = Callable[[float, str], None]


@dataclass
class NodeOutcome:
    """Result of one node invocation."""
    node_name: str
    update: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0.0
    ai_call_count: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class DispatchOutcome:
    """Merged state after dispatch plus the net update it applied."""
    state: WorkflowState
    delta: Dict[str, Any]
    errors: List[Dict[str, Any]] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cancelled: bool = False
    execution_time_ms: float = 0.0


class Dispatcher:
    """
    Runs processing nodes chosen by the registry.

    The registry is injected; the dispatcher keeps no state between runs.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        recorder: Any = None,
        node_timeout: Optional[float] = None
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: Node registry used for selection and planning
            recorder: Optional WorkflowRecorder receiving one step per node
            node_timeout: Per-node timeout in seconds
        """
        self.registry = registry
        self.recorder = recorder
        self.node_timeout = node_timeout

    async def dispatch_features(
        self,
        feature_flags: Optional[Mapping[str, Any]],
        state: WorkflowState,
        progress: Optional[DispatchProgress] = None,
        context: Optional[NodeContext] = None,
        recording_id: Optional[str] = None
    ) -> DispatchOutcome:
        """Select, plan and execute in one call."""
        selected = self.registry.select_nodes(feature_flags)
        plan = self.registry.create_execution_plan(selected)
        return await self.execute(plan, state, progress, context, recording_id)

    async def execute(
        self,
        plan: ExecutionPlan,
        state: WorkflowState,
        progress: Optional[DispatchProgress] = None,
        context: Optional[NodeContext] = None,
        recording_id: Optional[str] = None
    ) -> DispatchOutcome:
        """
        Execute the plan group by group.

        Args:
            plan: Execution plan from the registry
            state: Live workflow state; merged in place through channel reducers
            progress: Callback receiving (percent, message) after each node
            context: Run-scoped collaborators for the nodes
            recording_id: Recording that receives one step per node

        Returns:
            DispatchOutcome with the merged state and the net update

        Raises:
            ReplayIntegrityError: if the state was reconstructed from a recording
        """
        if state.is_replay:
            raise ReplayIntegrityError("Recorded replay state cannot be executed by the dispatcher")

        context = context or NodeContext()
        start_time = time.time()
        delta: Dict[str, Any] = {}

        if plan.excluded:
            exclusion_errors = [error_entry(issue.node_name, f"Configuration error: {issue.reason}") for issue in plan.excluded]
            self._merge(state, delta, {"errors": exclusion_errors})

        if plan.is_empty:
            logger.info("No specialized nodes selected - document may not contain processable medical sections")
            self._merge(state, delta, {
                "multi_node_results": {
                    "processed_nodes": [],
                    "execution_time_ms": 0,
                    "message": NO_PROCESSING_MESSAGE,
                }
            })
            self._report(progress, 100, NO_PROCESSING_MESSAGE)
            return DispatchOutcome(state=state, delta=delta, errors=list(delta.get("errors", [])))

        logger.info(f"Executing {plan.total_nodes} nodes in {len(plan.groups)} groups: {', '.join(plan.execution_order)}")

        succeeded: List[str] = []
        failed: List[str] = []
        errors: List[Dict[str, Any]] = list(delta.get("errors", []))
        completed = 0
        cancelled = False

        for group_index, group in enumerate(plan.groups):
            if self._is_cancelled(context):
                cancelled = True
                logger.warning(f"Cancellation requested - skipping {len(plan.groups) - group_index} remaining groups")
                break

            logger.info(f"Executing parallel group {group_index + 1}/{len(plan.groups)} with {len(group)} nodes")
            outcomes = await self._run_group(group, state, context)

            for outcome in outcomes:
                completed += 1
                update = dict(outcome.update)
                if outcome.success:
                    succeeded.append(outcome.node_name)
                else:
                    failed.append(outcome.node_name)
                    entry = error_entry(outcome.node_name, outcome.error)
                    errors.append(entry)
                    update = {"errors": [entry]}
                cancelled = cancelled or outcome.cancelled

                self._merge(state, delta, update)
                self._record(recording_id, outcome, update)
                self._report(
                    progress,
                    completed / plan.total_nodes * 100,
                    f"Completed {outcome.node_name} ({completed}/{plan.total_nodes})"
                )

            if cancelled:
                break

        execution_time_ms = round((time.time() - start_time) * 1000, 2)
        self._merge(state, delta, {
            "multi_node_results": {
                "executed_nodes": plan.execution_order,
                "succeeded_nodes": succeeded,
                "failed_nodes": failed,
                "execution_time_ms": execution_time_ms,
                "plan": plan.stats(),
                "cancelled": cancelled,
            }
        })

        logger.info(
            f"Dispatch finished in {execution_time_ms:.0f}ms: "
            f"{len(succeeded)} succeeded, {len(failed)} failed{' (cancelled)' if cancelled else ''}"
        )

        return DispatchOutcome(
            state=state,
            delta=delta,
            errors=errors,
            succeeded=succeeded,
            failed=failed,
            cancelled=cancelled,
            execution_time_ms=execution_time_ms,
        )

    async def _run_group(
        self,
        group: tuple,
        state: WorkflowState,
        context: NodeContext
    ) -> List[NodeOutcome]:
        """Run one group concurrently; outcomes are returned in completion order."""
        tasks = {
            asyncio.create_task(self._run_node(node, state.snapshot(), context.for_node())): node
            for node in group
        }
        pending = set(tasks)
        outcomes: List[NodeOutcome] = []

        cancel_waiter = None
        if context.cancel_event is not None:
            cancel_waiter = asyncio.create_task(context.cancel_event.wait())

        try:
            while pending:
                wait_for = set(pending)
                if cancel_waiter is not None:
                    wait_for.add(cancel_waiter)
                done, _ = await asyncio.wait(wait_for, return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    if task is cancel_waiter:
                        continue
                    pending.discard(task)
                    outcomes.append(task.result())

                if cancel_waiter is not None and cancel_waiter.done() and pending:
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for task in pending:
                        node = tasks[task]
                        logger.warning(f"Node {node.name} cancelled in flight")
                        outcomes.append(NodeOutcome(node_name=node.name, error=CANCELLED_MESSAGE, cancelled=True))
                    pending = set()
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        return outcomes

    async def _run_node(
        self,
        node: NodeDefinition,
        snapshot: Mapping[str, Any],
        context: NodeContext
    ) -> NodeOutcome:
        """Invoke a node and convert any failure into an outcome."""
        start_time = time.time()
        logger.debug(f"Starting {node.name}...")
        try:
            if self.node_timeout:
                update = await asyncio.wait_for(node.function(snapshot, context), timeout=self.node_timeout)
            else:
                update = await node.function(snapshot, context)

            update = self._validate_update(node, update)
            duration_ms = round((time.time() - start_time) * 1000, 2)
            logger.info(f"Completed {node.name} in {duration_ms:.0f}ms")
            return NodeOutcome(
                node_name=node.name,
                update=update,
                duration_ms=duration_ms,
                ai_call_count=context.ai_calls,
            )

        except asyncio.TimeoutError:
            message = f"Timed out after {self.node_timeout}s"
        except Exception as e:
            message = str(e) or type(e).__name__

        duration_ms = round((time.time() - start_time) * 1000, 2)
        logger.error(f"Failed {node.name}: {message}")
        return NodeOutcome(
            node_name=node.name,
            error=message,
            duration_ms=duration_ms,
            ai_call_count=context.ai_calls,
        )

    @staticmethod
    def _validate_update(node: NodeDefinition, update: Any) -> Dict[str, Any]:
        if update is None:
            return {}
        if not isinstance(update, Mapping):
            raise TypeError(f"Node returned {type(update).__name__}, expected a partial state mapping")
        unknown = [key for key in update if key not in CHANNELS]
        if unknown:
            raise UnknownChannelError(f"Node {node.name} wrote undeclared channel(s): {', '.join(unknown)}")
        return dict(update)

    @staticmethod
    def _merge(state: WorkflowState, delta: Dict[str, Any], update: Mapping[str, Any]) -> None:
        state.apply(update)
        apply_update(delta, update, state.channels)

    @staticmethod
    def _is_cancelled(context: NodeContext) -> bool:
        return context.cancel_event is not None and context.cancel_event.is_set()

    @staticmethod
    def _report(progress: Optional[DispatchProgress], percent: float, message: str) -> None:
        if progress is not None:
            progress(percent, message)

    def _record(self, recording_id: Optional[str], outcome: NodeOutcome, update: Mapping[str, Any]) -> None:
        if self.recorder is None or recording_id is None:
            return
        self.recorder.record_step(
            recording_id,
            outcome.node_name,
            output_diff=update,
            duration_ms=outcome.duration_ms,
            errors=[outcome.error] if outcome.error else [],
            success=outcome.success,
            kind="node",
            ai_call_count=outcome.ai_call_count,
        )
