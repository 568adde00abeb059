# Copyright (c) Microsoft. All rights reserved.

import sys
from dataclasses import dataclass, field
from typing import Any

from .._logging import get_logger
from ..exceptions import (
    MissingParallelBranchesError,
    NodeNotFoundError,
    NoMatchingEdgeError,
    ParallelConvergenceError,
    SubflowCycleError,
    UnsupportedNodeError,
)
from ._conditions import condition_matches
from ._document import (
    AgentNode,
    CallSettings,
    FlowDefinition,
    FlowDocument,
    FlowEdge,
    FlowNode,
    LoopNode,
    MergeNode,
    OutputNode,
    ParallelNode,
    SubflowNode,
    ToolNode,
)

if sys.version_info >= (3, 11):
    from typing import Self  # pragma: no cover
else:
    from typing_extensions import Self  # pragma: no cover

__all__ = ["FlowContext", "FlowPlanner", "PlannedAgent", "PlannedParallel", "PlannedStep", "PlannedTool"]

logger = get_logger("agent_orchestrator.flows")


@dataclass(frozen=True)
class FlowContext:
    """Variables that edge conditions are evaluated against."""

    vars: dict[str, Any] = field(default_factory=dict)

    def with_var(self, key: str, value: Any) -> Self:
        return type(self)({**self.vars, key: value})


@dataclass(frozen=True)
class PlannedAgent:
    id: str
    params: CallSettings | None = None


@dataclass(frozen=True)
class PlannedTool:
    tool: str
    arguments: Any | None = None


@dataclass(frozen=True)
class PlannedParallel:
    branches: list[list[PlannedAgent]]
    converge: bool = True


PlannedStep = PlannedAgent | PlannedTool | PlannedParallel


def _is_else(edge: FlowEdge) -> bool:
    return edge.condition is not None and edge.condition.strip().lower() == "else"


@dataclass
class _LoopState:
    count: int = 0
    body: set[str] = field(default_factory=set)
    exhausted_at: int | None = None


class _LoopTracker:
    """Iteration state of the loop nodes met during one walk.

    ``progress`` counts iterations taken by any loop. An exhausted loop may only be left again after some other
    loop has iterated, which bounds cycles through loop nodes by the sum of their ``max_iterations``.
    """

    def __init__(self) -> None:
        self.loops: dict[str, _LoopState] = {}
        self.progress = 0


class FlowPlanner:
    """Walk flows of a document from their entry node to an output node.

    Edges are chosen first-match in document order. A loop node counts how often it is left; once the count
    reaches ``max_iterations`` (or the loop's own condition is false) it is left through an ``else`` edge, or
    else an edge without a condition, that was never taken into the loop body. An exhausted loop reached again
    before any other loop iterated raises :class:`NoMatchingEdgeError`.

    Examples:
        .. code-block:: python

            planner = FlowPlanner(FlowDocument.from_yaml(text))
            steps = planner.plan("main", FlowContext().with_var("route", "billing"))
            print([step.id for step in steps])
    """

    def __init__(self, document: FlowDocument) -> None:
        self.document = document

    def plan(self, flow_id: str, context: FlowContext | None = None) -> list[PlannedAgent]:
        """Plan ``flow_id`` as a linear list of agent steps.

        Decision, tool, merge and input nodes only route; subflows are inlined.

        Raises:
            FlowNotFoundError: The flow, or a referenced subflow, does not exist.
            NodeNotFoundError: An edge or the entry references a missing node.
            NoMatchingEdgeError: No outgoing edge of a node could be taken.
            UnsupportedNodeError: The walk reached a parallel node.
            SubflowCycleError: Subflows reference each other in a cycle.
        """
        return self._plan_agents(flow_id, context or FlowContext(), [])

    def plan_execution_steps(self, flow_id: str, context: FlowContext | None = None) -> list[PlannedStep]:
        """Plan ``flow_id`` keeping tool nodes and parallel fan-outs as their own steps.

        Raises:
            MissingParallelBranchesError: A parallel node has no outgoing edges.
            ParallelConvergenceError: Branches of a converging parallel node end at different merge nodes.
            UnsupportedNodeError: A parallel branch contains another parallel node.
        """
        return self._plan_steps(flow_id, context or FlowContext(), [])

    def flow_agents(self, flow_id: str) -> list[str]:
        """The agent ids of every agent node of ``flow_id``, in document order."""
        return [node.agent for node in self.document.flow(flow_id).nodes if isinstance(node, AgentNode)]

    # region Walk

    @staticmethod
    def _node(flow: FlowDefinition, node_id: str) -> FlowNode:
        node = flow.node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    @staticmethod
    def _enter(flow_id: str, visited: list[str]) -> None:
        if flow_id in visited:
            raise SubflowCycleError(flow_id)
        visited.append(flow_id)

    def _next_node(
        self, flow: FlowDefinition, node: FlowNode, context: FlowContext, loops: _LoopTracker
    ) -> str | None:
        outgoing = flow.outgoing(node.id)
        if not outgoing:
            return None
        if not isinstance(node, LoopNode):
            return self._first_match(node.id, outgoing, context, 0)

        state = loops.loops.setdefault(node.id, _LoopState())
        iteration = state.count
        exhausted = iteration >= node.max_iterations or (
            node.condition is not None and not condition_matches(node.condition, context.vars, iteration)
        )
        if not exhausted:
            target = self._first_match(node.id, outgoing, context, iteration)
            if not any(_is_else(edge) for edge in outgoing if edge.to == target):
                state.body.add(target)
            state.count += 1
            loops.progress += 1
            return target

        if state.exhausted_at == loops.progress:
            # left again without any loop iterating in between
            raise NoMatchingEdgeError(node.id)
        state.exhausted_at = loops.progress
        logger.debug("Loop '%s' exhausted after %d iterations", node.id, iteration)
        escapes = [edge for edge in outgoing if _is_else(edge)]
        escapes += [edge for edge in outgoing if edge.condition is None]
        escapes = [edge for edge in escapes if edge.to not in state.body]
        return self._first_match(node.id, escapes, context, iteration)

    @staticmethod
    def _first_match(node_id: str, edges: list[FlowEdge], context: FlowContext, iteration: int) -> str:
        for edge in edges:
            if condition_matches(edge.condition, context.vars, iteration):
                return edge.to
        raise NoMatchingEdgeError(node_id)

    def _plan_agents(self, flow_id: str, context: FlowContext, visited: list[str]) -> list[PlannedAgent]:
        self._enter(flow_id, visited)
        try:
            flow = self.document.flow(flow_id)
            path: list[PlannedAgent] = []
            loops = _LoopTracker()
            current: str | None = flow.entry
            while current is not None:
                node = self._node(flow, current)
                if isinstance(node, AgentNode):
                    path.append(PlannedAgent(node.agent, node.parameters))
                elif isinstance(node, ParallelNode):
                    raise UnsupportedNodeError(node.id)
                elif isinstance(node, SubflowNode):
                    path.extend(self._plan_agents(node.flow, context, visited))
                elif isinstance(node, OutputNode):
                    break
                current = self._next_node(flow, node, context, loops)
            return path
        finally:
            visited.remove(flow_id)

    def _plan_steps(self, flow_id: str, context: FlowContext, visited: list[str]) -> list[PlannedStep]:
        self._enter(flow_id, visited)
        try:
            flow = self.document.flow(flow_id)
            steps: list[PlannedStep] = []
            loops = _LoopTracker()
            current: str | None = flow.entry
            while current is not None:
                node = self._node(flow, current)
                if isinstance(node, AgentNode):
                    steps.append(PlannedAgent(node.agent, node.parameters))
                elif isinstance(node, ToolNode):
                    steps.append(PlannedTool(node.tool, node.arguments))
                elif isinstance(node, ParallelNode):
                    step, join = self._fan_out(flow, node, context, visited)
                    steps.append(step)
                    current = join
                    continue
                elif isinstance(node, SubflowNode):
                    steps.extend(self._plan_steps(node.flow, context, visited))
                elif isinstance(node, OutputNode):
                    break
                current = self._next_node(flow, node, context, loops)
            return steps
        finally:
            visited.remove(flow_id)

    def _fan_out(
        self, flow: FlowDefinition, node: ParallelNode, context: FlowContext, visited: list[str]
    ) -> tuple[PlannedParallel, str | None]:
        converge = node.converge if node.converge is not None else True
        outgoing = flow.outgoing(node.id)
        if not outgoing:
            raise MissingParallelBranchesError(node.id)

        branches: list[list[PlannedAgent]] = []
        joins: list[str | None] = []
        for edge in outgoing:
            branch, join = self._walk_branch(flow, edge.to, context, visited)
            branches.append(branch)
            joins.append(join)

        if converge and any(join != joins[0] for join in joins):
            raise ParallelConvergenceError(node.id)
        return PlannedParallel(branches, converge), joins[0]

    def _walk_branch(
        self, flow: FlowDefinition, start: str, context: FlowContext, visited: list[str]
    ) -> tuple[list[PlannedAgent], str | None]:
        """Collect the agents of one parallel branch and the merge node it ends at, if any."""
        branch: list[PlannedAgent] = []
        loops = _LoopTracker()
        current: str | None = start
        while current is not None:
            node = self._node(flow, current)
            if isinstance(node, AgentNode):
                branch.append(PlannedAgent(node.agent, node.parameters))
            elif isinstance(node, MergeNode):
                return branch, node.id
            elif isinstance(node, ParallelNode):
                raise UnsupportedNodeError(node.id)
            elif isinstance(node, SubflowNode):
                branch.extend(self._plan_agents(node.flow, context, visited))
            elif isinstance(node, OutputNode):
                return branch, None
            current = self._next_node(flow, node, context, loops)
        return branch, None

    # endregion
