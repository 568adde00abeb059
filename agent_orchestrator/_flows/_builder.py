# Copyright (c) Microsoft. All rights reserved.

"""Turn flow documents into agents, tool registries and ready-to-run orchestrators."""

import json
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .._agents import Agent
from .._clients import CompletionProvider
from .._logging import get_logger
from .._orchestrations import (
    ConcurrentOrchestrator,
    GroupChatOrchestrator,
    HandoffOrchestrator,
    HandoffRule,
    KeywordsAll,
    KeywordsAny,
    RegexMatcher,
    RoundRobinGroupChatManager,
    SequentialEvent,
    SequentialOrchestrator,
    SequentialRun,
)
from .._settings import load_orchestration_settings
from .._tools import ToolLike, ToolRegistry
from .._types import FunctionCall
from ..exceptions import (
    FlowAgentNotFoundError,
    FlowLoadError,
    FunctionNotFoundError,
    InvalidRegexError,
    MissingOutputError,
    NoAgentsRegisteredError,
    ToolException,
    ToolResolutionError,
)
from ._document import AgentDefinition, CallSettings, FlowDocument, HandoffRuleDefinition, ToolDefinition
from ._planner import FlowContext, FlowPlanner, PlannedAgent, PlannedParallel, PlannedTool

__all__ = [
    "ExecutionParallel",
    "ExecutionStep",
    "FlowBuilder",
    "ToolRunResult",
    "apply_call_settings",
    "execute_tool_steps",
    "flatten_agent_pipeline",
]

logger = get_logger("agent_orchestrator.flows")


@dataclass(frozen=True)
class ExecutionParallel:
    branches: list[list[Agent]]
    converge: bool = True


ExecutionStep = Agent | PlannedTool | ExecutionParallel


@dataclass(frozen=True)
class ToolRunResult:
    tool: str
    value: Any


def apply_call_settings(agent: Agent, settings: CallSettings | None) -> Agent:
    """Return ``agent`` with the model and sampling values set in ``settings``."""
    if settings is None:
        return agent
    if settings.model is not None:
        agent = agent.with_model(settings.model)
    if settings.temperature is not None:
        agent = agent.with_temperature(settings.temperature)
    if settings.top_p is not None:
        agent = agent.with_top_p(settings.top_p)
    if settings.max_tokens is not None:
        agent = agent.with_max_tokens(settings.max_tokens)
    return agent


def flatten_agent_pipeline(steps: Sequence[ExecutionStep]) -> list[Agent]:
    """Drop tool steps and concatenate parallel branches in order."""
    pipeline: list[Agent] = []
    for step in steps:
        if isinstance(step, Agent):
            pipeline.append(step)
        elif isinstance(step, ExecutionParallel):
            for branch in step.branches:
                pipeline.extend(branch)
    return pipeline


async def execute_tool_steps(
    steps: Sequence[ExecutionStep], registries: Mapping[str, ToolRegistry]
) -> list[ToolRunResult]:
    """Invoke every tool step of a plan in order.

    Raises:
        ToolException: A registry is missing, the arguments are not an object, or the tool failed.
    """
    results: list[ToolRunResult] = []
    for step in steps:
        if not isinstance(step, PlannedTool):
            continue
        registry = registries.get(step.tool)
        if registry is None:
            raise ToolException(f"no tool registry for '{step.tool}'")
        arguments = step.arguments if step.arguments is not None else {}
        if not isinstance(arguments, dict):
            raise ToolException(f"arguments of tool '{step.tool}' must be an object")
        function_tool = next(iter(registry), None)
        call = FunctionCall(function_tool.name if function_tool else step.tool, json.dumps(arguments))
        logger.debug("Running flow tool step %s", step.tool)
        results.append(ToolRunResult(step.tool, await registry.invoke(call)))
    return results


def _handoff_rule(definition: HandoffRuleDefinition) -> HandoffRule:
    if definition.matcher == "keywords_any":
        matcher: KeywordsAny | KeywordsAll | RegexMatcher = KeywordsAny(definition.keywords)
    elif definition.matcher == "keywords_all":
        matcher = KeywordsAll(definition.keywords)
    else:
        pattern = definition.pattern or ""
        try:
            matcher = RegexMatcher(pattern)
        except re.error as ex:
            raise InvalidRegexError(pattern, str(ex), inner_exception=ex) from ex
    return HandoffRule.to(definition.target, matcher, id=definition.id or "", message=definition.message)


class FlowBuilder:
    """Build agents and orchestrators from a :class:`FlowDocument`.

    Relative prompt and tool spec paths are resolved against ``base_dir``.

    Examples:
        .. code-block:: python

            builder = FlowBuilder.from_file("flows/support.yaml")
            orchestrator = builder.build_sequential_orchestrator(provider, "main")
            run = await orchestrator.run("My order never arrived.")
    """

    def __init__(self, document: FlowDocument, base_dir: str | Path = ".") -> None:
        self.document = document
        self.base_dir = Path(base_dir)
        self.planner = FlowPlanner(document)

    @classmethod
    def from_yaml(cls, text: str, base_dir: str | Path = ".") -> "FlowBuilder":
        return cls(FlowDocument.from_yaml(text), base_dir)

    @classmethod
    def from_file(cls, path: str | Path) -> "FlowBuilder":
        """Load a document, resolving relative paths against its directory."""
        path = Path(path)
        return cls(FlowDocument.from_file(path), path.parent)

    # region Definitions

    def _read_file(self, relative: str) -> str | None:
        candidate = self.base_dir / relative
        try:
            if not candidate.is_file():
                return None
        except (OSError, ValueError):
            # inline prompt text that is not a usable path
            return None
        try:
            return candidate.read_text(encoding="utf-8")
        except OSError as ex:
            raise FlowLoadError(f"Could not read '{candidate}': {ex}", inner_exception=ex) from ex

    def _instructions(self, definition: AgentDefinition) -> str:
        reference = definition.system_prompt
        if reference is None:
            return ""
        prompt = self.document.prompt(reference)
        if prompt is not None:
            if prompt.text is not None:
                return prompt.text
            if prompt.file is not None:
                content = self._read_file(prompt.file)
                return content if content is not None else prompt.file
            return ""
        content = self._read_file(reference)
        return content if content is not None else reference

    def _resolve_function(self, definition: ToolDefinition, functions: Mapping[str, ToolLike]) -> ToolLike:
        if definition.function is not None:
            function = functions.get(definition.function)
            if function is None:
                raise FunctionNotFoundError(definition.id, definition.function)
            return function

        candidates = [definition.id]
        if definition.spec is not None:
            joined = str(self.base_dir / definition.spec)
            candidates.extend([
                definition.spec,
                f"{definition.kind}:{definition.spec}",
                joined,
                f"{definition.kind}:{joined}",
            ])
        for key in candidates:
            if key in functions:
                return functions[key]
        raise ToolResolutionError(definition.id, definition.spec or "no function or spec provided")

    def build_tool_registries(self, functions: Mapping[str, ToolLike] | None = None) -> dict[str, ToolRegistry]:
        """Bind every tool definition to one of ``functions``, giving one registry per tool id.

        A definition naming a ``function`` must find it under that key. Otherwise the tool id, the spec path
        and ``<kind>:<spec>`` (also with the spec resolved against ``base_dir``) are tried in turn.

        Raises:
            FunctionNotFoundError: The named function was not supplied.
            ToolResolutionError: No candidate key matched.
        """
        functions = functions or {}
        return {
            definition.id: ToolRegistry([self._resolve_function(definition, functions)])
            for definition in self.document.tools
        }

    def build_agents(self, registries: Mapping[str, ToolRegistry] | None = None) -> dict[str, Agent]:
        """Create an :class:`Agent` for every agent definition, keyed by id.

        Tools named by a definition are merged from ``registries``; unknown tool ids are skipped.
        """
        registries = registries or {}
        agents: dict[str, Agent] = {}
        for definition in self.document.agents:
            agent = Agent(definition.id, self._instructions(definition), description=definition.description)
            agent = agent.with_model(definition.model)
            agent = apply_call_settings(agent, definition.defaults)
            selected = [registries[tool_id] for tool_id in definition.tools if tool_id in registries]
            if selected:
                combined = ToolRegistry()
                for registry in selected:
                    combined.extend(registry)
                agent = agent.with_tools(combined)
            agents[definition.id] = agent
        return agents

    # endregion

    # region Planning

    @staticmethod
    def _planned_agent(agents: Mapping[str, Agent], step: PlannedAgent) -> Agent:
        agent = agents.get(step.id)
        if agent is None:
            raise FlowAgentNotFoundError(step.id)
        return apply_call_settings(agent, step.params)

    def plan_sequential_path(
        self,
        flow_id: str,
        context: FlowContext | None = None,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> list[Agent]:
        """Plan ``flow_id`` and return the agents of each step, with node parameters applied."""
        agents = self.build_agents(registries)
        return [self._planned_agent(agents, step) for step in self.planner.plan(flow_id, context)]

    def build_execution_plan(
        self,
        flow_id: str,
        context: FlowContext | None = None,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> list[ExecutionStep]:
        planned = self.planner.plan_execution_steps(flow_id, context)
        agents = self.build_agents(registries)
        steps: list[ExecutionStep] = []
        for step in planned:
            if isinstance(step, PlannedAgent):
                steps.append(self._planned_agent(agents, step))
            elif isinstance(step, PlannedParallel):
                branches = [[self._planned_agent(agents, planned) for planned in branch] for branch in step.branches]
                steps.append(ExecutionParallel(branches, step.converge))
            else:
                steps.append(step)
        return steps

    def _model_for(self, agent_ids: Sequence[str]) -> str:
        for definition in self.document.agents:
            if definition.id in agent_ids:
                return definition.model
        return load_orchestration_settings()["default_model"] or "gpt-4o"

    def _roster(self, flow_id: str, registries: Mapping[str, ToolRegistry] | None) -> tuple[list[Agent], str]:
        agents = self.build_agents(registries)
        ids = self.planner.flow_agents(flow_id)
        return [agents[agent_id] for agent_id in ids if agent_id in agents], self._model_for(ids)

    # endregion

    # region Orchestrators

    def build_sequential_orchestrator(
        self,
        provider: CompletionProvider,
        flow_id: str,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> SequentialOrchestrator:
        """Plan ``flow_id`` with an empty context and build a pipeline of the planned agents.

        Raises:
            MissingOutputError: The plan contains no agents.
            FlowAgentNotFoundError: A planned agent is not defined.
        """
        planned = self.planner.plan(flow_id)
        if not planned:
            raise MissingOutputError(flow_id)
        agents = self.build_agents(registries)
        pipeline = [self._planned_agent(agents, step) for step in planned]
        return SequentialOrchestrator(provider, self._model_for([planned[0].id])).with_agents(pipeline)

    def build_concurrent_orchestrator(
        self,
        provider: CompletionProvider,
        flow_id: str,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> ConcurrentOrchestrator:
        """Fan out to every agent node of ``flow_id``; edges are ignored."""
        roster, model = self._roster(flow_id, registries)
        return ConcurrentOrchestrator(provider, model).with_agents(roster)

    def build_group_chat_orchestrator(
        self,
        provider: CompletionProvider,
        flow_id: str,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> GroupChatOrchestrator:
        """Build a round-robin chat of every agent node, configured from the flow's ``group_chat`` options."""
        options = self.document.flow(flow_id).group_chat
        roster, model = self._roster(flow_id, registries)
        manager = RoundRobinGroupChatManager(load_orchestration_settings()["group_chat_max_rounds"])
        if options is not None:
            if options.maximum_rounds is not None:
                manager.with_maximum_rounds(options.maximum_rounds)
            if options.user_prompt_frequency is not None:
                manager.with_user_prompt_frequency(options.user_prompt_frequency)
        return GroupChatOrchestrator(provider, model, manager).with_agents(roster)

    def build_handoff_orchestrator(
        self,
        provider: CompletionProvider,
        flow_id: str,
        registries: Mapping[str, ToolRegistry] | None = None,
    ) -> HandoffOrchestrator:
        """Register every agent node with a handoff orchestrator, applying the flow's ``handoff`` options.

        Raises:
            InvalidRegexError: A regex rule does not compile.
        """
        options = self.document.flow(flow_id).handoff
        roster, model = self._roster(flow_id, registries)
        orchestrator = HandoffOrchestrator(provider, model)
        if options is not None:
            if options.max_handoffs is not None:
                orchestrator.with_max_handoffs(options.max_handoffs)
            if options.max_rounds is not None:
                orchestrator.with_max_rounds(options.max_rounds)
            if options.llm_timeout_ms is not None:
                orchestrator.with_llm_timeout_ms(options.llm_timeout_ms)
            for alias in options.aliases:
                orchestrator.add_alias(alias.alias, alias.target)
            for rule in options.rules:
                orchestrator.define_handoff(_handoff_rule(rule))
        for agent in roster:
            orchestrator.register_agent(agent)
        return orchestrator

    async def run_sequential_flow(
        self,
        flow_id: str,
        context: FlowContext | None,
        registries: Mapping[str, ToolRegistry] | None,
        provider: CompletionProvider,
        task: str,
        event_callback: Callable[[SequentialEvent], Any] | None = None,
    ) -> tuple[SequentialRun, list[ToolRunResult]]:
        """Run the tool steps of a flow, then its agents as a sequential pipeline.

        Every tool result is appended to the task as ``[tool:<id>] <value>`` before the pipeline starts.

        Raises:
            NoAgentsRegisteredError: The plan contains no agents.
            ToolException: A tool step failed.
        """
        registries = registries or {}
        plan = self.build_execution_plan(flow_id, context, registries)
        tool_runs = await execute_tool_steps(plan, registries)
        task_with_tools = task + "".join(f"\n[tool:{run.tool}] {_render_value(run.value)}\n" for run in tool_runs)

        pipeline = flatten_agent_pipeline(plan)
        if not pipeline:
            raise NoAgentsRegisteredError(f"flow '{flow_id}' plans no agents")

        orchestrator = SequentialOrchestrator(provider, self._model_for([pipeline[0].name])).with_agents(pipeline)
        if event_callback is not None:
            orchestrator.with_event_callback(event_callback)
        logger.info("Running flow '%s' with %d agents and %d tool results", flow_id, len(pipeline), len(tool_runs))
        run = await orchestrator.run(task_with_tools)
        return run, tool_runs

    # endregion


def _render_value(value: Any) -> str:
    return json.dumps(value, default=str)
