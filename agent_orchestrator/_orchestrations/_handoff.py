# Copyright (c) Microsoft. All rights reserved.

"""Handoff orchestration: a single active agent that can pass the conversation to a peer.

Agents hand off through the internal ``handoff`` tool, a JSON envelope or plain phrasing ("transfer to
billing"). Deterministic :class:`HandoffRule`\\ s can turn a plain reply into a handoff. Targets are resolved
through the alias table, then by exact, prefix and fuzzy name matching.
"""

import asyncio
import logging
import re
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from .._actions import AgentAction, HandOff, Respond
from .._agents import Agent
from .._clients import CompletionProvider
from .._metrics import AgentMetrics, ExecutionTimer
from .._settings import load_orchestration_settings
from .._tools import ToolRegistry, tool
from .._types import ChatMessage, ToolChoice
from ..exceptions import (
    InvalidManagerDecisionError,
    MaxHandoffsReachedError,
    MaxRoundsReachedError,
    ProviderTimeoutError,
    UnknownAgentError,
)
from ..observability import OtelAttr, orchestration_span
from ._base import BaseOrchestrator, push_agent_message, record_turn

if sys.version_info >= (3, 11):
    from typing import Self  # pragma: no cover
else:
    from typing_extensions import Self  # pragma: no cover

logger = logging.getLogger(__name__)

__all__ = [
    "DecisionSource",
    "HandoffCompletedEvent",
    "HandoffDirective",
    "HandoffEvent",
    "HandoffHandOffEvent",
    "HandoffMessageEvent",
    "HandoffOrchestrator",
    "HandoffRule",
    "HandoffSession",
    "HandoffTurn",
    "KeywordsAll",
    "KeywordsAny",
    "PredicateMatcher",
    "RegexMatcher",
]

FUZZY_MATCH_MAX_DISTANCE = 3


# region Rules


@dataclass(frozen=True)
class HandoffDirective:
    target: str
    message: str | None = None


DirectiveResolver = Callable[[Sequence[ChatMessage], str], HandoffDirective | None]


@dataclass(frozen=True)
class KeywordsAny:
    """Matches when any keyword occurs in the reply, ignoring case."""

    keywords: Sequence[str]

    def matches(self, transcript: Sequence[ChatMessage], text: str) -> bool:
        lowered = text.lower()
        return any(keyword.lower() in lowered for keyword in self.keywords)


@dataclass(frozen=True)
class KeywordsAll:
    """Matches when every keyword occurs in the reply, ignoring case."""

    keywords: Sequence[str]

    def matches(self, transcript: Sequence[ChatMessage], text: str) -> bool:
        lowered = text.lower()
        return all(keyword.lower() in lowered for keyword in self.keywords)


@dataclass(frozen=True)
class RegexMatcher:
    """Matches when the pattern is found anywhere in the reply."""

    pattern: "re.Pattern[str] | str"

    def __post_init__(self) -> None:
        if isinstance(self.pattern, str):
            object.__setattr__(self, "pattern", re.compile(self.pattern))

    def matches(self, transcript: Sequence[ChatMessage], text: str) -> bool:
        return re.search(self.pattern, text) is not None


@dataclass(frozen=True)
class PredicateMatcher:
    """Matches when ``predicate(transcript, text)`` returns a directive."""

    predicate: DirectiveResolver

    def matches(self, transcript: Sequence[ChatMessage], text: str) -> bool:
        return self.predicate(transcript, text) is not None


HandoffMatcher = KeywordsAny | KeywordsAll | RegexMatcher | PredicateMatcher


@dataclass(frozen=True)
class HandoffRule:
    """A matcher plus the directive to apply when it matches.

    Examples:
        .. code-block:: python

            HandoffRule.to("weather", KeywordsAny(["forecast", "rain"]))
            HandoffRule.when("vip", lambda transcript, text: HandoffDirective("concierge") if "VIP" in text else None)
    """

    id: str
    matcher: HandoffMatcher
    resolve: DirectiveResolver

    @classmethod
    def to(cls, target: str, matcher: HandoffMatcher, *, id: str = "", message: str | None = None) -> "HandoffRule":
        """Route to a fixed ``target`` whenever ``matcher`` matches."""
        directive = HandoffDirective(target, message)
        return cls(id=id, matcher=matcher, resolve=lambda transcript, text: directive)

    @classmethod
    def when(cls, id: str, predicate: DirectiveResolver) -> "HandoffRule":
        """Route wherever ``predicate`` says; the rule matches when it returns a directive."""
        return cls(id=id, matcher=PredicateMatcher(predicate), resolve=predicate)


# endregion

# region Events


class DecisionSource(str, Enum):
    """What produced a handoff decision."""

    RULE = "rule"
    TOOL = "tool"
    PARSER = "parser"


@dataclass(frozen=True)
class HandoffMessageEvent:
    agent: str
    message: str


@dataclass(frozen=True)
class HandoffHandOffEvent:
    from_agent: str
    to_agent: str
    because: DecisionSource


@dataclass(frozen=True)
class HandoffCompletedEvent:
    agent: str


HandoffEvent = HandoffMessageEvent | HandoffHandOffEvent | HandoffCompletedEvent


@dataclass
class HandoffTurn:
    reply: str | None
    events: list[HandoffEvent] = field(default_factory=list)
    metrics: AgentMetrics | None = None


# endregion

# region Internal tools


@tool(
    name="handoff",
    description="Route the conversation to another agent. Use this whenever another specialist should take over.",
)
def _handoff_tool(
    to: Annotated[str, "Target agent name (e.g., travel, weather)"],
    message: Annotated[str | None, "Optional handoff note"] = None,
) -> dict[str, Any]:
    return {"action": "hand_off", "target": to, "message": message}


@tool(name="complete", description="Mark the task as complete and return the final answer.")
def _complete_tool(message: Annotated[str | None, "Optional final response"] = None) -> dict[str, Any]:
    return {"action": "complete", "message": message}


def internal_tools() -> ToolRegistry:
    return ToolRegistry([_handoff_tool, _complete_tool])


# endregion


def _normalize(name: str) -> str:
    return name.strip().lower()


class HandoffOrchestrator(BaseOrchestrator[HandoffEvent]):
    """Hold the agents, rules and aliases shared by :class:`HandoffSession`\\ s.

    Args:
        provider: The completion provider.
        model: The default model.

    Keyword Args:
        max_handoffs: Handoff budget per session. Defaults to ``AGENT_ORCHESTRATOR_HANDOFF_MAX_HANDOFFS`` or 4.
            Use :meth:`with_max_handoffs` with ``None`` to remove the budget.
        max_rounds: Agent turns allowed per :meth:`HandoffSession.send`. Defaults to 32.
        llm_timeout_ms: Timeout of a single turn in milliseconds. Defaults to 60000.
        force_handoff_tool: Only accept handoffs made through the ``handoff`` tool or a rule.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        model: str | None = None,
        *,
        max_handoffs: int | None = None,
        max_rounds: int | None = None,
        llm_timeout_ms: int | None = None,
        force_handoff_tool: bool = False,
    ) -> None:
        super().__init__(provider, model)
        settings = load_orchestration_settings(
            handoff_max_handoffs=max_handoffs,
            handoff_max_rounds=max_rounds,
            handoff_llm_timeout_ms=llm_timeout_ms,
        )
        self.max_handoffs: int | None = settings["handoff_max_handoffs"]
        self.max_rounds: int = settings["handoff_max_rounds"] or 32
        self.llm_timeout_ms: int = settings["handoff_llm_timeout_ms"] or 60_000
        self.force_handoff_tool = force_handoff_tool
        self._agents: dict[str, Agent] = {}
        self._rules: list[HandoffRule] = []
        self._aliases: dict[str, str] = {}

    @property
    def agents(self) -> dict[str, Agent]:
        return dict(self._agents)

    @property
    def rules(self) -> list[HandoffRule]:
        return list(self._rules)

    def agent(self, name: str) -> Agent | None:
        return self._agents.get(name)

    def register_agent(self, agent: Agent) -> Agent | None:
        """Register ``agent``, returning the agent previously registered under the same name."""
        previous = self._agents.get(agent.name)
        self._agents[agent.name] = agent
        return previous

    def add_agent(self, agent: Agent) -> Agent | None:
        return self.register_agent(agent)

    def define_handoff(self, rule: HandoffRule) -> Self:
        self._rules.append(rule)
        return self

    def add_alias(self, alias: str, target: str) -> Self:
        self._aliases[_normalize(alias)] = target
        return self

    def with_max_handoffs(self, max_handoffs: int | None) -> Self:
        self.max_handoffs = max_handoffs
        return self

    def with_max_rounds(self, max_rounds: int) -> Self:
        self.max_rounds = max_rounds
        return self

    def with_llm_timeout_ms(self, timeout_ms: int) -> Self:
        self.llm_timeout_ms = timeout_ms
        return self

    def with_force_handoff_tool(self, enabled: bool) -> Self:
        self.force_handoff_tool = enabled
        return self

    def match_rules(self, transcript: Sequence[ChatMessage], text: str) -> HandoffDirective | None:
        """Return the directive of the first matching rule."""
        for rule in self._rules:
            if rule.matcher.matches(transcript, text):
                return rule.resolve(transcript, text)
        return None

    def resolve_target(self, current: str, raw_target: str) -> str:
        """Resolve a requested target to a registered agent name.

        Resolution consults the alias table, then tries an exact case-insensitive match, a prefix match and
        finally the closest name within an edit distance of 3.

        Raises:
            UnknownAgentError: Nothing matches.
            InvalidManagerDecisionError: The target resolves to the current agent.
        """
        want = _normalize(raw_target.strip().lstrip("@"))
        if not want:
            raise UnknownAgentError(raw_target)
        want = _normalize(self._aliases.get(want, want))
        current_key = _normalize(current)

        def accept(name: str) -> str:
            if _normalize(name) == current_key:
                raise InvalidManagerDecisionError("self handoff not allowed")
            return name

        for name in self._agents:
            if _normalize(name) == want:
                return accept(name)
        for name in self._agents:
            if _normalize(name).startswith(want):
                return accept(name)

        best = process.extractOne(
            want,
            list(self._agents),
            scorer=Levenshtein.distance,
            processor=_normalize,
            score_cutoff=FUZZY_MATCH_MAX_DISTANCE,
        )
        if best is not None:
            name, distance, _ = best
            logger.debug("Fuzzy-matched handoff target '%s' to '%s' (distance %d)", raw_target, name, distance)
            return accept(name)

        raise UnknownAgentError(raw_target)

    def session(self, initial_agent: str) -> "HandoffSession":
        """Start a conversation with ``initial_agent`` active.

        Raises:
            UnknownAgentError: ``initial_agent`` is not registered.
        """
        if initial_agent not in self._agents:
            raise UnknownAgentError(initial_agent)
        return HandoffSession(self, initial_agent)


class HandoffSession:
    """Per-conversation state: the transcript, the active agent and the remaining handoff budget.

    Calls to :meth:`send` on one session must not overlap.
    """

    def __init__(self, orchestrator: HandoffOrchestrator, active_agent: str) -> None:
        self._orchestrator = orchestrator
        self._transcript: list[ChatMessage] = []
        self._active_agent = active_agent
        self._remaining_handoffs = orchestrator.max_handoffs

    @property
    def active_agent(self) -> str:
        return self._active_agent

    @property
    def transcript(self) -> list[ChatMessage]:
        return list(self._transcript)

    def set_history(self, history: Sequence[ChatMessage]) -> None:
        self._transcript = list(history)

    @property
    def max_handoffs(self) -> int | None:
        """Handoffs left in this session, ``None`` for unlimited."""
        return self._remaining_handoffs

    @max_handoffs.setter
    def max_handoffs(self, value: int | None) -> None:
        self._remaining_handoffs = value

    def _emit_message(self, events: list[HandoffEvent], agent: str, text: str | None) -> None:
        if text is None or not text.strip():
            return
        push_agent_message(self._transcript, agent, text)
        self._orchestrator._emit(events, HandoffMessageEvent(agent, text))

    async def send(self, user_input: str) -> HandoffTurn:
        """Add a user message and run agents until one replies or completes.

        Raises:
            MaxRoundsReachedError: More than ``max_rounds`` turns were needed.
            MaxHandoffsReachedError: A handoff was requested with no budget left.
            ProviderTimeoutError: A turn exceeded ``llm_timeout_ms``.
            UnknownAgentError: A handoff target could not be resolved.
            InvalidManagerDecisionError: An agent tried to hand off to itself.
        """
        orchestrator = self._orchestrator
        self._transcript.append(ChatMessage.user(user_input))
        events: list[HandoffEvent] = []
        rounds = 0
        metrics = orchestrator._new_metrics("handoff_flow")
        timer = ExecutionTimer()

        with orchestration_span("handoff", agent=self._active_agent) as span:
            try:
                while True:
                    rounds += 1
                    if rounds > orchestrator.max_rounds:
                        raise MaxRoundsReachedError(f"maximum rounds {orchestrator.max_rounds} reached")

                    agent = orchestrator.agent(self._active_agent)
                    if agent is None:
                        raise UnknownAgentError(self._active_agent)

                    try:
                        turn = await asyncio.wait_for(
                            agent.execute(
                                orchestrator.provider,
                                orchestrator.model,
                                self._transcript,
                                tools=internal_tools(),
                                tool_choice=ToolChoice.auto(),
                            ),
                            timeout=orchestrator.llm_timeout_ms / 1000,
                        )
                    except asyncio.TimeoutError as ex:
                        raise ProviderTimeoutError(
                            f"agent '{agent.name}' did not answer within {orchestrator.llm_timeout_ms} ms"
                        ) from ex
                    record_turn(metrics, turn, timer)

                    handoff_tool_called = any(call.function.name == "handoff" for call in turn.tool_calls)
                    action: AgentAction = turn.action
                    source = DecisionSource.PARSER

                    if orchestrator.force_handoff_tool and isinstance(action, HandOff) and not handoff_tool_called:
                        action = Respond(turn.raw_content)

                    if isinstance(action, Respond):
                        directive = orchestrator.match_rules(self._transcript, action.message)
                        if directive is not None:
                            action = HandOff(directive.target, directive.message)
                            source = DecisionSource.RULE
                    elif isinstance(action, HandOff) and handoff_tool_called:
                        source = DecisionSource.TOOL

                    if isinstance(action, Respond):
                        self._emit_message(events, agent.name, action.message)
                        span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)
                        return HandoffTurn(
                            reply=action.message,
                            events=events,
                            metrics=orchestrator._finish_metrics(
                                metrics, timer, succeeded=True, output_length=len(action.message), rounds=rounds
                            ),
                        )

                    if isinstance(action, HandOff):
                        if self._remaining_handoffs is not None:
                            if self._remaining_handoffs == 0:
                                raise MaxHandoffsReachedError()
                            self._remaining_handoffs -= 1
                        self._emit_message(events, agent.name, action.message)
                        resolved = orchestrator.resolve_target(self._active_agent, action.target)
                        logger.info("Handoff %s -> %s (%s)", agent.name, resolved, source.value)
                        orchestrator._emit(events, HandoffHandOffEvent(agent.name, resolved, source))
                        self._active_agent = resolved
                        continue

                    self._emit_message(events, agent.name, action.message)
                    orchestrator._emit(events, HandoffCompletedEvent(agent.name))
                    span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)
                    return HandoffTurn(
                        reply=action.message,
                        events=events,
                        metrics=orchestrator._finish_metrics(
                            metrics, timer, succeeded=True, output_length=len(action.message or ""), rounds=rounds
                        ),
                    )
            except Exception as ex:
                orchestrator._finish_metrics(metrics, timer, succeeded=False, output_length=0, rounds=rounds, error=ex)
                raise
