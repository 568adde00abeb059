# Copyright (c) Microsoft. All rights reserved.

"""Magentic orchestration: a manager model plans the work and delegates each step to a specialist.

Every round the manager sees the task, the roster and the conversation so far, and answers with a JSON
decision: delegate to an agent, post a message, or complete the task with a result.
"""

import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr, ValidationError

from .._actions import Complete, HandOff, Respond, extract_fenced_block
from .._agents import Agent
from .._clients import CompletionProvider
from .._metrics import AgentMetrics, ExecutionTimer
from .._settings import load_orchestration_settings
from .._types import ChatMessage, CompletionRequest, render_transcript
from ..exceptions import (
    DuplicateAgentError,
    InvalidManagerDecisionError,
    MaxRoundsReachedError,
    NoAgentsRegisteredError,
    OrchestrationException,
    ProviderException,
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
    "MagenticAgentCompletionEvent",
    "MagenticAgentMessageEvent",
    "MagenticCompletedEvent",
    "MagenticComplete",
    "MagenticDecision",
    "MagenticDelegate",
    "MagenticEvent",
    "MagenticManager",
    "MagenticManagerDelegationEvent",
    "MagenticManagerMessageEvent",
    "MagenticMessage",
    "MagenticOrchestrator",
    "MagenticRun",
    "parse_manager_decision",
]

MANAGER_INSTRUCTIONS = """
You coordinate a team of domain experts to complete the user's task.
Carefully review the task, the progress so far, and each agent's description before you answer.

Always respond with a single JSON object using one of these shapes:
- {"action":"delegate","target":"<agent name>","instructions":"<what the agent should do next>","progress_note":"<optional summary to share>"}
- {"action":"message","message":"<status update or clarifying question>"}
- {"action":"complete","result":"<final answer for the user>"}

Rules:
- Only delegate to agents listed in the roster.
- Make incremental progress. Break large tasks into focused instructions.
- Use the message action when you must ask the user for more information.
- Use the complete action only when you are confident the overall task is finished.
- Never include additional text outside the JSON object.
"""


class MagenticManager:
    """Wraps the agent that plays the manager role."""

    def __init__(self, agent: Agent) -> None:
        self.agent = agent

    @classmethod
    def standard(cls) -> "MagenticManager":
        """A manager named ``manager`` instructed to answer with JSON delegation decisions."""
        return cls(Agent("manager", MANAGER_INSTRUCTIONS))

    @property
    def name(self) -> str:
        return self.agent.name


# region Decisions


@dataclass(frozen=True)
class MagenticDelegate:
    target: str
    instructions: str
    progress_note: str | None = None


@dataclass(frozen=True)
class MagenticMessage:
    content: str


@dataclass(frozen=True)
class MagenticComplete:
    result: str


MagenticDecision = MagenticDelegate | MagenticMessage | MagenticComplete


class _DelegateEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    target: StrictStr = Field(validation_alias=AliasChoices("target", "agent", "target_agent"))
    instructions: StrictStr = Field(
        validation_alias=AliasChoices("instructions", "message", "task", "instruction")
    )
    progress_note: StrictStr | None = Field(
        default=None, validation_alias=AliasChoices("progress_note", "progress", "note", "summary")
    )

    def to_decision(self) -> MagenticDecision:
        return MagenticDelegate(self.target, self.instructions, self.progress_note)


class _MessageEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: StrictStr = Field(validation_alias=AliasChoices("message", "content", "text"))

    def to_decision(self) -> MagenticDecision:
        return MagenticMessage(self.message)


class _CompleteEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result: StrictStr = Field(validation_alias=AliasChoices("result", "message", "response"))

    def to_decision(self) -> MagenticDecision:
        return MagenticComplete(self.result)


_ENVELOPES: dict[str, type[_DelegateEnvelope | _MessageEnvelope | _CompleteEnvelope]] = {
    "delegate": _DelegateEnvelope,
    "delegate_agent": _DelegateEnvelope,
    "call_agent": _DelegateEnvelope,
    "message": _MessageEnvelope,
    "respond": _MessageEnvelope,
    "status": _MessageEnvelope,
    "say": _MessageEnvelope,
    "complete": _CompleteEnvelope,
    "final": _CompleteEnvelope,
    "finalize": _CompleteEnvelope,
}


def _parse_envelope(text: str) -> MagenticDecision | None:
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if not isinstance(value, dict) or not isinstance(value.get("action"), str):
        return None
    envelope_type = _ENVELOPES.get(value["action"].strip().lower())
    if envelope_type is None:
        return None
    try:
        return envelope_type.model_validate(value).to_decision()
    except ValidationError:
        return None


def parse_manager_decision(text: str) -> MagenticDecision:
    """Parse a manager reply as JSON, then as a fenced JSON block; other non-empty text is a message.

    Raises:
        InvalidManagerDecisionError: The reply is empty.
    """
    if decision := _parse_envelope(text):
        return decision
    fenced = extract_fenced_block(text)
    if fenced is not None and (decision := _parse_envelope(fenced)):
        return decision
    trimmed = text.strip()
    if not trimmed:
        raise InvalidManagerDecisionError("empty manager response")
    return MagenticMessage(trimmed)


# endregion

# region Events


@dataclass(frozen=True)
class MagenticManagerMessageEvent:
    message: str


@dataclass(frozen=True)
class MagenticManagerDelegationEvent:
    target: str
    instructions: str
    progress_note: str | None = None


@dataclass(frozen=True)
class MagenticAgentMessageEvent:
    agent: str
    message: str


@dataclass(frozen=True)
class MagenticAgentCompletionEvent:
    agent: str
    message: str | None


@dataclass(frozen=True)
class MagenticCompletedEvent:
    message: str


MagenticEvent = (
    MagenticManagerMessageEvent
    | MagenticManagerDelegationEvent
    | MagenticAgentMessageEvent
    | MagenticAgentCompletionEvent
    | MagenticCompletedEvent
)


@dataclass
class MagenticRun:
    final_result: str | None
    events: list[MagenticEvent] = field(default_factory=list)
    rounds: int = 0
    transcript: list[ChatMessage] = field(default_factory=list)
    metrics: AgentMetrics | None = None


# endregion


def build_manager_prompt(
    task: str, round: int, manager: MagenticManager, roster: Sequence[Agent], transcript: Sequence[ChatMessage]
) -> str:
    lines = [
        f"You are {manager.name} coordinating a collaboration.",
        f"Task: {task}",
        f"Round: {round}",
        "Agent roster:",
    ]
    lines.extend(f"- {agent.name}: {agent.description or 'No description provided.'}" for agent in roster)
    lines.append("")
    lines.append("Conversation so far:")
    lines.append(render_transcript(transcript))
    lines.append("")
    lines.append("Produce your JSON decision now.")
    return "\n".join(lines)


class MagenticOrchestrator(BaseOrchestrator[MagenticEvent]):
    """Let a manager delegate work to registered agents until it declares the task complete.

    Running out of rounds without a ``complete`` decision is an error, never a silent success.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        model: str | None = None,
        manager: MagenticManager | None = None,
        *,
        max_rounds: int | None = None,
    ) -> None:
        super().__init__(provider, model)
        self.manager = manager or MagenticManager.standard()
        rounds = load_orchestration_settings(magentic_max_rounds=max_rounds)["magentic_max_rounds"]
        self.max_rounds = max(1, rounds if rounds is not None else 12)
        self._agents: dict[str, Agent] = {}

    @property
    def agents(self) -> list[Agent]:
        return list(self._agents.values())

    def register_agent(self, agent: Agent) -> None:
        """Add ``agent`` to the roster.

        Raises:
            DuplicateAgentError: An agent with the same name is already registered.
        """
        if agent.name in self._agents:
            raise DuplicateAgentError(agent.name)
        self._agents[agent.name] = agent

    def add_agent(self, agent: Agent) -> None:
        self.register_agent(agent)

    def with_max_rounds(self, max_rounds: int) -> Self:
        self.max_rounds = max(1, max_rounds)
        return self

    async def _ask_manager(self, prompt: str, metrics: AgentMetrics | None) -> str:
        manager = self.manager.agent
        provider = manager.provider or self.provider
        request = CompletionRequest(
            model=manager.model or self.model,
            messages=[ChatMessage.system(manager.instructions), ChatMessage.user(prompt)],
            temperature=manager.temperature,
            top_p=manager.top_p,
            max_tokens=manager.max_tokens,
        )
        try:
            response = await provider.complete(request)
        except OrchestrationException:
            raise
        except Exception as ex:
            raise ProviderException(f"manager '{manager.name}' failed: {ex}", inner_exception=ex) from ex
        if metrics is not None and response.usage is not None:
            metrics.record_token_usage(response.usage)
        text = response.message.text or ""
        if not text.strip():
            raise InvalidManagerDecisionError("manager response is empty or contains no text")
        return text

    async def run(self, task: str) -> MagenticRun:
        """Run the collaboration on ``task``.

        Raises:
            NoAgentsRegisteredError: No agent is registered.
            MaxRoundsReachedError: The manager did not complete within ``max_rounds`` rounds.
            UnknownAgentError: The manager delegated to an agent outside the roster.
            InvalidManagerDecisionError: The manager answered with empty text.
        """
        if not self._agents:
            raise NoAgentsRegisteredError()

        transcript = [ChatMessage.user(task)]
        events: list[MagenticEvent] = []
        metrics = self._new_metrics("magentic_workflow")
        timer = ExecutionTimer()
        manager_name = self.manager.name
        rounds = 0

        with orchestration_span("magentic", agents=len(self._agents), max_rounds=self.max_rounds) as span:
            try:
                for round_index in range(self.max_rounds):
                    rounds = round_index + 1
                    prompt = build_manager_prompt(task, rounds, self.manager, self.agents, transcript)
                    decision = parse_manager_decision(await self._ask_manager(prompt, metrics))

                    if isinstance(decision, MagenticDelegate):
                        if decision.progress_note:
                            push_agent_message(transcript, manager_name, decision.progress_note)
                            self._emit(events, MagenticManagerMessageEvent(decision.progress_note))
                        agent = self._agents.get(decision.target)
                        if agent is None:
                            raise UnknownAgentError(decision.target)
                        push_agent_message(transcript, manager_name, decision.instructions)
                        self._emit(
                            events,
                            MagenticManagerDelegationEvent(
                                decision.target, decision.instructions, decision.progress_note
                            ),
                        )
                        logger.debug("Magentic round %d: delegating to %s", rounds, agent.name)
                        turn = await agent.execute(self.provider, self.model, transcript)
                        record_turn(metrics, turn, timer)

                        action = turn.action
                        if isinstance(action, Respond):
                            push_agent_message(transcript, agent.name, action.message)
                            self._emit(events, MagenticAgentMessageEvent(agent.name, action.message))
                        elif isinstance(action, HandOff):
                            text = action.message or ""
                            push_agent_message(transcript, agent.name, text)
                            self._emit(events, MagenticAgentMessageEvent(agent.name, text))
                        elif isinstance(action, Complete):
                            if action.message is not None:
                                push_agent_message(transcript, agent.name, action.message)
                            self._emit(events, MagenticAgentCompletionEvent(agent.name, action.message))

                    elif isinstance(decision, MagenticMessage):
                        push_agent_message(transcript, manager_name, decision.content)
                        self._emit(events, MagenticManagerMessageEvent(decision.content))

                    else:
                        push_agent_message(transcript, manager_name, decision.result)
                        self._emit(events, MagenticCompletedEvent(decision.result))
                        span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)
                        return MagenticRun(
                            final_result=decision.result,
                            events=events,
                            rounds=rounds,
                            transcript=transcript,
                            metrics=self._finish_metrics(
                                metrics, timer, succeeded=True, output_length=len(decision.result), rounds=rounds
                            ),
                        )

                raise MaxRoundsReachedError(f"manager did not complete within {self.max_rounds} rounds")
            except Exception as ex:
                self._finish_metrics(metrics, timer, succeeded=False, output_length=0, rounds=rounds, error=ex)
                raise
