# Copyright (c) Microsoft. All rights reserved.

"""Group chat orchestration: a manager picks who speaks next in a shared conversation.

The manager is any object implementing :class:`GroupChatManager`. :class:`RoundRobinGroupChatManager` cycles
through the roster; custom managers can select speakers from the transcript, stop early or ask the user for
input between rounds.
"""

import inspect
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .._actions import Complete, HandOff, Respond
from .._agents import Agent
from .._clients import CompletionProvider
from .._metrics import ExecutionTimer
from .._settings import load_orchestration_settings
from .._types import ChatMessage
from ..exceptions import InvalidManagerDecisionError, NoAgentsRegisteredError, UnknownAgentError
from ..observability import OtelAttr, orchestration_span
from ._base import BaseOrchestrator, push_agent_message, record_turn

if sys.version_info >= (3, 11):
    from typing import Self  # pragma: no cover
else:
    from typing_extensions import Self  # pragma: no cover

logger = logging.getLogger(__name__)

__all__ = [
    "GroupChatAgentCompletionEvent",
    "GroupChatAgentMessageEvent",
    "GroupChatEvent",
    "GroupChatManager",
    "GroupChatOrchestrator",
    "GroupChatRun",
    "GroupChatTerminatedEvent",
    "GroupChatUserMessageEvent",
    "RoundRobinGroupChatManager",
    "UserInputCallback",
]


@runtime_checkable
class GroupChatManager(Protocol):
    """Decides turn order and termination for a group chat.

    Managers may also define ``should_request_user_input(round, transcript) -> bool``; when it is missing the
    user is never asked.
    """

    def on_start(self, roster: Sequence[Agent]) -> None:
        """Reset any state before a run starts."""
        ...

    def select_next_agent(self, roster: Sequence[Agent], transcript: Sequence[ChatMessage], round: int) -> str | None:
        """Return the name of the next speaker, or ``None`` when no one should speak."""
        ...

    def should_terminate(self, round: int, transcript: Sequence[ChatMessage]) -> bool: ...

    def max_rounds(self) -> int | None: ...


class RoundRobinGroupChatManager:
    """Let every agent speak in roster order until ``maximum_rounds`` rounds have been played.

    Args:
        maximum_rounds: Round limit, ``None`` for no limit.
        user_prompt_frequency: Ask the user for input every this many rounds. ``None`` or ``0`` disables it.
    """

    def __init__(self, maximum_rounds: int | None = 6, user_prompt_frequency: int | None = None) -> None:
        self.maximum_rounds = maximum_rounds
        self.user_prompt_frequency = user_prompt_frequency or None
        self._index = 0

    def with_maximum_rounds(self, rounds: int | None) -> Self:
        self.maximum_rounds = rounds
        return self

    def with_user_prompt_frequency(self, every: int | None) -> Self:
        self.user_prompt_frequency = every or None
        return self

    def on_start(self, roster: Sequence[Agent]) -> None:
        self._index = 0

    def select_next_agent(self, roster: Sequence[Agent], transcript: Sequence[ChatMessage], round: int) -> str | None:
        if not roster:
            return None
        agent = roster[self._index % len(roster)]
        self._index = (self._index + 1) % len(roster)
        return agent.name

    def should_terminate(self, round: int, transcript: Sequence[ChatMessage]) -> bool:
        return self.maximum_rounds is not None and round >= self.maximum_rounds

    def max_rounds(self) -> int | None:
        return self.maximum_rounds

    def should_request_user_input(self, round: int, transcript: Sequence[ChatMessage]) -> bool:
        frequency = self.user_prompt_frequency
        return frequency is not None and frequency > 0 and round > 0 and round % frequency == 0


@dataclass(frozen=True)
class GroupChatAgentMessageEvent:
    agent: str
    message: str


@dataclass(frozen=True)
class GroupChatAgentCompletionEvent:
    agent: str
    message: str | None


@dataclass(frozen=True)
class GroupChatUserMessageEvent:
    message: str


@dataclass(frozen=True)
class GroupChatTerminatedEvent:
    reason: str


GroupChatEvent = (
    GroupChatAgentMessageEvent | GroupChatAgentCompletionEvent | GroupChatUserMessageEvent | GroupChatTerminatedEvent
)

UserInputCallback = Callable[[list[ChatMessage]], "str | None | Awaitable[str | None]"]


@dataclass
class GroupChatRun:
    final_output: str | None
    events: list[GroupChatEvent] = field(default_factory=list)
    transcript: list[ChatMessage] = field(default_factory=list)
    rounds: int = 0


class GroupChatOrchestrator(BaseOrchestrator[GroupChatEvent]):
    """Run a manager-driven conversation between agents.

    Each round the manager may request user input, decide to stop, and otherwise selects the next speaker. A
    speaker that completes ends the chat.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        model: str | None = None,
        manager: GroupChatManager | None = None,
    ) -> None:
        super().__init__(provider, model)
        if manager is None:
            manager = RoundRobinGroupChatManager(load_orchestration_settings()["group_chat_max_rounds"])
        self.manager = manager
        self._roster: list[Agent] = []
        self._user_input_callback: UserInputCallback | None = None

    @property
    def agents(self) -> list[Agent]:
        return list(self._roster)

    def add_agent(self, agent: Agent) -> None:
        self._roster.append(agent)

    def with_user_input_callback(self, callback: UserInputCallback) -> Self:
        """Provide user messages when the manager asks for them; returning ``None`` skips the prompt."""
        self._user_input_callback = callback
        return self

    def _wants_user_input(self, rounds: int, transcript: Sequence[ChatMessage]) -> bool:
        hook = getattr(self.manager, "should_request_user_input", None)
        return bool(hook(rounds, transcript)) if hook is not None else False

    async def run(self, task: str) -> GroupChatRun:
        """Run the chat on ``task``.

        Raises:
            NoAgentsRegisteredError: The roster is empty.
            InvalidManagerDecisionError: The manager selected no one, or asked for user input without a callback.
            UnknownAgentError: The manager selected an agent outside the roster.
        """
        if not self._roster:
            raise NoAgentsRegisteredError()

        transcript = [ChatMessage.user(task)]
        events: list[GroupChatEvent] = []
        final_output: str | None = None
        rounds = 0
        metrics = self._new_metrics("group_chat")
        timer = ExecutionTimer()

        self.manager.on_start(self._roster)
        with orchestration_span("group_chat", agents=len(self._roster)) as span:
            try:
                while True:
                    if self._wants_user_input(rounds, transcript):
                        if self._user_input_callback is None:
                            raise InvalidManagerDecisionError("user input requested but no callback provided")
                        reply = self._user_input_callback(list(transcript))
                        if inspect.isawaitable(reply):
                            reply = await reply
                        if reply is not None:
                            transcript.append(ChatMessage.user(reply))
                            final_output = reply
                            self._emit(events, GroupChatUserMessageEvent(reply))

                    if self.manager.should_terminate(rounds, transcript):
                        self._emit(events, GroupChatTerminatedEvent("manager requested termination"))
                        break

                    limit = self.manager.max_rounds()
                    if limit is not None and rounds >= limit:
                        self._emit(events, GroupChatTerminatedEvent(f"maximum rounds {limit} reached"))
                        break

                    name = self.manager.select_next_agent(self._roster, transcript, rounds)
                    if name is None:
                        raise InvalidManagerDecisionError("manager returned no agent")
                    agent = next((candidate for candidate in self._roster if candidate.name == name), None)
                    if agent is None:
                        raise UnknownAgentError(name)

                    logger.debug("Group chat round %d: %s", rounds + 1, agent.name)
                    turn = await agent.execute(self.provider, self.model, transcript)
                    rounds += 1
                    record_turn(metrics, turn, timer)

                    action = turn.action
                    if isinstance(action, Respond):
                        push_agent_message(transcript, agent.name, action.message)
                        final_output = action.message
                        self._emit(events, GroupChatAgentMessageEvent(agent.name, action.message))
                    elif isinstance(action, HandOff):
                        text = action.message or ""
                        push_agent_message(transcript, agent.name, text)
                        final_output = text
                        self._emit(events, GroupChatAgentMessageEvent(agent.name, text))
                    elif isinstance(action, Complete):
                        if action.message is not None:
                            push_agent_message(transcript, agent.name, action.message)
                            final_output = action.message
                        self._emit(events, GroupChatAgentCompletionEvent(agent.name, action.message))
                        break
            except Exception as ex:
                self._finish_metrics(metrics, timer, succeeded=False, output_length=0, rounds=rounds, error=ex)
                raise

            span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)

        self._finish_metrics(
            metrics, timer, succeeded=True, output_length=len(final_output or ""), rounds=rounds
        )
        return GroupChatRun(final_output=final_output, events=events, transcript=transcript, rounds=rounds)
