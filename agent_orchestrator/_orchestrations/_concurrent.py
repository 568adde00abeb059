# Copyright (c) Microsoft. All rights reserved.

import asyncio
import logging
from dataclasses import dataclass, field

from .._actions import Complete, HandOff, Respond
from .._agents import Agent, AgentTurn
from .._clients import CompletionProvider
from .._metrics import AgentMetrics, ExecutionTimer
from .._types import ChatMessage
from ..exceptions import NoAgentsRegisteredError
from ..observability import orchestration_span
from ._base import BaseOrchestrator, output_length, push_agent_message, record_turn

logger = logging.getLogger(__name__)

__all__ = [
    "ConcurrentCompletedEvent",
    "ConcurrentEvent",
    "ConcurrentMessageEvent",
    "ConcurrentOrchestrator",
    "ConcurrentResult",
    "ConcurrentRun",
]


@dataclass(frozen=True)
class ConcurrentMessageEvent:
    agent: str
    output: str


@dataclass(frozen=True)
class ConcurrentCompletedEvent:
    agent: str
    output: str | None


ConcurrentEvent = ConcurrentMessageEvent | ConcurrentCompletedEvent


@dataclass(frozen=True)
class ConcurrentResult:
    agent: str
    output: str | None


@dataclass
class ConcurrentRun:
    """Results in completion order, plus the transcript of the task and every reply."""

    results: list[ConcurrentResult] = field(default_factory=list)
    events: list[ConcurrentEvent] = field(default_factory=list)
    transcript: list[ChatMessage] = field(default_factory=list)
    metrics: list[AgentMetrics] | None = None


class ConcurrentOrchestrator(BaseOrchestrator[ConcurrentEvent]):
    """Fan a task out to every agent at once and collect the replies as they arrive.

    Agents do not see each other's replies: each one receives only the task. The first failing agent aborts the
    run and the turns still in flight are cancelled.
    """

    def __init__(self, provider: CompletionProvider, model: str | None = None) -> None:
        super().__init__(provider, model)
        self._roster: list[Agent] = []

    @property
    def agents(self) -> list[Agent]:
        return list(self._roster)

    def add_agent(self, agent: Agent) -> None:
        self._roster.append(agent)

    async def _run_agent(self, agent: Agent, task: str) -> tuple[Agent, AgentTurn, AgentMetrics | None]:
        metrics = self._new_metrics(agent.name)
        timer = ExecutionTimer()
        try:
            turn = await agent.execute(self.provider, self.model, [ChatMessage.user(task)])
        except Exception as ex:
            self._finish_metrics(metrics, timer, succeeded=False, output_length=0, rounds=1, error=ex)
            raise
        record_turn(metrics, turn, timer)
        self._finish_metrics(metrics, timer, succeeded=True, output_length=output_length(turn.action), rounds=1)
        return agent, turn, metrics

    async def run(self, task: str) -> ConcurrentRun:
        """Run every agent on ``task`` concurrently.

        Raises:
            NoAgentsRegisteredError: The roster is empty.
        """
        if not self._roster:
            raise NoAgentsRegisteredError()

        transcript = [ChatMessage.user(task)]
        events: list[ConcurrentEvent] = []
        results: list[ConcurrentResult] = []
        collected: list[AgentMetrics] | None = [] if self._metrics_collector is not None else None

        with orchestration_span("concurrent", agents=len(self._roster)):
            tasks = [asyncio.create_task(self._run_agent(agent, task)) for agent in self._roster]
            try:
                for completed in asyncio.as_completed(tasks):
                    agent, turn, metrics = await completed
                    if collected is not None and metrics is not None:
                        collected.append(metrics)

                    action = turn.action
                    if isinstance(action, Respond):
                        push_agent_message(transcript, agent.name, action.message)
                        self._emit(events, ConcurrentMessageEvent(agent.name, action.message))
                        results.append(ConcurrentResult(agent.name, action.message))
                    elif isinstance(action, HandOff):
                        text = action.message or ""
                        push_agent_message(transcript, agent.name, text)
                        self._emit(events, ConcurrentMessageEvent(agent.name, text))
                        results.append(ConcurrentResult(agent.name, text))
                    elif isinstance(action, Complete):
                        if action.message is not None:
                            push_agent_message(transcript, agent.name, action.message)
                        self._emit(events, ConcurrentCompletedEvent(agent.name, action.message))
                        results.append(ConcurrentResult(agent.name, action.message))
            finally:
                pending = [pending_task for pending_task in tasks if not pending_task.done()]
                for pending_task in pending:
                    pending_task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug("Concurrent run collected %d results", len(results))
        return ConcurrentRun(results=results, events=events, transcript=transcript, metrics=collected)
