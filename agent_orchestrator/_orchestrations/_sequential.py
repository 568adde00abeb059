# Copyright (c) Microsoft. All rights reserved.

"""Sequential orchestration: a fixed pipeline of agents sharing one transcript.

Each agent runs once, in order, against everything said so far. The output of a step becomes the payload handed
to the rest of the pipeline, and an agent that completes stops the pipeline early.
"""

import logging
from dataclasses import dataclass, field

from .._actions import Complete, HandOff, Respond
from .._agents import Agent
from .._clients import CompletionProvider
from .._metrics import AgentMetrics, ExecutionTimer
from .._types import ChatMessage
from ..exceptions import NoAgentsRegisteredError
from ..observability import OtelAttr, orchestration_span
from ._base import BaseOrchestrator, push_agent_message, record_turn

logger = logging.getLogger(__name__)

__all__ = [
    "SequentialCompletedEvent",
    "SequentialEvent",
    "SequentialOrchestrator",
    "SequentialRun",
    "SequentialStepEvent",
]


@dataclass(frozen=True)
class SequentialStepEvent:
    agent: str
    output: str


@dataclass(frozen=True)
class SequentialCompletedEvent:
    agent: str
    output: str | None


SequentialEvent = SequentialStepEvent | SequentialCompletedEvent


@dataclass
class SequentialRun:
    final_output: str | None
    events: list[SequentialEvent] = field(default_factory=list)
    transcript: list[ChatMessage] = field(default_factory=list)
    metrics: AgentMetrics | None = None


class SequentialOrchestrator(BaseOrchestrator[SequentialEvent]):
    """Run agents one after another.

    The last agent always produces a :class:`SequentialCompletedEvent`, so the final output of a pipeline whose
    agents only reply is the last non-empty payload.

    Examples:
        .. code-block:: python

            orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([analyst, writer, editor])
            run = await orchestrator.run("Describe our new product.")
            print(run.final_output)
    """

    def __init__(self, provider: CompletionProvider, model: str | None = None) -> None:
        super().__init__(provider, model)
        self._pipeline: list[Agent] = []

    @property
    def agents(self) -> list[Agent]:
        return list(self._pipeline)

    def add_agent(self, agent: Agent) -> None:
        self._pipeline.append(agent)

    async def run(self, task: str) -> SequentialRun:
        """Run the pipeline on ``task``.

        Raises:
            NoAgentsRegisteredError: The pipeline is empty.
        """
        if not self._pipeline:
            raise NoAgentsRegisteredError()

        transcript = [ChatMessage.user(task)]
        events: list[SequentialEvent] = []
        payload = task
        metrics = self._new_metrics("sequential_flow")
        timer = ExecutionTimer()
        rounds = 0

        with orchestration_span("sequential", agents=len(self._pipeline)) as span:
            for agent in self._pipeline:
                logger.debug("Sequential step %d: %s", rounds + 1, agent.name)
                try:
                    turn = await agent.execute(self.provider, self.model, transcript)
                except Exception as ex:
                    self._finish_metrics(metrics, timer, succeeded=False, output_length=0, rounds=rounds, error=ex)
                    raise
                rounds += 1
                record_turn(metrics, turn, timer)

                action = turn.action
                if isinstance(action, Respond):
                    push_agent_message(transcript, agent.name, action.message)
                    payload = action.message
                    self._emit(events, SequentialStepEvent(agent.name, action.message))
                elif isinstance(action, HandOff):
                    text = action.message or ""
                    push_agent_message(transcript, agent.name, text)
                    if text:
                        payload = text
                    self._emit(events, SequentialStepEvent(agent.name, text))
                elif isinstance(action, Complete):
                    if action.message is not None:
                        push_agent_message(transcript, agent.name, action.message)
                        payload = action.message
                    self._emit(events, SequentialCompletedEvent(agent.name, action.message))
                    final_output = action.message if action.message is not None else payload
                    span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)
                    return SequentialRun(
                        final_output=final_output,
                        events=events,
                        transcript=transcript,
                        metrics=self._finish_metrics(
                            metrics, timer, succeeded=True, output_length=len(final_output), rounds=rounds
                        ),
                    )

            last = self._pipeline[-1]
            self._emit(events, SequentialCompletedEvent(last.name, payload))
            span.set_attribute(OtelAttr.ORCHESTRATION_ROUNDS.value, rounds)
            return SequentialRun(
                final_output=payload,
                events=events,
                transcript=transcript,
                metrics=self._finish_metrics(metrics, timer, succeeded=True, output_length=len(payload), rounds=rounds),
            )
