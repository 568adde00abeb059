# Copyright (c) Microsoft. All rights reserved.

"""Shared orchestrator plumbing: event fan-out, metrics bookkeeping and transcript helpers."""

import logging
import sys
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from .._actions import AgentAction, Complete, HandOff, Respond
from .._agents import Agent, AgentTurn
from .._clients import CompletionProvider
from .._metrics import AgentMetrics, ExecutionTimer, MetricsCollector
from .._settings import load_orchestration_settings
from .._shared_state import SharedStateContext
from .._types import ChatMessage

if sys.version_info >= (3, 11):
    from typing import Self  # pragma: no cover
else:
    from typing_extensions import Self  # pragma: no cover

logger = logging.getLogger(__name__)

__all__ = ["BaseOrchestrator"]

EventT = TypeVar("EventT")


class BaseOrchestrator(Generic[EventT]):
    """Common surface of every orchestrator.

    Event callbacks and metrics collectors are observers: an exception raised by either is logged and never
    interrupts the run.
    """

    def __init__(self, provider: CompletionProvider, model: str | None = None) -> None:
        self.provider = provider
        self.model = model or load_orchestration_settings()["default_model"] or "gpt-4o"
        self._event_callback: Callable[[EventT], Any] | None = None
        self._metrics_collector: MetricsCollector | None = None
        self._shared_state: SharedStateContext | None = None

    def add_agent(self, agent: Agent) -> Any:
        raise NotImplementedError

    def with_agents(self, agents: Iterable[Agent]) -> Self:
        for agent in agents:
            self.add_agent(agent)
        return self

    def with_event_callback(self, callback: Callable[[EventT], Any]) -> Self:
        """Invoke ``callback`` synchronously with every event as it is emitted."""
        self._event_callback = callback
        return self

    def with_metrics_collector(self, collector: MetricsCollector) -> Self:
        self._metrics_collector = collector
        return self

    def with_shared_state(self, shared_state: SharedStateContext) -> Self:
        self._shared_state = shared_state
        return self

    @property
    def shared_state(self) -> SharedStateContext | None:
        return self._shared_state

    @property
    def metrics_collector(self) -> MetricsCollector | None:
        return self._metrics_collector

    def _emit(self, events: list[EventT], event: EventT) -> None:
        events.append(event)
        if self._event_callback is None:
            return
        try:
            self._event_callback(event)
        except Exception:
            logger.warning("Event callback failed for %s", type(event).__name__, exc_info=True)

    def _new_metrics(self, name: str) -> AgentMetrics | None:
        return AgentMetrics(name) if self._metrics_collector is not None else None

    def _finish_metrics(
        self,
        metrics: AgentMetrics | None,
        timer: ExecutionTimer,
        *,
        succeeded: bool,
        output_length: int,
        rounds: int,
        error: BaseException | None = None,
    ) -> AgentMetrics | None:
        """Finalize ``metrics`` and hand them to the collector."""
        if metrics is None or self._metrics_collector is None:
            return metrics
        if error is not None:
            metrics.record_error(error)
        metrics.execution.total_duration = timer.elapsed()
        metrics.finalize(succeeded, output_length, rounds)
        try:
            self._metrics_collector.record_metrics(metrics)
        except Exception:
            logger.warning("Metrics collector failed for %s", metrics.agent_name, exc_info=True)
        return metrics


def push_agent_message(transcript: list[ChatMessage], agent_name: str, text: str) -> None:
    transcript.append(ChatMessage.assistant(text, name=agent_name))


def record_turn(metrics: AgentMetrics | None, turn: AgentTurn, timer: ExecutionTimer) -> None:
    """Add a turn's token usage and tool calls to ``metrics``."""
    if metrics is None:
        return
    if turn.usage is not None:
        metrics.record_token_usage(turn.usage)
    for call in turn.tool_calls:
        metrics.record_function_call(call.function.name, timer.elapsed(), True)


def action_text(action: AgentAction) -> str | None:
    if isinstance(action, Respond):
        return action.message
    if isinstance(action, (HandOff, Complete)):
        return action.message
    return None


def output_length(action: AgentAction) -> int:
    return len(action_text(action) or "")
