# Copyright (c) Microsoft. All rights reserved.

"""Execution, token, tool and cost metrics collected per orchestrator run.

Metrics are only gathered when an orchestrator has a collector attached. Costs are rough estimates meant for
comparing runs, not for billing.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

from ._types import TokenUsage

__all__ = [
    "AgentMetrics",
    "AggregatedMetrics",
    "CostMetrics",
    "ErrorMetrics",
    "ExecutionMetrics",
    "ExecutionTimer",
    "FunctionCallMetrics",
    "InMemoryMetricsCollector",
    "MetricsCollector",
    "TokenUsageMetrics",
]

DEFAULT_COST_PER_INPUT_TOKEN = 0.000001
DEFAULT_COST_PER_OUTPUT_TOKEN = 0.000002
MAX_ERROR_MESSAGE_LENGTH = 200


@dataclass
class ExecutionMetrics:
    total_duration: timedelta = field(default_factory=timedelta)
    rounds: int = 0
    succeeded: bool = False
    output_length: int = 0


@dataclass
class TokenUsageMetrics:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_per_input_token: float = DEFAULT_COST_PER_INPUT_TOKEN
    cost_per_output_token: float = DEFAULT_COST_PER_OUTPUT_TOKEN


@dataclass
class FunctionCallMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    called_functions: list[str] = field(default_factory=list)
    avg_function_duration: timedelta | None = None


@dataclass
class ErrorMetrics:
    error_count: int = 0
    error_types: list[str] = field(default_factory=list)
    error_messages: list[str] = field(default_factory=list)


@dataclass
class CostMetrics:
    estimated_cost_usd: float = 0.0
    cost_breakdown: dict[str, float] = field(default_factory=dict)
    cost_per_round: float = 0.0


@dataclass
class AgentMetrics:
    """Metrics for one agent, or one orchestrator run, identified by ``agent_name``."""

    agent_name: str
    execution: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    token_usage: TokenUsageMetrics = field(default_factory=TokenUsageMetrics)
    function_calls: FunctionCallMetrics = field(default_factory=FunctionCallMetrics)
    errors: ErrorMetrics = field(default_factory=ErrorMetrics)
    cost: CostMetrics = field(default_factory=CostMetrics)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_token_usage(
        self,
        usage: TokenUsage,
        input_cost: float | None = None,
        output_cost: float | None = None,
    ) -> None:
        """Add ``usage`` and its estimated cost. Costs default to the current per-token rates."""
        if input_cost is None:
            input_cost = self.token_usage.cost_per_input_token
        if output_cost is None:
            output_cost = self.token_usage.cost_per_output_token
        self.token_usage.input_tokens += usage.prompt_tokens
        self.token_usage.output_tokens += usage.completion_tokens
        self.token_usage.total_tokens += usage.total_tokens
        self.token_usage.cost_per_input_token = input_cost
        self.token_usage.cost_per_output_token = output_cost

        token_cost = usage.prompt_tokens * input_cost + usage.completion_tokens * output_cost
        self.cost.estimated_cost_usd += token_cost
        self.cost.cost_breakdown["tokens"] = token_cost

    def record_function_call(self, function_name: str, duration: timedelta, success: bool) -> None:
        calls = self.function_calls
        calls.total_calls += 1
        if success:
            calls.successful_calls += 1
        else:
            calls.failed_calls += 1
        if function_name not in calls.called_functions:
            calls.called_functions.append(function_name)

        if calls.avg_function_duration is None:
            total = duration
        else:
            total = calls.avg_function_duration * (calls.total_calls - 1) + duration
        calls.avg_function_duration = total / calls.total_calls

        function_cost = estimate_function_call_cost(function_name, duration)
        self.cost.estimated_cost_usd += function_cost
        self.cost.cost_breakdown[f"functions:{function_name}"] = function_cost

    def record_error(self, error: BaseException) -> None:
        self.errors.error_count += 1
        self.errors.error_types.append(type(error).__name__)
        message = str(error)
        if len(message) > MAX_ERROR_MESSAGE_LENGTH:
            message = f"{message[:MAX_ERROR_MESSAGE_LENGTH]}..."
        self.errors.error_messages.append(message)

    def finalize(self, succeeded: bool, output_length: int, rounds: int) -> None:
        self.execution.succeeded = succeeded
        self.execution.output_length = output_length
        self.execution.rounds = rounds
        if rounds > 0:
            self.cost.cost_per_round = self.cost.estimated_cost_usd / rounds

    def success_rate(self) -> float:
        """Share of successful function calls; 1.0 when no function was called."""
        if self.function_calls.total_calls == 0:
            return 1.0
        return self.function_calls.successful_calls / self.function_calls.total_calls

    def error_rate(self) -> float:
        if self.errors.error_count == 0:
            return 0.0
        return self.errors.error_count / (self.errors.error_count + self.execution.rounds)


def estimate_function_call_cost(function_name: str, duration: timedelta) -> float:
    """Estimate a function call's cost from a base fee, its duration and the kind of work its name suggests."""
    base_cost = 0.0001
    duration_cost = duration.total_seconds() * 0.00001
    if "search" in function_name or "query" in function_name:
        complexity_cost = 0.0005
    elif "generate" in function_name or "create" in function_name:
        complexity_cost = 0.001
    elif "analyze" in function_name or "process" in function_name:
        complexity_cost = 0.002
    else:
        complexity_cost = 0.0002
    return base_cost + duration_cost + complexity_cost


@dataclass
class AggregatedMetrics:
    total_executions: int
    total_cost_usd: float
    total_tokens: int
    average_success_rate: float
    average_execution_time: timedelta
    by_agent: dict[str, list[AgentMetrics]]
    cost_breakdown: dict[str, float]
    time_range: tuple[datetime, datetime]


@runtime_checkable
class MetricsCollector(Protocol):
    """Receives the metrics of finished runs."""

    def record_metrics(self, metrics: AgentMetrics) -> None: ...

    def get_aggregated_metrics(self) -> AggregatedMetrics: ...

    def get_agent_metrics(self, agent_name: str) -> list[AgentMetrics]: ...

    def clear_metrics(self) -> None: ...


class InMemoryMetricsCollector:
    """Thread-safe collector that keeps every recorded metric in a list."""

    def __init__(self) -> None:
        self._metrics: list[AgentMetrics] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def record_metrics(self, metrics: AgentMetrics) -> None:
        with self._lock:
            self._metrics.append(metrics)

    def get_aggregated_metrics(self) -> AggregatedMetrics:
        with self._lock:
            metrics = list(self._metrics)

        if not metrics:
            now = datetime.now(timezone.utc)
            return AggregatedMetrics(
                total_executions=0,
                total_cost_usd=0.0,
                total_tokens=0,
                average_success_rate=0.0,
                average_execution_time=timedelta(),
                by_agent={},
                cost_breakdown={},
                time_range=(now, now),
            )

        by_agent: dict[str, list[AgentMetrics]] = {}
        cost_breakdown: dict[str, float] = {}
        total_execution_time = timedelta()
        for metric in metrics:
            by_agent.setdefault(metric.agent_name, []).append(metric)
            total_execution_time += metric.execution.total_duration
            for category, cost in metric.cost.cost_breakdown.items():
                cost_breakdown[category] = cost_breakdown.get(category, 0.0) + cost

        count = len(metrics)
        timestamps = [metric.timestamp for metric in metrics]
        return AggregatedMetrics(
            total_executions=count,
            total_cost_usd=sum(metric.cost.estimated_cost_usd for metric in metrics),
            total_tokens=sum(metric.token_usage.total_tokens for metric in metrics),
            average_success_rate=sum(metric.success_rate() for metric in metrics) / count,
            average_execution_time=total_execution_time / count,
            by_agent=by_agent,
            cost_breakdown=cost_breakdown,
            time_range=(min(timestamps), max(timestamps)),
        )

    def get_agent_metrics(self, agent_name: str) -> list[AgentMetrics]:
        with self._lock:
            return [metric for metric in self._metrics if metric.agent_name == agent_name]

    def clear_metrics(self) -> None:
        with self._lock:
            self._metrics.clear()


class ExecutionTimer:
    """Measures elapsed wall time from construction."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed(self) -> timedelta:
        return timedelta(seconds=time.perf_counter() - self._start)
