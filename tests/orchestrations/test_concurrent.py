# Copyright (c) Microsoft. All rights reserved.

import asyncio

import pytest

from agent_orchestrator import (
    Agent,
    ConcurrentCompletedEvent,
    ConcurrentMessageEvent,
    ConcurrentOrchestrator,
    InMemoryMetricsCollector,
    ScriptedCompletionProvider,
)
from agent_orchestrator.exceptions import NoAgentsRegisteredError, ProviderException


def _agent(name: str, reply: str, latency: float | None = None) -> Agent:
    return Agent(name, f"You are {name}.").with_provider(ScriptedCompletionProvider([reply], latency=latency))


async def test_every_agent_answers_the_task(provider: ScriptedCompletionProvider):
    agents = [_agent("pricing", "Price it at $4."), _agent("branding", "Call it Fizz."), _agent("legal", "All clear.")]
    orchestrator = ConcurrentOrchestrator(provider, "gpt-4o").with_agents(agents)

    run = await orchestrator.run("Plan the soda launch.")

    assert {result.agent for result in run.results} == {"pricing", "branding", "legal"}
    assert len(run.transcript) == 4
    assert run.transcript[0].text == "Plan the soda launch."
    for agent in agents:
        [request] = agent.provider.requests
        assert [message.text for message in request.messages[1:]] == ["Plan the soda launch."]


async def test_results_arrive_in_completion_order(provider: ScriptedCompletionProvider):
    slow = _agent("slow", "Slow answer.", latency=0.05)
    fast = _agent("fast", "Fast answer.")
    orchestrator = ConcurrentOrchestrator(provider, "gpt-4o").with_agents([slow, fast])

    run = await orchestrator.run("Plan the soda launch.")

    assert [result.agent for result in run.results] == ["fast", "slow"]
    assert run.events == [ConcurrentMessageEvent("fast", "Fast answer."), ConcurrentMessageEvent("slow", "Slow answer.")]


async def test_completion_without_message_is_left_out_of_transcript(provider: ScriptedCompletionProvider):
    orchestrator = ConcurrentOrchestrator(provider, "gpt-4o").with_agents(
        [_agent("pricing", '{"action": "complete"}'), _agent("branding", "Call it Fizz.")]
    )

    run = await orchestrator.run("Plan the soda launch.")

    assert len(run.results) == 2
    assert ConcurrentCompletedEvent("pricing", None) in run.events
    assert [message.name for message in run.transcript[1:]] == ["branding"]


async def test_first_failure_cancels_the_rest(provider: ScriptedCompletionProvider):
    failing = Agent("failing", "Fail.").with_provider(ScriptedCompletionProvider([RuntimeError("quota")]))
    slow = _agent("slow", "Too late.", latency=1.0)
    orchestrator = ConcurrentOrchestrator(provider, "gpt-4o").with_agents([failing, slow])

    with pytest.raises(ProviderException):
        await asyncio.wait_for(orchestrator.run("Plan the soda launch."), timeout=0.5)


async def test_metrics_per_agent(provider: ScriptedCompletionProvider):
    collector = InMemoryMetricsCollector()
    orchestrator = (
        ConcurrentOrchestrator(provider, "gpt-4o")
        .with_agents([_agent("pricing", "Price it at $4."), _agent("branding", "Call it Fizz.")])
        .with_metrics_collector(collector)
    )

    run = await orchestrator.run("Plan the soda launch.")

    assert run.metrics is not None
    assert {metrics.agent_name for metrics in run.metrics} == {"pricing", "branding"}
    assert len(collector) == 2


async def test_empty_roster_raises(provider: ScriptedCompletionProvider):
    with pytest.raises(NoAgentsRegisteredError):
        await ConcurrentOrchestrator(provider, "gpt-4o").run("anything")
