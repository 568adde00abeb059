# Copyright (c) Microsoft. All rights reserved.

import pytest

from agent_orchestrator import (
    Agent,
    ChatMessage,
    CompletionResponse,
    InMemoryMetricsCollector,
    Role,
    ScriptedCompletionProvider,
    SequentialCompletedEvent,
    SequentialOrchestrator,
    SequentialStepEvent,
    TokenUsage,
)
from agent_orchestrator.exceptions import NoAgentsRegisteredError, ProviderException
from agent_orchestrator.observability import OtelAttr


async def test_pipeline_passes_transcript_along(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(["Draft: a bold drink.", "Polished: a bold, bright drink."])
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer, editor])

    run = await orchestrator.run("Describe the new soda.")

    assert run.final_output == "Polished: a bold, bright drink."
    assert run.events == [
        SequentialStepEvent("writer", "Draft: a bold drink."),
        SequentialStepEvent("editor", "Polished: a bold, bright drink."),
        SequentialCompletedEvent("editor", "Polished: a bold, bright drink."),
    ]
    assert [message.name for message in run.transcript] == [None, "writer", "editor"]
    editor_request = provider.requests[1]
    assert [message.role for message in editor_request.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert editor_request.messages[2].text == "Draft: a bold drink."


async def test_completion_stops_the_pipeline(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(['{"action": "complete", "message": "Nothing to edit."}'])
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer, editor])

    run = await orchestrator.run("Describe the new soda.")

    assert run.final_output == "Nothing to edit."
    assert run.events == [SequentialCompletedEvent("writer", "Nothing to edit.")]
    assert len(provider.requests) == 1


async def test_completion_without_message_keeps_last_payload(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(["First draft.", '{"action": "complete"}'])
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer, editor])

    run = await orchestrator.run("Describe the new soda.")

    assert run.final_output == "First draft."
    assert run.events[-1] == SequentialCompletedEvent("editor", None)


async def test_handoff_is_treated_as_a_step(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(
        ['{"action": "hand_off", "target": "editor", "message": "Rough copy."}', "Final copy."]
    )
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer, editor])

    run = await orchestrator.run("Describe the new soda.")

    assert run.events[0] == SequentialStepEvent("writer", "Rough copy.")
    assert run.final_output == "Final copy."


async def test_empty_pipeline_raises(provider: ScriptedCompletionProvider):
    with pytest.raises(NoAgentsRegisteredError):
        await SequentialOrchestrator(provider, "gpt-4o").run("anything")


async def test_callback_failures_do_not_stop_the_run(writer: Agent):
    seen: list[object] = []

    def callback(event: object) -> None:
        seen.append(event)
        raise RuntimeError("observer crashed")

    provider = ScriptedCompletionProvider(["Copy."])
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer]).with_event_callback(callback)

    run = await orchestrator.run("Describe the new soda.")

    assert seen == run.events
    assert len(seen) == 2


async def test_metrics_are_collected(writer: Agent, editor: Agent):
    usage = TokenUsage(prompt_tokens=5, completion_tokens=5, total_tokens=10)
    provider = ScriptedCompletionProvider(
        [
            CompletionResponse(ChatMessage.assistant("Draft."), usage=usage),
            CompletionResponse(ChatMessage.assistant("Final copy."), usage=usage),
        ]
    )
    collector = InMemoryMetricsCollector()
    orchestrator = (
        SequentialOrchestrator(provider, "gpt-4o").with_agents([writer, editor]).with_metrics_collector(collector)
    )

    run = await orchestrator.run("Describe the new soda.")

    assert run.metrics is not None
    assert run.metrics.agent_name == "sequential_flow"
    assert run.metrics.execution.rounds == 2
    assert run.metrics.execution.succeeded is True
    assert run.metrics.token_usage.total_tokens == 20
    assert collector.get_agent_metrics("sequential_flow") == [run.metrics]


async def test_failures_are_recorded_and_raised(writer: Agent):
    collector = InMemoryMetricsCollector()
    provider = ScriptedCompletionProvider([RuntimeError("provider down")])
    orchestrator = SequentialOrchestrator(provider, "gpt-4o").with_agents([writer]).with_metrics_collector(collector)

    with pytest.raises(ProviderException):
        await orchestrator.run("Describe the new soda.")

    [metrics] = collector.get_agent_metrics("sequential_flow")
    assert metrics.execution.succeeded is False
    assert metrics.errors.error_types == ["ProviderException"]


async def test_run_emits_orchestration_span(writer: Agent, span_exporter):
    provider = ScriptedCompletionProvider(["Copy."])

    await SequentialOrchestrator(provider, "gpt-4o").with_agents([writer]).run("Describe the new soda.")

    run_span = next(span for span in span_exporter.get_finished_spans() if span.name == "orchestration.run")
    assert run_span.attributes[OtelAttr.ORCHESTRATION_KIND.value] == "sequential"
    assert run_span.attributes[OtelAttr.ORCHESTRATION_ROUNDS.value] == 1
