# Copyright (c) Microsoft. All rights reserved.

import json

import pytest

from agent_orchestrator import (
    Agent,
    InMemoryMetricsCollector,
    MagenticAgentMessageEvent,
    MagenticComplete,
    MagenticCompletedEvent,
    MagenticDelegate,
    MagenticManager,
    MagenticManagerDelegationEvent,
    MagenticManagerMessageEvent,
    MagenticMessage,
    MagenticOrchestrator,
    Role,
    ScriptedCompletionProvider,
    parse_manager_decision,
)
from agent_orchestrator.exceptions import (
    DuplicateAgentError,
    InvalidManagerDecisionError,
    MaxRoundsReachedError,
    NoAgentsRegisteredError,
    ProviderException,
    UnknownAgentError,
)


def _delegate(target: str, instructions: str, progress_note: str | None = None) -> str:
    return json.dumps(
        {"action": "delegate", "target": target, "instructions": instructions, "progress_note": progress_note}
    )


# region Decisions


@pytest.mark.parametrize(
    "text, expected",
    [
        (_delegate("researcher", "Find prices."), MagenticDelegate("researcher", "Find prices.")),
        ('{"action": "call_agent", "agent": "writer", "task": "Draft it."}', MagenticDelegate("writer", "Draft it.")),
        ('{"action": "status", "content": "Working on it."}', MagenticMessage("Working on it.")),
        ('{"action": "final", "response": "All done."}', MagenticComplete("All done.")),
        ('```json\n{"action": "complete", "result": "42"}\n```', MagenticComplete("42")),
        ("  I need more details.  ", MagenticMessage("I need more details.")),
        ('{"action": "delegate"}', MagenticMessage('{"action": "delegate"}')),
    ],
)
def test_parse_manager_decision(text: str, expected: object):
    assert parse_manager_decision(text) == expected


def test_parse_manager_decision_rejects_empty_text():
    with pytest.raises(InvalidManagerDecisionError):
        parse_manager_decision("   ")


def test_parse_manager_decision_treats_deep_nesting_as_message():
    text = '{"action": "complete", "result": ' + "[" * 100_000

    assert parse_manager_decision(text) == MagenticMessage(text)


# endregion

# region Runs


@pytest.fixture
def researcher() -> Agent:
    return Agent("researcher", "Research facts.", description="Finds facts")


async def test_delegate_then_complete(researcher: Agent, writer: Agent):
    provider = ScriptedCompletionProvider(
        [
            _delegate("researcher", "Find the launch date.", "Starting research."),
            "The launch is on May 1.",
            '{"action": "complete", "result": "Launch: May 1."}',
        ]
    )
    orchestrator = MagenticOrchestrator(provider, "gpt-4o").with_agents([researcher, writer])

    run = await orchestrator.run("When is the launch?")

    assert run.final_result == "Launch: May 1."
    assert run.rounds == 2
    assert run.events == [
        MagenticManagerMessageEvent("Starting research."),
        MagenticManagerDelegationEvent("researcher", "Find the launch date.", "Starting research."),
        MagenticAgentMessageEvent("researcher", "The launch is on May 1."),
        MagenticCompletedEvent("Launch: May 1."),
    ]
    assert [(message.name, message.text) for message in run.transcript[1:]] == [
        ("manager", "Starting research."),
        ("manager", "Find the launch date."),
        ("researcher", "The launch is on May 1."),
        ("manager", "Launch: May 1."),
    ]


async def test_manager_prompt_lists_roster_and_transcript(researcher: Agent, writer: Agent):
    provider = ScriptedCompletionProvider(
        [
            _delegate("researcher", "Find the launch date."),
            "The launch is on May 1.",
            '{"action": "complete", "result": "Launch: May 1."}',
        ]
    )
    orchestrator = MagenticOrchestrator(provider, "gpt-4o").with_agents([researcher, writer])

    await orchestrator.run("When is the launch?")

    first, agent_request, second = provider.requests
    assert first.messages[0].role == Role.SYSTEM
    prompt = first.messages[1].text
    assert "Task: When is the launch?" in prompt
    assert "Round: 1" in prompt
    assert "- researcher: Finds facts" in prompt
    assert "- writer: Writes marketing copy" in prompt
    assert "- User: When is the launch?" in prompt
    assert agent_request.messages[0].text == "Research facts."
    assert "- Assistant::researcher: The launch is on May 1." in second.messages[1].text


async def test_messages_only_exhaust_rounds(researcher: Agent):
    provider = ScriptedCompletionProvider(['{"action": "message", "message": "Thinking."}'] * 3)
    orchestrator = MagenticOrchestrator(provider, "gpt-4o", max_rounds=3).with_agents([researcher])

    with pytest.raises(MaxRoundsReachedError, match="within 3 rounds"):
        await orchestrator.run("When is the launch?")

    assert len(provider.requests) == 3


async def test_unknown_delegate_target(researcher: Agent):
    provider = ScriptedCompletionProvider([_delegate("accountant", "Balance the books.")])
    orchestrator = MagenticOrchestrator(provider, "gpt-4o").with_agents([researcher])

    with pytest.raises(UnknownAgentError):
        await orchestrator.run("Do the taxes.")


async def test_empty_manager_reply(researcher: Agent):
    provider = ScriptedCompletionProvider([""])
    orchestrator = MagenticOrchestrator(provider, "gpt-4o").with_agents([researcher])

    with pytest.raises(InvalidManagerDecisionError, match="empty"):
        await orchestrator.run("Anything.")


async def test_manager_provider_errors_are_wrapped(researcher: Agent):
    provider = ScriptedCompletionProvider([RuntimeError("gateway timeout")])
    orchestrator = MagenticOrchestrator(provider, "gpt-4o").with_agents([researcher])

    with pytest.raises(ProviderException, match="gateway timeout"):
        await orchestrator.run("Anything.")


async def test_custom_manager_with_own_provider(researcher: Agent):
    manager_provider = ScriptedCompletionProvider(['{"action": "complete", "result": "Short answer."}'])
    manager = MagenticManager(Agent("lead", "Lead the team.").with_provider(manager_provider).with_model("planner"))
    provider = ScriptedCompletionProvider()
    orchestrator = MagenticOrchestrator(provider, "gpt-4o", manager).with_agents([researcher])

    run = await orchestrator.run("Anything.")

    assert run.final_result == "Short answer."
    assert manager_provider.requests[0].model == "planner"
    assert "You are lead coordinating" in manager_provider.requests[0].messages[1].text
    assert provider.requests == []


def test_roster_rules(researcher: Agent, provider: ScriptedCompletionProvider):
    orchestrator = MagenticOrchestrator(provider, "gpt-4o", max_rounds=0).with_agents([researcher])

    assert orchestrator.max_rounds == 1
    with pytest.raises(DuplicateAgentError):
        orchestrator.register_agent(researcher)


async def test_empty_roster_raises(provider: ScriptedCompletionProvider):
    with pytest.raises(NoAgentsRegisteredError):
        await MagenticOrchestrator(provider, "gpt-4o").run("Anything.")


async def test_metrics_record_failure(researcher: Agent):
    collector = InMemoryMetricsCollector()
    provider = ScriptedCompletionProvider(['{"action": "message", "message": "Thinking."}'])
    orchestrator = (
        MagenticOrchestrator(provider, "gpt-4o", max_rounds=1)
        .with_agents([researcher])
        .with_metrics_collector(collector)
    )

    with pytest.raises(MaxRoundsReachedError):
        await orchestrator.run("Anything.")

    [metrics] = collector.get_agent_metrics("magentic_workflow")
    assert metrics.execution.succeeded is False
    assert metrics.execution.rounds == 1
    assert metrics.errors.error_types == ["MaxRoundsReachedError"]


# endregion
