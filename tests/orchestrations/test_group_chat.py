# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Sequence

import pytest

from agent_orchestrator import (
    Agent,
    ChatMessage,
    GroupChatAgentCompletionEvent,
    GroupChatAgentMessageEvent,
    GroupChatManager,
    GroupChatOrchestrator,
    GroupChatTerminatedEvent,
    GroupChatUserMessageEvent,
    RoundRobinGroupChatManager,
    ScriptedCompletionProvider,
)
from agent_orchestrator.exceptions import InvalidManagerDecisionError, NoAgentsRegisteredError, UnknownAgentError


class FixedSpeakerManager:
    """Always picks the same speaker."""

    def __init__(self, speaker: str | None) -> None:
        self.speaker = speaker

    def on_start(self, roster: Sequence[Agent]) -> None:
        pass

    def select_next_agent(self, roster: Sequence[Agent], transcript: Sequence[ChatMessage], round: int) -> str | None:
        return self.speaker

    def should_terminate(self, round: int, transcript: Sequence[ChatMessage]) -> bool:
        return False

    def max_rounds(self) -> int | None:
        return 3


def test_round_robin_manager_cycles(writer: Agent, editor: Agent):
    manager = RoundRobinGroupChatManager(maximum_rounds=4)
    manager.on_start([writer, editor])

    picks = [manager.select_next_agent([writer, editor], [], round) for round in range(3)]

    assert picks == ["writer", "editor", "writer"]
    assert isinstance(manager, GroupChatManager)
    assert manager.should_terminate(4, []) is True
    assert manager.should_request_user_input(2, []) is False


def test_round_robin_user_prompt_frequency():
    manager = RoundRobinGroupChatManager().with_user_prompt_frequency(2)

    assert [manager.should_request_user_input(round, []) for round in range(5)] == [False, False, True, False, True]


async def test_round_robin_chat_runs_until_maximum_rounds(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(["Draft one.", "Edit one.", "Draft two."])
    orchestrator = GroupChatOrchestrator(provider, "gpt-4o", RoundRobinGroupChatManager(3)).with_agents(
        [writer, editor]
    )

    run = await orchestrator.run("Write a slogan.")

    assert run.rounds == 3
    assert run.final_output == "Draft two."
    assert run.events == [
        GroupChatAgentMessageEvent("writer", "Draft one."),
        GroupChatAgentMessageEvent("editor", "Edit one."),
        GroupChatAgentMessageEvent("writer", "Draft two."),
        GroupChatTerminatedEvent("manager requested termination"),
    ]
    assert [message.name for message in run.transcript] == [None, "writer", "editor", "writer"]


async def test_completion_ends_the_chat(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(["Draft one.", '{"action": "complete", "message": "Ship it."}'])
    orchestrator = GroupChatOrchestrator(provider, "gpt-4o", RoundRobinGroupChatManager(10)).with_agents(
        [writer, editor]
    )

    run = await orchestrator.run("Write a slogan.")

    assert run.rounds == 2
    assert run.final_output == "Ship it."
    assert run.events[-1] == GroupChatAgentCompletionEvent("editor", "Ship it.")


async def test_user_input_is_requested_between_rounds(writer: Agent, editor: Agent):
    provider = ScriptedCompletionProvider(["Draft one.", "Edit one."])
    prompts: list[int] = []

    async def ask_user(transcript: list[ChatMessage]) -> str:
        prompts.append(len(transcript))
        return "Make it shorter."

    manager = RoundRobinGroupChatManager(maximum_rounds=2, user_prompt_frequency=1)
    orchestrator = (
        GroupChatOrchestrator(provider, "gpt-4o", manager).with_agents([writer, editor]).with_user_input_callback(ask_user)
    )

    run = await orchestrator.run("Write a slogan.")

    assert prompts == [2, 4]
    assert GroupChatUserMessageEvent("Make it shorter.") in run.events
    assert run.final_output == "Make it shorter."
    assert provider.requests[1].messages[-1].text == "Make it shorter."


async def test_user_callback_returning_none_is_skipped(writer: Agent):
    provider = ScriptedCompletionProvider(["Draft one.", "Draft two."])
    manager = RoundRobinGroupChatManager(maximum_rounds=2, user_prompt_frequency=1)
    orchestrator = (
        GroupChatOrchestrator(provider, "gpt-4o", manager).with_agents([writer]).with_user_input_callback(lambda _: None)
    )

    run = await orchestrator.run("Write a slogan.")

    assert not any(isinstance(event, GroupChatUserMessageEvent) for event in run.events)
    assert run.final_output == "Draft two."


async def test_user_input_without_callback_raises(writer: Agent):
    provider = ScriptedCompletionProvider(["Draft one."])
    manager = RoundRobinGroupChatManager(maximum_rounds=3, user_prompt_frequency=1)
    orchestrator = GroupChatOrchestrator(provider, "gpt-4o", manager).with_agents([writer])

    with pytest.raises(InvalidManagerDecisionError, match="no callback"):
        await orchestrator.run("Write a slogan.")


async def test_custom_manager_max_rounds(writer: Agent):
    provider = ScriptedCompletionProvider(["One.", "Two.", "Three."])
    orchestrator = GroupChatOrchestrator(provider, "gpt-4o", FixedSpeakerManager("writer")).with_agents([writer])

    run = await orchestrator.run("Count.")

    assert run.rounds == 3
    assert run.events[-1] == GroupChatTerminatedEvent("maximum rounds 3 reached")


async def test_manager_selecting_unknown_agent(writer: Agent):
    orchestrator = GroupChatOrchestrator(
        ScriptedCompletionProvider(), "gpt-4o", FixedSpeakerManager("ghost")
    ).with_agents([writer])

    with pytest.raises(UnknownAgentError):
        await orchestrator.run("Count.")


async def test_manager_selecting_no_one(writer: Agent):
    orchestrator = GroupChatOrchestrator(ScriptedCompletionProvider(), "gpt-4o", FixedSpeakerManager(None)).with_agents(
        [writer]
    )

    with pytest.raises(InvalidManagerDecisionError, match="no agent"):
        await orchestrator.run("Count.")


async def test_default_manager_uses_settings(monkeypatch: pytest.MonkeyPatch, provider: ScriptedCompletionProvider):
    monkeypatch.setenv("AGENT_ORCHESTRATOR_GROUP_CHAT_MAX_ROUNDS", "2")

    orchestrator = GroupChatOrchestrator(provider, "gpt-4o")

    assert orchestrator.manager.max_rounds() == 2


async def test_empty_roster_raises(provider: ScriptedCompletionProvider):
    with pytest.raises(NoAgentsRegisteredError):
        await GroupChatOrchestrator(provider, "gpt-4o").run("Count.")
