# Copyright (c) Microsoft. All rights reserved.

from pathlib import Path

import pytest

from agent_orchestrator import (
    Agent,
    CallSettings,
    ExecutionParallel,
    FlowBuilder,
    FlowContext,
    GroupChatUserMessageEvent,
    PlannedTool,
    ScriptedCompletionProvider,
    SequentialCompletedEvent,
    ToolRegistry,
    apply_call_settings,
    execute_tool_steps,
    flatten_agent_pipeline,
)
from agent_orchestrator.exceptions import (
    FlowAgentNotFoundError,
    FunctionNotFoundError,
    InvalidRegexError,
    MissingOutputError,
    NoAgentsRegisteredError,
    ToolException,
    ToolResolutionError,
)

SUPPORT = """
agents:
  - id: triage
    model: gpt-4o-mini
    system_prompt: triage_prompt
    description: Sorts tickets
  - id: billing
    model: gpt-4o
    system_prompt: prompts/billing.md
    tools: [orders, unknown_tool]
    defaults:
      temperature: 0.2
  - id: support
    model: gpt-4o
    system_prompt: Help the customer kindly.
prompts:
  - id: triage_prompt
    text: Sort incoming tickets.
  - id: file_prompt
    file: prompts/billing.md
tools:
  - id: orders
    kind: python
    function: lookup_order
flows:
  - id: main
    entry: start
    nodes:
      - {id: start, type: input}
      - {id: classify, type: agent, agent: triage}
      - {id: route, type: decision}
      - {id: billing, type: agent, agent: billing, parameters: {max_tokens: 300}}
      - {id: support, type: agent, agent: support}
      - {id: out, type: output}
    edges:
      - {from: start, to: classify}
      - {from: classify, to: route}
      - {from: route, to: billing, condition: "route == 'billing'"}
      - {from: route, to: support, condition: else}
      - {from: billing, to: out}
      - {from: support, to: out}
  - id: empty
    entry: start
    nodes:
      - {id: start, type: input}
      - {id: out, type: output}
    edges:
      - {from: start, to: out}
  - id: ghost
    entry: who
    nodes:
      - {id: who, type: agent, agent: nobody}
"""

TOOLS = """
agents:
  - id: analyst
    model: gpt-4o
    system_prompt: Analyse the data.
  - id: pricing
    model: gpt-4o
    system_prompt: Price it.
  - id: legal
    model: gpt-4o
    system_prompt: Check it.
tools:
  - id: crm
    kind: python
    spec: tools/crm.json
flows:
  - id: main
    entry: start
    nodes:
      - {id: start, type: input}
      - {id: fetch, type: tool, tool: crm, arguments: {customer: 7}}
      - {id: fan, type: parallel}
      - {id: p, type: agent, agent: pricing}
      - {id: l, type: agent, agent: legal}
      - {id: join, type: merge}
      - {id: a, type: agent, agent: analyst}
      - {id: out, type: output}
    edges:
      - {from: start, to: fetch}
      - {from: fetch, to: fan}
      - {from: fan, to: p}
      - {from: fan, to: l}
      - {from: p, to: join}
      - {from: l, to: join}
      - {from: join, to: a}
      - {from: a, to: out}
  - id: bad_arguments
    entry: fetch
    nodes:
      - {id: fetch, type: tool, tool: crm, arguments: [1, 2]}
  - id: tools_only
    entry: fetch
    nodes:
      - {id: fetch, type: tool, tool: crm, arguments: {customer: 1}}
"""

CHAT = """
agents:
  - id: writer
    model: gpt-4o
    system_prompt: Write.
  - id: editor
    model: gpt-4o
    system_prompt: Edit.
flows:
  - id: main
    entry: start
    group_chat:
      maximum_rounds: 2
      user_prompt_frequency: 1
    nodes:
      - {id: start, type: input}
      - {id: w, type: agent, agent: writer}
      - {id: e, type: agent, agent: editor}
      - {id: out, type: output}
"""

HANDOFF = """
agents:
  - id: concierge
    model: gpt-4o
    system_prompt: Greet guests.
  - id: weather
    model: gpt-4o
    system_prompt: Report the weather.
flows:
  - id: main
    entry: start
    handoff:
      max_handoffs: 2
      max_rounds: 6
      llm_timeout_ms: 5000
      aliases:
        - {alias: wx, target: weather}
      rules:
        - id: weather-rule
          target: weather
          matcher: keywords_any
          keywords: [weather, forecast]
    nodes:
      - {id: start, type: input}
      - {id: c, type: agent, agent: concierge}
      - {id: w, type: agent, agent: weather}
      - {id: out, type: output}
  - id: bad_rule
    entry: c
    handoff:
      rules:
        - {target: weather, matcher: regex, pattern: "("}
    nodes:
      - {id: c, type: agent, agent: concierge}
"""


def lookup_order(order_id: str = "A1") -> dict:
    """Look up an order."""
    return {"order": order_id, "status": "shipped"}


def crm_lookup(customer: int) -> dict:
    return {"customer": customer, "tier": "gold"}


@pytest.fixture
def support_dir(tmp_path: Path) -> Path:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "billing.md").write_text("You handle invoices.", encoding="utf-8")
    (tmp_path / "flow.yaml").write_text(SUPPORT, encoding="utf-8")
    return tmp_path


# region Definitions


def test_agents_resolve_prompts_models_and_tools(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")
    registries = builder.build_tool_registries({"lookup_order": lookup_order})

    agents = builder.build_agents(registries)

    assert agents["triage"].instructions == "Sort incoming tickets."
    assert agents["triage"].model == "gpt-4o-mini"
    assert agents["triage"].description == "Sorts tickets"
    assert agents["billing"].instructions == "You handle invoices."
    assert agents["billing"].temperature == 0.2
    assert agents["billing"].tools is not None
    assert "lookup_order" in agents["billing"].tools
    assert agents["support"].instructions == "Help the customer kindly."
    assert agents["support"].tools is None


def test_missing_named_function(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")

    with pytest.raises(FunctionNotFoundError):
        builder.build_tool_registries({})


@pytest.mark.parametrize("key_template", ["crm", "tools/crm.json", "python:tools/crm.json", "{base}/tools/crm.json"])
def test_tool_resolution_candidates(tmp_path: Path, key_template: str):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    key = key_template.format(base=tmp_path)

    registries = builder.build_tool_registries({key: crm_lookup})

    assert "crm_lookup" in registries["crm"]


def test_unresolvable_tool(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)

    with pytest.raises(ToolResolutionError):
        builder.build_tool_registries({"something_else": crm_lookup})


def test_apply_call_settings(writer: Agent):
    tuned = apply_call_settings(writer, CallSettings(model="small", temperature=0.1, top_p=0.9, max_tokens=50))

    assert (tuned.model, tuned.temperature, tuned.top_p, tuned.max_tokens) == ("small", 0.1, 0.9, 50)
    assert apply_call_settings(writer, None) is writer


# endregion

# region Plans


def test_plan_sequential_path_applies_node_parameters(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")
    registries = builder.build_tool_registries({"lookup_order": lookup_order})

    path = builder.plan_sequential_path("main", FlowContext({"route": "billing"}), registries)

    assert [agent.name for agent in path] == ["triage", "billing"]
    assert path[1].max_tokens == 300
    assert path[1].temperature == 0.2


def test_planned_agent_must_be_defined(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")

    with pytest.raises(FlowAgentNotFoundError):
        builder.plan_sequential_path("ghost")


def test_execution_plan_and_flattening(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)

    plan = builder.build_execution_plan("main")

    assert plan[0] == PlannedTool("crm", {"customer": 7})
    assert isinstance(plan[1], ExecutionParallel)
    assert [[agent.name for agent in branch] for branch in plan[1].branches] == [["pricing"], ["legal"]]
    assert [agent.name for agent in flatten_agent_pipeline(plan)] == ["pricing", "legal", "analyst"]


async def test_execute_tool_steps(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    registries = builder.build_tool_registries({"crm": crm_lookup})

    results = await execute_tool_steps(builder.build_execution_plan("main"), registries)

    assert [(result.tool, result.value) for result in results] == [("crm", {"customer": 7, "tier": "gold"})]


async def test_execute_tool_steps_errors(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    registries = {"crm": ToolRegistry([crm_lookup])}

    with pytest.raises(ToolException, match="no tool registry"):
        await execute_tool_steps(builder.build_execution_plan("main"), {})
    with pytest.raises(ToolException, match="must be an object"):
        await execute_tool_steps(builder.build_execution_plan("bad_arguments"), registries)


# endregion

# region Orchestrators


async def test_sequential_orchestrator_from_flow(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")
    provider = ScriptedCompletionProvider(["Ticket is a question.", "Here is how to reset it."])

    orchestrator = builder.build_sequential_orchestrator(
        provider, "main", builder.build_tool_registries({"lookup_order": lookup_order})
    )
    run = await orchestrator.run("How do I reset my password?")

    assert [agent.name for agent in orchestrator.agents] == ["triage", "support"]
    assert run.final_output == "Here is how to reset it."
    assert provider.requests[0].model == "gpt-4o-mini"


def test_sequential_orchestrator_needs_agents(support_dir: Path):
    builder = FlowBuilder.from_file(support_dir / "flow.yaml")

    with pytest.raises(MissingOutputError):
        builder.build_sequential_orchestrator(ScriptedCompletionProvider(), "empty")


async def test_concurrent_orchestrator_from_flow(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    provider = ScriptedCompletionProvider(["One.", "Two.", "Three."])

    orchestrator = builder.build_concurrent_orchestrator(provider, "main")
    run = await orchestrator.run("Review the launch.")

    assert [agent.name for agent in orchestrator.agents] == ["pricing", "legal", "analyst"]
    assert len(run.results) == 3


async def test_group_chat_orchestrator_from_flow(tmp_path: Path):
    builder = FlowBuilder.from_yaml(CHAT, tmp_path)
    provider = ScriptedCompletionProvider(["First line.", "Second line."])
    prompts: list[int] = []

    def ask_user(transcript):
        prompts.append(len(transcript))
        return "user input"

    orchestrator = builder.build_group_chat_orchestrator(provider, "main").with_user_input_callback(ask_user)
    run = await orchestrator.run("hi")

    assert run.rounds == 2
    assert any(isinstance(event, GroupChatUserMessageEvent) for event in run.events)
    assert len(prompts) == 2


async def test_handoff_orchestrator_from_flow(tmp_path: Path):
    builder = FlowBuilder.from_yaml(HANDOFF, tmp_path)
    provider = ScriptedCompletionProvider(["the weather is needed", "clear skies"])

    orchestrator = builder.build_handoff_orchestrator(provider, "main")
    session = orchestrator.session("concierge")
    turn = await session.send("Should I bring an umbrella?")

    assert orchestrator.max_handoffs == 2
    assert orchestrator.max_rounds == 6
    assert orchestrator.llm_timeout_ms == 5000
    assert orchestrator.resolve_target("concierge", "wx") == "weather"
    assert session.active_agent == "weather"
    assert turn.reply == "clear skies"


def test_handoff_orchestrator_rejects_bad_regex(tmp_path: Path):
    builder = FlowBuilder.from_yaml(HANDOFF, tmp_path)

    with pytest.raises(InvalidRegexError):
        builder.build_handoff_orchestrator(ScriptedCompletionProvider(), "bad_rule")


async def test_run_sequential_flow_with_tools(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    registries = builder.build_tool_registries({"crm": crm_lookup})
    provider = ScriptedCompletionProvider(["Price: $10.", "Legal: fine.", "Summary ready."])
    events: list[object] = []

    run, tool_runs = await builder.run_sequential_flow(
        "main", None, registries, provider, "Review customer 7.", events.append
    )

    assert tool_runs[0].value == {"customer": 7, "tier": "gold"}
    assert provider.requests[0].messages[1].text == 'Review customer 7.\n[tool:crm] {"customer": 7, "tier": "gold"}\n'
    assert run.final_output == "Summary ready."
    assert events[-1] == SequentialCompletedEvent("analyst", "Summary ready.")


async def test_run_sequential_flow_without_agents(tmp_path: Path):
    builder = FlowBuilder.from_yaml(TOOLS, tmp_path)
    registries = builder.build_tool_registries({"crm": crm_lookup})

    with pytest.raises(NoAgentsRegisteredError, match="plans no agents"):
        await builder.run_sequential_flow("tools_only", None, registries, ScriptedCompletionProvider(), "task")


# endregion
