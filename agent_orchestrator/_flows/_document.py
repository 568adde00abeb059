# Copyright (c) Microsoft. All rights reserved.

"""Pydantic models of the YAML flow document format.

A document holds agent, tool and prompt definitions plus one or more flows. Each flow is a graph of typed nodes
joined by edges; nodes are a union discriminated by their ``type`` field and edges reference nodes as
``"<node-id>[:<output-label>]"``.

.. code-block:: yaml

    agents:
      - id: writer
        model: gpt-4o
        system_prompt: Write punchy marketing copy.
    flows:
      - id: main
        entry: start
        nodes:
          - id: start
            type: input
          - id: write
            type: agent
            agent: writer
          - id: end
            type: output
        edges:
          - from: start
            to: write
          - from: write
            to: end
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, ValidationError, model_serializer

from ..exceptions import FlowLoadError, FlowNotFoundError

__all__ = [
    "AgentDefinition",
    "AgentNode",
    "CallSettings",
    "DecisionNode",
    "DecisionStrategy",
    "FlowDefinition",
    "FlowDocument",
    "FlowEdge",
    "FlowMetadata",
    "FlowNode",
    "GroupChatOptions",
    "HandoffAliasDefinition",
    "HandoffOptions",
    "HandoffRuleDefinition",
    "InputNode",
    "LoopNode",
    "MergeNode",
    "NodeInput",
    "NodeLayout",
    "NodeOutput",
    "OutputNode",
    "ParallelNode",
    "PromptDefinition",
    "RetryPolicy",
    "SubflowNode",
    "ToolDefinition",
    "ToolNode",
    "edge_base",
]


class _FlowModel(BaseModel):
    """Base of every document model; ``None`` values and empty lists are left out when serialising."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_serializer(mode="wrap")
    def _omit_empty(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        return {key: value for key, value in data.items() if value is not None and value != []}


# region Definitions


class RetryPolicy(_FlowModel):
    max: int
    backoff_ms: int | None = None


class CallSettings(_FlowModel):
    """Per-call overrides applied to an agent."""

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    timeout_ms: int | None = None
    retry: RetryPolicy | None = None


class FlowMetadata(_FlowModel):
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)


class AgentDefinition(_FlowModel):
    """An agent of the document.

    ``system_prompt`` is either the id of a prompt definition, a file path relative to the document, or the
    instructions themselves.
    """

    id: str
    model: str
    name: str | None = None
    description: str | None = None
    system_prompt: str | None = None
    tools: list[str] = Field(default_factory=list)
    defaults: CallSettings | None = None


class ToolDefinition(_FlowModel):
    id: str
    kind: str
    description: str | None = None
    spec: str | None = None
    function: str | None = None


class PromptDefinition(_FlowModel):
    id: str
    file: str | None = None
    text: str | None = None
    description: str | None = None


# endregion

# region Nodes


class NodeInput(_FlowModel):
    from_: str = Field(alias="from")


class NodeOutput(_FlowModel):
    label: str
    condition: str | None = None


class NodeLayout(_FlowModel):
    x: float
    y: float


class _NodeBase(_FlowModel):
    id: str
    name: str | None = None
    description: str | None = None
    inputs: list[NodeInput] = Field(default_factory=list)
    outputs: list[NodeOutput] = Field(default_factory=list)
    layout: NodeLayout | None = None


class DecisionStrategy(str, Enum):
    LLM = "llm"
    RULE = "rule"


class InputNode(_NodeBase):
    type: Literal["input"] = "input"


class OutputNode(_NodeBase):
    """Terminal node; planning stops here."""

    type: Literal["output"] = "output"


class AgentNode(_NodeBase):
    type: Literal["agent"] = "agent"
    agent: str
    prompt: str | None = None
    tools: list[str] = Field(default_factory=list)
    parameters: CallSettings | None = None


class DecisionNode(_NodeBase):
    type: Literal["decision"] = "decision"
    prompt: str | None = None
    strategy: DecisionStrategy | None = None


class ToolNode(_NodeBase):
    type: Literal["tool"] = "tool"
    tool: str
    arguments: Any | None = None


class MergeNode(_NodeBase):
    type: Literal["merge"] = "merge"


class ParallelNode(_NodeBase):
    """Fans out along every outgoing edge. ``converge`` defaults to true when planning."""

    type: Literal["parallel"] = "parallel"
    converge: bool | None = None


class LoopNode(_NodeBase):
    """Bounds the number of times its conditional edges are taken.

    After ``max_iterations`` passes, or once ``condition`` is false, only unconditional or ``else`` edges leave
    the loop.
    """

    type: Literal["loop"] = "loop"
    max_iterations: int = Field(ge=0)
    condition: str | None = None


class SubflowNode(_NodeBase):
    type: Literal["subflow"] = "subflow"
    flow: str


FlowNode = Annotated[
    InputNode | OutputNode | AgentNode | DecisionNode | ToolNode | MergeNode | ParallelNode | LoopNode | SubflowNode,
    Field(discriminator="type"),
]


class FlowEdge(_FlowModel):
    from_: str = Field(alias="from")
    to: str
    condition: str | None = None
    label: str | None = None

    @property
    def source(self) -> str:
        """The node id of ``from``, without the output label."""
        return edge_base(self.from_)


def edge_base(reference: str) -> str:
    """Strip the ``:<output-label>`` suffix from an edge endpoint."""
    return reference.split(":", 1)[0]


# endregion

# region Orchestration options


class GroupChatOptions(_FlowModel):
    maximum_rounds: int | None = None
    user_prompt_frequency: int | None = None


class HandoffAliasDefinition(_FlowModel):
    alias: str
    target: str


class HandoffRuleDefinition(_FlowModel):
    """A deterministic routing rule; ``keywords`` apply to the keyword matchers, ``pattern`` to ``regex``."""

    id: str | None = None
    target: str
    message: str | None = None
    matcher: Literal["keywords_any", "keywords_all", "regex"]
    keywords: list[str] = Field(default_factory=list)
    pattern: str | None = None


class HandoffOptions(_FlowModel):
    max_handoffs: int | None = None
    max_rounds: int | None = None
    llm_timeout_ms: int | None = None
    aliases: list[HandoffAliasDefinition] = Field(default_factory=list)
    rules: list[HandoffRuleDefinition] = Field(default_factory=list)


# endregion


class FlowDefinition(_FlowModel):
    id: str
    entry: str
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    group_chat: GroupChatOptions | None = None
    handoff: HandoffOptions | None = None

    def node(self, node_id: str) -> FlowNode | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        """Edges leaving ``node_id``, in document order."""
        return [edge for edge in self.edges if edge.source == node_id]


class FlowDocument(_FlowModel):
    """A complete flow document.

    Examples:
        .. code-block:: python

            document = FlowDocument.from_yaml(Path("flows/support.yaml").read_text())
            assert FlowDocument.from_yaml(document.to_yaml()) == document
    """

    version: str = "0.1"
    metadata: FlowMetadata | None = None
    agents: list[AgentDefinition] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)
    prompts: list[PromptDefinition] = Field(default_factory=list)
    flows: list[FlowDefinition] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, text: str) -> "FlowDocument":
        """Parse and validate a YAML document.

        Raises:
            FlowLoadError: The text is not valid YAML or does not describe a flow document.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as ex:
            raise FlowLoadError(f"Invalid YAML: {ex}", inner_exception=ex) from ex
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise FlowLoadError("flow document must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as ex:
            raise FlowLoadError(f"Invalid flow document: {ex}", inner_exception=ex) from ex

    @classmethod
    def from_file(cls, path: str | Path, *, encoding: str = "utf-8") -> "FlowDocument":
        try:
            text = Path(path).read_text(encoding=encoding)
        except OSError as ex:
            raise FlowLoadError(f"Could not read flow document '{path}': {ex}", inner_exception=ex) from ex
        return cls.from_yaml(text)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    def flow(self, flow_id: str) -> FlowDefinition:
        """Return the flow with id ``flow_id``.

        Raises:
            FlowNotFoundError: No such flow exists.
        """
        for flow in self.flows:
            if flow.id == flow_id:
                return flow
        raise FlowNotFoundError(flow_id)

    def agent(self, agent_id: str) -> AgentDefinition | None:
        return next((agent for agent in self.agents if agent.id == agent_id), None)

    def prompt(self, prompt_id: str) -> PromptDefinition | None:
        return next((prompt for prompt in self.prompts if prompt.id == prompt_id), None)
