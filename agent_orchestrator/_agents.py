# Copyright (c) Microsoft. All rights reserved.

import json
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from opentelemetry import trace

from ._actions import AgentAction, action_from_value, parse_envelope, resolve_action
from ._clients import CompletionProvider
from ._logging import get_logger
from ._tools import ToolRegistry
from ._types import ChatMessage, CompletionRequest, CompletionResponse, TokenUsage, ToolCall, ToolChoice
from .exceptions import OrchestrationException, ProviderException
from .observability import OtelAttr, get_tracer, record_usage

__all__ = ["Agent", "AgentTurn"]

logger = get_logger("agent_orchestrator.agents")


@dataclass
class AgentTurn:
    """The outcome of one agent turn.

    Attributes:
        action: The resolved action.
        tool_calls: Every tool call the model requested, whether or not it was invoked.
        usage: Token usage reported by the provider.
        raw_content: The unprocessed reply text.
        reasoning: Reasoning text, for providers that return it.
    """

    action: AgentAction
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    raw_content: str = ""
    reasoning: str | None = None


@dataclass(frozen=True)
class Agent:
    """An immutable agent definition.

    Agents hold no runtime state. The ``with_*`` methods return modified copies, so an agent can be shared
    between orchestrators and runs.

    Examples:
        .. code-block:: python

            writer = Agent("Writer", "Write punchy marketing copy.").with_temperature(0.7)
            turn = await writer.execute(provider, "gpt-4o", [ChatMessage.user("Describe the product.")])
    """

    name: str
    instructions: str
    description: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    tools: ToolRegistry | None = field(default=None, compare=False)
    tool_choice: ToolChoice | None = None
    provider: CompletionProvider | None = field(default=None, compare=False)
    model: str | None = None

    @classmethod
    def from_file(cls, name: str, path: str | Path, *, encoding: str = "utf-8") -> "Agent":
        """Create an agent whose instructions are the contents of ``path``."""
        return cls(name=name, instructions=Path(path).read_text(encoding=encoding))

    def with_description(self, description: str) -> "Agent":
        return replace(self, description=description)

    def with_instructions(self, instructions: str) -> "Agent":
        return replace(self, instructions=instructions)

    def with_temperature(self, temperature: float) -> "Agent":
        return replace(self, temperature=temperature)

    def with_top_p(self, top_p: float) -> "Agent":
        return replace(self, top_p=top_p)

    def with_max_tokens(self, max_tokens: int) -> "Agent":
        return replace(self, max_tokens=max_tokens)

    def with_tools(self, tools: ToolRegistry) -> "Agent":
        return replace(self, tools=tools)

    def with_tool_choice(self, tool_choice: ToolChoice) -> "Agent":
        return replace(self, tool_choice=tool_choice)

    def with_provider(self, provider: CompletionProvider) -> "Agent":
        return replace(self, provider=provider)

    def with_model(self, model: str) -> "Agent":
        return replace(self, model=model)

    def _registry(self, extra: ToolRegistry | None) -> ToolRegistry | None:
        if self.tools is None:
            return extra
        if extra is None:
            return self.tools
        return self.tools.merged(extra)

    async def execute(
        self,
        provider: CompletionProvider,
        model: str,
        transcript: Sequence[ChatMessage],
        *,
        tools: ToolRegistry | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> AgentTurn:
        """Run one turn of this agent against ``transcript``.

        The agent's instructions are sent as a leading system message. A provider or model configured on the
        agent takes precedence over the ones passed in, and ``tools`` are added to the agent's own registry.

        Raises:
            ProviderException: The provider failed.
            ToolException: The requested tool failed.
        """
        active_provider = self.provider or provider
        active_model = self.model or model
        registry = self._registry(tools)
        request = CompletionRequest(
            model=active_model,
            messages=[ChatMessage.system(self.instructions), *transcript],
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            tools=registry.definitions() if registry else [],
            tool_choice=(tool_choice or self.tool_choice) if registry else None,
        )

        with get_tracer().start_as_current_span(f"{OtelAttr.CHAT_COMPLETION_OPERATION} {active_model}") as span:
            span.set_attribute(OtelAttr.OPERATION.value, OtelAttr.CHAT_COMPLETION_OPERATION.value)
            span.set_attribute(OtelAttr.PROVIDER_NAME.value, active_provider.name)
            span.set_attribute(OtelAttr.REQUEST_MODEL.value, active_model)
            span.set_attribute(OtelAttr.AGENT_NAME.value, self.name)
            if self.temperature is not None:
                span.set_attribute(OtelAttr.REQUEST_TEMPERATURE.value, self.temperature)
            if self.top_p is not None:
                span.set_attribute(OtelAttr.REQUEST_TOP_P.value, self.top_p)
            if self.max_tokens is not None:
                span.set_attribute(OtelAttr.REQUEST_MAX_TOKENS.value, self.max_tokens)
            try:
                response = await self._complete(active_provider, request)
                record_usage(span, response.usage)
                action = await self._resolve(response, registry, span)
            except Exception as ex:
                span.set_attribute(OtelAttr.ERROR_TYPE.value, type(ex).__name__)
                raise

        return AgentTurn(
            action=action,
            tool_calls=list(response.message.tool_calls),
            usage=response.usage,
            raw_content=response.message.text or "",
            reasoning=response.reasoning,
        )

    async def _complete(self, provider: CompletionProvider, request: CompletionRequest) -> CompletionResponse:
        try:
            return await provider.complete(request)
        except OrchestrationException:
            raise
        except Exception as ex:
            raise ProviderException(
                f"provider '{provider.name}' failed for agent '{self.name}': {ex}", inner_exception=ex
            ) from ex

    async def _resolve(
        self, response: CompletionResponse, registry: ToolRegistry | None, span: "trace.Span"
    ) -> AgentAction:
        text = response.message.text or ""
        if not response.message.tool_calls or registry is None:
            return resolve_action(text)

        call = response.message.tool_calls[0]
        if call.function.name not in registry:
            logger.warning(
                "Agent '%s' requested unknown tool '%s'; using the reply text instead.", self.name, call.function.name
            )
            return resolve_action(text)

        span.set_attribute(OtelAttr.TOOL_NAME.value, call.function.name)
        result = await registry.invoke(call.function)
        action = parse_envelope(result) if isinstance(result, str) else action_from_value(result)
        if action is not None:
            return action
        if text.strip():
            return resolve_action(text)
        return resolve_action(_serialize_result(result))


def _serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
