# Copyright (c) Microsoft. All rights reserved.

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import Any, Protocol, TypedDict, runtime_checkable

from openai import AsyncOpenAI, OpenAIError

from ._logging import get_logger
from ._settings import SecretString, load_settings
from ._types import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    FunctionCall,
    Role,
    StreamEvent,
    TokenUsage,
    ToolCall,
)
from .exceptions import ProviderException, ServiceInitializationError

__all__ = [
    "CompletionProvider",
    "OpenAIChatCompletionProvider",
    "OpenAISettings",
    "ScriptedCompletionProvider",
]

logger = get_logger("agent_orchestrator.clients")


@runtime_checkable
class CompletionProvider(Protocol):
    """A backend that turns a :class:`CompletionRequest` into a :class:`CompletionResponse`.

    Providers may additionally implement ``stream(request)`` returning an async iterator of
    :class:`StreamEvent`; orchestrators only rely on ``complete``.
    """

    @property
    def name(self) -> str: ...

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...


# region Scripted provider

ScriptedItem = str | ChatMessage | CompletionResponse | BaseException


class ScriptedCompletionProvider:
    """A provider that replays a fixed list of responses in order.

    Strings become assistant messages, exceptions are raised when their turn comes. Every request is recorded in
    :attr:`requests` so tests can assert on what the agents sent.

    Examples:
        .. code-block:: python

            provider = ScriptedCompletionProvider(["first reply", '{"action":"complete","message":"done"}'])
            response = await provider.complete(request)
    """

    def __init__(
        self,
        responses: Iterable[ScriptedItem] = (),
        *,
        name: str = "scripted",
        latency: float | None = None,
    ) -> None:
        self._name = name
        self._responses: list[ScriptedItem] = list(responses)
        self._latency = latency
        self.requests: list[CompletionRequest] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def remaining(self) -> int:
        return len(self._responses)

    def push(self, *responses: ScriptedItem) -> None:
        self._responses.extend(responses)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if self._latency:
            await asyncio.sleep(self._latency)
        if not self._responses:
            raise ProviderException("no more scripted responses")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, CompletionResponse):
            return item
        if isinstance(item, ChatMessage):
            return CompletionResponse(message=item)
        return CompletionResponse(message=ChatMessage.assistant(item))

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        response = await self.complete(request)
        if response.message.text:
            yield StreamEvent(type="text_delta", delta=response.message.text, index=0)
        yield StreamEvent(type="completed", response=response)


# endregion

# region OpenAI provider


class OpenAISettings(TypedDict, total=False):
    """OpenAI settings, read from ``OPENAI_*`` environment variables or a ``.env`` file.

    Keys:
        api_key: OpenAI API key. (Env var OPENAI_API_KEY)
        base_url: The base URL for the OpenAI API. (Env var OPENAI_BASE_URL)
        org_id: The organization id. (Env var OPENAI_ORG_ID)
        chat_model_id: Model used when a request carries no model. (Env var OPENAI_CHAT_MODEL_ID)
    """

    api_key: SecretString | None
    base_url: str | None
    org_id: str | None
    chat_model_id: str | None


class OpenAIChatCompletionProvider:
    """Completion provider backed by the OpenAI chat-completions API."""

    def __init__(
        self,
        *,
        model_id: str | None = None,
        api_key: str | None = None,
        org_id: str | None = None,
        base_url: str | None = None,
        async_client: AsyncOpenAI | None = None,
        env_file_path: str | None = None,
        env_file_encoding: str | None = None,
    ) -> None:
        """Initialize an OpenAI chat-completion provider.

        Keyword Args:
            model_id: Fallback model name. Can also be set via OPENAI_CHAT_MODEL_ID.
            api_key: The API key. Can also be set via OPENAI_API_KEY.
            org_id: The org ID. Can also be set via OPENAI_ORG_ID.
            base_url: The base URL. Can also be set via OPENAI_BASE_URL.
            async_client: An existing client to use.
            env_file_path: Use the environment settings file as a fallback to environment variables.
            env_file_encoding: The encoding of the environment settings file.

        Raises:
            ServiceInitializationError: No client was given and no API key could be resolved.
        """
        settings = load_settings(
            OpenAISettings,
            env_prefix="OPENAI_",
            env_file_path=env_file_path,
            env_file_encoding=env_file_encoding,
            api_key=api_key,
            org_id=org_id,
            base_url=base_url,
            chat_model_id=model_id,
        )
        if async_client is None:
            key = settings.get("api_key")
            if not key:
                raise ServiceInitializationError(
                    "OpenAI API key is required. Set via 'api_key' parameter or 'OPENAI_API_KEY' environment variable."
                )
            async_client = AsyncOpenAI(
                api_key=key.get_secret_value() if isinstance(key, SecretString) else key,
                organization=settings.get("org_id"),
                base_url=settings.get("base_url") or None,
            )
        self.client = async_client
        self.model_id = settings.get("chat_model_id")

    @property
    def name(self) -> str:
        return "openai"

    def _prepare_options(self, request: CompletionRequest) -> dict[str, Any]:
        model = request.model or self.model_id
        if not model:
            raise ProviderException("model_id must be a non-empty string")
        options: dict[str, Any] = {
            "model": model,
            "messages": [message.to_dict() for message in request.messages],
        }
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens is not None:
            options["max_tokens"] = request.max_tokens
        if request.tools:
            options["tools"] = request.tools
            if request.tool_choice is not None:
                options["tool_choice"] = request.tool_choice.to_wire()
        return options

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        options = self._prepare_options(request)
        logger.debug("Sending chat completion request for model %s", options["model"])
        try:
            response = await self.client.chat.completions.create(stream=False, **options)
        except OpenAIError as ex:
            raise ProviderException(
                f"{type(self).__name__} service failed to complete the prompt: {ex}", inner_exception=ex
            ) from ex
        if not response.choices:
            raise ProviderException("completion returned no choices")
        choice = response.choices[0]
        tool_calls = [
            ToolCall(
                id=call.id or "",
                function=FunctionCall(name=call.function.name or "", arguments=call.function.arguments or "{}"),
            )
            for call in choice.message.tool_calls or []
            if getattr(call, "function", None) is not None
        ]
        message = ChatMessage(
            role=Role.ASSISTANT,
            text=choice.message.content or choice.message.refusal,
            tool_calls=tool_calls,
        )
        return CompletionResponse(
            message=message,
            usage=_parse_usage(response.usage),
            reasoning=getattr(choice.message, "reasoning_content", None),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Stream deltas and finish with a ``completed`` event carrying the assembled response."""
        options = self._prepare_options(request)
        options["stream_options"] = {"include_usage": True}
        text_parts: list[str] = []
        calls: dict[int, dict[str, str]] = {}
        usage: TokenUsage | None = None
        try:
            async for chunk in await self.client.chat.completions.create(stream=True, **options):
                if chunk.usage is not None:
                    usage = _parse_usage(chunk.usage)
                for choice in chunk.choices:
                    delta = choice.delta
                    if delta.content:
                        text_parts.append(delta.content)
                        yield StreamEvent(type="text_delta", delta=delta.content, index=choice.index)
                    for call in delta.tool_calls or []:
                        entry = calls.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                        if call.id:
                            entry["id"] = call.id
                        if call.function is not None:
                            entry["name"] += call.function.name or ""
                            entry["arguments"] += call.function.arguments or ""
                            yield StreamEvent(
                                type="tool_call_delta", delta=call.function.arguments or "", index=call.index
                            )
        except OpenAIError as ex:
            raise ProviderException(
                f"{type(self).__name__} service failed to complete the prompt: {ex}", inner_exception=ex
            ) from ex
        message = ChatMessage(
            role=Role.ASSISTANT,
            text="".join(text_parts) or None,
            tool_calls=[
                ToolCall(id=entry["id"], function=FunctionCall(name=entry["name"], arguments=entry["arguments"] or "{}"))
                for _, entry in sorted(calls.items())
            ],
        )
        yield StreamEvent(type="completed", response=CompletionResponse(message=message, usage=usage))


def _parse_usage(usage: Any) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


# endregion

