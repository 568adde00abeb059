# Copyright (c) Microsoft. All rights reserved.

import json
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal

__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "CompletionResponse",
    "FunctionCall",
    "Role",
    "StreamEvent",
    "TokenUsage",
    "ToolCall",
    "ToolChoice",
    "render_transcript",
]


class Role(str, Enum):
    """Describes the intended purpose of a message within a chat interaction."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FunctionCall:
    """Name and raw JSON arguments of a function the model wants to call."""

    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode the JSON arguments; empty arguments decode to an empty dict."""
        if not self.arguments or not self.arguments.strip():
            return {}
        parsed = json.loads(self.arguments)
        if not isinstance(parsed, dict):
            raise ValueError(f"arguments for '{self.name}' must be a JSON object")
        return parsed


@dataclass(frozen=True)
class ToolCall:
    """A tool call emitted by the model."""

    id: str
    function: FunctionCall
    type: Literal["function"] = "function"


@dataclass
class ChatMessage:
    """A single message of the transcript.

    Attributes:
        role: The role of the author of the message.
        text: The text content, if any.
        name: The name of the author, used to tell agents apart in a shared transcript.
        tool_call_id: For tool messages, the id of the call this message answers.
        tool_calls: Tool calls requested by an assistant message.
    """

    role: Role
    text: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, text=text)

    @classmethod
    def user(cls, text: str) -> "ChatMessage":
        return cls(role=Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str | None, *, name: str | None = None) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, text=text, name=name)

    @classmethod
    def tool(cls, text: str, *, tool_call_id: str, name: str | None = None) -> "ChatMessage":
        return cls(role=Role.TOOL, text=text, tool_call_id=tool_call_id, name=name)

    def with_name(self, name: str | None) -> "ChatMessage":
        return replace(self, name=name)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the chat-completions wire shape."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.text}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [
                {
                    "id": call.id,
                    "type": call.type,
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in self.tool_calls
            ]
        return data


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ToolChoice:
    """Tool-choice policy sent with a request."""

    mode: Literal["auto", "none", "required", "function"] = "auto"
    function_name: str | None = None

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls("auto")

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls("none")

    @classmethod
    def required(cls) -> "ToolChoice":
        return cls("required")

    @classmethod
    def function(cls, name: str) -> "ToolChoice":
        return cls("function", name)

    def to_wire(self) -> str | dict[str, Any]:
        if self.mode == "function":
            return {"type": "function", "function": {"name": self.function_name}}
        return self.mode


@dataclass
class CompletionRequest:
    """Everything a completion provider needs to produce one reply."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: ToolChoice | None = None


@dataclass
class CompletionResponse:
    message: ChatMessage
    usage: TokenUsage | None = None
    reasoning: str | None = None


@dataclass
class StreamEvent:
    """One delta of a streamed completion.

    ``completed`` events carry the assembled ``response``; the others carry a text ``delta``.
    """

    type: Literal["text_delta", "reasoning_delta", "tool_call_delta", "completed"]
    delta: str = ""
    index: int | None = None
    response: CompletionResponse | None = None


def render_transcript(messages: Sequence[ChatMessage]) -> str:
    """Render a transcript as ``- Speaker: text`` lines for manager prompts."""
    if not messages:
        return "(no messages yet)"
    lines: list[str] = []
    for message in messages:
        if message.role == Role.USER:
            speaker = "User"
        elif message.role == Role.SYSTEM:
            speaker = "System"
        elif message.role == Role.TOOL:
            speaker = f"Tool::{message.name}" if message.name else "Tool"
        else:
            speaker = f"Assistant::{message.name}" if message.name else "Assistant"
        lines.append(f"- {speaker}: {message.text or ''}")
    return "\n".join(lines)
