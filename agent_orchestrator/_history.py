# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Iterator, Sequence
from typing import Protocol, runtime_checkable

from ._clients import CompletionProvider
from ._logging import get_logger
from ._types import ChatMessage, CompletionRequest, Role, render_transcript
from .exceptions import OrchestrationException, ProviderException

__all__ = [
    "ChatHistory",
    "ChatHistoryCompressor",
    "ChatHistorySummarizer",
    "CompletionSummarizer",
    "ConciseSummarizer",
    "FixedWindowCompressor",
    "NoopChatHistoryCompressor",
]

logger = get_logger("agent_orchestrator.history")

DEFAULT_RETAIN_MESSAGES = 6
DEFAULT_SUMMARY_PREFIX = "Summary so far: "
SUMMARY_MESSAGE_NAME = "history-summary"


class ChatHistory:
    """An ordered, mutable list of chat messages with optional compression.

    Examples:
        .. code-block:: python

            history = ChatHistory()
            history.push_system("You are a travel assistant.")
            history.push_user("Find me a hotel in Oslo.")

            compressor = FixedWindowCompressor(8, ConciseSummarizer())
            await history.compress(compressor)
    """

    def __init__(self, messages: Sequence[ChatMessage] | None = None):
        """Create a history.

        Args:
            messages: Initial messages, oldest first.
        """
        self._messages: list[ChatMessage] = list(messages) if messages else []

    def push(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def push_system(self, text: str) -> None:
        self.push(ChatMessage.system(text))

    def push_user(self, text: str) -> None:
        self.push(ChatMessage.user(text))

    def push_assistant(self, text: str, *, name: str | None = None) -> None:
        self.push(ChatMessage.assistant(text, name=name))

    def push_tool(self, text: str, *, tool_call_id: str, name: str | None = None) -> None:
        self.push(ChatMessage.tool(text, tool_call_id=tool_call_id, name=name))

    @property
    def messages(self) -> list[ChatMessage]:
        """The stored messages, oldest first. Compressors edit this list in place."""
        return self._messages

    def last(self) -> ChatMessage | None:
        return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        self._messages.clear()

    def append(self, other: "ChatHistory") -> None:
        """Move every message of ``other`` onto the end of this history, leaving ``other`` empty."""
        if other is self:
            return
        self._messages.extend(other._messages)
        other.clear()

    def total_content_length(self) -> int:
        """Number of characters of text across all messages."""
        return sum(len(message.text or "") for message in self._messages)

    def render(self) -> str:
        return render_transcript(self._messages)

    async def compress(self, compressor: "ChatHistoryCompressor") -> bool:
        """Run ``compressor`` over this history.

        Returns:
            True if the history was changed.
        """
        return await compressor.compress(self)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self._messages)

    def __repr__(self) -> str:
        return f"ChatHistory(messages={len(self._messages)})"


@runtime_checkable
class ChatHistoryCompressor(Protocol):
    """Shrinks a :class:`ChatHistory` in place."""

    async def compress(self, history: ChatHistory) -> bool:
        """Compress ``history``; return True if anything changed."""
        ...


@runtime_checkable
class ChatHistorySummarizer(Protocol):
    """Condenses a run of messages into a single piece of text."""

    async def summarize(self, messages: Sequence[ChatMessage]) -> str | None:
        """Return the summary, or None when there is nothing worth keeping."""
        ...


class NoopChatHistoryCompressor:
    """A compressor that never changes the history."""

    async def compress(self, history: ChatHistory) -> bool:
        return False


class ConciseSummarizer:
    """Joins message texts and truncates the result to ``max_chars`` characters."""

    def __init__(self, max_chars: int = 512):
        self.max_chars = max(1, max_chars)

    async def summarize(self, messages: Sequence[ChatMessage]) -> str | None:
        parts = [text for message in messages if (text := (message.text or "").strip())]
        summary = " ".join(parts)
        if not summary:
            return None
        if len(summary) > self.max_chars:
            summary = summary[: self.max_chars] + "..."
        return summary


class CompletionSummarizer:
    """Asks a model to summarize the messages that fall out of the window.

    Examples:
        .. code-block:: python

            summarizer = CompletionSummarizer(OpenAIChatCompletionProvider(), "gpt-4o-mini")
            compressor = FixedWindowCompressor(8, summarizer).with_retain_messages(4)
    """

    DEFAULT_INSTRUCTIONS = (
        "Summarize the conversation below in a few sentences. Keep names, decisions and open questions. "
        "Reply with the summary only."
    )

    def __init__(
        self,
        provider: CompletionProvider,
        model: str,
        *,
        instructions: str | None = None,
        max_tokens: int | None = None,
    ):
        self.provider = provider
        self.model = model
        self.instructions = instructions or self.DEFAULT_INSTRUCTIONS
        self.max_tokens = max_tokens

    async def summarize(self, messages: Sequence[ChatMessage]) -> str | None:
        if not messages:
            return None
        request = CompletionRequest(
            model=self.model,
            messages=[ChatMessage.system(self.instructions), ChatMessage.user(render_transcript(messages))],
            max_tokens=self.max_tokens,
        )
        try:
            response = await self.provider.complete(request)
        except OrchestrationException:
            raise
        except Exception as ex:
            raise ProviderException(
                f"provider '{self.provider.name}' failed to summarize the chat history: {ex}", inner_exception=ex
            ) from ex
        return response.message.text


class FixedWindowCompressor:
    """Keeps at most ``max_messages`` messages, folding older ones into a summary.

    When the history grows past ``max_messages`` the newest ``retain_messages`` messages are kept as they are, the
    ones before them are summarized, and the summary is inserted as a system message at the front. Should the result
    still exceed ``max_messages``, the oldest retained messages after the summary are dropped.
    """

    def __init__(self, max_messages: int, summarizer: ChatHistorySummarizer):
        """Create a compressor.

        Args:
            max_messages: Upper bound on the history length after compression; at least 2.
            summarizer: Produces the text of the summary message.
        """
        self.max_messages = max(2, max_messages)
        self.summarizer = summarizer
        self.retain_messages = DEFAULT_RETAIN_MESSAGES
        self.summary_prefix = DEFAULT_SUMMARY_PREFIX

    def with_retain_messages(self, retain_messages: int) -> "FixedWindowCompressor":
        self.retain_messages = max(1, retain_messages)
        return self

    def with_summary_prefix(self, prefix: str) -> "FixedWindowCompressor":
        self.summary_prefix = prefix
        return self

    async def compress(self, history: ChatHistory) -> bool:
        messages = history.messages
        if len(messages) <= self.max_messages:
            return False

        retain = min(self.retain_messages, self.max_messages - 1, len(messages))
        boundary = len(messages) - retain
        if boundary == 0:
            return False

        summary = await self.summarizer.summarize(messages[:boundary])
        if summary is None or not summary.strip():
            logger.debug("Summarizer returned nothing for %d messages; history left as is", boundary)
            return False

        summary_message = ChatMessage(
            role=Role.SYSTEM, text=f"{self.summary_prefix}{summary.strip()}", name=SUMMARY_MESSAGE_NAME
        )
        del messages[:boundary]
        messages.insert(0, summary_message)
        while len(messages) > self.max_messages:
            del messages[1]

        logger.debug("Folded %d messages into a summary; history now holds %d", boundary, len(messages))
        return True
