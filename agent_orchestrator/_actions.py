# Copyright (c) Microsoft. All rights reserved.

"""Turn an agent's free-form reply into one of three actions.

Resolution tries, in order: the whole reply as a JSON envelope, the contents of a fenced code block, the last
balanced top-level JSON object in mixed text, natural-language handoff and completion phrases. Anything else is
a plain respond. :func:`resolve_action` never raises.
"""

import json
import re
import string
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr, ValidationError

__all__ = [
    "AgentAction",
    "Complete",
    "HandOff",
    "Respond",
    "action_from_value",
    "extract_fenced_block",
    "extract_last_json_object",
    "parse_envelope",
    "parse_natural_language",
    "resolve_action",
]


# region Actions


@dataclass(frozen=True)
class Respond:
    """Reply to the conversation and keep going."""

    message: str


@dataclass(frozen=True)
class HandOff:
    """Pass the conversation to another agent, optionally with a note."""

    target: str
    message: str | None = None


@dataclass(frozen=True)
class Complete:
    """Finish the task, optionally with a final message."""

    message: str | None = None


AgentAction = Respond | HandOff | Complete

# endregion

# region Envelopes


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def to_action(self) -> AgentAction:
        raise NotImplementedError


class _RespondEnvelope(_Envelope):
    message: StrictStr = Field(validation_alias=AliasChoices("message", "response", "text"))

    def to_action(self) -> AgentAction:
        return Respond(self.message)


class _HandOffEnvelope(_Envelope):
    target: StrictStr = Field(validation_alias=AliasChoices("target", "to", "target_agent"))
    message: StrictStr | None = Field(default=None, validation_alias=AliasChoices("message", "note", "reason"))

    def to_action(self) -> AgentAction:
        return HandOff(self.target, self.message)


class _CompleteEnvelope(_Envelope):
    message: StrictStr | None = Field(default=None, validation_alias=AliasChoices("message", "response", "text"))

    def to_action(self) -> AgentAction:
        return Complete(self.message)


_ENVELOPES: dict[str, type[_Envelope]] = {
    "respond": _RespondEnvelope,
    "reply": _RespondEnvelope,
    "hand_off": _HandOffEnvelope,
    "handoff": _HandOffEnvelope,
    "complete": _CompleteEnvelope,
    "done": _CompleteEnvelope,
}


def action_from_value(value: Any) -> AgentAction | None:
    """Read an already decoded JSON value as an action envelope, or return ``None``."""
    if not isinstance(value, dict):
        return None
    kind = value.get("action")
    if not isinstance(kind, str):
        return None
    envelope_type = _ENVELOPES.get(kind.strip().lower())
    if envelope_type is None:
        return None
    try:
        return envelope_type.model_validate(value).to_action()
    except ValidationError:
        return None


def parse_envelope(text: str) -> AgentAction | None:
    """Parse ``text`` as a complete JSON action envelope."""
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return action_from_value(value)


# endregion

# region Extraction


def extract_fenced_block(text: str) -> str | None:
    """Return the trimmed body of the first fenced code block, preferring a ``json`` tagged fence."""
    start = text.find("```json")
    if start < 0:
        start = text.find("```")
    if start < 0:
        return None
    newline = text.find("\n", start)
    if newline < 0:
        return None
    end = text.find("```", newline + 1)
    if end < 0:
        return None
    return text[newline + 1 : end].strip()


def extract_last_json_object(text: str) -> str | None:
    """Return the last balanced top-level ``{...}`` substring.

    Braces inside string literals are ignored and backslash escapes are honored.
    """
    depth = 0
    start = 0
    in_string = False
    escaped = False
    last: tuple[int, int] | None = None
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                last = (start, index + 1)
    if last is None:
        return None
    return text[last[0] : last[1]]


# endregion

# region Natural language


class _Phrases:
    HANDOFF: ClassVar[re.Pattern[str]] = re.compile(
        r"""
        \b(?:hand[\s-]*off|handoff|transfer|delegate|connect|route)\b
        (?:[^A-Za-z0-9@]+(?:to|with)\b)?
        [^A-Za-z0-9@]*
        (?:agent|assistant|team|specialist|@)?
        \s*
        (?P<target>[A-Za-z0-9_.\-]{1,64})
        """,
        re.IGNORECASE | re.VERBOSE,
    )
    COMPLETE: ClassVar[re.Pattern[str]] = re.compile(
        r"\b(done|complete|completed|finish(?:ed)?|that'?s all|all set|nothing further)\b",
        re.IGNORECASE,
    )


_TARGET_TRIM = "@" + string.punctuation


def parse_natural_language(text: str) -> AgentAction | None:
    """Detect handoff or completion phrasing such as "transfer to @billing" or "that's all"."""
    if match := _Phrases.HANDOFF.search(text):
        target = match.group("target").strip(_TARGET_TRIM)
        if target:
            return HandOff(target)
    if _Phrases.COMPLETE.search(text):
        trimmed = text.strip()
        return Complete(trimmed or None)
    return None


# endregion


def resolve_action(text: str | None) -> AgentAction:
    """Resolve a reply into exactly one action.

    Examples:
        .. code-block:: python

            resolve_action('{"action": "hand_off", "target": "travel"}')  # HandOff("travel")
            resolve_action("Hello there")  # Respond("Hello there")
    """
    trimmed = (text or "").strip()

    if action := parse_envelope(trimmed):
        return action

    fenced = extract_fenced_block(trimmed)
    if fenced is not None and (action := parse_envelope(fenced)):
        return action

    candidate = extract_last_json_object(trimmed)
    if candidate is not None and '"action"' in candidate and (action := parse_envelope(candidate)):
        return action

    if action := parse_natural_language(trimmed):
        return action

    return Respond(trimmed)
