# Copyright (c) Microsoft. All rights reserved.

"""Settings resolution from explicit values, environment variables and ``.env`` files.

Settings schemas are ``TypedDict`` classes. ``load_settings`` walks the annotated fields and resolves each one
from the first source that provides it::

    class MySettings(TypedDict, total=False):
        api_key: SecretString | None
        max_rounds: int | None


    settings = load_settings(MySettings, env_prefix="MY_APP_", max_rounds=4)
    settings["max_rounds"]  # 4
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping, Sequence
from contextlib import suppress
from typing import Any, TypedDict, Union, get_args, get_origin, get_type_hints

from dotenv import load_dotenv

from .exceptions import ServiceInitializationError, SettingNotFoundError

if sys.version_info >= (3, 13):
    from typing import TypeVar  # type: ignore # pragma: no cover
else:
    from typing_extensions import TypeVar  # type: ignore # pragma: no cover

__all__ = ["ORCHESTRATION_DEFAULTS", "OrchestrationSettings", "SecretString", "load_orchestration_settings", "load_settings"]

SettingsT = TypeVar("SettingsT", default=dict[str, Any])


class SecretString(str):
    """A string that hides its value in ``repr()``.

    Example:
        ```python
        api_key = SecretString("sk-secret-key")
        print(repr(api_key))  # SecretString('**********')
        api_key.get_secret_value()  # 'sk-secret-key'
        ```
    """

    def __repr__(self) -> str:
        return "SecretString('**********')"

    def get_secret_value(self) -> str:
        """Return the plain string value."""
        return str(self)


def _coerce_value(value: str, target_type: Any) -> Any:
    """Convert an environment string into ``target_type``."""
    if target_type is type(None):
        return None

    args = get_args(target_type)
    if args and type(None) in args:
        for arg in args:
            if arg is type(None):
                continue
            with suppress(ValueError, TypeError):
                return _coerce_value(value, arg)
        return value

    if isinstance(target_type, type) and issubclass(target_type, SecretString):
        return SecretString(value)
    if target_type is bool:
        return value.strip().lower() in ("true", "1", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _allowed_types(field_type: Any) -> tuple[type, ...]:
    origin = get_origin(field_type)
    if origin is Union or origin is type(int | str):
        return tuple(arg for arg in get_args(field_type) if isinstance(arg, type) and arg is not type(None))
    if isinstance(field_type, type):
        return (field_type,)
    return ()


def _check_override_type(value: Any, field_type: Any, field_name: str) -> None:
    """Reject overrides whose type clearly does not fit the annotation."""
    if value is None:
        return
    allowed = _allowed_types(field_type)
    if not allowed or isinstance(value, allowed):
        return
    if isinstance(value, str) and any(issubclass(arg, str) for arg in allowed):
        return
    if isinstance(value, int) and not isinstance(value, bool) and float in allowed:
        return
    names = ", ".join(arg.__name__ for arg in allowed)
    raise ServiceInitializationError(
        f"Invalid type for setting '{field_name}': expected {names}, got {type(value).__name__}."
    )


def load_settings(
    settings_type: type[SettingsT],
    *,
    env_prefix: str = "",
    env_file_path: str | None = None,
    env_file_encoding: str | None = None,
    required_fields: Sequence[str] | None = None,
    defaults: Mapping[str, Any] | None = None,
    **overrides: Any,
) -> SettingsT:
    """Load settings from explicit overrides, the environment, a ``.env`` file and defaults.

    Values are resolved in this order (highest priority first):

    1. Keyword *overrides* that are not ``None``.
    2. Environment variables named ``<env_prefix><FIELD_NAME>``.
    3. The ``.env`` file, loaded with ``python-dotenv`` without overriding existing variables.
    4. *defaults*, or ``None``.

    Args:
        settings_type: A ``TypedDict`` class describing the settings.

    Keyword Args:
        env_prefix: Prefix for environment variable lookup (e.g. ``"OPENAI_"``).
        env_file_path: Path of the ``.env`` file. Defaults to ``".env"``.
        env_file_encoding: Encoding of the ``.env`` file. Defaults to ``"utf-8"``.
        required_fields: Field names that must resolve to a value.
        defaults: Fallback values for fields no other source provides.
        **overrides: Explicit field values.

    Returns:
        A dict matching *settings_type*.

    Raises:
        SettingNotFoundError: A required field could not be resolved.
        ServiceInitializationError: An override has an incompatible type.
    """
    env_path = env_file_path or ".env"
    if os.path.isfile(env_path):
        load_dotenv(dotenv_path=env_path, encoding=env_file_encoding or "utf-8")

    overrides = {key: value for key, value in overrides.items() if value is not None}
    defaults = defaults or {}

    result: dict[str, Any] = {}
    for field_name, field_type in get_type_hints(settings_type).items():
        if field_name in overrides:
            value = overrides[field_name]
            _check_override_type(value, field_type, field_name)
            if isinstance(value, str) and not isinstance(value, SecretString):
                with suppress(ValueError, TypeError):
                    coerced = _coerce_value(value, field_type)
                    if isinstance(coerced, SecretString):
                        value = coerced
            result[field_name] = value
            continue

        env_value = os.getenv(f"{env_prefix}{field_name.upper()}")
        if env_value is not None:
            try:
                result[field_name] = _coerce_value(env_value, field_type)
            except (ValueError, TypeError):
                result[field_name] = env_value
            continue

        result[field_name] = defaults.get(field_name)

    for field_name in required_fields or ():
        if result.get(field_name) is None:
            raise SettingNotFoundError(
                f"Required setting '{field_name}' was not provided. Set it via the '{field_name}' parameter "
                f"or the '{env_prefix}{field_name.upper()}' environment variable."
            )

    return result  # type: ignore[return-value]


class OrchestrationSettings(TypedDict, total=False):
    """Orchestrator defaults, read from ``AGENT_ORCHESTRATOR_*`` environment variables."""

    default_model: str | None
    handoff_max_handoffs: int | None
    handoff_max_rounds: int | None
    handoff_llm_timeout_ms: int | None
    magentic_max_rounds: int | None
    group_chat_max_rounds: int | None


ORCHESTRATION_DEFAULTS: dict[str, Any] = {
    "default_model": "gpt-4o",
    "handoff_max_handoffs": 4,
    "handoff_max_rounds": 32,
    "handoff_llm_timeout_ms": 60_000,
    "magentic_max_rounds": 12,
    "group_chat_max_rounds": 6,
}


def load_orchestration_settings(**overrides: Any) -> OrchestrationSettings:
    """Resolve the orchestrator defaults, applying any explicit overrides."""
    return load_settings(
        OrchestrationSettings,
        env_prefix="AGENT_ORCHESTRATOR_",
        defaults=ORCHESTRATION_DEFAULTS,
        **overrides,
    )
