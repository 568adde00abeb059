# Copyright (c) Microsoft. All rights reserved.

"""OpenTelemetry helpers for agent turns and orchestration runs.

The package only emits spans through the globally configured tracer provider. Applications that want to export
them configure an SDK provider as usual; without one the spans are no-ops.
"""

from collections.abc import Generator
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any

from opentelemetry import trace

from . import __version__ as version_info

if TYPE_CHECKING:  # pragma: no cover
    from ._types import TokenUsage

__all__ = ["OtelAttr", "get_tracer", "orchestration_span", "record_usage"]


class OtelAttr(str, Enum):
    """Span attribute names, following the OpenTelemetry GenAI semantic conventions where they apply."""

    OPERATION = "gen_ai.operation.name"
    PROVIDER_NAME = "gen_ai.provider.name"
    REQUEST_MODEL = "gen_ai.request.model"
    REQUEST_TEMPERATURE = "gen_ai.request.temperature"
    REQUEST_TOP_P = "gen_ai.request.top_p"
    REQUEST_MAX_TOKENS = "gen_ai.request.max_tokens"
    INPUT_TOKENS = "gen_ai.usage.input_tokens"
    OUTPUT_TOKENS = "gen_ai.usage.output_tokens"
    AGENT_NAME = "gen_ai.agent.name"
    TOOL_NAME = "gen_ai.tool.name"
    ERROR_TYPE = "error.type"
    # Orchestration attributes
    ORCHESTRATION_KIND = "orchestration.kind"
    ORCHESTRATION_RUN_SPAN = "orchestration.run"
    ORCHESTRATION_ROUNDS = "orchestration.rounds"
    CHAT_COMPLETION_OPERATION = "chat"

    def __str__(self) -> str:
        return self.value


def get_tracer(
    instrumenting_module_name: str = "agent_orchestrator",
    instrumenting_library_version: str = version_info,
) -> "trace.Tracer":
    """Return the tracer used by the orchestrator.

    Args:
        instrumenting_module_name: The name of the instrumenting library.
        instrumenting_library_version: The version of the instrumenting library.
    """
    return trace.get_tracer(
        instrumenting_module_name=instrumenting_module_name,
        instrumenting_library_version=instrumenting_library_version,
    )


@contextmanager
def orchestration_span(kind: str, **attributes: Any) -> Generator["trace.Span", None, None]:
    """Open a span around one orchestrator run and mark it failed when the run raises."""
    with get_tracer().start_as_current_span(
        OtelAttr.ORCHESTRATION_RUN_SPAN.value, record_exception=True, set_status_on_exception=True
    ) as span:
        span.set_attribute(OtelAttr.ORCHESTRATION_KIND.value, kind)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"orchestration.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.set_attribute(OtelAttr.ERROR_TYPE.value, type(exc).__name__)
            raise


def record_usage(span: "trace.Span", usage: "TokenUsage | None") -> None:
    """Attach token usage to a span."""
    if usage is None:
        return
    span.set_attribute(OtelAttr.INPUT_TOKENS.value, usage.prompt_tokens)
    span.set_attribute(OtelAttr.OUTPUT_TOKENS.value, usage.completion_tokens)
