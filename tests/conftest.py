# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Generator

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from agent_orchestrator import Agent, ScriptedCompletionProvider

_EXPORTER = InMemorySpanExporter()


@pytest.fixture(scope="session", autouse=True)
def tracer_provider() -> TracerProvider:
    """Install one SDK tracer provider for the whole session; the global provider can only be set once."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(_EXPORTER))
    trace.set_tracer_provider(provider)
    return provider


@pytest.fixture
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    _EXPORTER.clear()
    yield _EXPORTER
    _EXPORTER.clear()


@pytest.fixture(autouse=True)
def clean_orchestrator_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment variables out of the settings under test."""
    for key in (
        "AGENT_ORCHESTRATOR_DEFAULT_MODEL",
        "AGENT_ORCHESTRATOR_HANDOFF_MAX_HANDOFFS",
        "AGENT_ORCHESTRATOR_HANDOFF_MAX_ROUNDS",
        "AGENT_ORCHESTRATOR_HANDOFF_LLM_TIMEOUT_MS",
        "AGENT_ORCHESTRATOR_MAGENTIC_MAX_ROUNDS",
        "AGENT_ORCHESTRATOR_GROUP_CHAT_MAX_ROUNDS",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def writer() -> Agent:
    return Agent("writer", "Write the copy.", description="Writes marketing copy")


@pytest.fixture
def editor() -> Agent:
    return Agent("editor", "Polish the copy.", description="Edits drafts")


@pytest.fixture
def provider() -> ScriptedCompletionProvider:
    return ScriptedCompletionProvider()
