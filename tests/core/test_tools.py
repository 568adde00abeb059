# Copyright (c) Microsoft. All rights reserved.

from typing import Annotated

import pytest
from pydantic import BaseModel

from agent_orchestrator import FunctionCall, FunctionTool, ToolRegistry, tool
from agent_orchestrator.exceptions import ToolException

# region FunctionTool


def test_tool_decorator():
    """Test the tool decorator."""

    @tool(name="test_tool", description="A test tool")
    def test_tool(x: int, y: int) -> int:
        """A simple function that adds two numbers."""
        return x + y

    assert isinstance(test_tool, FunctionTool)
    assert test_tool.name == "test_tool"
    assert test_tool.description == "A test tool"
    assert test_tool.parameters() == {
        "properties": {"x": {"title": "X", "type": "integer"}, "y": {"title": "Y", "type": "integer"}},
        "required": ["x", "y"],
        "title": "test_tool_input",
        "type": "object",
    }


def test_tool_decorator_defaults_to_function_name_and_docstring():
    @tool
    def get_weather(location: Annotated[str, "The city name"], unit: str = "celsius") -> str:
        """Get the weather for a location."""
        return f"Sunny in {location}"

    assert get_weather.name == "get_weather"
    assert get_weather.description == "Get the weather for a location."
    schema = get_weather.parameters()
    assert schema["properties"]["location"]["description"] == "The city name"
    assert schema["required"] == ["location"]
    spec = get_weather.to_json_schema_spec()
    assert spec["type"] == "function"
    assert spec["function"]["name"] == "get_weather"


async def test_tool_invoke_sync_and_async():
    @tool
    def add(x: int, y: int) -> int:
        return x + y

    @tool
    async def multiply(x: int, y: int) -> int:
        return x * y

    assert await add.invoke(x=2, y=3) == 5
    assert await multiply.invoke(arguments={"x": 2, "y": 3}) == 6


async def test_tool_invoke_validates_arguments():
    @tool
    def add(x: int, y: int) -> int:
        return x + y

    with pytest.raises(ToolException, match="Invalid arguments"):
        await add.invoke(arguments={"x": "two"})


async def test_declaration_only_tool_cannot_be_invoked():
    declaration = FunctionTool(name="remote_lookup", description="Runs elsewhere")

    assert declaration.declaration_only
    assert declaration.parameters() == {"properties": {}, "title": "EmptyInputModel", "type": "object"}
    with pytest.raises(ToolException, match="declaration only"):
        await declaration.invoke()


# endregion

# region ToolRegistry


class Forecast(BaseModel):
    city: str
    temperature: int


def forecast(city: str) -> Forecast:
    """Forecast the temperature of a city."""
    return Forecast(city=city, temperature=21)


def broken() -> str:
    raise RuntimeError("sensor offline")


def test_registry_wraps_plain_callables():
    registry = ToolRegistry([forecast, broken])

    assert len(registry) == 2
    assert "forecast" in registry
    assert [definition["function"]["name"] for definition in registry.definitions()] == ["forecast", "broken"]


def test_registry_merged_keeps_both_sides():
    first = ToolRegistry([forecast])
    second = ToolRegistry([broken])

    merged = first.merged(second)

    assert [t.name for t in merged] == ["forecast", "broken"]
    assert len(first) == 1
    assert first.merged(None) is not first


async def test_registry_invoke_dumps_models():
    registry = ToolRegistry([forecast])

    result = await registry.invoke(FunctionCall(name="forecast", arguments='{"city": "Oslo"}'))

    assert result == {"city": "Oslo", "temperature": 21}


async def test_registry_invoke_unknown_function():
    with pytest.raises(ToolException, match="unknown function: nothing"):
        await ToolRegistry().invoke(FunctionCall(name="nothing"))


@pytest.mark.parametrize("arguments", ["{not json", "[1, 2]", "[" * 100_000], ids=["malformed", "array", "deep"])
async def test_registry_invoke_invalid_arguments(arguments: str):
    registry = ToolRegistry([forecast])

    with pytest.raises(ToolException, match="invalid function arguments"):
        await registry.invoke(FunctionCall(name="forecast", arguments=arguments))


async def test_registry_invoke_wraps_failures():
    registry = ToolRegistry([broken])

    with pytest.raises(ToolException, match="sensor offline") as exc_info:
        await registry.invoke(FunctionCall(name="broken", arguments=""))

    assert isinstance(exc_info.value.inner_exception, RuntimeError)


# endregion
