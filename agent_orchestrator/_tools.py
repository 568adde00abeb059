# Copyright (c) Microsoft. All rights reserved.

import inspect
import json
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from functools import wraps
from typing import Annotated, Any, get_args, get_origin, overload

from pydantic import BaseModel, Field, ValidationError, create_model

from ._logging import get_logger
from ._types import FunctionCall
from .exceptions import ToolException

__all__ = ["FunctionTool", "ToolRegistry", "tool"]

logger = get_logger("agent_orchestrator.tools")


class EmptyInputModel(BaseModel):
    """An empty input model for functions with no parameters."""


class FunctionTool:
    """A tool that wraps a Python function so a model can call it.

    The input model is a pydantic model; when it is not supplied it is inferred from the function signature,
    and ``Annotated[str, "description"]`` parameters become described fields.

    Examples:
        .. code-block:: python

            from typing import Annotated
            from agent_orchestrator import tool


            @tool
            def get_weather(location: Annotated[str, "The city name"]) -> str:
                '''Get the weather for a location.'''
                return f"Sunny in {location}"


            result = await get_weather.invoke(location="Seattle")
    """

    def __init__(
        self,
        *,
        name: str,
        description: str = "",
        func: Callable[..., Any] | None = None,
        input_model: type[BaseModel] | None = None,
    ) -> None:
        """Initialize the FunctionTool.

        Keyword Args:
            name: The name of the function.
            description: A description of the function.
            func: The function to wrap. ``None`` creates a declaration-only tool.
            input_model: The pydantic model describing the arguments.
        """
        self.name = name
        self.description = description
        self.func = func
        if input_model is None:
            input_model = _create_input_model_from_func(func, name) if func is not None else EmptyInputModel
        self.input_model = input_model
        self._cached_parameters: dict[str, Any] | None = None

    def __str__(self) -> str:
        if self.description:
            return f"{self.__class__.__name__}(name={self.name}, description={self.description})"
        return f"{self.__class__.__name__}(name={self.name})"

    @property
    def declaration_only(self) -> bool:
        return self.func is None

    async def invoke(self, *, arguments: BaseModel | Mapping[str, Any] | None = None, **kwargs: Any) -> Any:
        """Validate the arguments and run the function, awaiting it when it is a coroutine function.

        Raises:
            ToolException: The tool is declaration only or the arguments do not validate.
        """
        if self.func is None:
            raise ToolException(f"Function '{self.name}' is declaration only and cannot be invoked.")
        if arguments is None:
            arguments = kwargs
        if not isinstance(arguments, BaseModel):
            try:
                arguments = self.input_model.model_validate(dict(arguments))
            except ValidationError as ex:
                raise ToolException(f"Invalid arguments for function '{self.name}': {ex}", inner_exception=ex) from ex
        values = {key: getattr(arguments, key) for key in type(arguments).model_fields}
        result = self.func(**values)
        if inspect.isawaitable(result):
            result = await result
        return result

    def parameters(self) -> dict[str, Any]:
        """JSON schema of the parameters, cached after the first call."""
        if self._cached_parameters is None:
            self._cached_parameters = self.input_model.model_json_schema()
        return self._cached_parameters

    def to_json_schema_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters(),
            },
        }


def _parse_annotation(annotation: Any) -> Any:
    """Turn ``Annotated[T, "text"]`` into ``Annotated[T, Field(description="text")]``."""
    if get_origin(annotation) is Annotated:
        args = get_args(annotation)
        if len(args) > 1 and isinstance(args[1], str):
            return Annotated[args[0], Field(description=args[1])]
    return annotation


def _create_input_model_from_func(func: Callable[..., Any], name: str) -> type[BaseModel]:
    sig = inspect.signature(func)
    fields = {
        pname: (
            _parse_annotation(param.annotation) if param.annotation is not inspect.Parameter.empty else str,
            param.default if param.default is not inspect.Parameter.empty else ...,
        )
        for pname, param in sig.parameters.items()
        if pname not in {"self", "cls"}
        and param.kind not in {inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD}
    }
    return create_model(f"{name}_input", **fields)  # type: ignore[call-overload, no-any-return]


@overload
def tool(func: Callable[..., Any], /) -> FunctionTool: ...


@overload
def tool(
    func: None = None, /, *, name: str | None = None, description: str | None = None
) -> Callable[[Callable[..., Any]], FunctionTool]: ...


def tool(
    func: Callable[..., Any] | None = None,
    /,
    *,
    name: str | None = None,
    description: str | None = None,
) -> FunctionTool | Callable[[Callable[..., Any]], FunctionTool]:
    """Decorate a function to turn it into a :class:`FunctionTool`.

    The name defaults to the function name and the description to its docstring.
    """

    def decorator(f: Callable[..., Any]) -> FunctionTool:
        @wraps(f)
        def wrapper(inner: Callable[..., Any]) -> FunctionTool:
            return FunctionTool(
                name=name or getattr(inner, "__name__", "unknown_function"),
                description=description or inspect.getdoc(inner) or "",
                func=inner,
            )

        return wrapper(f)

    return decorator(func) if func else decorator


ToolLike = FunctionTool | Callable[..., Any | Awaitable[Any]]


class ToolRegistry:
    """An ordered, name-keyed set of tools an agent may call."""

    def __init__(self, tools: Iterable[ToolLike] | None = None) -> None:
        self._tools: dict[str, FunctionTool] = {}
        for item in tools or ():
            self.register(item)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[FunctionTool]:
        return iter(self._tools.values())

    def register(self, item: ToolLike) -> FunctionTool:
        """Register a tool; plain callables are wrapped with :func:`tool`. A later registration wins."""
        function_tool = item if isinstance(item, FunctionTool) else tool(item)
        self._tools[function_tool.name] = function_tool
        return function_tool

    def extend(self, other: "ToolRegistry") -> "ToolRegistry":
        for function_tool in other:
            self.register(function_tool)
        return self

    def merged(self, other: "ToolRegistry | None") -> "ToolRegistry":
        """Return a new registry with the tools of both registries."""
        combined = ToolRegistry(self)
        if other is not None:
            combined.extend(other)
        return combined

    def get(self, name: str) -> FunctionTool | None:
        return self._tools.get(name)

    def definitions(self) -> list[dict[str, Any]]:
        return [function_tool.to_json_schema_spec() for function_tool in self._tools.values()]

    async def invoke(self, call: FunctionCall) -> Any:
        """Invoke the tool named by ``call`` and return a JSON-compatible value.

        Raises:
            ToolException: The tool is unknown, the arguments are invalid, or the tool raised.
        """
        function_tool = self._tools.get(call.name)
        if function_tool is None:
            raise ToolException(f"unknown function: {call.name}")
        try:
            arguments = call.parse_arguments()
        except (ValueError, RecursionError) as ex:
            raise ToolException(f"invalid function arguments for '{call.name}': {ex}", inner_exception=ex) from ex
        logger.debug("Invoking tool %s", call.name)
        try:
            result = await function_tool.invoke(arguments=arguments)
        except ToolException:
            raise
        except Exception as ex:
            raise ToolException(f"function '{call.name}' failed: {ex}", inner_exception=ex) from ex
        return _to_json_value(result)


def _to_json_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value
