# Copyright (c) Microsoft. All rights reserved.

import logging
from typing import Any, Literal

logger = logging.getLogger("agent_orchestrator")


class OrchestrationException(Exception):
    """Base exception for the agent orchestrator.

    Automatically logs the message as debug.
    """

    def __init__(
        self,
        message: str,
        inner_exception: Exception | None = None,
        log_level: Literal[0] | Literal[10] | Literal[20] | Literal[30] | Literal[40] | Literal[50] | None = 10,
        *args: Any,
        **kwargs: Any,
    ):
        """Create an OrchestrationException.

        This emits a debug log (by default), with the inner_exception if provided.
        """
        if log_level is not None:
            logger.log(log_level, message, exc_info=inner_exception)
        self.inner_exception = inner_exception
        if inner_exception:
            super().__init__(message, inner_exception, *args)  # type: ignore
            return
        super().__init__(message, *args)  # type: ignore


# region Configuration Exceptions


class AgentConfigurationException(OrchestrationException):
    """The roster handed to an orchestrator is not usable."""

    pass


class NoAgentsRegisteredError(AgentConfigurationException):
    """The orchestrator was asked to run without any agents."""

    def __init__(self, message: str = "no agents registered", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UnknownAgentError(AgentConfigurationException):
    """A name did not resolve to an agent in the roster."""

    def __init__(self, name: str, **kwargs: Any) -> None:
        self.name = name
        super().__init__(f"unknown agent '{name}'", **kwargs)


class DuplicateAgentError(AgentConfigurationException):
    """The roster already holds an agent with this name."""

    def __init__(self, name: str, **kwargs: Any) -> None:
        self.name = name
        super().__init__(f"duplicate agent name '{name}'", **kwargs)


class SettingNotFoundError(AgentConfigurationException):
    """A required setting could not be resolved."""

    pass


class ServiceInitializationError(AgentConfigurationException):
    """An error occurred while initializing a service such as a completion provider."""

    pass


# endregion

# region Protocol Exceptions


class InvalidManagerDecisionError(OrchestrationException):
    """A manager or agent produced a decision that cannot be acted upon."""

    pass


# endregion

# region Budget Exceptions


class BudgetExhaustedException(OrchestrationException):
    """A run ran out of its configured round or handoff budget."""

    pass


class MaxRoundsReachedError(BudgetExhaustedException):
    """The maximum number of rounds was reached without completion."""

    def __init__(self, message: str = "maximum rounds reached", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class MaxHandoffsReachedError(BudgetExhaustedException):
    """The handoff budget of the session is exhausted."""

    def __init__(self, message: str = "maximum handoffs reached", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# endregion

# region Provider Exceptions


class ProviderException(OrchestrationException):
    """The completion provider failed to produce a response."""

    pass


class ProviderTimeoutError(ProviderException):
    """The completion provider did not answer within the turn timeout."""

    def __init__(self, message: str = "provider timed out", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ToolException(OrchestrationException):
    """An error occurred while resolving or invoking a tool."""

    pass


# endregion

# region Flow Exceptions


class FlowException(OrchestrationException):
    """Base class for errors raised while loading or planning flow documents."""

    pass


class FlowLoadError(FlowException):
    """The flow document could not be read or validated."""

    pass


class FlowNotFoundError(FlowException):
    """No flow with the requested id exists in the document."""

    def __init__(self, flow_id: str, **kwargs: Any) -> None:
        self.flow_id = flow_id
        super().__init__(f"flow '{flow_id}' not found", **kwargs)


class NodeNotFoundError(FlowException):
    """An edge or entry references a node that does not exist."""

    def __init__(self, node_id: str, **kwargs: Any) -> None:
        self.node_id = node_id
        super().__init__(f"node '{node_id}' not found", **kwargs)


class FlowAgentNotFoundError(FlowException):
    """A planned step references an agent that is not defined in the document."""

    def __init__(self, agent_id: str, **kwargs: Any) -> None:
        self.agent_id = agent_id
        super().__init__(f"agent '{agent_id}' not defined", **kwargs)


class SubflowCycleError(FlowException):
    """A subflow chain revisits a flow that is already being planned."""

    def __init__(self, flow_id: str, **kwargs: Any) -> None:
        self.flow_id = flow_id
        super().__init__(f"subflow cycle detected at flow '{flow_id}'", **kwargs)


class NoMatchingEdgeError(FlowException):
    """None of the outgoing edges of a node could be taken."""

    def __init__(self, node_id: str, **kwargs: Any) -> None:
        self.node_id = node_id
        super().__init__(f"no outgoing edge of node '{node_id}' matched", **kwargs)


class UnsupportedNodeError(FlowException):
    """The node kind cannot be planned in this position."""

    def __init__(self, node_id: str, **kwargs: Any) -> None:
        self.node_id = node_id
        super().__init__(f"node '{node_id}' is not supported here", **kwargs)


class MissingOutputError(FlowException):
    """The flow produced no agent steps before reaching its end."""

    def __init__(self, flow_id: str, **kwargs: Any) -> None:
        self.flow_id = flow_id
        super().__init__(f"flow '{flow_id}' does not reach any agent before its output", **kwargs)


class MissingParallelBranchesError(FlowException):
    """A parallel node has no outgoing branches."""

    def __init__(self, node_id: str, **kwargs: Any) -> None:
        self.node_id = node_id
        super().__init__(f"parallel node '{node_id}' has no branches", **kwargs)


class ParallelConvergenceError(FlowException):
    """Branches of a converging parallel node end at different joins."""

    def __init__(self, node_id: str, **kwargs: Any) -> None:
        self.node_id = node_id
        super().__init__(f"branches of parallel node '{node_id}' do not converge on the same merge", **kwargs)


class ToolResolutionError(FlowException):
    """A tool definition could not be bound to a function."""

    def __init__(self, tool_id: str, detail: str, **kwargs: Any) -> None:
        self.tool_id = tool_id
        super().__init__(f"tool '{tool_id}' could not be resolved: {detail}", **kwargs)


class FunctionNotFoundError(FlowException):
    """A tool definition names a function that was not supplied."""

    def __init__(self, tool_id: str, function: str, **kwargs: Any) -> None:
        self.tool_id = tool_id
        self.function = function
        super().__init__(f"function '{function}' for tool '{tool_id}' not found", **kwargs)


class InvalidRegexError(FlowException):
    """A handoff rule carries a pattern that does not compile."""

    def __init__(self, pattern: str, detail: str, **kwargs: Any) -> None:
        self.pattern = pattern
        super().__init__(f"invalid regex '{pattern}': {detail}", **kwargs)


# endregion


__all__ = [
    "AgentConfigurationException",
    "BudgetExhaustedException",
    "DuplicateAgentError",
    "FlowAgentNotFoundError",
    "FlowException",
    "FlowLoadError",
    "FlowNotFoundError",
    "FunctionNotFoundError",
    "InvalidManagerDecisionError",
    "InvalidRegexError",
    "MaxHandoffsReachedError",
    "MaxRoundsReachedError",
    "MissingOutputError",
    "MissingParallelBranchesError",
    "NoAgentsRegisteredError",
    "NoMatchingEdgeError",
    "NodeNotFoundError",
    "OrchestrationException",
    "ParallelConvergenceError",
    "ProviderException",
    "ProviderTimeoutError",
    "ServiceInitializationError",
    "SettingNotFoundError",
    "SubflowCycleError",
    "ToolException",
    "ToolResolutionError",
    "UnknownAgentError",
    "UnsupportedNodeError",
]
