# Copyright (c) Microsoft. All rights reserved.

import logging

from .exceptions import OrchestrationException

__all__ = ["get_logger", "setup_logging"]

LOGGER_NAMESPACE = "agent_orchestrator"


def setup_logging(level: int = logging.INFO) -> None:
    """Configure a console handler for the orchestrator loggers."""
    logging.basicConfig(
        format="[%(asctime)s - %(pathname)s:%(lineno)d - %(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger(LOGGER_NAMESPACE).setLevel(level)


def get_logger(name: str = LOGGER_NAMESPACE) -> logging.Logger:
    """Get a logger inside the orchestrator namespace.

    Args:
        name (str): The name of the logger. Defaults to 'agent_orchestrator'.

    Returns:
        logging.Logger: The logger instance.
    """
    if not name.startswith(LOGGER_NAMESPACE):
        raise OrchestrationException(f"Logger name must start with '{LOGGER_NAMESPACE}'.")
    return logging.getLogger(name)
