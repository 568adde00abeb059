# Copyright (c) Microsoft. All rights reserved.

import importlib
import importlib.metadata
from typing import Final

try:
    _version = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    _version = "0.0.0"  # Fallback for development mode
__version__: Final[str] = _version

from ._actions import *  # noqa: F403
from ._agents import *  # noqa: F403
from ._clients import *  # noqa: F403
from ._flows import *  # noqa: F403
from ._history import *  # noqa: F403
from ._logging import *  # noqa: F403
from ._metrics import *  # noqa: F403
from ._orchestrations import *  # noqa: F403
from ._settings import *  # noqa: F403
from ._shared_state import *  # noqa: F403
from ._tools import *  # noqa: F403
from ._types import *  # noqa: F403
