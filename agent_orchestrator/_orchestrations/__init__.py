# Copyright (c) Microsoft. All rights reserved.

from ._base import *  # noqa: F403
from ._concurrent import *  # noqa: F403
from ._group_chat import *  # noqa: F403
from ._handoff import *  # noqa: F403
from ._magentic import *  # noqa: F403
from ._sequential import *  # noqa: F403
