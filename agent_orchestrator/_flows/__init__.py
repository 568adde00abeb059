# Copyright (c) Microsoft. All rights reserved.

from ._builder import *  # noqa: F403
from ._conditions import *  # noqa: F403
from ._document import *  # noqa: F403
from ._planner import *  # noqa: F403
