"""Injectable wall clock."""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Return current unix time in whole seconds."""
    return int(time.time())
