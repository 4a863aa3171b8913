"""
Shared helpers for the async test cases.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable


async def settle(rounds: int = 10) -> None:
    """Let callbacks and tasks scheduled on the loop run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it holds; needed when work runs in threads."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()
