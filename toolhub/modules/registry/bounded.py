"""Time-bounded registry calls."""

import asyncio
from typing import Awaitable, TypeVar

from toolhub.domain.errors import StoreTimeoutError

T = TypeVar("T")


async def bounded(call: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a registry call, raising StoreTimeoutError when it exceeds timeout seconds."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(
            f"Registry operation '{operation}' timed out after {timeout}s",
            code="STORE_TIMEOUT",
        ) from e
