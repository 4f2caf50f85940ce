"""Contracts for outbound side effects and a timeout wrapper for calling them."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol, TypeVar

T = TypeVar("T")


class Notifier(Protocol):
    def send_otp(self, email: str, otp: str) -> bool: ...


class AssetStorage(Protocol):
    def delete_by_reference(self, ref: str) -> bool: ...


async def run_bounded(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking collaborator call in a worker thread with a deadline.

    The call is shielded: on timeout the caller gets ``asyncio.TimeoutError``
    while the side effect already in flight is left to finish.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    return await asyncio.wait_for(asyncio.shield(task), timeout)
