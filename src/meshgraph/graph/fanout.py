"""Concurrent fan-out of independent external fetches with one join point.

Each branch runs in its own task with its own deadline and owns its result;
nothing is shared between branches. The caller merges the joined results.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from meshgraph.exceptions import AccessError, UpstreamQueryError

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)

# Failures an optional branch degrades on. Access problems for the request
# scope itself surface through the mandatory namespace and access lookups.
RECOVERABLE = (UpstreamQueryError, AccessError)


@dataclass(frozen=True)
class FetchFailure:
    """Placeholder result for a failed or timed-out optional branch."""

    branch: str
    error: Exception

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, UpstreamQueryError) and isinstance(
            self.error.__cause__, TimeoutError
        )


async def bounded(
    call: Callable[[], Awaitable[Any]],
    timeout: float | None,
    branch: str = "",
) -> Any:
    """Await ``call()`` under its own deadline; a timeout is an ``UpstreamQueryError``."""
    try:
        async with asyncio.timeout(timeout):
            return await call()
    except TimeoutError as exc:
        raise UpstreamQueryError(
            f"Query [{branch}] timed out after {timeout}s",
            extra={"branch": branch},
        ) from exc


async def fan_out(
    calls: Mapping[K, Callable[[], Awaitable[Any]]],
    timeout: float | None,
    *,
    mandatory: bool,
    label: str,
) -> dict[K, Any]:
    """Run every call concurrently and join.

    With ``mandatory`` the first failure cancels the remaining branches and
    propagates. Otherwise an upstream or access failure yields a
    ``FetchFailure`` in its slot; any other error is a bug and propagates.
    """
    if not calls:
        return {}

    keys = list(calls)
    tasks = [
        asyncio.create_task(bounded(calls[key], timeout, branch=f"{label}:{key}")) for key in keys
    ]
    try:
        outcomes = await asyncio.gather(*tasks, return_exceptions=not mandatory)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    results: dict[K, Any] = {}
    for key, outcome in zip(keys, outcomes, strict=True):
        if isinstance(outcome, RECOVERABLE):
            logger.warning(
                "fetch_branch_failed",
                fetch=label,
                branch=str(key),
                error=str(outcome),
            )
            results[key] = FetchFailure(branch=str(key), error=outcome)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results[key] = outcome
    return results
