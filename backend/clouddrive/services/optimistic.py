"""Optimistic update helper.

apply the local patch -> await the remote commit -> on failure apply the
inverse patch and re-raise. Used by every DriveSession mutation that
changes local state before the store confirms it.
"""
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def apply_optimistic(
    patch: Callable[[], None],
    inverse: Callable[[], None],
    commit: Callable[[], Awaitable[T]],
    *,
    label: str = "update",
) -> T:
    """Run ``patch`` now, ``commit`` remotely, ``inverse`` if the commit raises."""
    patch()
    try:
        return await commit()
    except BaseException as e:
        logger.warning("Rolling back optimistic %s: %s", label, e)
        inverse()
        raise
