"""Bounded-time flushing of sync sessions during shutdown."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


class ShutdownFlushSession(Protocol):
    """Minimal contract required to flush pending sync work during shutdown."""

    async def flush_pending(self) -> None: ...

    def is_sync_active(self) -> bool: ...


class FlushStatus(StrEnum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class ShutdownFlushResult:
    """Outcome of flushing sync sessions during shutdown."""

    status: FlushStatus
    session_count: int
    active_at_start: int
    error_message: str | None = None


def _consume_late_result(future: asyncio.Future[object]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug("Sync flush failed after shutdown deadline: %s", exc)


async def flush_sessions_with_timeout(
    sessions: Sequence[ShutdownFlushSession], timeout_ms: int
) -> ShutdownFlushResult:
    """Flush every session, giving up (without cancelling) after ``timeout_ms``."""
    session_count = len(sessions)
    active_at_start = sum(1 for session in sessions if session.is_sync_active())
    if session_count == 0:
        return ShutdownFlushResult(FlushStatus.COMPLETED, session_count, active_at_start)

    flush = asyncio.gather(*(session.flush_pending() for session in sessions))
    flush.add_done_callback(_consume_late_result)
    try:
        await asyncio.wait_for(asyncio.shield(flush), timeout=timeout_ms / 1000)
    except TimeoutError:
        return ShutdownFlushResult(FlushStatus.TIMED_OUT, session_count, active_at_start)
    except Exception as exc:
        return ShutdownFlushResult(
            FlushStatus.FAILED,
            session_count,
            active_at_start,
            error_message=str(exc),
        )
    return ShutdownFlushResult(FlushStatus.COMPLETED, session_count, active_at_start)
