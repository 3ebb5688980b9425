"""
CampusBid Escrow — Attempt Counters
Backs two kinds of protection on the attempt_counters table:
  - per-code failure counters that lock permanently at a threshold
  - per user+action windowed request limits that reset when the window ends
Each mutation commits in its own unit so a rejected request cannot roll it back.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.exceptions import RateLimitedError
from campusbid.models import AttemptCounter

logger = logging.getLogger("campusbid.attempts")


def code_subject(kind: str, resource_id: str) -> str:
    return f"{kind}:{resource_id}"


def action_subject(user_id: str, action: str) -> str:
    return f"user:{user_id}:{action}"


class AttemptTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, subject_key: str) -> Optional[AttemptCounter]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AttemptCounter).where(AttemptCounter.subject_key == subject_key)
            )
            return result.scalar_one_or_none()

    async def is_locked(self, subject_key: str) -> bool:
        counter = await self.get(subject_key)
        return counter is not None and counter.locked_at is not None

    async def _ensure(self, subject_key: str, window_end: Optional[datetime] = None) -> None:
        """Insert the counter row if missing; a concurrent insert is harmless."""
        if await self.get(subject_key) is not None:
            return
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(AttemptCounter(
                        subject_key=subject_key,
                        count=0,
                        window_start=self._clock(),
                        window_end=window_end,
                    ))
        except IntegrityError:
            pass

    # ═══════════════════════════════════════════════════
    #  Code failure counters (permanent lockout)
    # ═══════════════════════════════════════════════════

    async def record_failure(self, subject_key: str, threshold: int) -> AttemptCounter:
        """
        Atomically add one failure. Once the count reaches the threshold the
        counter is locked for good; no window ever clears it.
        """
        await self._ensure(subject_key)
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(AttemptCounter)
                    .where(AttemptCounter.subject_key == subject_key)
                    .values(count=AttemptCounter.count + 1)
                )
                await session.execute(
                    update(AttemptCounter)
                    .where(
                        AttemptCounter.subject_key == subject_key,
                        AttemptCounter.count >= threshold,
                        AttemptCounter.locked_at.is_(None),
                    )
                    .values(locked_at=now)
                )
                result = await session.execute(
                    select(AttemptCounter).where(AttemptCounter.subject_key == subject_key)
                )
                counter = result.scalar_one()

        if counter.locked_at is not None:
            logger.warning("🔒 %s locked after %d failed attempts", subject_key, counter.count)
        return counter

    # ═══════════════════════════════════════════════════
    #  Windowed rate limits (user + action)
    # ═══════════════════════════════════════════════════

    async def hit(self, subject_key: str, limit: int, window_seconds: int) -> AttemptCounter:
        """
        Count one request in the current window, starting a new window when
        the previous one has ended. Raises RateLimitedError past the limit.
        """
        window = timedelta(seconds=window_seconds)
        await self._ensure(subject_key, window_end=self._clock() + window)
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                # Expired window: start over
                await session.execute(
                    update(AttemptCounter)
                    .where(
                        AttemptCounter.subject_key == subject_key,
                        AttemptCounter.window_end <= now,
                    )
                    .values(count=0, window_start=now, window_end=now + window)
                )
                await session.execute(
                    update(AttemptCounter)
                    .where(AttemptCounter.subject_key == subject_key)
                    .values(count=AttemptCounter.count + 1)
                )
                result = await session.execute(
                    select(AttemptCounter).where(AttemptCounter.subject_key == subject_key)
                )
                counter = result.scalar_one()

        if counter.count > limit:
            logger.warning("Rate limit exceeded for %s (%d/%d)", subject_key, counter.count, limit)
            raise RateLimitedError(
                "Too many attempts, try again later",
                retry_after=counter.window_end.isoformat() if counter.window_end else None,
            )
        return counter
