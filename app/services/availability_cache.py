import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.availability_cache import AvailabilityCacheEntry
from app.models.booking_page import BookingPage
from app.services.busy_sources import BusySource, collect_busy_intervals
from app.services.intervals import as_aware_utc, as_naive_utc, utc_now
from app.services.slot_generator import Slot, day_bounds, generate_day_slots

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedDay:
    page_id: int
    day: date
    slots: tuple[Slot, ...]
    cached_at: datetime  # aware UTC


class AvailabilityCache(Protocol):
    """Key-value store of generated slots keyed by (page_id, day).

    ``get`` treats entries older than the TTL as absent. ``put`` replaces the
    whole entry for its key.
    """

    async def get(self, page_id: int, day: date) -> CachedDay | None:
        ...

    async def put(self, entry: CachedDay) -> None:
        ...

    async def invalidate(self, page_id: int, day: date) -> None:
        ...

    async def invalidate_page(self, page_id: int) -> None:
        ...

    async def purge_expired(self) -> int:
        ...


class InMemoryAvailabilityCache:
    def __init__(self, ttl: timedelta, clock: Callable[[], datetime] = utc_now) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[int, date], CachedDay] = {}

    def _is_fresh(self, entry: CachedDay) -> bool:
        return self._clock() - entry.cached_at < self._ttl

    async def get(self, page_id: int, day: date) -> CachedDay | None:
        entry = self._entries.get((page_id, day))
        if entry is None or not self._is_fresh(entry):
            return None
        return entry

    async def put(self, entry: CachedDay) -> None:
        self._entries[(entry.page_id, entry.day)] = entry

    async def invalidate(self, page_id: int, day: date) -> None:
        self._entries.pop((page_id, day), None)

    async def invalidate_page(self, page_id: int) -> None:
        for key in [k for k in self._entries if k[0] == page_id]:
            del self._entries[key]

    async def purge_expired(self) -> int:
        stale = [k for k, entry in self._entries.items() if not self._is_fresh(entry)]
        for key in stale:
            del self._entries[key]
        return len(stale)


class DatabaseAvailabilityCache:
    """Cache rows in the ``availability_cache`` table, one per page per day."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        ttl: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_maker = session_maker
        self._ttl = ttl
        self._clock = clock

    def _cutoff(self) -> datetime:
        return as_naive_utc(self._clock() - self._ttl)

    async def get(self, page_id: int, day: date) -> CachedDay | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AvailabilityCacheEntry).where(
                    AvailabilityCacheEntry.booking_page_id == page_id,
                    AvailabilityCacheEntry.slot_date == day,
                    AvailabilityCacheEntry.cached_at > self._cutoff(),
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return CachedDay(
            page_id=row.booking_page_id,
            day=row.slot_date,
            slots=tuple(Slot.from_dict(s) for s in row.slots),
            cached_at=as_aware_utc(row.cached_at),
        )

    async def put(self, entry: CachedDay) -> None:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    await session.execute(
                        delete(AvailabilityCacheEntry).where(
                            AvailabilityCacheEntry.booking_page_id == entry.page_id,
                            AvailabilityCacheEntry.slot_date == entry.day,
                        )
                    )
                    session.add(
                        AvailabilityCacheEntry(
                            booking_page_id=entry.page_id,
                            slot_date=entry.day,
                            slots=[s.to_dict() for s in entry.slots],
                            cached_at=as_naive_utc(entry.cached_at),
                        )
                    )
        except IntegrityError:
            # A concurrent computation for the same key stored its (equivalent) entry first
            logger.debug("Cache entry page=%s date=%s written concurrently", entry.page_id, entry.day)

    async def invalidate(self, page_id: int, day: date) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    delete(AvailabilityCacheEntry).where(
                        AvailabilityCacheEntry.booking_page_id == page_id,
                        AvailabilityCacheEntry.slot_date == day,
                    )
                )

    async def invalidate_page(self, page_id: int) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    delete(AvailabilityCacheEntry).where(AvailabilityCacheEntry.booking_page_id == page_id)
                )

    async def purge_expired(self) -> int:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AvailabilityCacheEntry).where(AvailabilityCacheEntry.cached_at <= self._cutoff())
                )
        return result.rowcount or 0


SourcesFactory = Callable[[BookingPage], list[BusySource]]


class AvailabilityService:
    """Read path: cached slots per page per day, recomputed on miss."""

    def __init__(
        self,
        cache: AvailabilityCache,
        sources_factory: SourcesFactory,
        source_timeout: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self._sources_factory = sources_factory
        self._source_timeout = source_timeout
        self._clock = clock
        # Bumped on every invalidation so a computation that started earlier
        # does not write its result back over the invalidation.
        self._generations: dict[tuple[int, date], int] = {}
        self._page_epochs: dict[int, int] = {}

    def now(self) -> datetime:
        return self._clock()

    def _token(self, page_id: int, day: date) -> tuple[int, int]:
        return self._page_epochs.get(page_id, 0), self._generations.get((page_id, day), 0)

    async def compute(self, page: BookingPage, day: date) -> CachedDay:
        snapshot_at = self._clock()
        range_start, range_end = day_bounds(page, day)
        busy = await collect_busy_intervals(
            self._sources_factory(page), range_start, range_end, self._source_timeout
        )
        slots = generate_day_slots(page, day, busy, snapshot_at)
        return CachedDay(page_id=page.id, day=day, slots=tuple(slots), cached_at=snapshot_at)

    async def get_or_compute(self, page: BookingPage, day: date) -> list[Slot]:
        entry = await self.cache.get(page.id, day)
        if entry is not None:
            logger.debug("Availability cache hit page=%s date=%s", page.id, day)
            return list(entry.slots)
        token = self._token(page.id, day)
        entry = await self.compute(page, day)
        if self._token(page.id, day) != token:
            logger.debug("Availability for page=%s date=%s invalidated during compute; not caching", page.id, day)
            return list(entry.slots)
        await self.cache.put(entry)
        # An invalidation that landed while the write was in flight may not have seen it
        if self._token(page.id, day) != token:
            logger.debug("Availability for page=%s date=%s invalidated during put; dropping entry", page.id, day)
            await self.cache.invalidate(page.id, day)
        return list(entry.slots)

    def _prune_generations(self) -> None:
        # Past days are never recomputed by the read path; yesterday stays for pages behind UTC
        cutoff = self._clock().date() - timedelta(days=1)
        for key in [k for k in self._generations if k[1] < cutoff]:
            del self._generations[key]

    async def invalidate(self, page_id: int, day: date) -> None:
        self._prune_generations()
        key = (page_id, day)
        self._generations[key] = self._generations.get(key, 0) + 1
        await self.cache.invalidate(page_id, day)
        logger.info("Invalidated availability cache page=%s date=%s", page_id, day)

    async def invalidate_page(self, page_id: int) -> None:
        self._page_epochs[page_id] = self._page_epochs.get(page_id, 0) + 1
        await self.cache.invalidate_page(page_id)
        logger.info("Invalidated all cached availability for page=%s", page_id)
