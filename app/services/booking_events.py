import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.models.booking import Booking
from app.models.booking_page import BookingPage

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_COMPLETED = "booking.completed"
BOOKING_NO_SHOW = "booking.no_show"


@dataclass(frozen=True)
class BookingEvent:
    type: str
    booking: Booking
    page: BookingPage


Handler = Callable[[BookingEvent], Awaitable[None]]


class BookingEventDispatcher:
    """Runs subscribers of committed booking changes as background tasks.

    ``emit`` returns immediately. A failing handler is logged and never affects
    the emitter or the other handlers; nothing is retried here.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def emit(self, event: BookingEvent) -> None:
        for handler in self._handlers.get(event.type, []):
            task = asyncio.create_task(self._run(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: Handler, event: BookingEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Handler %s failed for %s (booking %s)",
                getattr(handler, "__name__", type(handler).__name__),
                event.type,
                event.booking.id,
            )

    async def drain(self) -> None:
        """Wait for in-flight handlers (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
