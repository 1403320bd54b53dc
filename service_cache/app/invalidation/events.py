"""
Domain events that make cached data stale, and a small in-process bus.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, DefaultDict, List, Optional, Tuple, Type, TypeVar

from shared.logging import get_logger
from shared.errors import ValidationError


USER_DATA_KINDS = ("favorites", "read_status", "recommendations", "all")


@dataclass(frozen=True)
class ArticleCreated:
    article_id: str
    category: Optional[str] = None
    source_id: Optional[str] = None


@dataclass(frozen=True)
class ArticleUpdated:
    article_id: str
    # Names of the changed fields, empty when unknown
    changes: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ArticleDeleted:
    article_id: str


@dataclass(frozen=True)
class BulkImportCompleted:
    imported: int = 0


@dataclass(frozen=True)
class UserDataChanged:
    user_id: str
    kind: str = "all"

    def __post_init__(self):
        if self.kind not in USER_DATA_KINDS:
            raise ValidationError(
                f"Unknown user data kind: {self.kind}",
                {"kind": self.kind, "allowed": list(USER_DATA_KINDS)}
            )


E = TypeVar("E")
Handler = Callable[[E], Awaitable[None]]


class EventBus:
    """Publish domain events to async subscribers.

    Subscribers run in subscription order. A failing subscriber is logged
    and skipped; the publisher never sees its exception.
    """

    def __init__(self):
        self.logger = get_logger("cache.events")
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Handler):
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event) -> int:
        """Deliver an event; returns how many subscribers handled it."""
        handled = 0
        for handler in self.handlers_for(type(event)):
            try:
                await handler(event)
                handled += 1
            except Exception as e:
                self.logger.error(
                    "Event subscriber failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )

        self.logger.debug("Event published", event_type=type(event).__name__, handlers=handled)
        return handled
