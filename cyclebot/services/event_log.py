"""Event log writer - records bot events to bot_events.

Append-only: never mutate historical records. Write-ahead log rows are
owned by the state transaction manager; everything else goes through here.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import BotEvent, EventSeverity, EventType
from ..models.event_metadata import EventMetadataBase, dump_metadata

logger = logging.getLogger(__name__)


class EventLogService:
    """Service for writing and reading bot events."""

    def __init__(self, session_maker: async_sessionmaker, logger: Optional[logging.Logger] = None):
        self.session_maker = session_maker
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def build_event(
        bot_id: str,
        event_type: EventType,
        message: str,
        metadata: EventMetadataBase,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> BotEvent:
        """Build an event row from a validated metadata model."""
        return BotEvent(
            bot_id=bot_id,
            event_type=event_type,
            severity=severity,
            message=message[:500],
            event_metadata=dump_metadata(metadata),
        )

    def append(
        self,
        session: AsyncSession,
        bot_id: str,
        event_type: EventType,
        message: str,
        metadata: EventMetadataBase,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> BotEvent:
        """Add an event to an open session.

        Note:
            Caller must commit the session.
        """
        event = self.build_event(bot_id, event_type, message, metadata, severity)
        session.add(event)
        return event

    async def record(
        self,
        bot_id: str,
        event_type: EventType,
        message: str,
        metadata: EventMetadataBase,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> BotEvent:
        """Write an event in its own transaction."""
        async with self.session_maker() as session:
            async with session.begin():
                event = self.append(session, bot_id, event_type, message, metadata, severity)

        self.logger.debug(f"Bot {bot_id}: Recorded {event_type.value} event {event.id}")
        return event

    async def get_events(
        self,
        bot_id: str,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> List[BotEvent]:
        """Newest-first events for a bot."""
        async with self.session_maker() as session:
            stmt = select(BotEvent).where(BotEvent.bot_id == bot_id)
            if event_type is not None:
                stmt = stmt.where(BotEvent.event_type == event_type)
            result = await session.execute(stmt.order_by(BotEvent.id.desc()).limit(limit))
            return list(result.scalars().all())
