"""Calendar adapter: fetches and parses iCal feeds."""

import asyncio
import logging
from datetime import date, datetime, timezone, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

import httpx
from icalendar import Calendar

from shared.config import CalendarSettings, get_schedule_timezone
from shared.models import CalendarEvent
from services.source_adapters.base import SourceAdapter, translate_errors

logger = logging.getLogger(__name__)


class CalendarAdapter(SourceAdapter):
    """Reads the personal and work iCal feeds."""

    name = "calendar"
    snapshot_kind = "calendar_event"

    def __init__(
        self,
        settings: CalendarSettings,
        client: Optional[httpx.AsyncClient] = None,
        tz: Optional[tzinfo] = None
    ):
        self.settings = settings
        self.tz = tz or ZoneInfo(get_schedule_timezone())
        super().__init__(client or httpx.AsyncClient(
            headers={'User-Agent': 'Mission-Control-Calendar/1.0'},
            timeout=15.0,
            follow_redirects=True
        ))

    @translate_errors("fetching calendar feeds")
    async def fetch_snapshot(self) -> List[CalendarEvent]:
        feeds = self.settings.feeds
        results = await asyncio.gather(
            *(self._fetch_feed(calendar_type, url) for calendar_type, url in feeds.items())
        )
        events = [event for feed_events in results for event in feed_events]
        events.sort(key=lambda event: event.start_time)
        logger.info(f"Fetched {len(events)} calendar events from {len(feeds)} feeds")
        return events

    async def _fetch_feed(self, calendar_type: str, url: str) -> List[CalendarEvent]:
        # Feed URLs embed private tokens, so only the type is logged
        response = await self._request("GET", url)
        return self.parse_feed(response.text, calendar_type)

    def parse_feed(self, ics_text: str, calendar_type: str) -> List[CalendarEvent]:
        """Parse one iCal document into events tagged with the calendar type."""
        calendar = Calendar.from_ical(ics_text)
        events = []
        for component in calendar.walk('VEVENT'):
            dtstart = component.get('DTSTART')
            if dtstart is None:
                logger.warning(f"Skipping {calendar_type} event without DTSTART: {component.get('UID')}")
                continue

            start_time = self._to_utc(dtstart.dt)
            dtend = component.get('DTEND')
            summary = str(component.get('SUMMARY') or '') or 'Untitled Event'

            uid = str(component.get('UID') or '') or f"{summary}-{start_time.isoformat()}"
            recurrence_id = component.get('RECURRENCE-ID')
            if recurrence_id is not None:
                uid = f"{uid}:{self._to_utc(recurrence_id.dt).isoformat()}"

            events.append(CalendarEvent(
                uid=uid,
                summary=summary,
                description=str(component.get('DESCRIPTION') or ''),
                start_time=start_time,
                end_time=self._to_utc(dtend.dt) if dtend is not None else None,
                location=str(component.get('LOCATION') or ''),
                calendar_type=calendar_type,
            ))
        return events

    def _to_utc(self, value) -> datetime:
        """Normalize iCal date/datetime values; floating and all-day times use the local zone."""
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=self.tz)
            return value.astimezone(timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=self.tz).astimezone(timezone.utc)
        raise ValueError(f"Unsupported iCal date value: {value!r}")
