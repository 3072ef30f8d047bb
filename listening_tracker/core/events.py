"""Observation events: parsing, dispatch and the JSON-lines event source."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, TextIO

from ..errors import ObservationDataInvalid
from .tracker import SessionTracker


class EventType(str, Enum):
    """Message types posted by the playback observers."""

    TRACK_PLAYING = "track:playing"
    TRACK_PAUSED = "track:paused"
    TRACK_CHANGED = "track:changed"
    TRACK_ENDED = "track:ended"
    TAB_CLOSED = "tab:closed"
    CLIENT_ID_FOUND = "api:clientIdFound"


@dataclass(frozen=True)
class ObservationEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    tab_id: Any = None

    @property
    def track(self) -> Any:
        return self.data.get("track")

    @classmethod
    def from_message(cls, message: Any) -> 'ObservationEvent':
        """Parse a raw message of the form ``{"type": ..., "data": {...}, "tabId": ...}``.

        Raises:
            ObservationDataInvalid: If the message is malformed or of an unknown type
        """
        if not isinstance(message, Mapping):
            raise ObservationDataInvalid(f"Event must be an object, got {type(message).__name__}")

        raw_type = message.get("type")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise ObservationDataInvalid(f"Unknown event type: {raw_type!r}") from None

        data = message.get("data") or {}
        if not isinstance(data, Mapping):
            raise ObservationDataInvalid(f"Event data for {raw_type} must be an object")

        tab_id = message.get("tabId", message.get("tab_id", data.get("tabId", data.get("tab_id"))))
        return cls(type=event_type, data=dict(data), tab_id=tab_id)


def parse_line(line: str) -> Optional[ObservationEvent]:
    """Parse one JSON line. Blank lines yield None.

    Raises:
        ObservationDataInvalid: If the line is not a valid event
    """
    line = line.strip()
    if not line:
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise ObservationDataInvalid(f"Invalid JSON: {e}") from e
    return ObservationEvent.from_message(message)


class EventDispatcher:
    """Routes observation events to the session tracker."""

    def __init__(
        self,
        tracker: SessionTracker,
        on_client_id: Optional[Callable[[str], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.tracker = tracker
        self.on_client_id = on_client_id
        self.logger = logger or logging.getLogger(__name__)
        self.dispatched = 0

    async def dispatch(self, event: ObservationEvent) -> None:
        self.logger.debug(f"Dispatching {event.type.value} (tab {event.tab_id})")

        if event.type is EventType.TRACK_PLAYING:
            await self.tracker.on_track_playing(event.track, event.tab_id)
        elif event.type is EventType.TRACK_CHANGED:
            await self.tracker.on_track_changed(event.track, event.tab_id)
        elif event.type is EventType.TRACK_PAUSED:
            await self.tracker.on_track_paused(event.tab_id)
        elif event.type is EventType.TRACK_ENDED:
            await self.tracker.on_track_ended(event.tab_id)
        elif event.type is EventType.TAB_CLOSED:
            await self.tracker.on_tab_closed(event.tab_id)
        elif event.type is EventType.CLIENT_ID_FOUND:
            client_id = event.data.get("clientId") or event.data.get("client_id")
            if client_id and self.on_client_id is not None:
                await self.on_client_id(client_id)

        self.dispatched += 1

    async def dispatch_message(self, message: Any) -> bool:
        """Parse and dispatch a raw message.

        Returns:
            True if the message was dispatched, False if it was dropped
        """
        try:
            event = ObservationEvent.from_message(message)
        except ObservationDataInvalid as e:
            self.logger.warning(f"Ignoring event: {e}")
            return False
        await self.dispatch(event)
        return True


class JsonLinesEventSource:
    """Reads observation events from a text stream, one JSON object per line.

    Reads happen in a worker thread so a blocking stream such as stdin never
    stalls the event loop.
    """

    def __init__(self, stream: TextIO, logger: Optional[logging.Logger] = None):
        self.stream = stream
        self.logger = logger or logging.getLogger(__name__)
        self.skipped = 0

    async def events(self) -> AsyncIterator[ObservationEvent]:
        line_number = 0
        while True:
            line = await asyncio.to_thread(self.stream.readline)
            if not line:
                return
            line_number += 1

            try:
                event = parse_line(line)
            except ObservationDataInvalid as e:
                self.skipped += 1
                self.logger.warning(f"Skipping line {line_number}: {e}")
                continue

            if event is not None:
                yield event

    def __aiter__(self) -> AsyncIterator[ObservationEvent]:
        return self.events()
