# Dystros
# Copyright (C) 2016-2019 Jelmer Vernooĳ <jelmer@jelmer.uk>, et al.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""ICalendar document handling.

A CalendarDocument owns one parsed calendar file. EventView objects are
lightweight handles into the document's tree; they keep a reference to the
document so the tree stays alive for as long as any view of it exists.
"""

import copy
import logging
import os
from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

import dateutil.rrule
from dateutil.relativedelta import relativedelta
from icalendar.cal import Calendar, Component
from icalendar.prop import vDatetime, vText

DEFAULT_TIMEZONE = timezone.utc

# Occurrences are unrolled up to this far past the end of the master event.
RECURRENCE_LOOKAHEAD = relativedelta(years=1)

PROPERTY_UID = "UID"
PROPERTY_SUMMARY = "SUMMARY"
PROPERTY_DESCRIPTION = "DESCRIPTION"
PROPERTY_LOCATION = "LOCATION"
PROPERTY_DTSTART = "DTSTART"
PROPERTY_DTEND = "DTEND"
PROPERTY_DURATION = "DURATION"
PROPERTY_DTSTAMP = "DTSTAMP"
PROPERTY_LAST_MODIFIED = "LAST-MODIFIED"
PROPERTY_RRULE = "RRULE"
PROPERTY_RDATE = "RDATE"
PROPERTY_EXDATE = "EXDATE"
PROPERTY_EXRULE = "EXRULE"
PROPERTY_STATUS = "STATUS"

KNOWN_PROPERTIES = frozenset(
    [
        PROPERTY_UID,
        PROPERTY_SUMMARY,
        PROPERTY_DESCRIPTION,
        PROPERTY_LOCATION,
        PROPERTY_DTSTART,
        PROPERTY_DTEND,
        PROPERTY_DURATION,
        PROPERTY_DTSTAMP,
        PROPERTY_LAST_MODIFIED,
        PROPERTY_RRULE,
        PROPERTY_RDATE,
        PROPERTY_EXDATE,
        PROPERTY_EXRULE,
        PROPERTY_STATUS,
        "PRODID",
        "VERSION",
        "CREATED",
        "SEQUENCE",
        "CATEGORIES",
        "RECURRENCE-ID",
    ]
)

REQUIRED_PROPERTIES = {
    "VCALENDAR": ("PRODID", "VERSION"),
}

NONEMPTY_TEXT_PROPERTIES = (
    PROPERTY_UID,
    PROPERTY_SUMMARY,
    PROPERTY_DESCRIPTION,
    PROPERTY_LOCATION,
)

# Error markers left behind by other parsers (libical in particular).
ERROR_PROPERTY = "X-LIC-ERROR"

# RFC5545 section 3.3.11: CONTROL characters other than HTAB are not
# allowed in text values. Escaped newlines are unescaped by the parser, so
# LF is accepted.
_INVALID_CONTROL_CHARACTERS = (
    [chr(i) for i in range(0x00, 0x09)]
    + [chr(i) for i in range(0x0B, 0x20)]
    + [chr(0x7F)]
)


logger = logging.getLogger(__name__)


class ParseError(Exception):
    """Calendar text could not be turned into a trusted document."""

    def __init__(self, path, error) -> None:
        super().__init__(error)
        self.path = path
        self.error = error

    def __str__(self) -> str:
        if self.path is None:
            return self.error
        return f"{self.path}: {self.error}"


class MalformedCalendar(ParseError):
    """The text does not form a calendar structure."""


class WrongComponentKind(ParseError):
    """The parsed root component is not a VCALENDAR."""

    def __init__(self, path, kind) -> None:
        super().__init__(path, f"expected VCALENDAR component, got {kind}")
        self.kind = kind


class ValidationError(ParseError):
    """Structural validation of a parsed calendar failed."""

    def __init__(self, path, messages) -> None:
        super().__init__(path, "calendar contains errors: " + ", ".join(messages))
        self.messages = messages


class MissingUid(ParseError):
    """No event in the calendar carries a UID."""

    def __init__(self, path) -> None:
        super().__init__(path, "missing required property: UID")


class MultipleEventsError(Exception):
    """More than one distinct UID where exactly one is required."""

    def __init__(self, path, uids) -> None:
        super().__init__(f"More than one event in file: {path}")
        self.path = path
        self.uids = uids


def _format_component_error(error) -> str:
    if isinstance(error, tuple):
        return "{}: {}".format(*error)
    return str(error)


def validate_component(comp):
    """Validate a calendar component.

    Args:
      comp: Calendar component
    Returns: iterator over error messages
    """
    for error in getattr(comp, "errors", []):
        yield _format_component_error(error)
    for required in REQUIRED_PROPERTIES.get(comp.name, ()):
        if required not in comp:
            yield f"Missing required field {required} in {comp.name}"
    for name, value in comp.items():
        if name.upper() == ERROR_PROPERTY:
            values = value if isinstance(value, list) else [value]
            for v in values:
                yield str(v)
            continue
        if isinstance(value, vText):
            if name.upper() in NONEMPTY_TEXT_PROPERTIES and not value.strip():
                yield f"Empty value for field {name} in {comp.name}"
            for c in _INVALID_CONTROL_CHARACTERS:
                if c in value:
                    yield "Invalid character {} in field {}".format(
                        c.encode("unicode_escape"),
                        name,
                    )
    for subcomp in comp.subcomponents:
        yield from validate_component(subcomp)


def as_tz_aware_ts(
    dt: Union[datetime, date], default_timezone: Union[str, timezone] = DEFAULT_TIMEZONE
) -> datetime:
    if not isinstance(dt, datetime):
        _dt = datetime.combine(dt, time())
    else:
        _dt = dt
    if _dt.tzinfo is None:
        if isinstance(default_timezone, str):
            _dt = _dt.replace(tzinfo=ZoneInfo(default_timezone))
        else:
            _dt = _dt.replace(tzinfo=default_timezone)
    return _dt


def asutc(dt: Union[datetime, date]) -> datetime:
    """Convert a date or datetime to an aware UTC datetime."""
    return as_tz_aware_ts(dt).astimezone(timezone.utc)


def _normalize_dt_for_rrule(
    dt: Union[date, datetime], original_dt: Union[date, datetime]
) -> datetime:
    """Normalize a datetime for rrule operations based on the original event type.

    dateutil requires the search bounds and exception dates to match the
    type of the original DTSTART:
    - For date-only events, use naive datetimes at midnight
    - For floating time events, use naive datetimes
    - For timezone-aware events, use aware datetimes
    """
    if not isinstance(original_dt, datetime):
        if isinstance(dt, datetime):
            return datetime.combine(asutc(dt).date(), time.min)
        return datetime.combine(dt, time.min)
    if not isinstance(dt, datetime):
        dt = datetime.combine(dt, time.min)
    if original_dt.tzinfo is None and dt.tzinfo is not None:
        return asutc(dt).replace(tzinfo=None)
    elif original_dt.tzinfo is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=DEFAULT_TIMEZONE)
    return dt


def _iter_date_list(prop):
    if not isinstance(prop, list):
        prop = [prop]
    for entry in prop:
        for value in entry.dts:
            if isinstance(value.dt, tuple):
                # PERIOD values; only the start matters for recurrence sets.
                yield value.dt[0]
            else:
                yield value.dt


def _iter_rules(prop):
    if not isinstance(prop, list):
        prop = [prop]
    for entry in prop:
        yield entry.to_ical().decode("utf-8")


def rruleset_from_comp(comp: Component) -> dateutil.rrule.rruleset:
    dtstart = comp[PROPERTY_DTSTART].dt
    # UNTIL has to agree with DTSTART on being timezone-aware.
    ignoretz = not (isinstance(dtstart, datetime) and dtstart.tzinfo is not None)
    rs = dateutil.rrule.rruleset()
    for rrulestr in _iter_rules(comp[PROPERTY_RRULE]):
        rs.rrule(  # type: ignore
            dateutil.rrule.rrulestr(rrulestr, dtstart=dtstart, ignoretz=ignoretz)
        )
    if PROPERTY_EXDATE in comp:
        for exdate in _iter_date_list(comp[PROPERTY_EXDATE]):
            rs.exdate(_normalize_dt_for_rrule(exdate, dtstart))
    if PROPERTY_RDATE in comp:
        for rdate in _iter_date_list(comp[PROPERTY_RDATE]):
            rs.rdate(_normalize_dt_for_rrule(rdate, dtstart))
    if PROPERTY_EXRULE in comp:
        for exrulestr in _iter_rules(comp[PROPERTY_EXRULE]):
            rs.exrule(
                dateutil.rrule.rrulestr(exrulestr, dtstart=dtstart, ignoretz=ignoretz)
            )
    return rs


def get_event_duration(comp: Component) -> Optional[timedelta]:
    """Get the duration of an event component."""
    if PROPERTY_DURATION in comp:
        return comp[PROPERTY_DURATION].dt
    elif PROPERTY_DTEND in comp and PROPERTY_DTSTART in comp:
        return as_tz_aware_ts(comp[PROPERTY_DTEND].dt) - as_tz_aware_ts(
            comp[PROPERTY_DTSTART].dt
        )
    return None


def expand_recurrence(
    comp: Component, start: datetime, end: datetime
) -> list[datetime]:
    """Find the occurrences of a recurring component.

    Args:
      comp: VEVENT carrying an RRULE
      start: Start of the window (inclusive)
      end: End of the window (inclusive)
    Returns: ascending list of aware UTC datetimes, without duplicates
    """
    original_dtstart = comp[PROPERTY_DTSTART].dt
    rs = rruleset_from_comp(comp)
    occurrences = rs.between(
        _normalize_dt_for_rrule(start, original_dtstart),
        _normalize_dt_for_rrule(end, original_dtstart),
        inc=True,
    )
    return sorted(set(asutc(ts) for ts in occurrences))


class EventView:
    """A view of a single VEVENT inside a CalendarDocument.

    A view with an instance timestamp reinterprets its event as the
    occurrence starting at that timestamp. The underlying tree is never
    copied or changed by creating views.
    """

    def __init__(self, component, parent, instance_timestamp=None) -> None:
        self.component = component
        self.parent = parent
        self.instance_timestamp = instance_timestamp

    def __repr__(self) -> str:
        return "{}({!r}, instance_timestamp={!r})".format(
            type(self).__name__,
            self.parent.path,
            self.instance_timestamp,
        )

    def with_internal_timestamp(self, timestamp: datetime) -> "EventView":
        return EventView(self.component, self.parent, asutc(timestamp))

    def get_property(self, name: str):
        """Look up a property by its name.

        Returns: the property value, or None if it is not set
        """
        name = name.upper()
        if name not in KNOWN_PROPERTIES and not name.startswith("X-"):
            logger.debug("Looking up unknown property %s", name)
        return self.component.get(name)

    def _get_text(self, name):
        value = self.component.get(name)
        if value is None:
            return None
        return str(value)

    @property
    def uid(self) -> Optional[str]:
        return self._get_text(PROPERTY_UID)

    @property
    def summary(self) -> Optional[str]:
        return self._get_text(PROPERTY_SUMMARY)

    @property
    def description(self) -> Optional[str]:
        return self._get_text(PROPERTY_DESCRIPTION)

    @property
    def location(self) -> Optional[str]:
        return self._get_text(PROPERTY_LOCATION)

    @property
    def calendar_name(self) -> Optional[str]:
        return self.parent.calendar_name

    def is_allday(self) -> bool:
        dtstart = self.component.get(PROPERTY_DTSTART)
        if dtstart is None:
            return False
        return not isinstance(dtstart.dt, datetime)

    def has_recurrence_rule(self) -> bool:
        return PROPERTY_RRULE in self.component

    def is_recur_master(self) -> bool:
        return self.has_recurrence_rule() and self.instance_timestamp is None

    def duration(self) -> Optional[timedelta]:
        return get_event_duration(self.component)

    def _own_start(self) -> Optional[datetime]:
        dtstart = self.component.get(PROPERTY_DTSTART)
        if dtstart is None:
            return None
        return asutc(dtstart.dt)

    def _own_end(self) -> Optional[datetime]:
        dtend = self.component.get(PROPERTY_DTEND)
        if dtend is not None:
            return asutc(dtend.dt)
        start = self._own_start()
        duration = self.component.get(PROPERTY_DURATION)
        if start is not None and duration is not None:
            return start + duration.dt
        return None

    def start(self) -> Optional[datetime]:
        if self.instance_timestamp is not None:
            return self.instance_timestamp
        return self._own_start()

    def end(self) -> Optional[datetime]:
        if self.instance_timestamp is not None:
            # Occurrences keep the duration of the master, not its end.
            duration = self.duration()
            if duration is None:
                return None
            return self.instance_timestamp + duration
        return self._own_end()

    def local_timezone(self):
        """Return the zone dates of this event are taken in.

        This is the zone of DTSTART; floating times and dates use UTC.
        """
        dtstart = self.component.get(PROPERTY_DTSTART)
        if dtstart is not None and isinstance(dtstart.dt, datetime):
            if dtstart.dt.tzinfo is not None:
                return dtstart.dt.tzinfo
        return DEFAULT_TIMEZONE

    def start_date(self) -> Optional[date]:
        start = self.start()
        if start is None:
            return None
        return start.astimezone(self.local_timezone()).date()

    def end_date(self) -> Optional[date]:
        end = self.end()
        if end is None:
            return None
        return end.astimezone(self.local_timezone()).date()

    def last_relevant_date(self) -> Optional[date]:
        """Return the last date this event takes place on.

        DTEND of an all-day event is the first day that is not part of it.
        """
        end_date = self.end_date()
        if end_date is None:
            return None
        if self.is_allday():
            return end_date - timedelta(days=1)
        return end_date

    def recurrence_window(self) -> tuple[datetime, datetime]:
        start = self._own_start()
        if start is None:
            raise KeyError(PROPERTY_DTSTART)
        end = self._own_end() or start
        return (start, end + RECURRENCE_LOOKAHEAD)

    def recurrence_datetimes(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> list[datetime]:
        """Return the start times of all occurrences of this event.

        Args:
          window_start: Optional lower bound, only used if it narrows the
            default window
          window_end: Optional upper bound, only used if it narrows the
            default window
        Returns: ascending list of aware UTC datetimes
        """
        if not self.has_recurrence_rule():
            return []
        (start, end) = self.recurrence_window()
        if window_start is not None:
            start = max(start, asutc(window_start))
        if window_end is not None:
            end = min(end, asutc(window_end))
        if start > end:
            return []
        return expand_recurrence(self.component, start, end)

    def recurrence_instances(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> Iterator["EventView"]:
        for timestamp in self.recurrence_datetimes(window_start, window_end):
            yield self.with_internal_timestamp(timestamp)

    def is_recurrence_valid(self) -> bool:
        """Check whether this view refers to a real occurrence."""
        if self.is_recur_master():
            return True
        if self.instance_timestamp is None:
            return True
        if not self.has_recurrence_rule():
            return False
        return self.instance_timestamp in self.recurrence_datetimes()

    def index_line(self) -> Optional[str]:
        start = self.start()
        if start is None or self.parent.path is None:
            return None
        return "%010d %s" % (int(start.timestamp()), self.parent.path)


class CalendarDocument:
    """A parsed calendar file.

    The document is the only owner of its Calendar tree; clone() makes a
    deep copy while views and with_internal_timestamp() share it.
    """

    def __init__(
        self,
        calendar: Calendar,
        path: Optional[str] = None,
        instance_timestamp: Optional[datetime] = None,
    ) -> None:
        self.calendar = calendar
        self.path = path
        self.instance_timestamp = instance_timestamp

    def __repr__(self) -> str:
        return f"{type(self).__name__}(path={self.path!r})"

    @classmethod
    def from_ical(cls, text, path=None) -> "CalendarDocument":
        """Parse calendar text.

        Args:
          text: iCalendar text, as str or bytes
          path: Optional path the text was read from
        Raises:
          MalformedCalendar: text is not a calendar structure
          WrongComponentKind: root component is not a VCALENDAR
          ValidationError: structural validation failed
          MissingUid: no event carries a UID
        Returns: A `CalendarDocument`
        """
        try:
            calendar = Calendar.from_ical(text)
        except ValueError as exc:
            raise MalformedCalendar(path, str(exc)) from exc
        if not isinstance(calendar, Component):
            raise MalformedCalendar(path, "could not read component")
        if calendar.name != "VCALENDAR":
            raise WrongComponentKind(path, calendar.name)
        errors = list(validate_component(calendar))
        if errors:
            raise ValidationError(path, errors)
        if not any(PROPERTY_UID in event for event in calendar.walk("VEVENT")):
            raise MissingUid(path)
        return cls(calendar, path)

    @classmethod
    def from_path(cls, path, name=None) -> "CalendarDocument":
        """Read and parse a calendar file.

        Args:
          path: Filesystem path to read
          name: Logical path to record, defaults to `path`
        """
        with open(path, "rb") as f:
            text = f.read()
        return cls.from_ical(text, path if name is None else name)

    def to_ical(self) -> bytes:
        return self.calendar.to_ical()

    def clone(self) -> "CalendarDocument":
        return CalendarDocument(
            copy.deepcopy(self.calendar), self.path, self.instance_timestamp
        )

    def with_internal_timestamp(self, timestamp: datetime) -> "CalendarDocument":
        return CalendarDocument(self.calendar, self.path, asutc(timestamp))

    @property
    def calendar_name(self) -> Optional[str]:
        if self.path is None:
            return None
        parent = os.path.dirname(os.path.normpath(self.path))
        return os.path.basename(parent) or None

    def events(self) -> Iterator[EventView]:
        for component in self.calendar.subcomponents:
            if component.name == "VEVENT":
                yield EventView(component, self)

    def unique_uids(self) -> list[str]:
        return sorted(set(event.uid for event in self.events() if event.uid))

    def unique_uid_count(self) -> int:
        return len(self.unique_uids())

    def principal_event(self) -> EventView:
        """Return the first event in this document.

        Raises:
          KeyError: if the document does not contain any events
        """
        for event in self.events():
            break
        else:
            raise KeyError("VEVENT")
        if self.unique_uid_count() > 1:
            logger.warning("More than one event in file: %s", self.path)
        if self.instance_timestamp is not None:
            event = event.with_internal_timestamp(self.instance_timestamp)
        return event

    def get_uid(self) -> Optional[str]:
        return self.principal_event().uid

    def with_uid(self, uid: str) -> "CalendarDocument":
        """Change the UID of every event in this document.

        Raises:
          MultipleEventsError: if the document holds more than one UID
        """
        uids = self.unique_uids()
        if len(uids) > 1:
            raise MultipleEventsError(self.path, uids)
        for event in self.events():
            event.component[PROPERTY_UID] = vText(uid)
        if self.path is not None:
            self.path = os.path.join(os.path.dirname(self.path), uid + ".ics")
        return self

    def with_dtstamp_now(self) -> "CalendarDocument":
        now = datetime.now(timezone.utc).replace(microsecond=0)
        for event in self.events():
            event.component[PROPERTY_DTSTAMP] = vDatetime(now)
            event.component[PROPERTY_LAST_MODIFIED] = vDatetime(now)
        return self

    def with_keep_uid(self, uid: str) -> "CalendarDocument":
        """Remove all subcomponents with a UID other than `uid`."""
        self.calendar.subcomponents = [
            comp
            for comp in self.calendar.subcomponents
            if PROPERTY_UID not in comp or str(comp[PROPERTY_UID]) == uid
        ]
        return self
