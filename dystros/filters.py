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

"""Selection of events by time range and calendar.

A selection is described by a list of arguments such as
``from 2018-10-01 to 2018-10-31 cal work``. The index is used to find
candidate events; each candidate is then checked against the exact
filters, since buckets are much coarser than the filters.
"""

import collections
import logging
import os
from collections.abc import Iterable
from datetime import date
from typing import Optional

from .icalendar import CalendarDocument, EventView, ParseError
from .index import (
    MAX_BUCKET,
    MIN_BUCKET,
    BucketIndex,
    IndexLine,
    InvalidIndexLine,
    bucket_key,
)
from .utils import date_from_str, week_from_str_begin, week_from_str_end
from .vdir import read_calendar

USAGE = "select [from|to|in|on DATE]+ [cal CALENDAR]"

# Number of parsed calendar files kept in memory during a scan.
DOCUMENT_CACHE_SIZE = 256


logger = logging.getLogger(__name__)


class FilterSyntaxError(Exception):
    """Selection arguments could not be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SelectFilterFrom:
    """Lower bound of a selection."""

    def __init__(self, date: Optional[date] = None) -> None:
        self.date = date
        self.bucket = bucket_key(date) if date is not None else None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.date!r})"

    @classmethod
    def parse(cls, text: str) -> "SelectFilterFrom":
        try:
            return cls(date_from_str(text))
        except ValueError:
            pass
        try:
            return cls(week_from_str_begin(text))
        except ValueError:
            pass
        raise FilterSyntaxError(f"Could not parse date '{text}'")

    def includes_date(self, cmp_date: date) -> bool:
        return self.date is None or self.date <= cmp_date

    def combine_with(self, other: "SelectFilterFrom") -> "SelectFilterFrom":
        if self.date is None:
            return other
        if other.date is None:
            return self
        return SelectFilterFrom(max(self.date, other.date))


class SelectFilterTo:
    """Upper bound of a selection."""

    def __init__(self, date: Optional[date] = None) -> None:
        self.date = date
        self.bucket = bucket_key(date) if date is not None else None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.date!r})"

    @classmethod
    def parse(cls, text: str) -> "SelectFilterTo":
        try:
            return cls(date_from_str(text))
        except ValueError:
            pass
        try:
            return cls(week_from_str_end(text))
        except ValueError:
            pass
        raise FilterSyntaxError(f"Could not parse date '{text}'")

    def includes_date(self, cmp_date: date) -> bool:
        return self.date is None or cmp_date <= self.date

    def combine_with(self, other: "SelectFilterTo") -> "SelectFilterTo":
        if self.date is None:
            return other
        if other.date is None:
            return self
        return SelectFilterTo(min(self.date, other.date))


class SelectFilters:
    """A parsed set of selection filters."""

    def __init__(
        self,
        from_: Optional[SelectFilterFrom] = None,
        to: Optional[SelectFilterTo] = None,
        calendar: Optional[str] = None,
        num: Optional[int] = None,
    ) -> None:
        self.from_ = from_ if from_ is not None else SelectFilterFrom()
        self.to = to if to is not None else SelectFilterTo()
        self.calendar = calendar
        self.num = num

    def __repr__(self) -> str:
        return "{}(from_={!r}, to={!r}, calendar={!r}, num={!r})".format(
            type(self).__name__, self.from_, self.to, self.calendar, self.num
        )

    def bucket_scan_range(self) -> tuple[str, str]:
        return (self.from_.bucket or MIN_BUCKET, self.to.bucket or MAX_BUCKET)

    def includes_date(self, cmp_date: Optional[date]) -> bool:
        if cmp_date is None:
            return True
        return self.from_.includes_date(cmp_date) and self.to.includes_date(cmp_date)


def parse_filters(args: list[str]) -> SelectFilters:
    """Parse selection arguments.

    :param args: List of arguments
    :raise FilterSyntaxError: if the arguments can not be parsed
    :return: A `SelectFilters` object
    """
    if len(args) == 1 and args[0].isdigit():
        return SelectFilters(num=int(args[0]))
    from_ = SelectFilterFrom()
    to = SelectFilterTo()
    calendar = None
    if len(args) % 2 != 0:
        raise FilterSyntaxError(USAGE)
    for keyword, value in zip(args[::2], args[1::2]):
        if keyword == "from":
            from_ = from_.combine_with(SelectFilterFrom.parse(value))
        elif keyword == "to":
            to = to.combine_with(SelectFilterTo.parse(value))
        elif keyword in ("in", "on"):
            from_ = from_.combine_with(SelectFilterFrom.parse(value))
            to = to.combine_with(SelectFilterTo.parse(value))
        elif keyword == "cal":
            calendar = value
        else:
            raise FilterSyntaxError(USAGE)
    logger.debug("from: %r, to: %r, calendar: %r", from_, to, calendar)
    return SelectFilters(from_, to, calendar)


def bucket_scan_range(filters: SelectFilters) -> tuple[str, str]:
    """Return the first and last bucket that can hold matching events."""
    return filters.bucket_scan_range()


def evaluate(event: EventView, filters: SelectFilters) -> bool:
    """Check an event against the time range of a selection.

    An event matches if its start date or its last date lies within the
    range. Missing start or end times count as matching.
    """
    return filters.includes_date(event.start_date()) or filters.includes_date(
        event.last_relevant_date()
    )


def _path_ends_with(path: str, suffix: str) -> bool:
    parts = [p for p in os.path.normpath(path).split(os.sep) if p not in ("", ".")]
    suffix_parts = [
        p for p in os.path.normpath(suffix).split(os.sep) if p not in ("", ".")
    ]
    if not suffix_parts:
        return False
    return parts[-len(suffix_parts) :] == suffix_parts


def evaluate_calendar(event: EventView, filters: SelectFilters) -> bool:
    """Check whether an event lives in the selected calendar."""
    if filters.calendar is None:
        return True
    path = event.parent.path
    if path is None:
        return False
    return _path_ends_with(os.path.dirname(path), filters.calendar)


class _DocumentCache:
    """Keep recently parsed files around while scanning.

    A file is referenced once for every occurrence it contributes to the
    index. At most `max_size` parsed documents are kept; the least recently
    used one is dropped first.
    """

    def __init__(
        self, calendar_root: str, max_size: int = DOCUMENT_CACHE_SIZE
    ) -> None:
        self.calendar_root = calendar_root
        self.max_size = max_size
        self._documents: collections.OrderedDict[str, CalendarDocument] = (
            collections.OrderedDict()
        )
        self._failed: set[str] = set()

    def event_for_line(self, line: IndexLine) -> Optional[EventView]:
        if line.path in self._failed:
            return None
        try:
            document = self._documents[line.path]
            self._documents.move_to_end(line.path)
        except KeyError:
            try:
                document = read_calendar(self.calendar_root, line.path)
            except (ParseError, OSError) as exc:
                logger.warning("Skipping %s: %s", line.path, exc)
                self._failed.add(line.path)
                return None
            self._documents[line.path] = document
            while len(self._documents) > self.max_size:
                self._documents.popitem(last=False)
        return line.apply_to(document).principal_event()


def _matching_lines(
    lines: Iterable[str], filters: SelectFilters, calendar_root: str
) -> Iterable[str]:
    cache = _DocumentCache(calendar_root)
    for raw in lines:
        try:
            line = IndexLine.parse(raw)
        except InvalidIndexLine as exc:
            logger.warning("%s", exc)
            continue
        event = cache.event_for_line(line)
        if event is None:
            continue
        if evaluate(event, filters) and evaluate_calendar(event, filters):
            yield str(line)


def select(
    index: BucketIndex, calendar_root: str, filters: SelectFilters
) -> list[str]:
    """Select events from the index.

    :param index: The index to scan
    :param calendar_root: Root of the calendar tree the index refers to
    :param filters: Parsed filters
    :raise FilterSyntaxError: if the filters select by position
    :return: Sorted list of matching index lines, without duplicates
    """
    if filters.num is not None:
        raise FilterSyntaxError(USAGE)
    (first, last) = bucket_scan_range(filters)
    logger.debug("Scanning buckets %s to %s", first, last)
    return sorted(set(_matching_lines(index.scan(first, last), filters, calendar_root)))


def list_lines(
    lines: list[str], filters: SelectFilters, calendar_root: str
) -> list[str]:
    """Filter a sequence of index lines.

    :param lines: Index lines, e.g. the output of an earlier selection
    :param filters: Parsed filters
    :param calendar_root: Root of the calendar tree the lines refer to
    :raise IndexError: if the filters select a position past the end
    :return: Matching lines, in their original order
    """
    if filters.num is not None:
        try:
            return [lines[filters.num]]
        except IndexError:
            raise IndexError(f"No such element in sequence: {filters.num}") from None
    return list(_matching_lines(lines, filters, calendar_root))
