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

"""Start-time index.

The index is a directory of bucket files, one per calendar month. Every
line of a bucket names the start time of an event (or of one occurrence of
a recurring event) together with the path of the file it lives in::

    1539561600 work/meeting.ics

An event is listed in every bucket from the month it starts in through the
month of its last day, so a scan of the buckets covering a date range finds
every candidate for a selection of that range.

Buckets are only ever replaced as a whole, by writing a temporary file and
renaming it into place.
"""

import collections
import logging
import os
import re
from collections.abc import Iterable, Iterator
from datetime import date, datetime, timezone
from typing import Optional, Union

from .icalendar import CalendarDocument, EventView, ParseError, as_tz_aware_ts
from .vdir import TMP_SUFFIX, iter_calendar_files, read_calendar

MIN_BUCKET = "0000-00"
MAX_BUCKET = "9999-99"

_BUCKET_RE = re.compile(r"^[0-9]{4}-[0-9]{2}$")


logger = logging.getLogger(__name__)


def bucket_key(value: Union[date, datetime]) -> str:
    """Return the bucket a date or timestamp belongs to.

    Aware timestamps fall in the bucket of their date in their own zone,
    naive ones are taken as UTC. Keys sort in the same order as the dates
    they are derived from.
    """
    if isinstance(value, datetime):
        value = as_tz_aware_ts(value).date()
    return "%04d-%02d" % (value.year, value.month)


def bucket_keys_between(first: date, last: date) -> Iterator[str]:
    """Iterate over the keys of all buckets from `first` through `last`."""
    (year, month) = (first.year, first.month)
    while (year, month) <= (last.year, last.month):
        yield "%04d-%02d" % (year, month)
        if month == 12:
            (year, month) = (year + 1, 1)
        else:
            month += 1


def bucket_keys_for_event(event: EventView) -> list[str]:
    """Return the buckets an event is indexed under.

    An event is listed in every bucket from the one holding its start date
    through the one holding its last relevant date.
    """
    first = event.start_date()
    if first is None:
        return []
    last = event.last_relevant_date()
    if last is None or last < first:
        last = first
    return list(bucket_keys_between(first, last))


class InvalidIndexLine(ValueError):
    """An index line could not be parsed."""

    def __init__(self, line) -> None:
        super().__init__(f"Invalid index line: {line!r}")
        self.line = line


class IndexLine:
    """A single index record."""

    def __init__(self, timestamp: int, path: str) -> None:
        self.timestamp = timestamp
        self.path = path

    @classmethod
    def parse(cls, line: str) -> "IndexLine":
        (timestamp, sep, path) = line.rstrip("\n").partition(" ")
        if not sep or not path or not timestamp.isdigit():
            raise InvalidIndexLine(line)
        return cls(int(timestamp), path)

    @classmethod
    def from_event(cls, event: EventView) -> Optional["IndexLine"]:
        start = event.start()
        if start is None or event.parent.path is None:
            return None
        return cls(int(start.timestamp()), event.parent.path)

    def __str__(self) -> str:
        return "%010d %s" % (self.timestamp, self.path)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.timestamp!r}, {self.path!r})"

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, IndexLine)
            and self.timestamp == other.timestamp
            and self.path == other.path
        )

    def __hash__(self) -> int:
        return hash((self.timestamp, self.path))

    @property
    def start(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, timezone.utc)

    def apply_to(self, document: CalendarDocument) -> CalendarDocument:
        """Interpret a document as the event this line refers to.

        Recurring events are reinterpreted as the occurrence starting at
        the time recorded in this line.
        """
        if document.principal_event().has_recurrence_rule():
            return document.with_internal_timestamp(self.start)
        return document

    def read_document(self, calendar_root: str) -> CalendarDocument:
        return self.apply_to(read_calendar(calendar_root, self.path))


def index_entries_for_document(
    document: CalendarDocument,
) -> Iterator[tuple[IndexLine, EventView]]:
    """Generate the index lines for a calendar document.

    A recurring event is indexed under its own start and under the start of
    every occurrence in its default recurrence window.

    :return: Iterator over (line, event) tuples
    """
    event = document.principal_event()
    line = IndexLine.from_event(event)
    if line is None:
        logger.debug("Not indexing %s, no start time", document.path)
        return
    yield (line, event)
    if event.is_recur_master():
        for instance in event.recurrence_instances():
            instance_line = IndexLine.from_event(instance)
            if instance_line is not None:
                yield (instance_line, instance)


def index_lines_for_document(document: CalendarDocument) -> Iterator[IndexLine]:
    for (line, unused_event) in index_entries_for_document(document):
        yield line


class BucketIndex:
    """An index of event start times, bucketed by month."""

    def __init__(self, path: str) -> None:
        self.path = path

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"

    def bucket_path(self, key: str) -> str:
        return os.path.join(self.path, key)

    def buckets(self) -> list[str]:
        """List the buckets present in this index, in key order."""
        try:
            names = os.listdir(self.path)
        except FileNotFoundError:
            return []
        return sorted(name for name in names if _BUCKET_RE.match(name))

    def read_bucket(self, key: str) -> list[str]:
        """Read the lines of a single bucket.

        :raise KeyError: if the bucket does not exist
        """
        try:
            with open(self.bucket_path(key), encoding="utf-8") as f:
                return [line.rstrip("\n") for line in f if line.strip()]
        except FileNotFoundError as exc:
            raise KeyError(key) from exc

    def scan(self, first: str = MIN_BUCKET, last: str = MAX_BUCKET) -> Iterator[str]:
        """Iterate over the raw lines of all buckets in a key range.

        Buckets are visited in key order; lines within a bucket are
        returned in file order.

        :param first: First bucket key to include
        :param last: Last bucket key to include
        """
        for key in self.buckets():
            if key < first:
                continue
            if key > last:
                break
            try:
                lines = self.read_bucket(key)
            except KeyError:
                # Removed by a concurrent rebuild.
                logger.debug("Bucket %s disappeared during scan", key)
                continue
            yield from lines

    def write_bucket(self, key: str, lines: Iterable[str]) -> None:
        """Replace the contents of a bucket."""
        path = self.bucket_path(key)
        tmppath = path + TMP_SUFFIX
        try:
            with open(tmppath, "w", encoding="utf-8") as f:
                for line in sorted(set(lines)):
                    f.write(line + "\n")
        except OSError:
            if os.path.exists(tmppath):
                os.unlink(tmppath)
            raise
        os.replace(tmppath, path)

    def rebuild(self, calendar_root: str) -> list[tuple[str, Exception]]:
        """Rebuild the index from a calendar tree.

        Files that can not be read or parsed are skipped.

        :param calendar_root: Root of the calendar tree
        :raise OSError: if the index directory can not be written
        :return: List of (path, error) tuples for files that were skipped
        """
        os.makedirs(self.path, exist_ok=True)
        buckets: dict[str, set[str]] = collections.defaultdict(set)
        errors = []
        count = 0
        for name in iter_calendar_files(calendar_root):
            try:
                document = read_calendar(calendar_root, name)
                entries = [
                    (line, bucket_keys_for_event(event))
                    for (line, event) in index_entries_for_document(document)
                ]
            except (ParseError, OSError, KeyError, ValueError) as exc:
                logger.warning("Unable to index %s: %s", name, exc)
                errors.append((name, exc))
                continue
            for (line, keys) in entries:
                for key in keys:
                    buckets[key].add(str(line))
            count += 1
        for key, lines in buckets.items():
            self.write_bucket(key, lines)
        for key in set(self.buckets()) - set(buckets):
            logger.debug("Removing stale bucket %s", key)
            os.unlink(self.bucket_path(key))
        logger.info(
            "Indexed %d files into %d buckets, skipped %d.",
            count,
            len(buckets),
            len(errors),
        )
        return errors
