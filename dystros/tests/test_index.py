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

"""Tests for dystros.index."""

import os
import shutil
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone

from ..icalendar import CalendarDocument
from ..index import (
    MAX_BUCKET,
    MIN_BUCKET,
    BucketIndex,
    IndexLine,
    InvalidIndexLine,
    bucket_key,
    bucket_keys_between,
    bucket_keys_for_event,
    index_lines_for_document,
)

EVENT_TEMPLATE = """\
BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//ABC Corporation//NONSGML My Product//EN
BEGIN:VEVENT
SUMMARY:{summary}
DTSTART;VALUE=DATE:{start:%Y%m%d}
DTEND;VALUE=DATE:{end:%Y%m%d}
DTSTAMP:20180901T123432Z
UID:{uid}
{extra}END:VEVENT
END:VCALENDAR
"""


def make_event(uid, start, end=None, summary="Event", rrule=None):
    if end is None:
        end = start + timedelta(days=1)
    extra = ""
    if rrule is not None:
        extra = f"RRULE:{rrule}\n"
    return EVENT_TEMPLATE.format(
        uid=uid, start=start, end=end, summary=summary, extra=extra
    ).encode("utf-8")


def write_calendar_file(root, name, contents):
    path = os.path.join(root, name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(contents)
    return path


def timestamp(d):
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp())


def index_line(d, path):
    return "%010d %s" % (timestamp(d), path)


class BucketKeyTests(unittest.TestCase):
    def test_date(self):
        self.assertEqual("2018-10", bucket_key(date(2018, 10, 15)))

    def test_datetime(self):
        self.assertEqual(
            "2018-10", bucket_key(datetime(2018, 10, 31, 23, tzinfo=timezone.utc))
        )

    def test_datetime_in_own_zone(self):
        tz = timezone(timedelta(hours=-2))
        self.assertEqual("2018-10", bucket_key(datetime(2018, 10, 31, 23, tzinfo=tz)))
        tz = timezone(timedelta(hours=1))
        self.assertEqual("2018-11", bucket_key(datetime(2018, 11, 1, 0, 30, tzinfo=tz)))

    def test_naive_datetime(self):
        self.assertEqual("2018-10", bucket_key(datetime(2018, 10, 31, 23)))

    def test_keys_between(self):
        self.assertEqual(
            ["2018-11", "2018-12", "2019-01", "2019-02"],
            list(bucket_keys_between(date(2018, 11, 30), date(2019, 2, 1))),
        )
        self.assertEqual(
            ["2018-10"],
            list(bucket_keys_between(date(2018, 10, 1), date(2018, 10, 31))),
        )

    def test_keys_for_event(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 9, 28), date(2018, 11, 2)), "cal/a.ics"
        )
        self.assertEqual(
            ["2018-09", "2018-10", "2018-11"],
            bucket_keys_for_event(document.principal_event()),
        )

    def test_keys_for_event_ending_at_month_boundary(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 9, 28), date(2018, 10, 1)), "cal/a.ics"
        )
        self.assertEqual(
            ["2018-09"], bucket_keys_for_event(document.principal_event())
        )

    def test_monotonic(self):
        dates = [
            date(1999, 12, 31),
            date(2000, 1, 1),
            date(2000, 2, 29),
            date(2018, 9, 30),
            date(2018, 10, 1),
            date(2018, 12, 31),
            date(2019, 1, 1),
        ]
        keys = [bucket_key(d) for d in dates]
        self.assertEqual(sorted(keys), keys)
        for key in keys:
            self.assertLess(MIN_BUCKET, key)
            self.assertGreater(MAX_BUCKET, key)


class IndexLineTests(unittest.TestCase):
    def test_parse(self):
        line = IndexLine.parse("1539561600 cal/b.ics\n")
        self.assertEqual(1539561600, line.timestamp)
        self.assertEqual("cal/b.ics", line.path)
        self.assertEqual(datetime(2018, 10, 15, tzinfo=timezone.utc), line.start)

    def test_parse_path_with_space(self):
        line = IndexLine.parse("1539561600 my cal/b.ics")
        self.assertEqual("my cal/b.ics", line.path)

    def test_str(self):
        self.assertEqual("0000086400 a.ics", str(IndexLine(86400, "a.ics")))

    def test_parse_invalid(self):
        for text in ["", "1539561600", "abc cal/b.ics", "-1 cal/b.ics"]:
            self.assertRaises(InvalidIndexLine, IndexLine.parse, text)

    def test_invalid_is_value_error(self):
        self.assertRaises(ValueError, IndexLine.parse, "garbage")

    def test_equality(self):
        self.assertEqual(IndexLine(1, "a.ics"), IndexLine.parse("0000000001 a.ics"))
        self.assertNotEqual(IndexLine(1, "a.ics"), IndexLine(1, "b.ics"))
        self.assertEqual(1, len({IndexLine(1, "a.ics"), IndexLine(1, "a.ics")}))

    def test_from_event(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 10, 15)), "cal/a.ics"
        )
        line = IndexLine.from_event(document.principal_event())
        self.assertEqual(index_line(date(2018, 10, 15), "cal/a.ics"), str(line))

    def test_apply_to_plain_event(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 10, 15)), "cal/a.ics"
        )
        self.assertIs(document, IndexLine(0, "cal/a.ics").apply_to(document))

    def test_apply_to_recurring_event(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 10, 11), rrule="FREQ=WEEKLY;COUNT=3"),
            "cal/a.ics",
        )
        line = IndexLine(timestamp(date(2018, 10, 18)), "cal/a.ics")
        event = line.apply_to(document).principal_event()
        self.assertEqual(date(2018, 10, 18), event.start_date())
        self.assertTrue(event.is_recurrence_valid())


class IndexLinesForDocumentTests(unittest.TestCase):
    def test_single(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 10, 15)), "cal/a.ics"
        )
        self.assertEqual(
            [index_line(date(2018, 10, 15), "cal/a.ics")],
            [str(line) for line in index_lines_for_document(document)],
        )

    def test_recurring(self):
        document = CalendarDocument.from_ical(
            make_event("a", date(2018, 10, 25), rrule="FREQ=WEEKLY;COUNT=3"),
            "cal/a.ics",
        )
        lines = [str(line) for line in index_lines_for_document(document)]
        self.assertEqual(
            [
                index_line(date(2018, 10, 25), "cal/a.ics"),
                index_line(date(2018, 10, 25), "cal/a.ics"),
                index_line(date(2018, 11, 1), "cal/a.ics"),
                index_line(date(2018, 11, 8), "cal/a.ics"),
            ],
            lines,
        )


class BucketIndexTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir)
        self.calendar_root = os.path.join(self.tmpdir, "cal")
        self.index = BucketIndex(os.path.join(self.tmpdir, "index"))
        write_calendar_file(
            self.calendar_root, "work/a.ics", make_event("a", date(2018, 9, 1))
        )
        write_calendar_file(
            self.calendar_root, "work/b.ics", make_event("b", date(2018, 10, 15))
        )
        write_calendar_file(
            self.calendar_root, "home/c.ics", make_event("c", date(2018, 11, 20))
        )

    def read_all(self):
        return {key: self.index.read_bucket(key) for key in self.index.buckets()}

    def test_empty(self):
        self.assertEqual([], self.index.buckets())
        self.assertEqual([], list(self.index.scan()))
        self.assertRaises(KeyError, self.index.read_bucket, "2018-10")

    def test_rebuild(self):
        self.assertEqual([], self.index.rebuild(self.calendar_root))
        self.assertEqual(["2018-09", "2018-10", "2018-11"], self.index.buckets())
        self.assertEqual(
            [index_line(date(2018, 10, 15), "work/b.ics")],
            self.index.read_bucket("2018-10"),
        )
        self.assertEqual(
            [index_line(date(2018, 11, 20), "home/c.ics")],
            self.index.read_bucket("2018-11"),
        )

    def test_rebuild_idempotent(self):
        self.index.rebuild(self.calendar_root)
        first = self.read_all()
        self.index.rebuild(self.calendar_root)
        self.assertEqual(first, self.read_all())

    def test_no_temporary_files_left(self):
        self.index.rebuild(self.calendar_root)
        self.assertEqual(
            ["2018-09", "2018-10", "2018-11"], sorted(os.listdir(self.index.path))
        )

    def test_stale_bucket_removed(self):
        self.index.rebuild(self.calendar_root)
        os.unlink(os.path.join(self.calendar_root, "home/c.ics"))
        self.index.rebuild(self.calendar_root)
        self.assertEqual(["2018-09", "2018-10"], self.index.buckets())

    def test_bucket_contents_sorted_and_unique(self):
        write_calendar_file(
            self.calendar_root, "work/a2.ics", make_event("a2", date(2018, 10, 2))
        )
        write_calendar_file(
            self.calendar_root,
            "work/r.ics",
            make_event("r", date(2018, 10, 25), rrule="FREQ=WEEKLY;COUNT=3"),
        )
        self.index.rebuild(self.calendar_root)
        self.assertEqual(
            [
                index_line(date(2018, 10, 2), "work/a2.ics"),
                index_line(date(2018, 10, 15), "work/b.ics"),
                index_line(date(2018, 10, 25), "work/r.ics"),
            ],
            self.index.read_bucket("2018-10"),
        )
        self.assertEqual(
            [
                index_line(date(2018, 11, 1), "work/r.ics"),
                index_line(date(2018, 11, 8), "work/r.ics"),
                index_line(date(2018, 11, 20), "home/c.ics"),
            ],
            self.index.read_bucket("2018-11"),
        )

    def test_broken_file_skipped(self):
        write_calendar_file(self.calendar_root, "work/broken.ics", b"not a calendar")
        with self.assertLogs("dystros.index", level="WARNING"):
            errors = self.index.rebuild(self.calendar_root)
        self.assertEqual(["work/broken.ics"], [name for (name, e) in errors])
        self.assertEqual(["2018-09", "2018-10", "2018-11"], self.index.buckets())

    def test_ignored_files(self):
        write_calendar_file(
            self.calendar_root, "work/.hidden.ics", make_event("h", date(2017, 1, 1))
        )
        write_calendar_file(
            self.calendar_root, "work/notes.txt", make_event("n", date(2017, 2, 1))
        )
        self.index.rebuild(self.calendar_root)
        self.assertEqual(["2018-09", "2018-10", "2018-11"], self.index.buckets())

    def test_scan(self):
        self.index.rebuild(self.calendar_root)
        self.assertEqual(
            [
                index_line(date(2018, 10, 15), "work/b.ics"),
                index_line(date(2018, 11, 20), "home/c.ics"),
            ],
            list(self.index.scan("2018-10", "2018-12")),
        )
        self.assertEqual(3, len(list(self.index.scan())))
        self.assertEqual([], list(self.index.scan("2019-01")))

    def test_write_bucket(self):
        os.makedirs(self.index.path)
        self.index.write_bucket("2018-10", ["0000000002 b.ics", "0000000001 a.ics"])
        self.index.write_bucket("2018-10", ["0000000003 c.ics", "0000000003 c.ics"])
        self.assertEqual(["0000000003 c.ics"], self.index.read_bucket("2018-10"))

    def test_non_bucket_files_ignored(self):
        os.makedirs(self.index.path)
        with open(os.path.join(self.index.path, "README"), "w") as f:
            f.write("not a bucket\n")
        self.assertEqual([], self.index.buckets())

    def test_event_spanning_months(self):
        write_calendar_file(
            self.calendar_root,
            "work/long.ics",
            make_event("long", date(2018, 9, 28), date(2018, 11, 2)),
        )
        self.index.rebuild(self.calendar_root)
        line = index_line(date(2018, 9, 28), "work/long.ics")
        for key in ["2018-09", "2018-10", "2018-11"]:
            self.assertIn(line, self.index.read_bucket(key))

    def test_local_date_decides_bucket(self):
        write_calendar_file(
            self.calendar_root,
            "work/late.ics",
            b"""\
BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//ABC Corporation//NONSGML My Product//EN
BEGIN:VEVENT
SUMMARY:Late night
DTSTART;TZID=Europe/Berlin:20181101T003000
DTEND;TZID=Europe/Berlin:20181101T013000
DTSTAMP:20180901T123432Z
UID:late@example.com
END:VEVENT
END:VCALENDAR
""",
        )
        self.index.rebuild(self.calendar_root)
        line = "%010d work/late.ics" % int(
            datetime(2018, 10, 31, 23, 30, tzinfo=timezone.utc).timestamp()
        )
        self.assertIn(line, self.index.read_bucket("2018-11"))
        self.assertNotIn(line, self.index.read_bucket("2018-10"))

    def test_multiple_recurrence_rules(self):
        write_calendar_file(
            self.calendar_root,
            "work/rules.ics",
            b"""\
BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//ABC Corporation//NONSGML My Product//EN
BEGIN:VEVENT
SUMMARY:Two rules
DTSTART;VALUE=DATE:20181001
DTEND;VALUE=DATE:20181002
DTSTAMP:20180901T123432Z
UID:rules@example.com
RRULE:FREQ=WEEKLY;COUNT=2
RRULE:FREQ=MONTHLY;COUNT=2
END:VEVENT
END:VCALENDAR
""",
        )
        self.assertEqual([], self.index.rebuild(self.calendar_root))
        self.assertEqual(
            [
                index_line(date(2018, 10, 1), "work/rules.ics"),
                index_line(date(2018, 10, 8), "work/rules.ics"),
                index_line(date(2018, 10, 15), "work/b.ics"),
            ],
            self.index.read_bucket("2018-10"),
        )
        self.assertIn(
            index_line(date(2018, 11, 1), "work/rules.ics"),
            self.index.read_bucket("2018-11"),
        )
