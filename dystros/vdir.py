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

"""Calendar directory handling.

Calendars live in a directory tree with one event per file:
``<root>/<calendar>[/<subcalendar>]/<event>.ics``.
"""

import logging
import os
from collections.abc import Iterator

from .icalendar import CalendarDocument

CALENDAR_EXTENSION = ".ics"
TMP_SUFFIX = ".tmp"


logger = logging.getLogger(__name__)


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def iter_calendar_files(root: str) -> Iterator[str]:
    """Find all calendar files below a directory.

    :param root: Root of the calendar tree
    :return: Iterator over paths relative to `root`, in sorted order
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
        for name in sorted(filenames):
            if _is_hidden(name) or name.endswith(TMP_SUFFIX):
                continue
            if not name.endswith(CALENDAR_EXTENSION):
                continue
            yield os.path.relpath(os.path.join(dirpath, name), root)


def calendar_names(root: str) -> list[str]:
    """List the calendars in a calendar tree.

    :param root: Root of the calendar tree
    :return: Sorted list of calendar paths relative to `root`
    """
    ret = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
        for name in dirnames:
            ret.append(os.path.relpath(os.path.join(dirpath, name), root))
    return sorted(ret)


def read_calendar(root: str, name: str) -> CalendarDocument:
    """Read a calendar file from a calendar tree.

    :param root: Root of the calendar tree
    :param name: Path of the file, relative to `root`
    :raise ParseError: if the file does not contain a valid calendar
    :raise OSError: if the file can not be read
    :return: A `CalendarDocument` whose path is `name`
    """
    logger.debug("Reading %s", name)
    return CalendarDocument.from_path(os.path.join(root, name), name)
