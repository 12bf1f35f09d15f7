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

"""Parsing of date arguments."""

import datetime
from typing import Optional

RELATIVE_DAYS = {
    "yesterday": -1,
    "today": 0,
    "tomorrow": 1,
}


def date_from_str(text: str, today: Optional[datetime.date] = None) -> datetime.date:
    """Parse a date argument.

    :param text: Either YYYY-MM-DD, "today", "tomorrow" or "yesterday"
    :param today: Date to consider today, defaults to the current date
    :raise ValueError: if the text is not a date
    :return: A date
    """
    if text in RELATIVE_DAYS:
        if today is None:
            today = datetime.date.today()
        return today + datetime.timedelta(days=RELATIVE_DAYS[text])
    return datetime.datetime.strptime(text, "%Y-%m-%d").date()


def week_from_str_begin(text: str) -> datetime.date:
    """Return the first day (Monday) of an ISO week such as 2018-W41."""
    return datetime.datetime.strptime(text + "-1", "%G-W%V-%u").date()


def week_from_str_end(text: str) -> datetime.date:
    """Return the last day (Sunday) of an ISO week such as 2018-W41."""
    return datetime.datetime.strptime(text + "-7", "%G-W%V-%u").date()
