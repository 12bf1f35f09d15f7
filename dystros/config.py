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

"""Configuration file.

The configuration is an INI-style file::

    [dystros]
    calendars = ~/.local/share/dystros/cal
    index = ~/.local/share/dystros/index
"""

import configparser
import os

SECTION = "dystros"


def _xdg_dir(variable: str, default: str) -> str:
    return os.environ.get(variable) or os.path.expanduser(default)


def default_config_path() -> str:
    return os.path.join(_xdg_dir("XDG_CONFIG_HOME", "~/.config"), "dystros", "config")


def default_data_dir() -> str:
    return os.path.join(_xdg_dir("XDG_DATA_HOME", "~/.local/share"), "dystros")


class Config(object):
    """Dystros configuration."""

    def __init__(self, cp=None):
        if cp is None:
            cp = configparser.ConfigParser()
        self._configparser = cp

    @classmethod
    def from_file(cls, f):
        cp = configparser.ConfigParser()
        cp.read_file(f)
        return cls(cp)

    @classmethod
    def from_path(cls, path):
        """Read a configuration file.

        A missing file results in the default configuration.
        """
        cp = configparser.ConfigParser()
        cp.read([path], encoding="utf-8")
        return cls(cp)

    def _get_path(self, name, default):
        value = self._configparser.get(SECTION, name, fallback=None)
        if value is None:
            return default
        return os.path.expanduser(value)

    def get_calendar_dir(self):
        return self._get_path("calendars", os.path.join(default_data_dir(), "cal"))

    def get_index_dir(self):
        return self._get_path("index", os.path.join(default_data_dir(), "index"))
