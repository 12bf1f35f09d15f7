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

"""Dystros command-line handling."""

import argparse
import logging
import os
import sys

from . import __version__
from .config import Config, default_config_path
from .filters import FilterSyntaxError, list_lines, parse_filters, select
from .icalendar import CalendarDocument, ParseError
from .index import BucketIndex, IndexLine, InvalidIndexLine
from .vdir import calendar_names, read_calendar


def _read_input_lines():
    return [line.rstrip("\n") for line in sys.stdin if line.strip()]


def _write_lines(lines):
    for line in lines:
        sys.stdout.write(line + "\n")


def add_index_parser(parser):
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Calendar directory to index (defaults to the configured one).",
    )


def index_main(args, config):
    calendar_dir = args.path or config.get_calendar_dir()
    index = BucketIndex(config.get_index_dir())
    logging.info("Indexing %s into %s", calendar_dir, index.path)
    try:
        index.rebuild(calendar_dir)
    except OSError as e:
        logging.error("Unable to write index %s: %s", index.path, e)
        return 1
    return 0


def add_selection_parser(parser):
    parser.add_argument(
        "args",
        nargs="*",
        metavar="ARG",
        help="Filters: from DATE, to DATE, in DATE, on DATE, cal CALENDAR.",
    )


def select_main(args, config):
    filters = parse_filters(args.args)
    index = BucketIndex(config.get_index_dir())
    _write_lines(select(index, config.get_calendar_dir(), filters))
    return 0


def list_main(args, config):
    filters = parse_filters(args.args)
    _write_lines(list_lines(_read_input_lines(), filters, config.get_calendar_dir()))
    return 0


def show_main(args, config):
    calendar_dir = config.get_calendar_dir()
    for raw in _read_input_lines():
        line = IndexLine.parse(raw)
        with open(os.path.join(calendar_dir, line.path), encoding="utf-8") as f:
            sys.stdout.write(f.read())
    return 0


def add_get_parser(parser):
    parser.add_argument("query", choices=["calendars"], help="Information to show.")


def get_main(args, config):
    if args.query == "calendars":
        _write_lines(calendar_names(config.get_calendar_dir()))
    return 0


def add_unroll_parser(parser):
    parser.add_argument("path", help="Recurring event file to unroll.")


def unroll_main(args, config):
    calendar_dir = config.get_calendar_dir()
    if os.path.isabs(args.path):
        document = CalendarDocument.from_path(
            args.path, os.path.relpath(args.path, calendar_dir)
        )
    else:
        document = read_calendar(calendar_dir, args.path)
    event = document.principal_event()
    if not event.is_recur_master():
        logging.warning("%s is not a recurring event", args.path)
    for instance in event.recurrence_instances():
        line = IndexLine.from_event(instance)
        if line is not None:
            sys.stdout.write(f"{line}\n")
    return 0


COMMANDS = {
    "index": (add_index_parser, index_main, "Rebuild the index"),
    "select": (add_selection_parser, select_main, "Select events from the index"),
    "list": (add_selection_parser, list_main, "Filter index lines read from stdin"),
    "show": (None, show_main, "Show the raw files of index lines read from stdin"),
    "get": (add_get_parser, get_main, "Get information about the calendar data"),
    "unroll": (add_unroll_parser, unroll_main, "Unroll a recurring event"),
}


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(
        prog="dystros", description="Command line calendar tool."
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + ".".join(map(str, __version__)),
    )
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=default_config_path(),
        help="Path to configuration file.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug output."
    )

    subparsers = parser.add_subparsers(help="Subcommands", dest="subcommand")
    for name, (add_parser, unused_main, description) in COMMANDS.items():
        subparser = subparsers.add_parser(name, help=description)
        if add_parser is not None:
            add_parser(subparser)

    args = parser.parse_args(argv)

    if args.subcommand is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    config = Config.from_path(args.config)
    command_main = COMMANDS[args.subcommand][1]
    try:
        return command_main(args, config)
    except FilterSyntaxError as e:
        sys.stderr.write(f"{e.message}\n")
        return 1
    except (ParseError, InvalidIndexLine, IndexError, OSError) as e:
        sys.stderr.write(f"{e}\n")
        return 1
    except KeyError as e:
        sys.stderr.write(f"Missing required component or property: {e.args[0]}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
