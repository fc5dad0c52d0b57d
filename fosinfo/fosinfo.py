import json
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import List

from fosinfo import (DecodeError, SaveFileError, format_report, log,
                     read_savefile)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="fosinfo", add_help=False, allow_abbrev=False,
                            description="Print the header and plugin list of TESV_SAVEGAME save files",
                            epilog="Any other argument is read as a save file path; "
                                   "use -- before paths that look like options.")
    parser.add_argument('--help', '-h', action='store_true',
                        help='Print this help message')
    parser.add_argument('--json', action='store_true',
                        help='Print one JSON document per file instead of text')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable debug logging to stderr')
    parser.add_argument('files', nargs='*',
                        help='Save files to inspect')
    return parser


def _files_in_order(argv: List[str], files: List[str], unknown: List[str]) -> List[Path]:
    # unrecognised options are file names too, kept in command-line order
    names = set(files) | set(unknown)
    ordered = []
    after_separator = False
    for arg in argv:
        if arg == "--" and not after_separator:
            after_separator = True
            continue
        if arg in names:
            ordered.append(Path(arg))
    return ordered


def main(argv=None) -> int:
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    args, unknown = parser.parse_known_args(argv)
    files = _files_in_order(argv, args.files, unknown)

    if args.help or not files:
        parser.print_help(sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    for path in files:
        log.debug("reading %s", path)
        try:
            report = read_savefile(path)
        except DecodeError as e:
            log.error("%s: %s", path, e)
            continue
        except SaveFileError as e:
            log.error("%s", e)
            continue

        if args.json:
            doc = {"file": str(path)}
            doc.update(report.to_dict())
            sys.stdout.write(json.dumps(doc, indent=2) + "\n")
        else:
            sys.stdout.write(format_report(path, report))
        sys.stdout.flush()

    return 0


if __name__ == '__main__':
    sys.exit(main())
