import argparse
import sys
from pathlib import Path

from appliance_media.__version__ import __version__
from appliance_media.app.orchestrator import BuildOptions, MediaBuilder
from appliance_media.exceptions import MediaBuildError
from appliance_media.logging import setup_logging
from appliance_media.ui.console import Console


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appliance-media",
        description="Build bootable, fully provisioned appliance deployment media",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace-level output")
    parser.add_argument("--kit", type=Path, help="Use a local deployment kit package")
    oem = parser.add_mutually_exclusive_group()
    oem.add_argument("--oem", dest="oem", action="store_true", default=None,
                     help="Build IoT Enterprise (OEM) media")
    oem.add_argument("--no-oem", dest="oem", action="store_false",
                     help="Build Enterprise (volume) media")
    parser.add_argument("--pack", action="append", default=[], metavar="ID",
                        help="Add a language pack from the kit (repeatable)")
    parser.add_argument("--skip-updates", action="store_true",
                        help="Do not apply the kit's servicing updates")
    parser.add_argument("--skip-update-check", action="store_true",
                        help="Do not check for a newer release of this tool")
    parser.add_argument("--source", type=Path, help="Installation media path")
    parser.add_argument("--scratch", type=Path, help="Scratch directory for downloads and images")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    options = BuildOptions(
        kit_path=args.kit,
        is_oem=args.oem,
        packs=tuple(args.pack),
        skip_updates=args.skip_updates,
        skip_update_check=args.skip_update_check,
        source=args.source,
        scratch_dir=args.scratch,
    )
    console = Console()
    builder = MediaBuilder(options, console=console)
    try:
        return builder.run()
    except MediaBuildError as error:
        if builder.destructive_started:
            raise
        console.error(str(error))
        return 1
    except KeyboardInterrupt:
        if builder.destructive_started:
            raise
        console.warn("Cancelled")
        return 1


if __name__ == "__main__":
    sys.exit(main())
