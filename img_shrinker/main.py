import argparse
import contextlib
import os
import signal
import sys
from pathlib import Path

from img_shrinker.__version__ import __version__
from img_shrinker.config.settings import (
    ShrinkConfig,
    build_compression_spec,
    compression_overrides,
    load_settings,
)
from img_shrinker.domain.models import ExitCode
from img_shrinker.logging import (
    DEFAULT_DEBUG_LOG,
    LoggerFactory,
    chown_like,
    logger,
    setup_logging,
)
from img_shrinker.services.pipeline import ShrinkPipeline
from img_shrinker.storage.exceptions import ShrinkError

POSIX_LOCALE = {"LANGUAGE": "POSIX", "LC_ALL": "POSIX", "LANG": "POSIX"}


class ShrinkArgumentParser(argparse.ArgumentParser):
    """Prints the help and exits with ``ExitCode.USAGE`` on bad options."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(int(ExitCode.USAGE), f"{self.prog}: error: {message}\n")


def build_parser():
    parser = ShrinkArgumentParser(
        prog="img-shrinker",
        usage="%(prog)s [-adhnoprsvzZ] imagefile.img [newimagefile.img]",
        description=(
            "Shrink a disk image to its smallest size; the image expands to "
            "fill the SD card when it is booted the first time."
        ),
    )
    parser.add_argument("image", nargs="?", type=Path, help="Image to shrink")
    parser.add_argument(
        "output", nargs="?", type=Path, help="Shrink a copy written to this path instead"
    )
    parser.add_argument(
        "-s",
        dest="skip_autoexpand",
        action="store_true",
        help="Don't expand filesystem when image is booted the first time",
    )
    parser.add_argument("-v", dest="verbose", action="store_true", help="Be verbose")
    parser.add_argument(
        "-r",
        dest="repair",
        action="store_true",
        help="Use advanced filesystem repair option if the normal one fails",
    )
    parser.add_argument(
        "-z",
        dest="ziptool",
        action="store_const",
        const="gzip",
        help="Compress image after shrinking with gzip",
    )
    parser.add_argument(
        "-Z",
        dest="ziptool",
        action="store_const",
        const="xz",
        help="Compress image after shrinking with xz",
    )
    parser.add_argument(
        "--ziptool", dest="ziptool", metavar="TOOL", help="Compress with TOOL (gzip or xz)"
    )
    parser.add_argument(
        "-a",
        dest="parallel",
        action="store_true",
        help="Compress image in parallel using multiple cores",
    )
    parser.add_argument(
        "-p",
        dest="prep",
        action="store_true",
        help="Remove logs, apt archives, dhcp leases and ssh hostkeys",
    )
    parser.add_argument(
        "-o", dest="prep_openwb", action="store_true", help="Remove openWB specific files"
    )
    parser.add_argument(
        "-d",
        dest="debug",
        action="store_true",
        help="Write debug messages in a debug log file",
    )
    parser.add_argument(
        "-n",
        dest="no_update_check",
        action="store_true",
        help="Disable the update check (accepted for compatibility; nothing is checked)",
    )
    return parser


def config_from_args(args, environ, settings) -> ShrinkConfig:
    """Translate parsed flags, environment and settings into a ShrinkConfig."""
    return ShrinkConfig(
        image=args.image,
        output=args.output,
        skip_autoexpand=args.skip_autoexpand,
        advanced_repair=args.repair,
        compression=build_compression_spec(
            args.ziptool,
            parallel=args.parallel,
            verbose=args.verbose,
            overrides=compression_overrides(environ, settings),
        ),
        prep=args.prep,
        prep_openwb=args.prep_openwb,
        debug=args.debug,
    )


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.image is None:
        parser.print_help()
        return int(ExitCode.USAGE)

    setup_logging(debug=args.debug, log_file=DEFAULT_DEBUG_LOG)
    log = LoggerFactory.for_system()
    log.info(f"img-shrinker {__version__}")

    # Tool output is parsed, so children must not translate it
    os.environ.update(POSIX_LOCALE)
    signal.signal(signal.SIGTERM, _terminate)

    config = config_from_args(args, os.environ, load_settings())
    try:
        ShrinkPipeline(config).run()
    except ShrinkError as error:
        log.error(f"ERROR in {error.stage}: {error}")
        return int(error.exit_code)
    finally:
        if args.debug:
            logger.complete()
            with contextlib.suppress(OSError):
                chown_like(DEFAULT_DEBUG_LOG, args.image)
    return int(ExitCode.OK)


if __name__ == "__main__":
    sys.exit(main())
