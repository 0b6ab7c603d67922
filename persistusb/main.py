"""Command-line entry point.

Usage:
    persistusb [options] <image> <device>

The two positional arguments may be given in either order; the one that
is a block device is the target.

Exit Codes:
    0    provisioned, or cancelled at the confirmation prompt
    1    a stage failed while writing the device
    2    invalid arguments, failed validation or insufficient capacity
    130  interrupted by a signal
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from persistusb.__version__ import __version__
from persistusb.domain import PersistenceFilesystem, ProvisioningRequest
from persistusb.logging import LoggerFactory, setup_logging
from persistusb.services.provisioning import ProvisioningSession, describe_failure
from persistusb.storage.exceptions import (
    CapacityError,
    ProvisioningError,
    SessionInterrupted,
    StageError,
    ValidationError,
)
from persistusb.storage.geometry import parse_size_gib
from persistusb.storage.validation import classify_arguments


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="persistusb",
        description="Create a bootable live USB drive with persistence from a disk image",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="<image> <device>",
        help="Source image and target block device, in either order",
    )
    parser.add_argument(
        "--encrypt",
        action="store_true",
        help="Encrypt the persistence partition with LUKS",
    )
    parser.add_argument(
        "--no-journal",
        action="store_true",
        help="Create ext4 filesystems without a journal",
    )
    parser.add_argument(
        "--f2fs",
        action="store_true",
        help="Use F2FS instead of ext4 for the persistence partition",
    )
    parser.add_argument(
        "--raw-write",
        action="store_true",
        help="Copy the image byte-for-byte to the device, without persistence",
    )
    parser.add_argument(
        "--size-part2",
        metavar="SIZE",
        help="ESP size in GiB (default 512 MiB)",
    )
    parser.add_argument(
        "--size-part3",
        metavar="SIZE",
        help="Persistence size in GiB (default: all remaining space)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for log files",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_request(args: argparse.Namespace) -> ProvisioningRequest:
    """Turn parsed arguments into a request.

    Raises:
        UsageError: Wrong number or kind of positional arguments
        SizeRequestError: Unparseable partition size
    """
    image_path, device_path = classify_arguments(args.paths)
    return ProvisioningRequest(
        image_path=image_path,
        device_path=device_path,
        encrypt=args.encrypt,
        journal=not args.no_journal,
        persistence_fs=PersistenceFilesystem.F2FS if args.f2fs else PersistenceFilesystem.EXT4,
        raw_write=args.raw_write,
        boot_size_mib=parse_size_gib(args.size_part2, "--size-part2")
        if args.size_part2 is not None
        else None,
        persistence_size_mib=parse_size_gib(args.size_part3, "--size-part3")
        if args.size_part3 is not None
        else None,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        request = build_request(args)
        result = ProvisioningSession(request).run()
    except (ValidationError, CapacityError) as error:
        log.error(str(error))
        return EXIT_USAGE
    except SessionInterrupted as error:
        log.error(f"{error}, acquired resources were released")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        log.error("Interrupted")
        return EXIT_INTERRUPTED
    except StageError as error:
        log.error(describe_failure(error))
        return EXIT_FAILURE
    except ProvisioningError as error:
        log.error(str(error))
        return EXIT_FAILURE

    log.debug(f"Session finished: {result.status.value}")
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
