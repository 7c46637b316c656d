"""Command line interface for make-swift-package."""

import argparse
import logging
import pathlib
import signal
import sys
from types import FrameType

from make_swift_package.config import (
    INSTALL_STRATEGIES,
    POLICIES,
    POLICY_WARN,
    SOURCE_STRATEGIES,
    SOURCE_SYMLINK,
    PackageConfig,
    resolve_package_config,
)
from make_swift_package.errors import PackagingError, RunCancelledError
from make_swift_package.package import build_package
from make_swift_package.tools import DarwinToolchain, RunContext, Toolchain

EXIT_FAILURE: int = 1
EXIT_INTERRUPTED: int = 130


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the make-swift-package logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("make_swift_package")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    :returns: Parser.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="make-swift-package",
        description="Utility for creating a Swift Package from one or more Usd builds.",
        usage="make-swift-package [OPTIONS] <usd-install> ...",
    )
    parser.add_argument(
        "usd_installs",
        metavar="usd-install",
        type=pathlib.Path,
        nargs="*",
        help="Uses the binaries at this Usd installation for the generated package.",
    )
    parser.add_argument(
        "--usd-install-strategy",
        choices=INSTALL_STRATEGIES,
        default=None,
        help="Controls how the Usd installations are handled (default: copy-and-bundle on macOS, symlink elsewhere).",
    )
    parser.add_argument(
        "--copy-plugins",
        type=pathlib.Path,
        action="append",
        default=[],
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--symlink-plugins",
        type=pathlib.Path,
        action="append",
        default=[],
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--source-strategy",
        choices=SOURCE_STRATEGIES,
        default=SOURCE_SYMLINK,
        help="Controls whether the glue sources are copied or symlinked into the generated package directory.",
    )
    parser.add_argument(
        "--source-dir",
        type=pathlib.Path,
        default=None,
        help="Directory holding the glue sources and Package.swift.in (default: ./source).",
    )
    parser.add_argument(
        "--generated-package-dir",
        type=pathlib.Path,
        default=None,
        help=(
            "The directory to write the generated Swift Package to "
            "(default: swift-package next to the source dir, with a hoisted package manifest)."
        ),
    )
    parser.add_argument(
        "--checksummed-artifacts-dir",
        type=pathlib.Path,
        default=None,
        help="The directory to write zipped artifacts into. The generated package depends on them by checksum.",
    )
    parser.add_argument(
        "--artifacts-hosting-url",
        type=str,
        default=None,
        help="The online URL that the artifacts will be hosted from.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the generated package directory if it already exists.",
    )
    parser.add_argument(
        "--feature-flag-conflicts",
        choices=POLICIES,
        default=POLICY_WARN,
        help="What to do when Usd installs disagree on a feature flag (warn: last install wins).",
    )
    parser.add_argument(
        "--non-relocatable-dependencies",
        choices=POLICIES,
        default=POLICY_WARN,
        help="What to do when a dylib depends on a library outside @rpath and the system directories.",
    )
    parser.add_argument(
        "--code-sign-identity",
        type=str,
        default=None,
        help="Identity for codesign (default: $CODE_SIGN_ID, or ad-hoc signing).",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Maximum number of concurrent tasks (default: CPU count).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the make-swift-package CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        config: PackageConfig = resolve_package_config(
            usd_installs=ns.usd_installs,
            install_strategy=ns.usd_install_strategy,
            source_strategy=ns.source_strategy,
            source_dir=ns.source_dir,
            generated_package_dir=ns.generated_package_dir,
            checksummed_artifacts_dir=ns.checksummed_artifacts_dir,
            artifacts_hosting_url=ns.artifacts_hosting_url,
            force=ns.force,
            copied_plugins=ns.copy_plugins,
            symlinked_plugins=ns.symlink_plugins,
            feature_flag_conflicts=ns.feature_flag_conflicts,
            non_relocatable_dependencies=ns.non_relocatable_dependencies,
            code_sign_identity=ns.code_sign_identity,
            max_workers=ns.jobs,
        )
    except PackagingError as e:
        print(f"make-swift-package: error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    with RunContext(logger=logger) as context:

        def on_sigint(signum: int, frame: FrameType | None) -> None:
            logger.warning("make-swift-package: interrupted; terminating running tools")
            context.cancel()

        previous = signal.signal(signal.SIGINT, on_sigint)
        try:
            toolchain: Toolchain | None = None
            if config.is_darwin_host is True:
                toolchain = DarwinToolchain(
                    context=context,
                    code_sign_identity=config.code_sign_identity,
                    logger=logger,
                )
            build_package(config, context=context, toolchain=toolchain, logger=logger)
        except RunCancelledError:
            print("make-swift-package: interrupted", file=sys.stderr)
            return EXIT_INTERRUPTED
        except PackagingError as e:
            if context.cancelled is True:
                print("make-swift-package: interrupted", file=sys.stderr)
                return EXIT_INTERRUPTED
            print(f"make-swift-package: error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            signal.signal(signal.SIGINT, previous)

    return 0
