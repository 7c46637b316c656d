"""Multi-platform merging.

Frameworks with the same name (one per installation) are combined into one
``Name.xcframework``::

    Name.xcframework/
      Info.plist
      macos-arm64_x86_64/Name.framework
      ios-arm64-simulator/Name.framework
"""

from dataclasses import dataclass
import logging
import pathlib
import plistlib
import shutil

from make_swift_package.bundler import Bundle
from make_swift_package.errors import PackagingError
from make_swift_package.platforms import (
    PlatformInfo,
    is_macos,
    library_identifier,
    platform_info,
    swift_platform_for_identifier,
)
from make_swift_package.tools import RunContext, run_parallel

XCFRAMEWORKS_DIR_NAME: str = "XCFrameworks"
INFO_PLIST_NAME: str = "Info.plist"


@dataclass(frozen=True, slots=True)
class MultiPlatformBundle:
    """An ``.xcframework`` holding every platform's copy of one framework.

    :ivar name: Framework name.
    :ivar path: ``Name.xcframework`` directory.
    :ivar identifiers: Library identifiers (subdirectory names), sorted.
    :ivar predicate: Swift package condition, e.g. ``.when(platforms: [.iOS, .macOS])``.
    """

    name: str
    path: pathlib.Path
    identifiers: tuple[str, ...]
    predicate: str


def group_bundles(bundles: list[Bundle]) -> dict[str, list[Bundle]]:
    """Group bundles by framework name.

    :param bundles: Bundles from every installation, in any order.
    :returns: Name -> bundles ordered by installation index; keys sorted.
    """

    grouped: dict[str, list[Bundle]] = {}
    for bundle in sorted(bundles, key=lambda b: (b.name, b.installation.index)):
        grouped.setdefault(bundle.name, []).append(bundle)
    return grouped


def available_library(*, bundle: Bundle, identifier: str) -> dict[str, object]:
    """Describe one platform slice for the xcframework ``Info.plist``.

    :param bundle: Framework for the slice.
    :param identifier: Library identifier.
    :returns: ``AvailableLibraries`` entry.
    """

    info: PlatformInfo = platform_info(bundle.platform)
    binary_path: str = f"{bundle.name}.framework/{bundle.name}"
    if is_macos(bundle.platform) is True:
        binary_path = f"{bundle.name}.framework/Versions/A/{bundle.name}"

    entry: dict[str, object] = {
        "BinaryPath": binary_path,
        "LibraryIdentifier": identifier,
        "LibraryPath": f"{bundle.name}.framework",
        "SupportedArchitectures": sorted(bundle.architectures),
        "SupportedPlatform": info.family,
    }
    if info.variant is not None:
        entry["SupportedPlatformVariant"] = info.variant
    return entry


def merge_bundles(
    name: str,
    bundles: list[Bundle],
    *,
    tmp_root: pathlib.Path,
    logger: logging.Logger,
) -> MultiPlatformBundle:
    """Build ``Name.xcframework`` from every platform's framework.

    An existing xcframework is rebuilt from scratch.

    :param name: Framework name.
    :param bundles: Frameworks named ``name``, one per installation.
    :param tmp_root: Package scratch directory.
    :param logger: Logger for progress output.
    :returns: The merged bundle.
    :raises PackagingError: If two frameworks map to the same library identifier.
    """

    slices: dict[str, Bundle] = {}
    for bundle in sorted(bundles, key=lambda b: b.installation.index):
        if bundle.name != name:
            raise PackagingError(f"Cannot merge {bundle.name}.framework into {name}.xcframework")
        identifier: str = library_identifier(platform=bundle.platform, architectures=bundle.architectures)
        other: Bundle | None = slices.get(identifier)
        if other is not None:
            raise PackagingError(
                f"{name}.framework from {other.installation.root} and {bundle.installation.root} "
                f"are both {identifier}; each platform may only be packaged once"
            )
        slices[identifier] = bundle

    dest: pathlib.Path = tmp_root / XCFRAMEWORKS_DIR_NAME / f"{name}.xcframework"
    logger.info(f"make-swift-package: making {dest.name} ({', '.join(sorted(slices))})")
    if dest.exists() is True:
        shutil.rmtree(dest)
    dest.mkdir(parents=True)

    libraries: list[dict[str, object]] = []
    for identifier in sorted(slices):
        bundle = slices[identifier]
        shutil.copytree(bundle.path, dest / identifier / f"{name}.framework", symlinks=True)
        libraries.append(available_library(bundle=bundle, identifier=identifier))

    info: dict[str, object] = {
        "AvailableLibraries": libraries,
        "CFBundlePackageType": "XFWK",
        "XCFrameworkFormatVersion": "1.0",
    }
    with open(dest / INFO_PLIST_NAME, "wb") as f:
        plistlib.dump(info, f)

    return MultiPlatformBundle(
        name=name,
        path=dest,
        identifiers=tuple(sorted(slices)),
        predicate=platform_predicate(dest, logger=logger),
    )


def platform_predicate(xcframework: pathlib.Path, *, logger: logging.Logger) -> str:
    """Compute the Swift package condition for an xcframework.

    The condition lists the platforms whose subdirectories are actually
    present. Unrecognized subdirectories are reported and carried verbatim.

    :param xcframework: ``Name.xcframework`` directory.
    :param logger: Logger for warnings.
    :returns: ``.when(platforms: [...])``.
    """

    platforms: set[str] = set()
    for child in sorted(xcframework.iterdir()):
        if child.name == INFO_PLIST_NAME:
            continue
        swift_platform: str | None = swift_platform_for_identifier(child.name)
        if swift_platform is None:
            logger.warning(f"make-swift-package: warning: unknown xcframework platform subdirectory: {child.name}")
            platforms.add(child.name)
            continue
        platforms.add(swift_platform)
    return f".when(platforms: [{', '.join(sorted(platforms))}])"


def merge_all(
    bundles: list[Bundle],
    *,
    context: RunContext,
    tmp_root: pathlib.Path,
    max_workers: int,
    logger: logging.Logger,
) -> list[MultiPlatformBundle]:
    """Merge every framework name concurrently, one task per name.

    Must only be called once every framework of every installation exists.

    :param bundles: All bundles of the run.
    :param context: Run context.
    :param tmp_root: Package scratch directory.
    :param max_workers: Maximum concurrent tasks.
    :param logger: Logger for progress output.
    :returns: Merged bundles, sorted by name.
    """

    grouped: dict[str, list[Bundle]] = group_bundles(bundles)

    def merge_one(name: str) -> MultiPlatformBundle:
        return merge_bundles(name, grouped[name], tmp_root=tmp_root, logger=logger)

    merged: list[MultiPlatformBundle] = run_parallel(
        context=context,
        func=merge_one,
        items=list(grouped),
        max_workers=max_workers,
    )
    return sorted(merged, key=lambda m: m.name)
