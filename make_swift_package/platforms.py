"""Platform resolution helpers.

This module is intentionally small and "pragmatic":

- It normalizes the platform names reported by ``vtool -show-build``
  (e.g. ``IOSSIMULATOR``) into the spelling used throughout the tool
  (e.g. ``iOSSimulator``).
- It maps a (platform, architectures) pair onto an xcframework library
  identifier (e.g. ``ios-arm64-simulator``) and back onto the Swift package
  platform predicate (e.g. ``.iOS``).
"""

from dataclasses import dataclass
import logging

from make_swift_package.errors import PackagingError

UNKNOWN_PLATFORM: str = "unknown"
MACOS: str = "macOS"


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Xcframework placement information for one build platform.

    :ivar family: xcframework platform family (e.g. ``ios``).
    :ivar variant: Optional platform variant (``simulator``).
    :ivar swift_platform: Swift package platform (e.g. ``.iOS``).
    """

    family: str
    variant: str | None
    swift_platform: str


_VTOOL_PLATFORMS: dict[str, str] = {
    "MACOS": "macOS",
    "IOS": "iOS",
    "IOSSIMULATOR": "iOSSimulator",
    "VISIONOS": "visionOS",
    "VISIONOSSIMULATOR": "visionOSSimulator",
}

_PLATFORMS: dict[str, PlatformInfo] = {
    "macOS": PlatformInfo(family="macos", variant=None, swift_platform=".macOS"),
    "iOS": PlatformInfo(family="ios", variant=None, swift_platform=".iOS"),
    "iOSSimulator": PlatformInfo(family="ios", variant="simulator", swift_platform=".iOS"),
    "visionOS": PlatformInfo(family="xros", variant=None, swift_platform=".visionOS"),
    "visionOSSimulator": PlatformInfo(family="xros", variant="simulator", swift_platform=".visionOS"),
}

_FAMILY_SWIFT_PLATFORMS: dict[str, str] = {
    "macos": ".macOS",
    "ios": ".iOS",
    "xros": ".visionOS",
}


def normalize_build_platform(raw: str, *, logger: logging.Logger | None = None) -> str:
    """Normalize a ``vtool`` platform name.

    Unknown names are returned unchanged with a warning.

    :param raw: Platform as printed by ``vtool -show-build`` (e.g. ``MACOS``).
    :param logger: Optional logger for the unknown-platform warning.
    :returns: Normalized platform name (e.g. ``macOS``).
    """

    normalized: str | None = _VTOOL_PLATFORMS.get(raw)
    if normalized is not None:
        return normalized

    if logger is None:
        logger = logging.getLogger("make_swift_package")
    logger.warning(f"make-swift-package: warning: unknown vtool platform {raw!r}")
    return raw


def is_macos(platform: str) -> bool:
    """Check whether a normalized platform is macOS.

    :param platform: Normalized platform name.
    :returns: ``True`` for macOS.
    """

    return platform == MACOS


def resources_dir_name(platform: str) -> str:
    """Name of a framework's resource directory on a platform.

    Embedded platforms may not have a top-level directory named ``Resources``
    inside a framework, so they use ``Resources_iOS``.

    :param platform: Normalized platform name.
    :returns: Directory name.
    """

    if is_macos(platform) is True:
        return "Resources"
    return "Resources_iOS"


def library_identifier(*, platform: str, architectures: tuple[str, ...]) -> str:
    """Build the xcframework library identifier for a framework.

    :param platform: Normalized platform name.
    :param architectures: Architectures contained in the binary.
    :returns: Identifier like ``macos-arm64_x86_64`` or ``ios-arm64-simulator``.
    :raises PackagingError: If the platform or architectures are unusable.
    """

    info: PlatformInfo | None = _PLATFORMS.get(platform)
    if info is None:
        raise PackagingError(f"Cannot place a framework built for unknown platform {platform!r}")
    if len(architectures) == 0:
        raise PackagingError(f"Cannot place a {platform} framework without architectures")

    ident: str = f"{info.family}-{'_'.join(sorted(architectures))}"
    if info.variant is not None:
        ident = f"{ident}-{info.variant}"
    return ident


def platform_info(platform: str) -> PlatformInfo:
    """Look up xcframework placement information for a platform.

    :param platform: Normalized platform name.
    :returns: Platform information.
    :raises PackagingError: If the platform is unknown.
    """

    info: PlatformInfo | None = _PLATFORMS.get(platform)
    if info is None:
        raise PackagingError(f"Unknown platform {platform!r}")
    return info


def swift_platform_for_identifier(identifier: str) -> str | None:
    """Map an xcframework subdirectory name to a Swift package platform.

    :param identifier: Subdirectory name (e.g. ``ios-arm64-simulator``).
    :returns: Swift platform (e.g. ``.iOS``), or ``None`` if unrecognized.
    """

    family: str = identifier.split("-", 1)[0]
    return _FAMILY_SWIFT_PLATFORMS.get(family)
