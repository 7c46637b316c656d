"""OpenUSD installations.

An installation is one platform's already-built OpenUSD tree::

    <root>/
      lib/libusd_usd.dylib ...
      lib/usd/<plugin>/resources/plugInfo.json
      plugin/usd/<render delegate>.dylib
      include/pxr/...
      libraries/            (MaterialX data libraries)
      pxrConfig.cmake
"""

from dataclasses import dataclass
import logging
import pathlib

from make_swift_package.config import INSTALL_COPY_AND_BUNDLE, PackageConfig
from make_swift_package.errors import ValidationError
from make_swift_package.feature_flags import FeatureFlags, merge_feature_flags, read_feature_flags
from make_swift_package.platforms import UNKNOWN_PLATFORM, is_macos
from make_swift_package.tools import Toolchain

CORE_LIBRARY_STEM: str = "libusd_usd"


@dataclass(frozen=True, slots=True)
class Installation:
    """One validated installation.

    :ivar root: Installation root directory.
    :ivar index: Position on the command line (unique per run).
    :ivar platform: Normalized build platform, or ``unknown``.
    :ivar library_extension: Shared library extension (``dylib`` or ``so``).
    :ivar feature_flags: This installation's own feature flags.
    :ivar tmp_dir: Scratch directory used by bundling tasks for this installation.
    """

    root: pathlib.Path
    index: int
    platform: str
    library_extension: str
    feature_flags: FeatureFlags
    tmp_dir: pathlib.Path

    @property
    def frameworks_dir(self) -> pathlib.Path:
        return self.tmp_dir / "Frameworks"

    @property
    def lib_dir(self) -> pathlib.Path:
        return self.root / "lib"

    @property
    def lib_usd_dir(self) -> pathlib.Path:
        """``<root>/lib/usd``, the core plugin descriptors."""

        return self.lib_dir / "usd"

    @property
    def plugin_usd_dir(self) -> pathlib.Path:
        """``<root>/plugin/usd``, e.g. Hydra render delegates."""

        return self.root / "plugin" / "usd"

    @property
    def include_dir(self) -> pathlib.Path:
        return self.root / "include"

    @property
    def materialx_libraries_dir(self) -> pathlib.Path:
        return self.root / "libraries"

    @property
    def core_library(self) -> pathlib.Path:
        return core_library_path(self.root, library_extension=self.library_extension)

    @property
    def is_macos(self) -> bool:
        return is_macos(self.platform)


def core_library_path(root: pathlib.Path, *, library_extension: str) -> pathlib.Path:
    """Path of the library every installation must contain.

    :param root: Installation root.
    :param library_extension: ``dylib`` or ``so``.
    :returns: ``<root>/lib/libusd_usd.<ext>``.
    """

    return root / "lib" / f"{CORE_LIBRARY_STEM}.{library_extension}"


@dataclass(frozen=True, slots=True)
class InstallationSet:
    """All installations of a run plus their merged feature flags.

    :ivar installations: Installations in command-line order.
    :ivar feature_flags: Merged flags.
    """

    installations: tuple[Installation, ...]
    feature_flags: FeatureFlags

    def describe(self, config: PackageConfig) -> str:
        """Render the human-readable package configuration summary.

        :param config: Run configuration.
        :returns: Multi-line text.
        """

        lines: list[str] = ["Usd installs:"]
        for inst in self.installations:
            lines.append(f"- {inst.root} ({inst.platform})")
        lines.append(f"Usd install strategy: {config.install_strategy}")
        lines.append(f"Source strategy: {config.source_strategy}")
        artifacts_dir: str = "nil"
        if config.checksummed_artifacts_dir is not None:
            artifacts_dir = str(config.checksummed_artifacts_dir)
        lines.append(f"Checksummed artifacts dir: {artifacts_dir}")
        lines.append(f"Artifacts hosting URL: {config.artifacts_hosting_url or 'nil'}")
        lines.append("")
        lines.append("Feature flags:")
        for flag in sorted(self.feature_flags.raw_flags):
            lines.append(f"  {flag}: {self.feature_flags.raw_flags[flag]}")
        return "\n".join(lines) + "\n"


def load_installations(
    *,
    config: PackageConfig,
    tmp_root: pathlib.Path,
    toolchain: Toolchain | None,
    logger: logging.Logger,
) -> InstallationSet:
    """Validate the configured installation roots and describe them.

    Nothing is written to disk here.

    :param config: Run configuration.
    :param tmp_root: Package scratch directory (``<package>/.tmp``).
    :param toolchain: Toolchain used to read build platforms, or ``None`` on
        hosts without the Apple tools.
    :param logger: Logger for progress output.
    :returns: Validated installation set.
    :raises ValidationError: If an installation is missing or unusable.
    """

    roots: list[pathlib.Path] = []
    for raw in config.usd_installs:
        root: pathlib.Path = raw.expanduser()
        if root.name == ".DS_Store" and root.is_dir() is False:
            continue
        roots.append(root)

    if len(roots) == 0:
        raise ValidationError("At least one USD install directory must be specified")

    platforms: list[str] = []
    for root in roots:
        if root.is_dir() is False:
            raise ValidationError(f"Missing USD install directory: {root}")

        core: pathlib.Path = core_library_path(root, library_extension=config.library_extension)
        if core.is_file() is False:
            raise ValidationError(f"Missing {core.name}: {core}")

        platform: str = UNKNOWN_PLATFORM
        if toolchain is not None:
            platform = toolchain.build_platform(core)
            if config.install_strategy != INSTALL_COPY_AND_BUNDLE and is_macos(platform) is False:
                raise ValidationError(f"Platform {platform} requires --usd-install-strategy copy-and-bundle")
        platforms.append(platform)

    all_flags: list[FeatureFlags] = [read_feature_flags(root, logger=logger) for root in roots]
    merged: FeatureFlags = merge_feature_flags(
        all_flags,
        policy=config.feature_flag_conflicts,
        logger=logger,
    )

    installations: list[Installation] = []
    for index, root in enumerate(roots):
        installations.append(
            Installation(
                root=root.absolute(),
                index=index,
                platform=platforms[index],
                library_extension=config.library_extension,
                feature_flags=all_flags[index],
                tmp_dir=tmp_root / f"{root.name}.{index}",
            )
        )
        logger.info(f"make-swift-package: usd install {index}: {root} ({platforms[index]})")

    return InstallationSet(installations=tuple(installations), feature_flags=merged)
