"""Framework bundler.

Wraps one dylib from an installation into a relocatable ``.framework``:

- builds the platform's bundle layout,
- copies the binary and its runtime resources (plugin descriptors, MaterialX
  data libraries, Hydra plugin resources),
- writes ``Info.plist``,
- rewrites the binary's install id and ``@rpath`` load commands to point at
  sibling frameworks, then re-signs it.

The macOS layout (refer to Apple's "Placing content in a bundle" and
"Framework anatomy" documentation)::

    Name.framework/
      Name -> Versions/Current/Name
      Resources -> Versions/Current/Resources
      Versions/
        A/
          Name
          usd -> Resources/usd                    (Usd_Plug only)
          Resources/
            Info.plist
            usd/plugInfo.json, usd/<plugin>/...   (Usd_Plug only)
            MaterialX_Libraries/libraries/        (Usd_UsdMtlx only)
        Current -> A

Embedded platforms can't have a top-level ``Resources`` directory inside a
framework, so they get a flat layout::

    Name.framework/
      Name
      Info.plist
      usd -> Resources_iOS/usd                    (Usd_Plug only)
      Resources_iOS/
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import plistlib
import posixpath
import shutil
import time

from make_swift_package.installs import Installation
from make_swift_package.naming import bundle_identifier, framework_name, framework_reference
from make_swift_package.platforms import resources_dir_name
from make_swift_package.plug_info import BOOTSTRAP_PLUG_INFO, PlugInfoRewrite, rewrite_plug_info_files
from make_swift_package.tools import LoadCommand, Toolchain

PLUG_FRAMEWORK: str = "Usd_Plug"
MTLX_FRAMEWORK: str = "Usd_UsdMtlx"

REWRITTEN_LOAD_COMMANDS: tuple[str, ...] = (
    "LC_LOAD_DYLIB",
    "LC_LOAD_WEAK_DYLIB",
    "LC_REEXPORT_DYLIB",
)


@dataclass(frozen=True, slots=True)
class FrameworkLayout:
    """Paths inside one framework bundle.

    :ivar installation: Installation the dylib came from.
    :ivar name: Framework name.
    :ivar original_dylib: Dylib inside the installation.
    """

    installation: Installation
    name: str
    original_dylib: pathlib.Path

    @property
    def path(self) -> pathlib.Path:
        return self.installation.frameworks_dir / f"{self.name}.framework"

    @property
    def versions(self) -> pathlib.Path:
        return self.path / "Versions"

    @property
    def versions_a(self) -> pathlib.Path:
        return self.versions / "A"

    @property
    def resources(self) -> pathlib.Path:
        """``Versions/A/Resources`` on macOS, ``Resources_iOS`` elsewhere."""

        if self.installation.is_macos is True:
            return self.versions_a / "Resources"
        return self.path / resources_dir_name(self.installation.platform)

    @property
    def resources_usd(self) -> pathlib.Path:
        return self.resources / "usd"

    @property
    def bootstrap_plug_info(self) -> pathlib.Path:
        return self.resources_usd / "plugInfo.json"

    @property
    def info_plist(self) -> pathlib.Path:
        if self.installation.is_macos is True:
            return self.resources / "Info.plist"
        return self.path / "Info.plist"

    @property
    def materialx_libraries(self) -> pathlib.Path:
        return self.resources / "MaterialX_Libraries"

    @property
    def binary(self) -> pathlib.Path:
        if self.installation.is_macos is True:
            return self.versions_a / self.name
        return self.path / self.name

    @property
    def hydra_plugin_dir(self) -> pathlib.Path:
        """Directory next to the dylib with the same name, minus extension."""

        return self.original_dylib.with_suffix("")

    @property
    def is_usd_plug(self) -> bool:
        return self.name == PLUG_FRAMEWORK

    @property
    def is_usd_mtlx(self) -> bool:
        return self.name == MTLX_FRAMEWORK


@dataclass(frozen=True, slots=True)
class Bundle:
    """A framework built for one installation.

    :ivar name: Framework name.
    :ivar installation: Installation it was built from.
    :ivar original_dylib: Dylib it wraps.
    :ivar path: ``Name.framework`` directory.
    :ivar platform: Build platform of the binary.
    :ivar architectures: Architectures in the binary.
    """

    name: str
    installation: Installation
    original_dylib: pathlib.Path
    path: pathlib.Path
    platform: str
    architectures: tuple[str, ...]


def framework_layout(dylib: pathlib.Path, *, installation: Installation) -> FrameworkLayout:
    """Compute the framework layout for a dylib.

    :param dylib: Dylib inside the installation.
    :param installation: Owning installation.
    :returns: Layout.
    """

    return FrameworkLayout(installation=installation, name=framework_name(dylib.name), original_dylib=dylib)


def bundle_library(
    dylib: pathlib.Path,
    *,
    installation: Installation,
    toolchain: Toolchain,
    logger: logging.Logger,
) -> Bundle:
    """Wrap a dylib into a framework.

    If the framework directory already exists nothing is written, so an
    interrupted run can be resumed.

    :param dylib: Dylib to wrap.
    :param installation: Owning installation.
    :param toolchain: Toolchain used to rewrite and sign the binary.
    :param logger: Logger for progress output.
    :returns: The bundle.
    """

    layout: FrameworkLayout = framework_layout(dylib, installation=installation)

    if layout.path.is_dir() is True:
        logger.info(f"make-swift-package: {layout.name}.framework already exists for install {installation.index}")
    else:
        logger.info(f"make-swift-package: making {layout.name}.framework (install {installation.index})")
        t0: float = time.perf_counter()
        installation.frameworks_dir.mkdir(parents=True, exist_ok=True)
        create_directory_structure(layout)
        copy_files_into_bundle(layout, logger=logger)
        write_info_plist(layout)
        fix_load_commands(layout, toolchain=toolchain)
        t1: float = time.perf_counter()
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"make-swift-package: {layout.name}.framework built in {t1 - t0:.2f}s")

    return Bundle(
        name=layout.name,
        installation=installation,
        original_dylib=dylib,
        path=layout.path,
        platform=installation.platform,
        architectures=toolchain.architectures(layout.binary),
    )


def create_directory_structure(layout: FrameworkLayout) -> None:
    """Create the bundle directories (and, on macOS, the version symlinks).

    :param layout: Framework layout.
    """

    layout.path.mkdir(parents=True)
    layout.resources.mkdir(parents=True)
    if layout.installation.is_macos is True:
        (layout.path / layout.name).symlink_to(f"Versions/Current/{layout.name}")
        (layout.path / "Resources").symlink_to("Versions/Current/Resources")
        (layout.versions / "Current").symlink_to("A")


def copy_files_into_bundle(layout: FrameworkLayout, *, logger: logging.Logger) -> None:
    """Copy the binary and its resources into the bundle.

    :param layout: Framework layout.
    :param logger: Logger for progress output.
    """

    shutil.copy2(layout.original_dylib.resolve(), layout.binary)

    if layout.is_usd_mtlx is True:
        # MaterialX wants its data libraries in a directory called `libraries`.
        layout.materialx_libraries.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            layout.installation.materialx_libraries_dir,
            layout.materialx_libraries / "libraries",
            symlinks=True,
        )

    if layout.is_usd_plug is True:
        _install_core_plugin_descriptors(layout)

    hydra_resources: pathlib.Path = layout.hydra_plugin_dir / "resources"
    if layout.hydra_plugin_dir.is_dir() is True:
        if hydra_resources.is_dir() is True:
            logger.info(f"make-swift-package: copying plugin resources for {layout.name}")
            for item in sorted(hydra_resources.iterdir()):
                _copy_item(src=item, dst=layout.resources / item.name)
            rewrite_plug_info_files(
                layout.resources,
                rewrite=PlugInfoRewrite(is_hydra_plugin=True, is_macos=layout.installation.is_macos),
            )
    elif layout.is_usd_plug is True:
        rewrite_plug_info_files(
            layout.resources,
            rewrite=PlugInfoRewrite(is_hydra_plugin=False, is_macos=layout.installation.is_macos),
        )


def _install_core_plugin_descriptors(layout: FrameworkLayout) -> None:
    """Bring OpenUSD's core plugin descriptors into ``Usd_Plug``.

    :param layout: ``Usd_Plug`` framework layout.
    """

    shutil.copytree(layout.installation.lib_usd_dir, layout.resources_usd, symlinks=True)
    layout.bootstrap_plug_info.write_text(BOOTSTRAP_PLUG_INFO, encoding="utf-8")

    # libusd_usdPlug looks for plugInfo.json files at <dylib dir>/usd.
    if layout.installation.is_macos is True:
        (layout.versions_a / "usd").symlink_to("Resources/usd")
    else:
        (layout.path / "usd").symlink_to(f"{layout.resources.name}/usd")

    normalize_resources_dir_case(layout.resources)


def normalize_resources_dir_case(root: pathlib.Path) -> list[pathlib.Path]:
    """Rename every nested ``resources`` directory to ``Resources``.

    Bundles need capital-R ``Resources`` and embedded file systems are
    case-sensitive.

    :param root: Directory to walk.
    :returns: Renamed directories (new paths).
    """

    renamed: list[pathlib.Path] = []
    for dir_str, dirs, _files in os.walk(root, topdown=True):
        if "resources" not in dirs:
            continue
        parent: pathlib.Path = pathlib.Path(dir_str)
        target: pathlib.Path = parent / "Resources"
        os.rename(parent / "resources", target)
        dirs[dirs.index("resources")] = "Resources"
        renamed.append(target)
    return renamed


def write_info_plist(layout: FrameworkLayout) -> None:
    """Write the framework's ``Info.plist``.

    :param layout: Framework layout.
    """

    info: dict[str, object] = {
        "CFBundleDevelopmentRegion": "en",
        "CFBundleExecutable": layout.name,
        "CFBundleIdentifier": bundle_identifier(layout.name),
        "CFBundleInfoDictionaryVersion": "6.0",
        "CFBundleName": layout.name,
        "CFBundlePackageType": "FMWK",
        "CFBundleShortVersionString": "1.0.0",
        "CFBundleVersion": "1.0.0",
        "CSResourcesFileMapped": True,
    }
    layout.info_plist.parent.mkdir(parents=True, exist_ok=True)
    with open(layout.info_plist, "wb") as f:
        plistlib.dump(info, f)


def load_command_rewrites(commands: list[LoadCommand]) -> list[tuple[str, str]]:
    """Compute the ``install_name_tool -change`` pairs for a binary.

    Only ``@rpath``-relative references (which come from OpenUSD and its
    bundled dependencies) are rewritten; absolute system references are kept.

    :param commands: Load commands of the binary.
    :returns: ``(old, new)`` reference pairs, in load command order.
    """

    changes: list[tuple[str, str]] = []
    for command in commands:
        if command.cmd not in REWRITTEN_LOAD_COMMANDS:
            continue
        if command.path.startswith("@rpath/") is False:
            continue
        name: str = framework_name(posixpath.basename(command.path))
        new: str = framework_reference(name)
        if new != command.path:
            changes.append((command.path, new))
    return changes


def fix_load_commands(layout: FrameworkLayout, *, toolchain: Toolchain) -> None:
    """Point the binary's install id and dependencies at frameworks, then re-sign.

    :param layout: Framework layout.
    :param toolchain: Toolchain used to rewrite and sign.
    """

    toolchain.set_install_id(layout.binary, framework_reference(layout.name))
    for old, new in load_command_rewrites(toolchain.load_commands(layout.binary)):
        toolchain.change_reference(layout.binary, old, new)
    toolchain.codesign(layout.path, bundle_identifier(layout.name))


def _copy_item(*, src: pathlib.Path, dst: pathlib.Path) -> None:
    """Copy a file or directory to a destination, preserving symlinks.

    :param src: Source path.
    :param dst: Destination path.
    """

    if src.is_dir() is True:
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
        return
    if src.is_file() is True:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
