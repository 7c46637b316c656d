"""Swift package assembly.

Drives the pipeline and lays out the generated package::

    <package>/
      .make-swift-package.info.txt
      .tmp/                                  scratch (frameworks, xcframeworks)
      Libraries/                             Name.xcframework, or OpenUSD/ for raw installs
      Sources/
        OpenUSD/
        _OpenUSD_MacroImplementations/
        _OpenUSD_SwiftBindingHelpers/
          include/
            module.modulemap
            pxr/...
            swiftUsd/defines.h ...
    Package.swift, extraArgs.txt             (hoisted next to the source dir by default)
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import time

from make_swift_package.bundler import Bundle, bundle_library, framework_layout
from make_swift_package.config import INSTALL_COPY_WITHOUT_BUNDLING, INSTALL_SYMLINK, SOURCE_SYMLINK, PackageConfig
from make_swift_package.errors import PackagingError, ValidationError
from make_swift_package.installs import Installation, InstallationSet, load_installations
from make_swift_package.manifest import (
    TEMPLATE_NAME,
    render_defines_header,
    render_extra_args,
    write_package_manifest,
)
from make_swift_package.merger import MultiPlatformBundle, merge_all
from make_swift_package.modulemap import HeaderEntry, link_library_names, write_modulemap
from make_swift_package.publisher import ChecksummedArtifact, publish_artifacts
from make_swift_package.resolver import DependencyResolution, resolve_dependencies
from make_swift_package.tools import RunContext, Toolchain, run_parallel

DEFAULT_PACKAGE_DIR_NAME: str = "swift-package"
INFO_FILE_NAME: str = ".make-swift-package.info.txt"
RAW_INSTALL_DIR_NAME: str = "OpenUSD"
MACRO_IMPLEMENTATIONS: str = "_OpenUSD_MacroImplementations"
BINDING_HELPERS: str = "_OpenUSD_SwiftBindingHelpers"

_HEADER_SUFFIXES: tuple[str, ...] = (".h", ".hpp")
_NATIVE_SOURCE_SUFFIXES: tuple[str, ...] = (".cpp", ".mm")
_SWIFT_SOURCE_SUFFIXES: tuple[str, ...] = (".swift", ".metal", ".usdz")


@dataclass(frozen=True, slots=True)
class PackageLayout:
    """Paths of the generated package.

    :ivar package_dir: Generated package directory (deleted by ``--force``).
    :ivar manifest_dir: Directory receiving ``Package.swift`` and ``extraArgs.txt``.
    :ivar prefix: Path prefix from ``manifest_dir`` to ``package_dir`` (``""`` or ``swift-package/``).
    """

    package_dir: pathlib.Path
    manifest_dir: pathlib.Path
    prefix: str

    @property
    def package_manifest(self) -> pathlib.Path:
        return self.manifest_dir / "Package.swift"

    @property
    def extra_args(self) -> pathlib.Path:
        return self.manifest_dir / "extraArgs.txt"

    @property
    def info_file(self) -> pathlib.Path:
        return self.package_dir / INFO_FILE_NAME

    @property
    def tmp(self) -> pathlib.Path:
        return self.package_dir / ".tmp"

    @property
    def libraries(self) -> pathlib.Path:
        return self.package_dir / "Libraries"

    @property
    def raw_install(self) -> pathlib.Path:
        return self.libraries / RAW_INSTALL_DIR_NAME

    @property
    def sources(self) -> pathlib.Path:
        return self.package_dir / "Sources"

    @property
    def sources_openusd(self) -> pathlib.Path:
        return self.sources / "OpenUSD"

    @property
    def binding_helpers(self) -> pathlib.Path:
        return self.sources / BINDING_HELPERS

    @property
    def macro_implementations(self) -> pathlib.Path:
        return self.sources / MACRO_IMPLEMENTATIONS

    @property
    def include(self) -> pathlib.Path:
        return self.binding_helpers / "include"

    @property
    def modulemap(self) -> pathlib.Path:
        return self.include / "module.modulemap"

    @property
    def defines_header(self) -> pathlib.Path:
        return self.include / "swiftUsd" / "defines.h"

    def xcframework_dest(self, name: str) -> pathlib.Path:
        return self.libraries / f"{name}.xcframework"


@dataclass(frozen=True, slots=True)
class PackageResult:
    """Outcome of a package build.

    :ivar layout: Package layout.
    :ivar installation_set: Validated installations.
    :ivar bundles: Merged xcframeworks (empty for raw installs).
    :ivar artifacts: Published artifacts (empty unless publishing).
    :ivar headers: Declared headers, in module order.
    """

    layout: PackageLayout
    installation_set: InstallationSet
    bundles: tuple[MultiPlatformBundle, ...]
    artifacts: tuple[ChecksummedArtifact, ...]
    headers: tuple[HeaderEntry, ...]


def package_layout(config: PackageConfig) -> PackageLayout:
    """Compute the package layout for a run.

    Without ``--generated-package-dir`` the package goes to ``swift-package``
    next to the source directory and the manifest is hoisted beside it.

    :param config: Run configuration.
    :returns: Layout.
    """

    if config.generated_package_dir is not None:
        package_dir: pathlib.Path = config.generated_package_dir.absolute()
        return PackageLayout(package_dir=package_dir, manifest_dir=package_dir, prefix="")

    repo: pathlib.Path = config.source_dir.absolute().parent
    return PackageLayout(
        package_dir=repo / DEFAULT_PACKAGE_DIR_NAME,
        manifest_dir=repo,
        prefix=f"{DEFAULT_PACKAGE_DIR_NAME}/",
    )


def check_output_dir(layout: PackageLayout, *, force: bool) -> None:
    """Refuse to overwrite an existing package unless forced.

    :param layout: Package layout.
    :param force: ``--force`` was passed.
    :raises ValidationError: If the package exists and ``force`` is false.
    """

    if force is True:
        return
    if layout.package_dir.exists() is True or layout.package_dir.is_symlink() is True:
        raise ValidationError(
            f"{layout.package_dir} already exists but `--force` wasn't passed. "
            "Choose another destination, or pass `--force` to overwrite it."
        )


def setup_directory_structure(
    layout: PackageLayout,
    *,
    installation_set: InstallationSet,
    config: PackageConfig,
    logger: logging.Logger,
) -> None:
    """Create a fresh package directory tree.

    :param layout: Package layout.
    :param installation_set: Validated installations.
    :param config: Run configuration.
    :param logger: Logger for progress output.
    """

    if layout.package_dir.is_symlink() is True or layout.package_dir.is_file() is True:
        logger.info(f"make-swift-package: removing {layout.package_dir}")
        layout.package_dir.unlink()
    elif layout.package_dir.exists() is True:
        logger.info(f"make-swift-package: removing {layout.package_dir}")
        shutil.rmtree(layout.package_dir)

    layout.package_dir.mkdir(parents=True)
    layout.info_file.write_text(installation_set.describe(config), encoding="utf-8")
    for d in (
        layout.tmp,
        layout.libraries,
        layout.sources,
        layout.sources_openusd,
        layout.binding_helpers,
        layout.include,
    ):
        d.mkdir(parents=True, exist_ok=True)


def add_raw_install(layout: PackageLayout, *, installation: Installation, copy: bool, logger: logging.Logger) -> None:
    """Copy or symlink an unbundled installation to ``Libraries/OpenUSD``.

    :param layout: Package layout.
    :param installation: First installation.
    :param copy: Copy instead of symlinking.
    :param logger: Logger for progress output.
    """

    dest: pathlib.Path = layout.raw_install
    if copy is True:
        logger.info(f"make-swift-package: copying {installation.root}")
        shutil.copytree(installation.root, dest, symlinks=True)
    else:
        logger.info(f"make-swift-package: symlinking {installation.root}")
        dest.symlink_to(os.path.relpath(installation.root, dest.parent))


def resolve_all(
    installation_set: InstallationSet,
    *,
    config: PackageConfig,
    context: RunContext,
    toolchain: Toolchain,
    logger: logging.Logger,
) -> list[DependencyResolution]:
    """Resolve every installation's dependency closure, one task per installation.

    :returns: Resolutions in installation order.
    """

    def resolve_one(installation: Installation) -> DependencyResolution:
        return resolve_dependencies(
            installation,
            toolchain=toolchain,
            logger=logger,
            non_relocatable_policy=config.non_relocatable_dependencies,
        )

    resolutions: list[DependencyResolution] = run_parallel(
        context=context,
        func=resolve_one,
        items=installation_set.installations,
        max_workers=config.max_workers,
    )
    return sorted(resolutions, key=lambda r: r.installation.index)


def bundle_all(
    resolutions: list[DependencyResolution],
    *,
    config: PackageConfig,
    context: RunContext,
    toolchain: Toolchain,
    logger: logging.Logger,
) -> list[Bundle]:
    """Wrap every resolved dylib into a framework, one task per dylib.

    :returns: Bundles sorted by ``(name, installation index)``.
    :raises PackagingError: If two dylibs of one installation map to the same framework.
    """

    work: list[tuple[Installation, pathlib.Path]] = []
    owners: dict[pathlib.Path, pathlib.Path] = {}
    for resolution in resolutions:
        for dylib in resolution.artifacts:
            dest: pathlib.Path = framework_layout(dylib, installation=resolution.installation).path
            other: pathlib.Path | None = owners.get(dest)
            if other is not None:
                raise PackagingError(f"{other} and {dylib} would both be bundled as {dest.name}")
            owners[dest] = dylib
            work.append((resolution.installation, dylib))

    logger.info(f"make-swift-package: bundling {len(work)} dylibs")

    def bundle_one(item: tuple[Installation, pathlib.Path]) -> Bundle:
        installation, dylib = item
        return bundle_library(dylib, installation=installation, toolchain=toolchain, logger=logger)

    bundles: list[Bundle] = run_parallel(
        context=context,
        func=bundle_one,
        items=work,
        max_workers=config.max_workers,
    )
    return sorted(bundles, key=lambda b: (b.name, b.installation.index))


def copy_xcframeworks(layout: PackageLayout, bundles: list[MultiPlatformBundle], *, logger: logging.Logger) -> None:
    """Copy merged xcframeworks into ``Libraries/``.

    :param layout: Package layout.
    :param bundles: Merged bundles.
    :param logger: Logger for progress output.
    """

    for i, bundle in enumerate(bundles):
        logger.info(f"make-swift-package: copying {bundle.name} ({i + 1} of {len(bundles)})")
        dest: pathlib.Path = layout.xcframework_dest(bundle.name)
        if dest.is_dir() is False:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(bundle.path, dest, symlinks=True)


def pull_in_headers(
    layout: PackageLayout,
    *,
    installation_set: InstallationSet,
    bundled: bool,
    logger: logging.Logger,
) -> None:
    """Bring OpenUSD's public headers into the package include directory.

    Headers of every installation are used; the first one to provide a
    top-level entry wins. Bundled packages get copies, raw ones symlinks.

    :param layout: Package layout.
    :param installation_set: Validated installations.
    :param bundled: Installations were bundled into frameworks.
    :param logger: Logger for progress output.
    """

    logger.info("make-swift-package: pulling in OpenUSD headers")
    includes: list[pathlib.Path]
    if bundled is True:
        includes = [inst.include_dir for inst in installation_set.installations]
    else:
        includes = [layout.raw_install / "include"]

    for include in includes:
        for item in sorted(include.iterdir()):
            dest: pathlib.Path = layout.include / item.name
            if dest.exists() is True or dest.is_symlink() is True:
                continue
            if bundled is True:
                if item.is_dir() is True and item.is_symlink() is False:
                    shutil.copytree(item, dest, symlinks=True)
                else:
                    shutil.copy2(item, dest, follow_symlinks=False)
            else:
                dest.symlink_to(os.path.relpath(item, dest.parent))


def source_destination(relpath: pathlib.PurePosixPath, *, layout: PackageLayout) -> pathlib.Path | None:
    """Decide where a glue source file goes in the package.

    :param relpath: Path relative to the source directory.
    :param layout: Package layout.
    :returns: Destination, or ``None`` if the file is not part of the package.
    :raises PackagingError: For a file type with no known destination.
    """

    name: str = relpath.name
    if name == ".DS_Store" or name == TEMPLATE_NAME or name.endswith(".md") is True:
        return None
    if name.endswith(_HEADER_SUFFIXES) is True:
        return layout.include / "swiftUsd" / relpath
    if name.endswith(".apinotes") is True:
        return layout.include / name
    if name.endswith(_NATIVE_SOURCE_SUFFIXES) is True:
        return layout.binding_helpers / relpath
    if name.endswith(_SWIFT_SOURCE_SUFFIXES) is True:
        if relpath.parts[0] == MACRO_IMPLEMENTATIONS:
            return layout.macro_implementations / relpath.relative_to(MACRO_IMPLEMENTATIONS)
        return layout.sources_openusd / relpath
    raise PackagingError(f"Don't know where to put {relpath} in the Swift package")


def add_source_files(
    layout: PackageLayout,
    *,
    source_dir: pathlib.Path,
    symlink: bool,
    logger: logging.Logger,
) -> list[pathlib.Path]:
    """Copy or symlink the glue sources into the package.

    :param layout: Package layout.
    :param source_dir: Glue source directory.
    :param symlink: Create relative symlinks instead of copies.
    :param logger: Logger for progress output.
    :returns: Destinations written, sorted.
    """

    logger.info("make-swift-package: adding files to swift package")
    root: pathlib.Path = source_dir.absolute()
    written: list[pathlib.Path] = []
    for src in sorted(root.rglob("*")):
        if src.is_dir() is True:
            continue
        relpath: pathlib.PurePosixPath = pathlib.PurePosixPath(src.relative_to(root).as_posix())
        dest: pathlib.Path | None = source_destination(relpath, layout=layout)
        if dest is None:
            continue
        dest.parent.mkdir(parents=True, exist_ok=True)
        if symlink is True:
            if dest.exists() is False and dest.is_symlink() is False:
                dest.symlink_to(os.path.relpath(src, dest.parent))
        else:
            shutil.copy2(src, dest)
        written.append(dest)
    return sorted(written)


def build_package(
    config: PackageConfig,
    *,
    context: RunContext,
    toolchain: Toolchain | None,
    logger: logging.Logger | None = None,
) -> PackageResult:
    """Build the Swift package.

    All validation happens before anything is written.

    :param config: Run configuration.
    :param context: Run context shared by every task.
    :param toolchain: Darwin toolchain, or ``None`` on hosts without one.
    :param logger: Optional logger for progress output.
    :returns: Build result.
    :raises ValidationError: If the configuration or installations are unusable.
    :raises PackagingError: If a stage fails.
    """

    if logger is None:
        logger = logging.getLogger("make_swift_package")

    t_total0: float = time.perf_counter()
    logger.info("make-swift-package: making Swift Package")

    layout: PackageLayout = package_layout(config)
    template: pathlib.Path = config.source_dir / TEMPLATE_NAME
    if template.is_file() is False:
        raise ValidationError(f"Missing package manifest template: {template}")
    if config.bundles_frameworks is True and toolchain is None:
        raise ValidationError("--usd-install-strategy copy-and-bundle requires the Xcode command line tools.")

    installation_set: InstallationSet = load_installations(
        config=config,
        tmp_root=layout.tmp,
        toolchain=toolchain,
        logger=logger,
    )
    check_output_dir(layout, force=config.force)
    context.check_cancelled()

    setup_directory_structure(layout, installation_set=installation_set, config=config, logger=logger)

    merged: list[MultiPlatformBundle] = []
    artifacts: list[ChecksummedArtifact] = []
    if config.install_strategy == INSTALL_SYMLINK:
        add_raw_install(layout, installation=installation_set.installations[0], copy=False, logger=logger)
    elif config.install_strategy == INSTALL_COPY_WITHOUT_BUNDLING:
        add_raw_install(layout, installation=installation_set.installations[0], copy=True, logger=logger)
    else:
        if toolchain is None:
            raise PackagingError("Bundling frameworks requires a Darwin toolchain")
        t0: float = time.perf_counter()
        resolutions: list[DependencyResolution] = resolve_all(
            installation_set, config=config, context=context, toolchain=toolchain, logger=logger
        )
        context.check_cancelled()
        bundles: list[Bundle] = bundle_all(
            resolutions, config=config, context=context, toolchain=toolchain, logger=logger
        )
        context.check_cancelled()
        t1: float = time.perf_counter()
        logger.info(f"make-swift-package: made {len(bundles)} frameworks in {t1 - t0:.2f}s")

        merged = merge_all(
            bundles,
            context=context,
            tmp_root=layout.tmp,
            max_workers=config.max_workers,
            logger=logger,
        )
        t2: float = time.perf_counter()
        logger.info(f"make-swift-package: made {len(merged)} xcframeworks in {t2 - t1:.2f}s")
        context.check_cancelled()

        if config.checksummed_artifacts_dir is None:
            copy_xcframeworks(layout, merged, logger=logger)
        else:
            artifacts = publish_artifacts(
                merged,
                context=context,
                artifacts_dir=config.checksummed_artifacts_dir,
                hosting_url=config.artifacts_hosting_url or "",
                max_workers=config.max_workers,
                logger=logger,
            )

    context.check_cancelled()
    write_package_manifest(
        template_path=template,
        out_path=layout.package_manifest,
        bundles=merged,
        artifacts=artifacts,
        prefix=layout.prefix,
        logger=logger,
    )
    context.check_cancelled()
    pull_in_headers(
        layout,
        installation_set=installation_set,
        bundled=config.bundles_frameworks,
        logger=logger,
    )
    context.check_cancelled()
    add_source_files(
        layout,
        source_dir=config.source_dir,
        symlink=config.source_strategy == SOURCE_SYMLINK,
        logger=logger,
    )
    context.check_cancelled()

    logger.info("make-swift-package: writing swiftUsd/defines.h")
    layout.defines_header.parent.mkdir(parents=True, exist_ok=True)
    layout.defines_header.write_text(render_defines_header(installation_set.feature_flags), encoding="utf-8")

    link_names: list[str] | None = None
    if config.bundles_frameworks is False:
        link_names = link_library_names(
            installation_set.installations[0].lib_dir,
            library_extension=config.library_extension,
        )
    headers: list[HeaderEntry] = write_modulemap(
        layout.modulemap,
        include_dir=layout.include,
        link_names=link_names,
        flags=installation_set.feature_flags,
        is_linux_host=config.is_linux_host,
        logger=logger,
    )
    context.check_cancelled()

    raw_lib_dir: pathlib.Path | None = None
    if config.bundles_frameworks is False:
        raw_lib_dir = layout.raw_install / "lib"
    layout.extra_args.write_text(
        render_extra_args(
            flags=installation_set.feature_flags,
            is_linux_host=config.is_linux_host,
            raw_lib_dir=raw_lib_dir,
        ),
        encoding="utf-8",
    )
    context.check_cancelled()

    t_total1: float = time.perf_counter()
    logger.info(f"make-swift-package: done in {t_total1 - t_total0:.2f}s")
    logger.info(f"make-swift-package: success! To use {layout.package_dir} from the command line:")
    logger.info(f"    add `$(cat {layout.extra_args})` to your swift invocations")

    return PackageResult(
        layout=layout,
        installation_set=installation_set,
        bundles=tuple(merged),
        artifacts=tuple(artifacts),
        headers=tuple(headers),
    )
