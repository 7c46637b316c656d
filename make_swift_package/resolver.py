"""Shared library dependency closure.

For one installation this computes every dylib that has to ship alongside
``libusd_usd``: the OpenUSD libraries themselves, render delegate plugins, and
whatever (third-party) libraries those load through ``@rpath``.
"""

from dataclasses import dataclass
import logging
import pathlib
import re

from make_swift_package.config import POLICY_ERROR, POLICY_WARN
from make_swift_package.errors import PackagingError
from make_swift_package.installs import Installation
from make_swift_package.tools import LinkedLibrary, Toolchain

RPATH_PREFIX: str = "@rpath/"

# Anything else is probably a path on the build machine (e.g. /opt/homebrew)
# and won't exist on other machines.
RELOCATABLE_PREFIXES: tuple[str, ...] = (
    "@rpath",
    "/usr/lib",
    "/System/Library/Frameworks",
)

# Often built and useful to clients, but not pulled in when building with ImageIO.
ANCILLARY_LIBRARIES: tuple[str, ...] = (
    "libOpenEXR.dylib",
    "libOpenEXRCore.dylib",
    "libOpenEXRUtil.dylib",
)

_USD_LIBRARY_RE: re.Pattern[str] = re.compile(r"libusd_.+\.dylib")


@dataclass(frozen=True, slots=True)
class DependencyResolution:
    """Dependency closure of one installation.

    :ivar installation: Installation the closure belongs to.
    :ivar artifacts: Symlink-resolved, deduplicated, sorted dylib paths.
    :ivar warnings: Structural warnings recorded while resolving.
    """

    installation: Installation
    artifacts: tuple[pathlib.Path, ...]
    warnings: tuple[str, ...]


def seed_artifacts(installation: Installation) -> list[pathlib.Path]:
    """Collect the dylibs every package starts from.

    :param installation: Installation to scan.
    :returns: OpenUSD libraries, plugin dylibs and present ancillary libraries.
    """

    seeds: list[pathlib.Path] = []
    for item in sorted(installation.lib_dir.iterdir()):
        if _USD_LIBRARY_RE.fullmatch(item.name) is not None:
            seeds.append(item.absolute())

    if installation.plugin_usd_dir.is_dir() is True:
        for item in sorted(installation.plugin_usd_dir.iterdir()):
            if item.name.endswith(".dylib") is True:
                seeds.append(item.absolute())

    for name in ANCILLARY_LIBRARIES:
        candidate: pathlib.Path = installation.lib_dir / name
        if candidate.exists() is True:
            seeds.append(candidate.absolute())

    return seeds


def is_relocatable_reference(path: str) -> bool:
    """Check whether a load-time reference resolves on other machines.

    :param path: Referenced path from ``otool -L``.
    :returns: ``True`` for ``@rpath`` and system locations.
    """

    for prefix in RELOCATABLE_PREFIXES:
        if path.startswith(prefix) is True:
            return True
    return False


def direct_dependencies(
    dylib: pathlib.Path,
    *,
    installation: Installation,
    toolchain: Toolchain,
    warnings: list[str],
    non_relocatable: list[str],
    logger: logging.Logger,
) -> list[pathlib.Path]:
    """Find the ``@rpath`` dependencies of one dylib inside the installation.

    :param dylib: Dylib to inspect.
    :param installation: Owning installation.
    :param toolchain: Toolchain used for introspection.
    :param warnings: Receives missing-dependency and non-relocatable warnings.
    :param non_relocatable: Receives non-relocatable references.
    :param logger: Logger for warnings.
    :returns: Paths of dependencies that exist under ``lib/``.
    """

    result: list[pathlib.Path] = []
    install_id: str | None = None
    install_id_loaded: bool = False

    linked: list[LinkedLibrary] = toolchain.linked_libraries(dylib)
    for lib in linked:
        if is_relocatable_reference(lib.path) is False:
            message: str = f"{dylib} has non-relocatable dependency: {lib.path!r}"
            warnings.append(message)
            non_relocatable.append(message)
            logger.warning(f"make-swift-package: WARNING: {message}")
            logger.warning(
                "make-swift-package: did you mean to use `--ignore-paths` or `--ignore-homebrew` when building OpenUSD?"
            )
            continue

        if lib.path.startswith(RPATH_PREFIX) is False:
            continue

        candidate: pathlib.Path = installation.lib_dir / lib.path[len(RPATH_PREFIX) :]
        if candidate.exists() is False:
            # otool -L lists a shared library's own id, which need not exist under lib/.
            if install_id_loaded is False:
                install_id = toolchain.install_id(dylib)
                install_id_loaded = True
            if install_id == lib.path:
                continue
            message = f"{dylib} depends on {lib.path!r}, but {candidate} doesn't exist"
            warnings.append(message)
            logger.warning(f"make-swift-package: warning: {message}")
            continue

        result.append(candidate.absolute())

    return result


def expand_closure(
    seeds: list[pathlib.Path],
    *,
    installation: Installation,
    toolchain: Toolchain,
    logger: logging.Logger,
    non_relocatable_policy: str = POLICY_WARN,
) -> tuple[list[pathlib.Path], list[str]]:
    """Breadth-first expand ``seeds`` until a pass adds nothing new.

    :param seeds: Starting dylibs.
    :param installation: Owning installation.
    :param toolchain: Toolchain used for introspection.
    :param logger: Logger for warnings.
    :param non_relocatable_policy: ``warn`` or ``error``.
    :returns: ``(sorted resolved paths, warnings)``.
    :raises PackagingError: On non-relocatable dependencies under the ``error`` policy.
    """

    ordered: list[pathlib.Path] = []
    seen: set[pathlib.Path] = set()
    for seed in seeds:
        resolved: pathlib.Path = seed.resolve()
        if resolved not in seen:
            seen.add(resolved)
            ordered.append(resolved)

    warnings: list[str] = []
    non_relocatable: list[str] = []
    i: int = 0
    while i < len(ordered):
        for dep in direct_dependencies(
            ordered[i],
            installation=installation,
            toolchain=toolchain,
            warnings=warnings,
            non_relocatable=non_relocatable,
            logger=logger,
        ):
            resolved_dep: pathlib.Path = dep.resolve()
            if resolved_dep not in seen:
                seen.add(resolved_dep)
                ordered.append(resolved_dep)
        i += 1

    if len(non_relocatable) > 0 and non_relocatable_policy == POLICY_ERROR:
        joined: str = "\n".join(f"- {m}" for m in non_relocatable)
        raise PackagingError(f"Non-relocatable dependencies found in {installation.root}:\n{joined}")

    return sorted(ordered), warnings


def resolve_dependencies(
    installation: Installation,
    *,
    toolchain: Toolchain,
    logger: logging.Logger,
    non_relocatable_policy: str = POLICY_WARN,
) -> DependencyResolution:
    """Compute every dylib that must ship with an installation's core library.

    :param installation: Installation to resolve.
    :param toolchain: Toolchain used for introspection.
    :param logger: Logger for progress output.
    :param non_relocatable_policy: ``warn`` or ``error``.
    :returns: Dependency closure.
    """

    logger.info(f"make-swift-package: getting all required dylibs at {installation.root}")
    artifacts, warnings = expand_closure(
        seed_artifacts(installation),
        installation=installation,
        toolchain=toolchain,
        logger=logger,
        non_relocatable_policy=non_relocatable_policy,
    )
    logger.info(f"make-swift-package: found {len(artifacts)} dylibs at {installation.root}")
    return DependencyResolution(
        installation=installation,
        artifacts=tuple(artifacts),
        warnings=tuple(warnings),
    )
