"""``module.modulemap`` generation.

Every public header under ``include/pxr`` and ``include/swiftUsd`` becomes a
``header`` declaration of the ``_OpenUSD_SwiftBindingHelpers`` Clang module.
Headers are ordered by owning library (in OpenUSD's dependency order), then by
path inside the library, so the output is identical across runs.
"""

from dataclasses import dataclass
import logging
import pathlib

from make_swift_package.feature_flags import COMPILE_TIME_DIRECTIVES, FeatureFlags

MODULE_NAME: str = "_OpenUSD_SwiftBindingHelpers"
GENERATED_MARKER: str = "// This file was generated by make-swift-package. Do not edit!"
HEADER_ROOTS: tuple[str, ...] = ("pxr", "swiftUsd")

# OpenUSD libraries in dependency order, followed by the swiftUsd glue
# directories. Headers are grouped in this order.
CANONICAL_LIBRARY_ORDER: tuple[str, ...] = (
    # base
    "arch", "tf", "gf", "pegtl", "js", "trace", "work", "plug", "vt", "ts",
    # usd
    "ar", "kind", "sdf", "ndr", "sdr", "pcp", "usd", "usdGeom", "usdVol", "usdMedia",
    "usdShade", "usdLux", "usdProc", "usdRender", "usdHydra", "usdRi", "usdSemantics",
    "usdSkel", "usdUI", "usdUtils", "usdPhysics", "usdMtlx",
    # exec
    "vdf", "ef", "esf", "esfUsd", "exec", "execUsd", "execGeom",
    # imaging
    "garch", "hf", "hio", "cameraUtil", "pxOsd", "geomUtil", "glf", "hgi",
    "hgiGL", "hgiMetal", "hgiInterop", "hd", "hdar", "hdGp", "hdsi", "hdMtlx", "hioOpenVDB",
    "hdSt", "hdx", "hdStorm", "hdEmbree",
    # usdImaging
    "usdImaging", "usdImagingGL", "usdProcImaging", "usdRiPxrImaging",
    "usdSkelImaging", "usdVolImaging", "usdAppUtils",
    # swiftUsd
    "CxxOnly", "generated", "SwiftOverlay", "swiftUsd.h", "TfNotice", "Util", "Work", "Wrappers",
)

_LIBRARY_RANKS: dict[str, int] = {name: i for i, name in enumerate(CANONICAL_LIBRARY_ORDER)}
UNKNOWN_LIBRARY_RANK: int = len(CANONICAL_LIBRARY_ORDER)

# Always declared first, in this order.
FIRST_HEADERS: tuple[str, ...] = ("pxr/pxr.h", "swiftUsd/defines.h")

EXCLUDED_PREFIXES: tuple[str, ...] = (
    "swiftUsd/swiftUsd.h",
    "swiftUsd/CxxOnly/",
    # pegtl is header-only with the entry point pxr/base/pegtl/pegtl.hpp;
    # including its other headers out of order breaks compilation.
    "pxr/base/pegtl/pegtl/",
    "pxr/usdImaging/usdBakeMtlx/",
    "pxr/usdValidation",
    "pxr/usdImaging/usdviewq",
    "pxr/external/boost",
    # Built to pxr/imaging/hdEmbree but they include pxr/imaging/plugin/hdEmbree.
    "pxr/imaging/hdEmbree",
)

# These pull in X11 headers, which #define identifiers like `Bool` and `Always`.
X11_HEADERS: tuple[str, ...] = ("pxr/imaging/garch/glPlatformContextGLX.h",)
X11_LINUX_HEADERS: tuple[str, ...] = (
    "pxr/imaging/garch/glPlatformContext.h",
    "pxr/imaging/glf/glRawContext.h",
)

# Public headers that only compile when included after a private one.
COMMENTED_OUT_HEADERS: dict[str, str] = {
    "pxr/imaging/hdSt/extCompGpuComputation.h": "24.05 HdSt_ResourceBinder #include fix",
    "pxr/imaging/hdSt/extCompGpuComputationResource.h": "24.05 HdSt_ResourceBinder #include fix",
    "pxr/imaging/hdSt/glslfxShader.h": "24.05 HdSt_MaterialNetworkShader #include fix",
}


@dataclass(frozen=True, slots=True)
class HeaderEntry:
    """One header declaration.

    :ivar path: Path relative to the include directory (e.g. ``pxr/base/tf/token.h``).
    :ivar line: Rendered declaration (possibly commented out).
    :ivar sort_key: Position in the module.
    """

    path: str
    line: str
    sort_key: tuple[int, str, str]


def is_excluded(path: str, *, is_linux_host: bool) -> bool:
    """Check whether a header must not be declared at all.

    :param path: Include-relative header path.
    :param is_linux_host: Apply the Linux-only X11 exclusions.
    :returns: ``True`` if the header is skipped.
    """

    for prefix in EXCLUDED_PREFIXES:
        if path.startswith(prefix) is True:
            return True
    if path in X11_HEADERS:
        return True
    if is_linux_host is True and path in X11_LINUX_HEADERS:
        return True
    return False


def library_rank(name: str) -> int | None:
    return _LIBRARY_RANKS.get(name)


def header_sort_key(path: str, *, logger: logging.Logger | None = None) -> tuple[int, str, str]:
    """Compute the ordering key for a header.

    ``pxr/<group>/<library>/<rest>`` sorts by the library's canonical rank then
    ``rest``; ``swiftUsd/<dir>/<rest>`` likewise by ``dir``. Anything else goes
    into a trailing bucket with a warning.

    :param path: Include-relative header path.
    :param logger: Logger for the unknown-library warning.
    :returns: ``(rank, intra-library path, full path)``.
    """

    if path in FIRST_HEADERS:
        return (FIRST_HEADERS.index(path) - len(FIRST_HEADERS), path, path)

    parts: list[str] = path.split("/", 3)
    rank: int | None = None
    rest: str = path
    if parts[0] == "pxr" and len(parts) == 4:
        rank = library_rank(parts[2])
        rest = parts[3]
    elif parts[0] == "swiftUsd" and len(parts) >= 2:
        rank = library_rank(parts[1])
        rest = "/".join(parts[2:]) if len(parts) > 2 else parts[1]

    if rank is None:
        if logger is None:
            logger = logging.getLogger("make_swift_package")
        logger.warning(f"make-swift-package: warning: unknown header library for {path!r}; placing it last")
        return (UNKNOWN_LIBRARY_RANK, path, path)
    return (rank, rest, path)


def header_entry(path: str, *, is_linux_host: bool, logger: logging.Logger | None = None) -> HeaderEntry | None:
    """Build the declaration for one header.

    :param path: Include-relative header path.
    :param is_linux_host: Apply the Linux-only X11 exclusions.
    :param logger: Logger for warnings.
    :returns: Entry, or ``None`` if the header is excluded.
    """

    if is_excluded(path, is_linux_host=is_linux_host) is True:
        return None
    line: str = f'header "{path}"'
    reason: str | None = COMMENTED_OUT_HEADERS.get(path)
    if reason is not None:
        line = f"// {line} // {reason}"
    return HeaderEntry(path=path, line=line, sort_key=header_sort_key(path, logger=logger))


def collect_headers(
    include_dir: pathlib.Path,
    *,
    is_linux_host: bool,
    logger: logging.Logger,
) -> list[HeaderEntry]:
    """Enumerate and order every declarable header under ``include_dir``.

    :param include_dir: Package include directory.
    :param is_linux_host: Apply the Linux-only X11 exclusions.
    :param logger: Logger for warnings.
    :returns: Entries in module order.
    """

    entries: list[HeaderEntry] = []
    for root_name in HEADER_ROOTS:
        root: pathlib.Path = (include_dir / root_name).resolve()
        if root.is_dir() is False:
            logger.warning(f"make-swift-package: warning: {include_dir / root_name} doesn't exist")
            continue
        for p in root.rglob("*"):
            if p.is_file() is False or p.name == ".DS_Store":
                continue
            rel: str = f"{root_name}/{p.relative_to(root).as_posix()}"
            entry: HeaderEntry | None = header_entry(rel, is_linux_host=is_linux_host, logger=logger)
            if entry is not None:
                entries.append(entry)
    return sorted(entries, key=lambda e: e.sort_key)


def link_library_names(lib_dir: pathlib.Path, *, library_extension: str) -> list[str]:
    """Names for ``link`` declarations of a raw (unbundled) install.

    :param lib_dir: Installation ``lib`` directory.
    :param library_extension: ``dylib`` or ``so``.
    :returns: ``libusd_tf.dylib`` -> ``usd_tf``, sorted by file name.
    """

    names: list[str] = []
    for item in sorted(lib_dir.iterdir()):
        if item.is_file() is False:
            continue
        if item.suffix != f".{library_extension}" or item.name.startswith("lib") is False:
            continue
        names.append(item.stem[len("lib") :])
    return names


def python_link_name(flags: FeatureFlags) -> str | None:
    """``link`` name of the Python library, when Python support is enabled.

    :param flags: Merged feature flags.
    :returns: e.g. ``python3.12``, or ``None``.
    """

    if flags.python_enabled is False:
        return None
    library: pathlib.PurePath | None = flags.python_library
    if library is None:
        return None
    name: str = library.stem
    if name.startswith("lib") is True:
        name = name[len("lib") :]
    return name


def feature_stanzas(flags: FeatureFlags) -> list[str]:
    """Empty modules Swift can test with ``#if canImport(...)``.

    :param flags: Merged feature flags.
    :returns: Lines; disabled features are commented out.
    """

    lines: list[str] = []
    for directive in COMPILE_TIME_DIRECTIVES:
        stanza: list[str]
        if directive.embedded_unavailable is not None:
            stanza = [
                f"module {directive.module_name} {{",
                f"    // {directive.embedded_unavailable} is not available on embedded platforms",
                "    requires !ios",
                "    requires !xros",
                "}",
            ]
        else:
            stanza = [f"module {directive.module_name} {{}}"]
        if flags.coerce(directive.flag) is False:
            stanza = [f"// {line}" for line in stanza]
        lines.extend(stanza)
    return lines


def render_modulemap(
    entries: list[HeaderEntry],
    *,
    link_names: list[str] | None,
    flags: FeatureFlags,
) -> str:
    """Render ``module.modulemap``.

    :param entries: Ordered header entries.
    :param link_names: ``link`` names for raw installs, or ``None`` when bundling.
    :param flags: Merged feature flags.
    :returns: File contents.
    """

    lines: list[str] = [GENERATED_MARKER, "", f"module {MODULE_NAME} {{"]
    for entry in entries:
        lines.append(f"    {entry.line}")

    if link_names is not None:
        lines.append("")
        for name in link_names:
            lines.append(f'    link "{name}"')

    python_name: str | None = python_link_name(flags)
    if python_name is not None:
        lines.append(f'    link "{python_name}"')
    lines.append("}")

    lines.append("")
    lines.append(
        "// Swift can detect Usd feature flags at compile time by using "
        "`#if canImport(SwiftUsd_PXR_ENABLE_<flag>_SUPPORT)`"
    )
    lines.append("")
    lines.extend(feature_stanzas(flags))
    return "\n".join(lines) + "\n"


def write_modulemap(
    path: pathlib.Path,
    *,
    include_dir: pathlib.Path,
    link_names: list[str] | None,
    flags: FeatureFlags,
    is_linux_host: bool,
    logger: logging.Logger,
) -> list[HeaderEntry]:
    """Generate and write ``module.modulemap``.

    :param path: Output path.
    :param include_dir: Package include directory.
    :param link_names: ``link`` names for raw installs, or ``None`` when bundling.
    :param flags: Merged feature flags.
    :param is_linux_host: Apply the Linux-only X11 exclusions.
    :param logger: Logger for progress output.
    :returns: Declared header entries.
    """

    logger.info("make-swift-package: writing modulemap")
    entries: list[HeaderEntry] = collect_headers(include_dir, is_linux_host=is_linux_host, logger=logger)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_modulemap(entries, link_names=link_names, flags=flags), encoding="utf-8")
    logger.info(f"make-swift-package: declared {len(entries)} headers in {path.name}")
    return entries
