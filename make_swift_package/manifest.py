"""``Package.swift``, ``extraArgs.txt`` and ``swiftUsd/defines.h``."""

import logging
import pathlib

from make_swift_package.feature_flags import COMPILE_TIME_DIRECTIVES, FeatureFlags
from make_swift_package.merger import MultiPlatformBundle
from make_swift_package.publisher import ChecksummedArtifact

TEMPLATE_NAME: str = "Package.swift.in"

EDITABLE_TOKEN: str = "@THIS_FILE_CAN_BE_EDITED_BY_HAND@"
DEPENDENCIES_TOKEN: str = "@CPPTARGET_DEPENDENCIES@"
BINARY_TARGETS_TOKEN: str = "@XCFRAMEWORKBINARYTARGETS@"
PREFIX_TOKEN: str = "${generated-package-prefix}"

GENERATED_MANIFEST_MARKER: str = "// This file was auto-generated by make-swift-package. Do not edit!"
GENERATED_HEADER_MARKER: str = "// This file was generated by make-swift-package. Do not edit!"

# Tells the package not to apply a Release-mode linker workaround that produces
# duplicate symbols under `swift build`.
CLI_BUILD_DEFINE: str = "-DOPENUSD_SWIFT_BUILD_FROM_CLI"


def binary_target_name(name: str) -> str:
    return f"_{name}_xcframework"


def render_dependencies(bundles: list[MultiPlatformBundle]) -> str:
    """Render the C++ target's dependency list.

    :param bundles: Merged bundles.
    :returns: Swift array literal, one conditioned target per bundle.
    """

    lines: list[str] = ["    ["]
    for bundle in sorted(bundles, key=lambda b: b.name):
        lines.append(f'        .target(name: "{binary_target_name(bundle.name)}", condition: {bundle.predicate}),')
    lines.append("    ]")
    return "\n".join(lines)


def render_local_binary_targets(bundles: list[MultiPlatformBundle], *, prefix: str) -> str:
    """Render binary targets for xcframeworks copied into ``Libraries/``.

    :param bundles: Merged bundles.
    :param prefix: Generated-package path prefix.
    :returns: Swift array literal.
    """

    lines: list[str] = ["    ["]
    for bundle in sorted(bundles, key=lambda b: b.name):
        path: str = f"{prefix}Libraries/{bundle.name}.xcframework"
        lines.append(f'        .binaryTarget(name: "{binary_target_name(bundle.name)}", path: "{path}"),')
    lines.append("    ]")
    return "\n".join(lines)


def render_remote_binary_targets(artifacts: list[ChecksummedArtifact]) -> str:
    """Render binary targets for hosted, checksummed xcframework zips.

    :param artifacts: Published artifacts.
    :returns: Swift array literal.
    """

    lines: list[str] = ["    ["]
    for artifact in sorted(artifacts, key=lambda a: a.bundle.name):
        name: str = artifact.bundle.name
        lines.append(f'        .binaryTarget(name: "{binary_target_name(name)}", ')
        lines.append(f'                      url: "{artifact.url}", ')
        lines.append(f'                      checksum: "{artifact.checksum}"),')
    lines.append("    ]")
    return "\n".join(lines)


def render_package_manifest(
    template: str,
    *,
    bundles: list[MultiPlatformBundle],
    artifacts: list[ChecksummedArtifact],
    prefix: str,
) -> str:
    """Substitute the template tokens of ``Package.swift.in``.

    Token lines are replaced whole; the prefix token is replaced wherever it
    appears. All other lines pass through unchanged.

    :param template: Template text.
    :param bundles: Merged bundles (empty for raw installs).
    :param artifacts: Published artifacts (empty unless publishing).
    :param prefix: Generated-package path prefix.
    :returns: Manifest text.
    """

    binary_targets: str
    if len(artifacts) > 0:
        binary_targets = render_remote_binary_targets(artifacts)
    else:
        binary_targets = render_local_binary_targets(bundles, prefix=prefix)

    out: list[str] = []
    for line in template.split("\n"):
        if line == EDITABLE_TOKEN:
            out.append(GENERATED_MANIFEST_MARKER)
        elif line == DEPENDENCIES_TOKEN:
            out.append(render_dependencies(bundles))
        elif line == BINARY_TARGETS_TOKEN:
            out.append(binary_targets)
        elif PREFIX_TOKEN in line:
            out.append(line.replace(PREFIX_TOKEN, prefix))
        else:
            out.append(line)
    return "\n".join(out)


def render_extra_args(
    *,
    flags: FeatureFlags,
    is_linux_host: bool,
    raw_lib_dir: pathlib.Path | None,
) -> str:
    """Render the ``swift build`` arguments file.

    :param flags: Merged feature flags.
    :param is_linux_host: Add Linux-only flags.
    :param raw_lib_dir: ``Libraries/OpenUSD/lib`` for raw installs, else ``None``.
    :returns: One line of space-separated, space-escaped arguments.
    """

    args: list[str] = [
        "-Xcxx", CLI_BUILD_DEFINE,
        "-Xswiftc", CLI_BUILD_DEFINE,
    ]

    # Avoids a `__gnu_objc_personality_v0` link error.
    if is_linux_host is True:
        args += ["-Xcxx", "-fseh-exceptions"]

    if raw_lib_dir is not None:
        lib_dir: str = str(raw_lib_dir.absolute())
        args += ["-Xlinker", "-L", "-Xlinker", lib_dir, "-Xlinker", "-rpath", "-Xlinker", lib_dir]

    if flags.python_enabled is True:
        include_dir: str = flags.python_include_dir or ""
        args += ["-Xcxx", "-I", "-Xcxx", include_dir, "-Xswiftc", "-I", "-Xswiftc", include_dir]
        library: pathlib.PurePath | None = flags.python_library
        if library is not None:
            args += ["-Xlinker", "-L", "-Xlinker", str(library.parent)]

    return " ".join(arg.replace(" ", "\\ ") for arg in args) + "\n"


def render_defines_header(flags: FeatureFlags) -> str:
    """Render ``swiftUsd/defines.h``, mirroring the feature flags for C++.

    :param flags: Merged feature flags.
    :returns: Header text.
    """

    lines: list[str] = [
        GENERATED_HEADER_MARKER,
        "",
        "#ifndef SWIFTUSD_DEFINES_H",
        "#define SWIFTUSD_DEFINES_H",
        "",
        '#include "pxr/base/arch/defines.h"',
        "",
    ]
    for directive in COMPILE_TIME_DIRECTIVES:
        enabled: bool = flags.coerce(directive.flag)
        if enabled is True and directive.embedded_unavailable is not None:
            lines += [
                f"// {directive.embedded_unavailable} is not available on embedded platforms",
                "#ifdef ARCH_OS_IPHONE",
                f"#define {directive.module_name} 0",
                "#else",
                f"#define {directive.module_name} 1",
                "#endif // #ifdef ARCH_OS_IPHONE",
            ]
        else:
            lines.append(f"#define {directive.module_name} {1 if enabled is True else 0}")
    lines += ["", "#endif // #ifndef SWIFTUSD_DEFINES_H"]
    return "\n".join(lines) + "\n"


def write_package_manifest(
    *,
    template_path: pathlib.Path,
    out_path: pathlib.Path,
    bundles: list[MultiPlatformBundle],
    artifacts: list[ChecksummedArtifact],
    prefix: str,
    logger: logging.Logger,
) -> None:
    """Write ``Package.swift`` from its template.

    :param template_path: ``Package.swift.in``.
    :param out_path: ``Package.swift``.
    :param bundles: Merged bundles.
    :param artifacts: Published artifacts.
    :param prefix: Generated-package path prefix.
    :param logger: Logger for progress output.
    """

    logger.info(f"make-swift-package: writing {out_path}")
    text: str = render_package_manifest(
        template_path.read_text(encoding="utf-8"),
        bundles=bundles,
        artifacts=artifacts,
        prefix=prefix,
    )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(text, encoding="utf-8")
