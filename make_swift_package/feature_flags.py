"""OpenUSD build feature flags.

Flags are read from the ``set(NAME VALUE)`` statements in an installation's
``pxrConfig.cmake`` and exposed as a flat name -> raw string map. Booleans
follow CMake's truthiness rules.
"""

from dataclasses import dataclass
import logging
import pathlib
import re

from make_swift_package.config import POLICY_ERROR
from make_swift_package.errors import ValidationError

CONFIG_FILE_NAME: str = "pxrConfig.cmake"

_SET_RE: re.Pattern[str] = re.compile(
    r"^\s*set\(\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s+(?P<value>\"[^\"]*\"|[^\s)]*)[^)]*\)",
    re.IGNORECASE,
)

_FALSE_VALUES: frozenset[str] = frozenset({"", "0", "OFF", "NO", "FALSE", "N", "IGNORE", "NOTFOUND"})


@dataclass(frozen=True, slots=True)
class FeatureDirective:
    """A feature flag surfaced to Swift and C++ at compile time.

    :ivar flag: Build flag name (e.g. ``PXR_ENABLE_PYTHON_SUPPORT``).
    :ivar module_name: Module/macro name (e.g. ``SwiftUsd_PXR_ENABLE_PYTHON_SUPPORT``).
    :ivar embedded_unavailable: Short feature name if the feature is never
        available on embedded platforms, else ``None``.
    """

    flag: str
    module_name: str
    embedded_unavailable: str | None = None


COMPILE_TIME_DIRECTIVES: tuple[FeatureDirective, ...] = (
    FeatureDirective("PXR_ENABLE_PYTHON_SUPPORT", "SwiftUsd_PXR_ENABLE_PYTHON_SUPPORT", "Python"),
    FeatureDirective("PXR_BUILD_IMAGING", "SwiftUsd_PXR_ENABLE_IMAGING_SUPPORT"),
    FeatureDirective("PXR_BUILD_USD_IMAGING", "SwiftUsd_PXR_ENABLE_USD_IMAGING_SUPPORT"),
    FeatureDirective("PXR_ENABLE_GL_SUPPORT", "SwiftUsd_PXR_ENABLE_GL_SUPPORT", "OpenGL"),
    FeatureDirective("PXR_ENABLE_METAL_SUPPORT", "SwiftUsd_PXR_ENABLE_METAL_SUPPORT"),
    FeatureDirective("PXR_ENABLE_VULKAN_SUPPORT", "SwiftUsd_PXR_ENABLE_VULKAN_SUPPORT", "Vulkan"),
    FeatureDirective("PXR_ENABLE_MATERIALX_SUPPORT", "SwiftUsd_PXR_ENABLE_MATERIALX_SUPPORT"),
    FeatureDirective("PXR_ENABLE_OPENVDB_SUPPORT", "SwiftUsd_PXR_ENABLE_OPENVDB_SUPPORT", "OpenVDB"),
    FeatureDirective("PXR_ENABLE_PTEX_SUPPORT", "SwiftUsd_PXR_ENABLE_PTEX_SUPPORT"),
    FeatureDirective("PXR_ENABLE_OSL_SUPPORT", "SwiftUsd_PXR_ENABLE_OSL_SUPPORT"),
    FeatureDirective("PXR_BUILD_EMBREE_PLUGIN", "SwiftUsd_PXR_ENABLE_EMBREE_SUPPORT", "Embree"),
    FeatureDirective("PXR_BUILD_OPENIMAGEIO_PLUGIN", "SwiftUsd_PXR_ENABLE_OPENIMAGEIO_SUPPORT"),
    FeatureDirective("PXR_BUILD_OPENCOLORIO_PLUGIN", "SwiftUsd_PXR_ENABLE_OPENCOLORIO_SUPPORT"),
    FeatureDirective("PXR_BUILD_ALEMBIC_PLUGIN", "SwiftUsd_PXR_ENABLE_ALEMBIC_SUPPORT"),
    FeatureDirective("PXR_BUILD_DRACO_PLUGIN", "SwiftUsd_PXR_ENABLE_DRACO_SUPPORT"),
)

PYTHON_SUPPORT_FLAG: str = "PXR_ENABLE_PYTHON_SUPPORT"
PYTHON_LIBRARY_FLAG: str = "Python3_LIBRARY"
PYTHON_INCLUDE_DIR_FLAG: str = "Python3_INCLUDE_DIR"


def coerce_to_bool(value: str | None) -> bool:
    """Coerce a raw CMake value to a boolean.

    :param value: Raw value, or ``None`` if the flag is absent.
    :returns: CMake truthiness of the value.
    """

    if value is None:
        return False
    v: str = value.strip().upper()
    if v in _FALSE_VALUES:
        return False
    if v.endswith("-NOTFOUND") is True:
        return False
    try:
        return float(v) != 0
    except ValueError:
        pass
    return True


@dataclass(frozen=True, slots=True)
class FeatureFlags:
    """Flat view of an installation's build flags.

    :ivar raw_flags: Flag name -> raw string value.
    """

    raw_flags: dict[str, str]

    def raw(self, flag: str) -> str | None:
        return self.raw_flags.get(flag)

    def coerce(self, flag: str) -> bool:
        return coerce_to_bool(self.raw_flags.get(flag))

    @property
    def python_enabled(self) -> bool:
        return self.coerce(PYTHON_SUPPORT_FLAG)

    @property
    def python_library(self) -> pathlib.PurePath | None:
        value: str | None = self.raw(PYTHON_LIBRARY_FLAG)
        if value is None or len(value) == 0:
            return None
        return pathlib.PurePath(value)

    @property
    def python_include_dir(self) -> str | None:
        return self.raw(PYTHON_INCLUDE_DIR_FLAG)


def parse_feature_flags(text: str) -> FeatureFlags:
    """Parse ``set(NAME VALUE)`` statements out of CMake source text.

    Later statements override earlier ones. Quotes around values are removed.

    :param text: ``pxrConfig.cmake`` contents.
    :returns: Parsed flags.
    """

    flags: dict[str, str] = {}
    for line in text.splitlines():
        m = _SET_RE.match(line)
        if m is None:
            continue
        value: str = m.group("value")
        if len(value) >= 2 and value.startswith('"') is True and value.endswith('"') is True:
            value = value[1:-1]
        flags[m.group("name")] = value
    return FeatureFlags(raw_flags=flags)


def read_feature_flags(install_root: pathlib.Path, *, logger: logging.Logger) -> FeatureFlags:
    """Read an installation's feature flags.

    A missing ``pxrConfig.cmake`` yields an empty flag set with a warning.

    :param install_root: Installation root.
    :param logger: Logger for warnings.
    :returns: Parsed flags.
    """

    config_path: pathlib.Path = install_root / CONFIG_FILE_NAME
    if config_path.is_file() is False:
        logger.warning(f"make-swift-package: warning: {config_path} not found; assuming no optional features")
        return FeatureFlags(raw_flags={})
    return parse_feature_flags(config_path.read_text(encoding="utf-8"))


def merge_feature_flags(
    all_flags: list[FeatureFlags],
    *,
    policy: str,
    logger: logging.Logger,
) -> FeatureFlags:
    """Merge per-installation flags into one view.

    A flag that is missing from some installations, or whose value differs
    between installations, is an inconsistency. Under the ``warn`` policy it
    is logged and the last installation's value wins; under ``error`` it
    raises.

    :param all_flags: Flags per installation, in installation order.
    :param policy: ``warn`` or ``error``.
    :param logger: Logger for warnings.
    :returns: Merged flags.
    :raises ValidationError: On an inconsistency under the ``error`` policy.
    """

    names: set[str] = set()
    for flags in all_flags:
        names.update(flags.raw_flags.keys())

    merged: dict[str, str] = {}
    problems: list[str] = []
    for name in sorted(names):
        values: list[str | None] = [flags.raw(name) for flags in all_flags]
        present: list[str] = [v for v in values if v is not None]
        merged[name] = present[-1]
        if len(present) != len(values):
            problems.append(f"{name} is not set by every installation")
        elif len(set(present)) > 1:
            problems.append(f"{name} differs between installations: {', '.join(repr(v) for v in values)}")

    if len(problems) > 0:
        joined: str = "\n".join(f"- {p}" for p in problems)
        if policy == POLICY_ERROR:
            raise ValidationError(f"Inconsistent feature flags between Usd installs:\n{joined}")
        for problem in problems:
            logger.warning(f"make-swift-package: warning: feature flag {problem}; using the last value")

    return FeatureFlags(raw_flags=merged)
