"""Framework name normalization.

Turns a raw shared-library file name (e.g. ``libusd_usdGeom.dylib``) into the
framework name it is bundled under (e.g. ``Usd_UsdGeom``).
"""

import re

_LIBRARY_SUFFIXES: tuple[str, ...] = (".dylib", ".so")

# Osd, MaterialX and OpenVDB use symlink versioning (e.g. OsdCPU.3.6.0).
_DOTTED_VERSION_RE: re.Pattern[str] = re.compile(r"(?P<base>[^.]*)(\.\d+)+")

# Iex, IlmThread, Imath and OpenEXR use e.g. Iex-3_1.30.13.1.
_UNDERSCORE_VERSION_RE: re.Pattern[str] = re.compile(r"(?P<base>[^.-]*)-\d+_\d(\.\d+)*")

_RENAMES: dict[str, str] = {
    "tbb": "TBB",
    "tbb_debug": "TBB_debug",
    "openvdb": "OpenVDB",
}


def framework_name(filename: str) -> str:
    """Get the framework name for a shared library file name.

    ``libusd_usdGeom.dylib`` becomes ``Usd_UsdGeom``, ``libosdCPU.3.6.0.dylib``
    becomes ``OsdCPU`` and ``libtbb.dylib`` becomes ``TBB``. Names always start
    with an upper-case letter, so ``libfoo.3.6.0.dylib`` becomes ``Foo``.
    Applying the function to its own output returns the output unchanged.

    :param filename: File name (not a full path).
    :returns: Framework name.
    """

    result: str = filename
    for suffix in _LIBRARY_SUFFIXES:
        if result.endswith(suffix) is True:
            result = result[0 : -len(suffix)]
            break
    if result.startswith("lib") is True:
        result = result[3:]

    if result.startswith("usd_") is True and len(result) > 4:
        result = "Usd_" + result[4].upper() + result[5:]

    if result.startswith("osd") is True:
        result = "O" + result[1:]

    m = _DOTTED_VERSION_RE.fullmatch(result)
    if m is not None:
        result = m.group("base")
    m = _UNDERSCORE_VERSION_RE.fullmatch(result)
    if m is not None:
        result = m.group("base")

    result = _RENAMES.get(result, result)
    return result[:1].upper() + result[1:]


def framework_reference(name: str) -> str:
    """Load-time reference to a framework binary.

    :param name: Framework name.
    :returns: ``@rpath/<name>.framework/<name>``.
    """

    return f"@rpath/{name}.framework/{name}"


def bundle_identifier(name: str) -> str:
    """Reverse-DNS bundle identifier for a framework.

    :param name: Framework name.
    :returns: Identifier like ``com.pixar.Usd-UsdGeom``.
    """

    return f"com.pixar.{name.replace('_', '-')}"
