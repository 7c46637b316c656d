"""Shared fixtures: a fake toolchain and fake OpenUSD installation trees.

Fake dylibs are small JSON documents (``{"id": ..., "links": [...]}``) so the
fake toolchain can answer ``otool``-style questions about any copy of them.
"""

import json
import logging
import pathlib
import threading

import pytest

from make_swift_package.feature_flags import FeatureFlags
from make_swift_package.installs import Installation
from make_swift_package.tools import LinkedLibrary, LoadCommand

PXR_CONFIG: str = """\
# Generated by CMake
set(PXR_MAJOR_VERSION "0")
set(PXR_MINOR_VERSION "25")
set(PXR_ENABLE_PYTHON_SUPPORT OFF)
set(PXR_BUILD_IMAGING ON)
set(PXR_BUILD_USD_IMAGING ON)
set(PXR_ENABLE_METAL_SUPPORT ON)
set(PXR_ENABLE_GL_SUPPORT OFF)
set(PXR_ENABLE_MATERIALX_SUPPORT ON)
"""

PLUGIN_PLUG_INFO: str = """\
{
    "Plugins": [
        {
            "Info": {
                "Types": {
                    "HdPluginRendererPlugin": {
                        "bases": ["HdRendererPlugin"],
                        "displayName": "Plugin",
                        "priority": 99
                    }
                }
            },
            "LibraryPath": "../../libplugin.dylib",
            "Name": "plugin",
            "ResourcePath": "resources",
            "Root": "..",
            "Type": "library"
        }
    ]
}
"""

USD_GEOM_PLUG_INFO: str = """\
{
    "Plugins": [
        {
            "LibraryPath": "../../libusd_usdGeom.dylib",
            "Name": "usdGeom",
            "ResourcePath": "resources",
            "Root": "..",
            "Type": "library"
        }
    ]
}
"""

PACKAGE_TEMPLATE: str = """\
// swift-tools-version: 5.9
@THIS_FILE_CAN_BE_EDITED_BY_HAND@
import PackageDescription

let xcframeworkDependencies: [Target.Dependency] =
@CPPTARGET_DEPENDENCIES@

func xcframeworkBinaryTargets() -> [Target] {
@XCFRAMEWORKBINARYTARGETS@
}

let sourcesPath = "${generated-package-prefix}Sources/OpenUSD"
"""


def write_dylib(path: pathlib.Path, *, install_id: str | None = None, links: list[str] | None = None) -> pathlib.Path:
    """Write a fake dylib.

    :param path: Destination.
    :param install_id: ``LC_ID_DYLIB`` value.
    :param links: ``LC_LOAD_DYLIB`` values.
    :returns: ``path``.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"id": install_id, "links": links or []}), encoding="utf-8")
    return path


def make_usd_install(root: pathlib.Path) -> pathlib.Path:
    """Build a small but complete fake OpenUSD installation.

    :param root: Installation root to create.
    :returns: ``root``.
    """

    lib: pathlib.Path = root / "lib"
    write_dylib(
        lib / "libusd_usd.dylib",
        install_id="@rpath/libusd_usd.dylib",
        links=["@rpath/libusd_tf.dylib", "@rpath/libusd_plug.dylib", "/usr/lib/libc++.1.dylib"],
    )
    write_dylib(
        lib / "libusd_tf.dylib",
        install_id="@rpath/libusd_tf.dylib",
        links=["@rpath/libtbb.12.dylib", "/usr/lib/libSystem.B.dylib"],
    )
    write_dylib(lib / "libusd_plug.dylib", install_id="@rpath/libusd_plug.dylib", links=["@rpath/libusd_tf.dylib"])
    write_dylib(lib / "libusd_usdGeom.dylib", install_id="@rpath/libusd_usdGeom.dylib", links=["@rpath/libusd_usd.dylib"])
    write_dylib(lib / "libtbb.12.dylib", install_id="@rpath/libtbb.12.dylib")
    (lib / "libtbb.dylib").symlink_to("libtbb.12.dylib")

    (lib / "usd").mkdir(parents=True)
    (lib / "usd" / "plugInfo.json").write_text('{\n    "Includes": ["*/resources/"]\n}\n', encoding="utf-8")
    geom_resources: pathlib.Path = lib / "usd" / "usdGeom" / "resources"
    geom_resources.mkdir(parents=True)
    (geom_resources / "plugInfo.json").write_text(USD_GEOM_PLUG_INFO, encoding="utf-8")
    (geom_resources / "generatedSchema.usda").write_text("#usda 1.0\n", encoding="utf-8")

    plugin_dir: pathlib.Path = root / "plugin" / "usd"
    write_dylib(plugin_dir / "libplugin.dylib", install_id="@rpath/libplugin.dylib", links=["@rpath/libusd_tf.dylib"])
    plugin_resources: pathlib.Path = plugin_dir / "libplugin" / "resources"
    plugin_resources.mkdir(parents=True)
    (plugin_resources / "plugInfo.json").write_text(PLUGIN_PLUG_INFO, encoding="utf-8")
    (plugin_resources / "shaders").mkdir()
    (plugin_resources / "shaders" / "plugin.glslfx").write_text("-- glslfx version 0.1\n", encoding="utf-8")

    include: pathlib.Path = root / "include" / "pxr"
    for rel in (
        "pxr.h",
        "base/tf/token.h",
        "base/tf/refPtr.h",
        "base/arch/defines.h",
        "base/pegtl/pegtl.hpp",
        "base/pegtl/pegtl/ascii.hpp",
        "usd/usd/stage.h",
        "usd/usdGeom/mesh.h",
        "usd/sdf/layer.h",
        "imaging/hdSt/glslfxShader.h",
        "imaging/hdEmbree/renderer.h",
        "imaging/garch/glPlatformContextGLX.h",
        "external/boost/python.hpp",
        "usdValidation/usdValidation/validator.h",
    ):
        header: pathlib.Path = include / rel
        header.parent.mkdir(parents=True, exist_ok=True)
        header.write_text(f"// {rel}\n", encoding="utf-8")

    (root / "pxrConfig.cmake").write_text(PXR_CONFIG, encoding="utf-8")
    return root


def make_source_dir(root: pathlib.Path) -> pathlib.Path:
    """Build a small glue source directory.

    :param root: Source directory to create.
    :returns: ``root``.
    """

    files: dict[str, str] = {
        "Package.swift.in": PACKAGE_TEMPLATE,
        "README.md": "# sources\n",
        "OpenUSD.apinotes": "---\nName: OpenUSD\n",
        "Util/util.h": "#pragma once\n",
        "Wrappers/wrappers.cpp": "// wrappers\n",
        "SwiftOverlay/Overlay.swift": "// overlay\n",
        "_OpenUSD_MacroImplementations/Macros.swift": "// macros\n",
    }
    for rel, text in files.items():
        p: pathlib.Path = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
    return root


def make_installation(
    root: pathlib.Path,
    *,
    tmp_dir: pathlib.Path,
    platform: str = "macOS",
    index: int = 0,
) -> Installation:
    return Installation(
        root=root.absolute(),
        index=index,
        platform=platform,
        library_extension="dylib",
        feature_flags=FeatureFlags(raw_flags={}),
        tmp_dir=tmp_dir,
    )


class FakeToolchain:
    """In-memory stand-in for the Darwin tools.

    :ivar platforms: Installation root -> normalized platform.
    :ivar default_architectures: Architectures reported for every binary.
    :ivar calls: Every mutating call, in order.
    """

    def __init__(self, *, platforms: dict[pathlib.Path, str] | None = None) -> None:
        self.platforms: dict[pathlib.Path, str] = {p.resolve(): v for p, v in (platforms or {}).items()}
        self.default_architectures: tuple[str, ...] = ("arm64",)
        self.calls: list[tuple[str, ...]] = []
        self.inspected: list[pathlib.Path] = []
        self._lock: threading.Lock = threading.Lock()

    def _read(self, dylib: pathlib.Path) -> dict:
        with self._lock:
            self.inspected.append(dylib)
        return json.loads(dylib.read_text(encoding="utf-8"))

    def _record(self, *call: str) -> None:
        with self._lock:
            self.calls.append(call)

    def linked_libraries(self, dylib: pathlib.Path) -> list[LinkedLibrary]:
        data: dict = self._read(dylib)
        refs: list[str] = ([data["id"]] if data["id"] is not None else []) + data["links"]
        return [LinkedLibrary(path=r, compatibility_version="1.0.0", current_version="1.0.0") for r in refs]

    def install_id(self, dylib: pathlib.Path) -> str | None:
        return self._read(dylib)["id"]

    def load_commands(self, dylib: pathlib.Path) -> list[LoadCommand]:
        data: dict = self._read(dylib)
        commands: list[LoadCommand] = []
        if data["id"] is not None:
            commands.append(LoadCommand(cmd="LC_ID_DYLIB", path=data["id"]))
        commands.extend(LoadCommand(cmd="LC_LOAD_DYLIB", path=link) for link in data["links"])
        return commands

    def build_platform(self, dylib: pathlib.Path) -> str:
        resolved: pathlib.Path = dylib.resolve()
        for root, platform in self.platforms.items():
            if resolved.is_relative_to(root) is True:
                return platform
        return "macOS"

    def architectures(self, dylib: pathlib.Path) -> tuple[str, ...]:
        return self.default_architectures

    def set_install_id(self, dylib: pathlib.Path, install_id: str) -> None:
        self._record("set_install_id", str(dylib), install_id)

    def change_reference(self, dylib: pathlib.Path, old: str, new: str) -> None:
        self._record("change_reference", str(dylib), old, new)

    def codesign(self, bundle: pathlib.Path, identifier: str) -> None:
        self._record("codesign", str(bundle), identifier)


@pytest.fixture(autouse=True)
def _reset_logger():
    """Undo the CLI's logger configuration so ``caplog`` keeps seeing records."""

    yield
    package_logger: logging.Logger = logging.getLogger("make_swift_package")
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("make_swift_package")


@pytest.fixture
def usd_install(tmp_path: pathlib.Path) -> pathlib.Path:
    return make_usd_install(tmp_path / "usd-macos")


@pytest.fixture
def toolchain() -> FakeToolchain:
    return FakeToolchain()
