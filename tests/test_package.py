"""End-to-end package builds against fake installations and a fake toolchain."""

import logging
import os
import pathlib
import plistlib
import zipfile

import pytest

from conftest import FakeToolchain, make_source_dir, make_usd_install
from make_swift_package.config import INSTALL_COPY_WITHOUT_BUNDLING, INSTALL_SYMLINK, SOURCE_COPY, resolve_package_config
from make_swift_package import package as package_module
from make_swift_package.errors import PackagingError, RunCancelledError, ValidationError
from make_swift_package.package import PackageLayout, build_package, package_layout, source_destination
from make_swift_package.tools import RunContext

FRAMEWORKS = ["Plugin", "TBB", "Usd_Plug", "Usd_Tf", "Usd_Usd", "Usd_UsdGeom"]


@pytest.fixture
def workspace(tmp_path: pathlib.Path) -> dict[str, pathlib.Path]:
    return {
        "source": make_source_dir(tmp_path / "repo" / "source"),
        "macos": make_usd_install(tmp_path / "usd-macos"),
        "simulator": make_usd_install(tmp_path / "usd-simulator"),
    }


def build(config, toolchain, logger):
    with RunContext(logger=logger) as context:
        return build_package(config, context=context, toolchain=toolchain, logger=logger)


def test_multi_platform_package(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    toolchain = FakeToolchain(platforms={workspace["simulator"]: "iOSSimulator"})
    config = resolve_package_config(
        usd_installs=[workspace["macos"], workspace["simulator"]],
        install_strategy=None,
        source_dir=workspace["source"],
        max_workers=4,
        host_platform="darwin",
    )

    result = build(config, toolchain, logger)

    repo = (tmp_path / "repo").absolute()
    package = repo / "swift-package"
    assert result.layout == PackageLayout(package_dir=package, manifest_dir=repo, prefix="swift-package/")
    assert [p.platform for p in result.installation_set.installations] == ["macOS", "iOSSimulator"]

    # One xcframework per framework name, each with both platforms.
    assert [b.name for b in result.bundles] == FRAMEWORKS
    for bundle in result.bundles:
        assert bundle.identifiers == ("ios-arm64-simulator", "macos-arm64")
        assert bundle.predicate == ".when(platforms: [.iOS, .macOS])"
        xc = package / "Libraries" / f"{bundle.name}.xcframework"
        with open(xc / "Info.plist", "rb") as f:
            info = plistlib.load(f)
        assert [lib["LibraryIdentifier"] for lib in info["AvailableLibraries"]] == list(bundle.identifiers)

    plugin = package / "Libraries" / "Plugin.xcframework"
    macos_info = (plugin / "macos-arm64" / "Plugin.framework" / "Resources" / "plugInfo.json").read_text(
        encoding="utf-8"
    )
    simulator_info = (
        plugin / "ios-arm64-simulator" / "Plugin.framework" / "Resources_iOS" / "plugInfo.json"
    ).read_text(encoding="utf-8")
    assert '"ResourcePath": "Resources",' in macos_info
    assert '"ResourcePath": "Resources_iOS",' in simulator_info
    assert '"LibraryPath": "Plugin",' in macos_info

    # Every framework of every installation was signed once.
    signed = sorted(call[2] for call in toolchain.calls if call[0] == "codesign")
    assert signed == sorted(f"com.pixar.{name.replace('_', '-')}" for name in FRAMEWORKS * 2)

    manifest = (repo / "Package.swift").read_text(encoding="utf-8")
    for name in FRAMEWORKS:
        assert (
            f'        .binaryTarget(name: "_{name}_xcframework", path: "swift-package/Libraries/{name}.xcframework"),'
            in manifest
        )
        assert f'        .target(name: "_{name}_xcframework", condition: .when(platforms: [.iOS, .macOS])),' in manifest
    assert 'let sourcesPath = "swift-package/Sources/OpenUSD"' in manifest

    include = package / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "include"
    modulemap = (include / "module.modulemap").read_text(encoding="utf-8").split("\n")
    assert modulemap[3] == '    header "pxr/pxr.h"'
    assert modulemap[4] == '    header "swiftUsd/defines.h"'
    assert '    header "swiftUsd/Util/util.h"' in modulemap
    assert not any(line.strip().startswith("link ") for line in modulemap)
    declared = [h.path for h in result.headers]
    assert "pxr/usd/usd/stage.h" in declared
    for excluded in ("pxr/base/pegtl/pegtl/", "pxr/imaging/hdEmbree", "pxr/external/boost", "pxr/usdValidation"):
        assert not any(path.startswith(excluded) for path in declared)
    assert (include / "pxr").is_symlink() is False
    assert "#define SwiftUsd_PXR_ENABLE_METAL_SUPPORT 1" in (include / "swiftUsd" / "defines.h").read_text(
        encoding="utf-8"
    )

    sources = package / "Sources"
    assert (include / "OpenUSD.apinotes").is_symlink() is True
    assert (sources / "OpenUSD" / "SwiftOverlay" / "Overlay.swift").is_symlink() is True
    assert (sources / "_OpenUSD_MacroImplementations" / "Macros.swift").resolve() == (
        workspace["source"] / "_OpenUSD_MacroImplementations" / "Macros.swift"
    ).resolve()
    assert (sources / "_OpenUSD_SwiftBindingHelpers" / "Wrappers" / "wrappers.cpp").exists() is True
    assert list(package.rglob("README.md")) == []
    assert list(package.rglob("Package.swift.in")) == []

    info_text = (package / ".make-swift-package.info.txt").read_text(encoding="utf-8")
    assert "Usd install strategy: copy-and-bundle" in info_text
    assert "PXR_ENABLE_METAL_SUPPORT: ON" in info_text

    extra_args = (repo / "extraArgs.txt").read_text(encoding="utf-8")
    assert "-DOPENUSD_SWIFT_BUILD_FROM_CLI" in extra_args
    assert "-rpath" not in extra_args


def test_existing_package_requires_force(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    out = tmp_path / "out"
    out.mkdir()
    (out / "keep.txt").write_text("x", encoding="utf-8")

    def config(force: bool):
        return resolve_package_config(
            usd_installs=[workspace["macos"]],
            install_strategy=None,
            source_dir=workspace["source"],
            generated_package_dir=out,
            force=force,
            host_platform="darwin",
        )

    with pytest.raises(ValidationError, match="--force"):
        build(config(False), FakeToolchain(), logger)
    assert (out / "keep.txt").exists() is True

    result = build(config(True), FakeToolchain(), logger)
    assert (out / "keep.txt").exists() is False
    assert result.layout.package_manifest == out.absolute() / "Package.swift"
    assert 'path: "Libraries/Usd_Tf.xcframework"' in (out / "Package.swift").read_text(encoding="utf-8")


def test_checksummed_artifacts(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    artifacts_dir = tmp_path / "artifacts"
    config = resolve_package_config(
        usd_installs=[workspace["macos"]],
        install_strategy=None,
        source_dir=workspace["source"],
        checksummed_artifacts_dir=artifacts_dir,
        artifacts_hosting_url="https://example.com/releases/1.0",
        host_platform="darwin",
    )

    result = build(config, FakeToolchain(), logger)

    assert [a.bundle.name for a in result.artifacts] == FRAMEWORKS
    assert sorted(p.name for p in artifacts_dir.iterdir()) == [f"{n}.xcframework.zip" for n in FRAMEWORKS]
    assert list((result.layout.package_dir / "Libraries").iterdir()) == []

    manifest = result.layout.package_manifest.read_text(encoding="utf-8")
    for artifact in result.artifacts:
        assert artifact.url == f"https://example.com/releases/1.0/{artifact.bundle.name}.xcframework.zip"
        assert f'url: "{artifact.url}", ' in manifest
        assert f'checksum: "{artifact.checksum}"),' in manifest
        with zipfile.ZipFile(artifact.archive) as zf:
            assert f"{artifact.bundle.name}.xcframework/Info.plist" in zf.namelist()


def test_symlinked_raw_install(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    toolchain = FakeToolchain()
    config = resolve_package_config(
        usd_installs=[workspace["macos"]],
        install_strategy=INSTALL_SYMLINK,
        source_dir=workspace["source"],
        host_platform="darwin",
    )

    result = build(config, toolchain, logger)

    package = result.layout.package_dir
    raw = package / "Libraries" / "OpenUSD"
    assert raw.is_symlink() is True
    assert raw.resolve() == workspace["macos"].resolve()
    assert result.bundles == ()
    assert toolchain.calls == []

    include = package / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "include"
    assert (include / "pxr").is_symlink() is True
    modulemap = (include / "module.modulemap").read_text(encoding="utf-8")
    assert '    link "usd_tf"' in modulemap
    assert '    link "usd_usd"' in modulemap

    extra_args = (tmp_path / "repo" / "extraArgs.txt").read_text(encoding="utf-8")
    escaped = str(raw / "lib").replace(" ", "\\ ")
    assert f"-Xlinker -rpath -Xlinker {escaped}" in extra_args


def test_copied_raw_install_with_copied_sources(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    config = resolve_package_config(
        usd_installs=[workspace["macos"]],
        install_strategy=INSTALL_COPY_WITHOUT_BUNDLING,
        source_strategy=SOURCE_COPY,
        source_dir=workspace["source"],
        generated_package_dir=tmp_path / "out",
        host_platform="darwin",
    )

    result = build(config, FakeToolchain(), logger)

    package = result.layout.package_dir
    raw = package / "Libraries" / "OpenUSD"
    assert raw.is_symlink() is False
    assert (raw / "lib" / "libusd_usd.dylib").is_file() is True
    assert os.readlink(raw / "lib" / "libtbb.dylib") == "libtbb.12.dylib"
    overlay = package / "Sources" / "OpenUSD" / "SwiftOverlay" / "Overlay.swift"
    assert overlay.is_symlink() is False
    assert overlay.read_text(encoding="utf-8") == "// overlay\n"


def test_linux_host_symlinks_a_single_install(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    linux_install = tmp_path / "usd-linux"
    (linux_install / "lib").mkdir(parents=True)
    (linux_install / "lib" / "libusd_usd.so").write_text("", encoding="utf-8")
    (linux_install / "lib" / "libusd_tf.so").write_text("", encoding="utf-8")
    (linux_install / "include" / "pxr").mkdir(parents=True)
    (linux_install / "include" / "pxr" / "pxr.h").write_text("", encoding="utf-8")
    (linux_install / "include" / "pxr" / "imaging" / "garch").mkdir(parents=True)
    (linux_install / "include" / "pxr" / "imaging" / "garch" / "glPlatformContext.h").write_text("", encoding="utf-8")

    config = resolve_package_config(
        usd_installs=[linux_install],
        install_strategy=None,
        source_dir=workspace["source"],
        host_platform="linux",
    )

    result = build(config, None, logger)

    assert result.installation_set.installations[0].platform == "unknown"
    include = result.layout.package_dir / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "include"
    modulemap = (include / "module.modulemap").read_text(encoding="utf-8")
    assert '    link "usd_tf"' in modulemap
    assert "glPlatformContext.h" not in modulemap
    assert "-fseh-exceptions" in (tmp_path / "repo" / "extraArgs.txt").read_text(encoding="utf-8")


def test_cancelling_during_a_file_stage_stops_the_build(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    config = resolve_package_config(
        usd_installs=[workspace["macos"]],
        install_strategy=INSTALL_SYMLINK,
        source_dir=workspace["source"],
        host_platform="darwin",
    )
    pull_in_headers = package_module.pull_in_headers

    with RunContext(logger=logger) as context:

        def cancel_then_pull_in_headers(*args, **kwargs) -> None:
            context.cancel()
            pull_in_headers(*args, **kwargs)

        monkeypatch.setattr(package_module, "pull_in_headers", cancel_then_pull_in_headers)
        with pytest.raises(RunCancelledError):
            build_package(config, context=context, toolchain=FakeToolchain(), logger=logger)

    package = tmp_path / "repo" / "swift-package"
    assert (package / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "include" / "pxr").is_symlink() is True
    assert (package / "Sources" / "OpenUSD" / "SwiftOverlay").exists() is False
    assert (tmp_path / "repo" / "extraArgs.txt").exists() is False


def test_bundling_without_a_toolchain_fails_before_writing(
    tmp_path: pathlib.Path,
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    config = resolve_package_config(
        usd_installs=[workspace["macos"]],
        install_strategy=None,
        source_dir=workspace["source"],
        host_platform="darwin",
    )

    with pytest.raises(ValidationError, match="Xcode command line tools"):
        build(config, None, logger)
    assert (tmp_path / "repo" / "swift-package").exists() is False


def test_missing_core_library_fails_before_writing(tmp_path: pathlib.Path, logger: logging.Logger) -> None:
    source = make_source_dir(tmp_path / "repo" / "source")
    empty = tmp_path / "empty-usd"
    (empty / "lib").mkdir(parents=True)
    config = resolve_package_config(
        usd_installs=[empty],
        install_strategy=None,
        source_dir=source,
        host_platform="darwin",
    )

    with pytest.raises(ValidationError, match="libusd_usd.dylib"):
        build(config, FakeToolchain(), logger)
    assert (tmp_path / "repo" / "swift-package").exists() is False


def test_embedded_platform_requires_bundling(
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    config = resolve_package_config(
        usd_installs=[workspace["simulator"]],
        install_strategy=INSTALL_SYMLINK,
        source_dir=workspace["source"],
        host_platform="darwin",
    )
    toolchain = FakeToolchain(platforms={workspace["simulator"]: "iOSSimulator"})

    with pytest.raises(ValidationError, match="copy-and-bundle"):
        build(config, toolchain, logger)


def test_duplicate_platform_fails(
    workspace: dict[str, pathlib.Path],
    logger: logging.Logger,
) -> None:
    config = resolve_package_config(
        usd_installs=[workspace["macos"], workspace["simulator"]],
        install_strategy=None,
        source_dir=workspace["source"],
        host_platform="darwin",
    )

    with pytest.raises(PackagingError, match="each platform may only be packaged once"):
        build(config, FakeToolchain(), logger)


def test_source_destination(tmp_path: pathlib.Path) -> None:
    layout = PackageLayout(package_dir=tmp_path, manifest_dir=tmp_path, prefix="")
    include = tmp_path / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "include"

    def dest(rel: str):
        return source_destination(pathlib.PurePosixPath(rel), layout=layout)

    assert dest("Util/util.h") == include / "swiftUsd" / "Util" / "util.h"
    assert dest("OpenUSD.apinotes") == include / "OpenUSD.apinotes"
    assert dest("Wrappers/wrappers.mm") == tmp_path / "Sources" / "_OpenUSD_SwiftBindingHelpers" / "Wrappers" / "wrappers.mm"
    assert dest("SwiftOverlay/Overlay.swift") == tmp_path / "Sources" / "OpenUSD" / "SwiftOverlay" / "Overlay.swift"
    assert dest("_OpenUSD_MacroImplementations/Macros.swift") == (
        tmp_path / "Sources" / "_OpenUSD_MacroImplementations" / "Macros.swift"
    )
    assert dest("README.md") is None
    assert dest("Package.swift.in") is None
    with pytest.raises(PackagingError, match="unknown.bin"):
        dest("unknown.bin")


def test_default_layout_hoists_manifest(tmp_path: pathlib.Path) -> None:
    config = resolve_package_config(
        usd_installs=[tmp_path / "usd"],
        install_strategy=None,
        source_dir=tmp_path / "repo" / "source",
        host_platform="darwin",
    )
    layout = package_layout(config)
    assert layout.package_dir == (tmp_path / "repo" / "swift-package").absolute()
    assert layout.package_manifest == (tmp_path / "repo" / "Package.swift").absolute()
    assert layout.prefix == "swift-package/"
