import os
import pathlib
import signal
import sys

import pytest

from conftest import make_source_dir
from make_swift_package import cli
from make_swift_package import package as package_module


def test_parser_defaults() -> None:
    ns = cli.build_parser().parse_args(["/opt/usd"])
    assert ns.usd_installs == [pathlib.Path("/opt/usd")]
    assert ns.usd_install_strategy is None
    assert ns.source_strategy == "symlink"
    assert ns.feature_flag_conflicts == "warn"
    assert ns.non_relocatable_dependencies == "warn"
    assert ns.force is False
    assert ns.jobs is None


def test_validation_error_exits_1(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["--artifacts-hosting-url", "https://example.com", "/opt/usd"])
    assert code == 1
    assert "make-swift-package: error:" in capsys.readouterr().err


def test_missing_install_exits_1(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = make_source_dir(tmp_path / "repo" / "source")
    code = cli.main(
        [
            "--usd-install-strategy",
            "symlink",
            "--source-dir",
            str(source),
            str(tmp_path / "does-not-exist"),
        ]
    )
    assert code == 1
    assert "Missing USD install directory" in capsys.readouterr().err


def make_linux_install(root: pathlib.Path) -> pathlib.Path:
    (root / "lib").mkdir(parents=True)
    (root / "lib" / "libusd_usd.so").write_text("", encoding="utf-8")
    (root / "include" / "pxr").mkdir(parents=True)
    (root / "include" / "pxr" / "pxr.h").write_text("", encoding="utf-8")
    return root


@pytest.mark.skipif(sys.platform == "darwin", reason="exercises the non-Apple host path")
def test_symlinked_install_on_linux(tmp_path: pathlib.Path) -> None:
    install = make_linux_install(tmp_path / "usd")
    source = make_source_dir(tmp_path / "repo" / "source")

    code = cli.main(["-q", "--source-dir", str(source), str(install)])

    assert code == 0
    assert (tmp_path / "repo" / "Package.swift").is_file() is True
    assert (tmp_path / "repo" / "swift-package" / "Libraries" / "OpenUSD").is_symlink() is True


@pytest.mark.skipif(sys.platform == "darwin", reason="exercises the non-Apple host path")
def test_sigint_during_header_copy_exits_130(
    tmp_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    install = make_linux_install(tmp_path / "usd")
    source = make_source_dir(tmp_path / "repo" / "source")
    pull_in_headers = package_module.pull_in_headers

    def interrupt_then_pull_in_headers(*args, **kwargs) -> None:
        os.kill(os.getpid(), signal.SIGINT)
        pull_in_headers(*args, **kwargs)

    monkeypatch.setattr(package_module, "pull_in_headers", interrupt_then_pull_in_headers)
    handler = signal.getsignal(signal.SIGINT)

    code = cli.main(["-q", "--source-dir", str(source), str(install)])

    assert code == 130
    assert "make-swift-package: interrupted" in capsys.readouterr().err
    assert signal.getsignal(signal.SIGINT) is handler
    assert (tmp_path / "repo" / "extraArgs.txt").exists() is False
