"""Run configuration.

The CLI resolves its arguments into a single :class:`PackageConfig`; every
stage reads its knobs from there.
"""

from dataclasses import dataclass
import os
import pathlib
import sys

from make_swift_package.errors import ValidationError

INSTALL_SYMLINK: str = "symlink"
INSTALL_COPY_AND_BUNDLE: str = "copy-and-bundle"
INSTALL_COPY_WITHOUT_BUNDLING: str = "copy-without-bundling"
INSTALL_STRATEGIES: tuple[str, ...] = (
    INSTALL_SYMLINK,
    INSTALL_COPY_AND_BUNDLE,
    INSTALL_COPY_WITHOUT_BUNDLING,
)

SOURCE_COPY: str = "copy"
SOURCE_SYMLINK: str = "symlink"
SOURCE_STRATEGIES: tuple[str, ...] = (SOURCE_COPY, SOURCE_SYMLINK)

POLICY_WARN: str = "warn"
POLICY_ERROR: str = "error"
POLICIES: tuple[str, ...] = (POLICY_WARN, POLICY_ERROR)


@dataclass(frozen=True, slots=True)
class PackageConfig:
    """Package build configuration.

    :ivar usd_installs: OpenUSD installation roots, one per target platform.
    :ivar install_strategy: How installations are brought into the package.
    :ivar source_strategy: Whether glue sources are copied or symlinked.
    :ivar source_dir: Directory holding the glue sources and ``Package.swift.in``.
    :ivar generated_package_dir: Output directory, or ``None`` for ``<repo>/swift-package``.
    :ivar checksummed_artifacts_dir: Directory for zipped xcframeworks, if publishing.
    :ivar artifacts_hosting_url: URL prefix the zipped xcframeworks are served from.
    :ivar force: Overwrite an existing output directory.
    :ivar feature_flag_conflicts: ``warn`` (last installation wins) or ``error``.
    :ivar non_relocatable_dependencies: ``warn`` or ``error``.
    :ivar code_sign_identity: Identity passed to ``codesign -s``.
    :ivar max_workers: Upper bound on concurrently running tasks.
    :ivar host_platform: ``sys.platform`` of the machine doing the packaging.
    """

    usd_installs: tuple[pathlib.Path, ...]
    install_strategy: str
    source_strategy: str
    source_dir: pathlib.Path
    generated_package_dir: pathlib.Path | None
    checksummed_artifacts_dir: pathlib.Path | None
    artifacts_hosting_url: str | None
    force: bool
    feature_flag_conflicts: str
    non_relocatable_dependencies: str
    code_sign_identity: str
    max_workers: int
    host_platform: str

    @property
    def is_darwin_host(self) -> bool:
        return self.host_platform == "darwin"

    @property
    def is_linux_host(self) -> bool:
        return self.host_platform.startswith("linux")

    @property
    def bundles_frameworks(self) -> bool:
        return self.install_strategy == INSTALL_COPY_AND_BUNDLE

    @property
    def library_extension(self) -> str:
        """``dylib`` on Darwin hosts, ``so`` elsewhere."""

        if self.is_darwin_host is True:
            return "dylib"
        return "so"


def resolve_package_config(
    *,
    usd_installs: list[pathlib.Path],
    install_strategy: str | None,
    source_strategy: str = SOURCE_SYMLINK,
    source_dir: pathlib.Path | None = None,
    generated_package_dir: pathlib.Path | None = None,
    checksummed_artifacts_dir: pathlib.Path | None = None,
    artifacts_hosting_url: str | None = None,
    force: bool = False,
    copied_plugins: list[pathlib.Path] | None = None,
    symlinked_plugins: list[pathlib.Path] | None = None,
    feature_flag_conflicts: str = POLICY_WARN,
    non_relocatable_dependencies: str = POLICY_WARN,
    code_sign_identity: str | None = None,
    max_workers: int | None = None,
    host_platform: str | None = None,
) -> PackageConfig:
    """Resolve user-supplied arguments into a validated :class:`PackageConfig`.

    :param usd_installs: Installation roots.
    :param install_strategy: Install strategy, or ``None`` for the host default.
    :param source_strategy: Source strategy.
    :param source_dir: Glue source directory (defaults to ``./source``).
    :param generated_package_dir: Optional output directory.
    :param checksummed_artifacts_dir: Optional artifacts directory.
    :param artifacts_hosting_url: Optional hosting URL.
    :param force: Overwrite an existing output directory.
    :param copied_plugins: Custom plugins to copy (unsupported).
    :param symlinked_plugins: Custom plugins to symlink (unsupported).
    :param feature_flag_conflicts: Feature-flag conflict policy.
    :param non_relocatable_dependencies: Non-relocatable dependency policy.
    :param code_sign_identity: Optional signing identity (defaults to ``$CODE_SIGN_ID`` or ``-``).
    :param max_workers: Optional task bound (defaults to the CPU count).
    :param host_platform: Optional host override (defaults to ``sys.platform``).
    :returns: Resolved config.
    :raises ValidationError: If the combination of arguments is invalid.
    """

    host: str = host_platform if host_platform is not None else sys.platform
    is_darwin: bool = host == "darwin"

    strategy: str
    if install_strategy is not None:
        strategy = install_strategy
    elif is_darwin is True:
        strategy = INSTALL_COPY_AND_BUNDLE
    else:
        strategy = INSTALL_SYMLINK

    if strategy not in INSTALL_STRATEGIES:
        raise ValidationError(f"Unknown --usd-install-strategy {strategy!r}")
    if source_strategy not in SOURCE_STRATEGIES:
        raise ValidationError(f"Unknown --source-strategy {source_strategy!r}")
    for policy in (feature_flag_conflicts, non_relocatable_dependencies):
        if policy not in POLICIES:
            raise ValidationError(f"Unknown policy {policy!r}; expected one of {', '.join(POLICIES)}")

    if is_darwin is False and strategy == INSTALL_COPY_AND_BUNDLE:
        raise ValidationError("--usd-install-strategy copy-and-bundle is only supported on Apple platforms.")

    if len(copied_plugins or []) > 0 or len(symlinked_plugins or []) > 0:
        raise ValidationError(
            "Custom Usd plugins are not supported yet. Remove --copy-plugins and --symlink-plugins options."
        )

    if is_darwin is False and (checksummed_artifacts_dir is not None or artifacts_hosting_url is not None):
        raise ValidationError("Checksummed artifacts are only supported on Apple platforms.")

    if (checksummed_artifacts_dir is None) != (artifacts_hosting_url is None):
        raise ValidationError("Must pass --checksummed-artifacts-dir and --artifacts-hosting-url together.")

    if checksummed_artifacts_dir is not None and strategy != INSTALL_COPY_AND_BUNDLE:
        raise ValidationError("--checksummed-artifacts-dir requires --usd-install-strategy copy-and-bundle.")

    hosting_url: str | None = artifacts_hosting_url
    if hosting_url is not None and hosting_url.endswith("/") is False:
        hosting_url = hosting_url + "/"

    if is_darwin is False and len(usd_installs) > 1:
        raise ValidationError("Multiple Usd installation directories are only supported on Apple platforms.")

    if len(usd_installs) == 0:
        raise ValidationError("Must specify at least one Usd install.")

    if source_strategy == SOURCE_COPY and generated_package_dir is None:
        raise ValidationError("--source-strategy copy requires --generated-package-dir.")

    workers: int = max_workers if max_workers is not None else (os.cpu_count() or 4)
    if workers < 1:
        raise ValidationError(f"Invalid --jobs={workers}; expected 1 or more.")

    signing: str
    if code_sign_identity is not None:
        signing = code_sign_identity
    else:
        signing = os.environ.get("CODE_SIGN_ID", "-")

    return PackageConfig(
        usd_installs=tuple(p.expanduser() for p in usd_installs),
        install_strategy=strategy,
        source_strategy=source_strategy,
        source_dir=(source_dir if source_dir is not None else pathlib.Path("source")).expanduser(),
        generated_package_dir=generated_package_dir.expanduser() if generated_package_dir is not None else None,
        checksummed_artifacts_dir=(
            checksummed_artifacts_dir.expanduser() if checksummed_artifacts_dir is not None else None
        ),
        artifacts_hosting_url=hosting_url,
        force=force,
        feature_flag_conflicts=feature_flag_conflicts,
        non_relocatable_dependencies=non_relocatable_dependencies,
        code_sign_identity=signing,
        max_workers=workers,
        host_platform=host,
    )
