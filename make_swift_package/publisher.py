"""Checksummed artifact publishing.

Instead of embedding xcframeworks in the package, each one is zipped into
``<artifacts dir>/<Name>.xcframework.zip`` and referenced from the manifest by
URL and SHA-256 checksum.
"""

from dataclasses import dataclass
import hashlib
import logging
import os
import pathlib
import stat
import time
import zipfile

from make_swift_package.merger import MultiPlatformBundle
from make_swift_package.tools import RunContext, run_parallel

ARCHIVE_COMPRESSLEVEL: int = 6
ARCHIVE_DATE_TIME: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True, slots=True)
class ChecksummedArtifact:
    """A zipped xcframework ready for hosting.

    :ivar bundle: The xcframework that was zipped.
    :ivar archive: Zip file path.
    :ivar checksum: Hex SHA-256 of the zip file.
    :ivar url: Where the zip will be served from.
    """

    bundle: MultiPlatformBundle
    archive: pathlib.Path
    checksum: str
    url: str


def sha256_file(path: pathlib.Path) -> str:
    """Hash a file with SHA-256.

    :param path: File to hash.
    :returns: Hex digest.
    """

    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk: bytes = f.read(1024 * 1024)
            if len(chunk) == 0:
                break
            h.update(chunk)
    return h.hexdigest()


def artifact_url(hosting_url: str, name: str) -> str:
    """Build the hosting URL of a zipped xcframework.

    :param hosting_url: URL prefix (``/``-terminated).
    :param name: Framework name.
    :returns: ``<hosting_url><name>.xcframework.zip``.
    """

    if hosting_url.endswith("/") is False:
        hosting_url += "/"
    return f"{hosting_url}{name}.xcframework.zip"


def _member_info(arcname: str, *, mode: int) -> zipfile.ZipInfo:
    info: zipfile.ZipInfo = zipfile.ZipInfo(arcname, date_time=ARCHIVE_DATE_TIME)
    info.create_system = 3
    info.external_attr = (mode & 0xFFFF) << 16
    return info


def zip_dir_to_path(*, root: pathlib.Path, out_path: pathlib.Path, compresslevel: int) -> None:
    """Zip a directory tree, keeping ``root``'s own name as the top-level entry.

    Symlinks are stored as symlink entries (framework bundles rely on them).
    Members are written in sorted order with a fixed timestamp, so the same
    tree always produces the same archive.

    :param root: Directory to archive.
    :param out_path: Output zip path.
    :param compresslevel: Deflate compression level.
    """

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(
        out_path,
        "w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=compresslevel,
    ) as zf:
        paths: list[pathlib.Path] = []
        for dir_str, dirs, files in os.walk(root):
            parent: pathlib.Path = pathlib.Path(dir_str)
            for name in dirs:
                if (parent / name).is_symlink() is True:
                    paths.append(parent / name)
            for name in files:
                paths.append(parent / name)
        for p in sorted(paths):
            arcname: str = str(p.relative_to(root.parent)).replace(os.sep, "/")
            if p.is_symlink() is True:
                zf.writestr(_member_info(arcname, mode=stat.S_IFLNK | 0o777), os.readlink(p))
                continue
            zf.writestr(
                _member_info(arcname, mode=p.stat().st_mode),
                p.read_bytes(),
                compress_type=zipfile.ZIP_DEFLATED,
                compresslevel=compresslevel,
            )


def publish_artifact(
    bundle: MultiPlatformBundle,
    *,
    artifacts_dir: pathlib.Path,
    hosting_url: str,
    logger: logging.Logger,
) -> ChecksummedArtifact:
    """Zip and checksum one xcframework.

    :param bundle: Merged bundle.
    :param artifacts_dir: Output directory for the zip.
    :param hosting_url: URL prefix the zip will be served from.
    :param logger: Logger for progress output.
    :returns: The checksummed artifact.
    """

    archive: pathlib.Path = artifacts_dir / f"{bundle.path.name}.zip"
    logger.info(f"make-swift-package: zipping {bundle.name}")
    t0: float = time.perf_counter()
    zip_dir_to_path(root=bundle.path, out_path=archive, compresslevel=ARCHIVE_COMPRESSLEVEL)
    checksum: str = sha256_file(archive)
    t1: float = time.perf_counter()
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"make-swift-package: {archive.name} sha256={checksum} ({t1 - t0:.2f}s)")
    return ChecksummedArtifact(
        bundle=bundle,
        archive=archive,
        checksum=checksum,
        url=artifact_url(hosting_url, bundle.name),
    )


def publish_artifacts(
    bundles: list[MultiPlatformBundle],
    *,
    context: RunContext,
    artifacts_dir: pathlib.Path,
    hosting_url: str,
    max_workers: int,
    logger: logging.Logger,
) -> list[ChecksummedArtifact]:
    """Zip and checksum every xcframework concurrently.

    :param bundles: Merged bundles.
    :param context: Run context.
    :param artifacts_dir: Output directory for the zips.
    :param hosting_url: URL prefix the zips will be served from.
    :param max_workers: Maximum concurrent tasks.
    :param logger: Logger for progress output.
    :returns: Artifacts sorted by name.
    """

    logger.info(f"make-swift-package: generating artifacts and checksums in {artifacts_dir}")
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    def publish_one(bundle: MultiPlatformBundle) -> ChecksummedArtifact:
        return publish_artifact(bundle, artifacts_dir=artifacts_dir, hosting_url=hosting_url, logger=logger)

    artifacts: list[ChecksummedArtifact] = run_parallel(
        context=context,
        func=publish_one,
        items=bundles,
        max_workers=max_workers,
    )
    return sorted(artifacts, key=lambda a: a.bundle.name)
