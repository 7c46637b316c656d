"""External tool invocation.

Everything the packager learns about or changes in a binary goes through the
Apple developer tools (``otool``, ``vtool``, ``lipo``, ``install_name_tool``,
``codesign``). This module wraps them:

- :class:`RunContext` is the cancellation token for a run. Every spawned
  process is registered with it so that a single interrupt can terminate all
  of them.
- Small parsers turn tool output into typed records, so the rules built on
  top of them can be tested without the tools.
- :class:`DarwinToolchain` runs the tools.
- :func:`run_parallel` fans work out over a bounded thread pool and joins it.
"""

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import pathlib
import re
import subprocess
import threading
from typing import Callable, Iterable, Protocol, TypeVar

from make_swift_package.errors import PackagingError, RunCancelledError, ToolInvocationError
from make_swift_package.platforms import normalize_build_platform

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class LinkedLibrary:
    """One entry of ``otool -L`` output.

    :ivar path: Referenced library path (e.g. ``@rpath/libusd_tf.dylib``).
    :ivar compatibility_version: Compatibility version string.
    :ivar current_version: Current version string.
    """

    path: str
    compatibility_version: str
    current_version: str


@dataclass(frozen=True, slots=True)
class LoadCommand:
    """A path-carrying load command from ``otool -l`` output.

    :ivar cmd: Load command type (e.g. ``LC_LOAD_DYLIB``).
    :ivar path: The ``name`` or ``path`` operand.
    """

    cmd: str
    path: str


_LINKED_LIBRARY_RE: re.Pattern[str] = re.compile(
    r"^\s*(?P<path>.+?) \(compatibility version (?P<compat>[^,]*), "
    r"current version (?P<current>[^,)]*)(?:, [^)]*)?\)\s*$"
)
_LOAD_COMMAND_HEADER_RE: re.Pattern[str] = re.compile(r"^\s*Load command \d+\s*$")
_LOAD_COMMAND_CMD_RE: re.Pattern[str] = re.compile(r"^\s*cmd (?P<cmd>\S+)\s*$")
_LOAD_COMMAND_PATH_RE: re.Pattern[str] = re.compile(r"^\s*(?:name|path) (?P<path>.*) \(offset \d+\)\s*$")


def parse_linked_libraries(lines: list[str]) -> list[LinkedLibrary]:
    """Parse ``otool -L`` output.

    The ``<file>:`` header line is skipped. For a shared library the first
    entry is the library's own install id.

    :param lines: Output lines.
    :returns: Linked library records, in output order.
    """

    result: list[LinkedLibrary] = []
    for line in lines:
        m = _LINKED_LIBRARY_RE.match(line)
        if m is None:
            continue
        result.append(
            LinkedLibrary(
                path=m.group("path"),
                compatibility_version=m.group("compat"),
                current_version=m.group("current"),
            )
        )
    return result


def parse_load_commands(lines: list[str]) -> list[LoadCommand]:
    """Parse ``otool -l`` output into path-carrying load commands.

    :param lines: Output lines.
    :returns: Load commands that have a ``name`` or ``path`` operand.
    """

    result: list[LoadCommand] = []
    cmd: str | None = None
    for line in lines:
        if _LOAD_COMMAND_HEADER_RE.match(line) is not None:
            cmd = None
            continue
        m_cmd = _LOAD_COMMAND_CMD_RE.match(line)
        if m_cmd is not None:
            cmd = m_cmd.group("cmd")
            continue
        m_path = _LOAD_COMMAND_PATH_RE.match(line)
        if m_path is not None and cmd is not None:
            result.append(LoadCommand(cmd=cmd, path=m_path.group("path")))
            cmd = None
    return result


def parse_install_id(lines: list[str]) -> str | None:
    """Parse ``otool -D`` output.

    :param lines: Output lines (``<file>:`` followed by the id).
    :returns: Install id, or ``None`` if the file has none.
    """

    if len(lines) < 2:
        return None
    ident: str = lines[1].strip()
    if len(ident) == 0:
        return None
    return ident


def parse_build_platform(lines: list[str]) -> str:
    """Parse the raw platform name out of ``vtool -show-build`` output.

    :param lines: Output lines.
    :returns: Raw platform (e.g. ``IOSSIMULATOR``).
    :raises PackagingError: If no platform line is present.
    """

    for line in lines:
        stripped: str = line.strip()
        if stripped.startswith("platform") is True:
            return stripped.split()[-1]
    raise PackagingError("vtool -show-build parsing failure: no platform line")


def parse_architectures(lines: list[str]) -> tuple[str, ...]:
    """Parse ``lipo -archs`` output.

    :param lines: Output lines.
    :returns: Architecture names.
    """

    archs: list[str] = []
    for line in lines:
        archs.extend(line.split())
    return tuple(archs)


class RunContext:
    """Cancellation token and subprocess registry for one packaging run.

    Use as a context manager; leaving the block terminates any process that
    is still registered.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("make_swift_package")
        self._lock: threading.Lock = threading.Lock()
        self._cancelled: threading.Event = threading.Event()
        self._processes: set[subprocess.Popen[str]] = set()

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        """Raise if the run has been cancelled.

        :raises RunCancelledError: If :meth:`cancel` was called.
        """

        if self._cancelled.is_set() is True:
            raise RunCancelledError("Packaging run was cancelled")

    def cancel(self) -> None:
        """Cancel the run and terminate every in-flight subprocess."""

        with self._lock:
            self._cancelled.set()
            running: list[subprocess.Popen[str]] = list(self._processes)
        for proc in running:
            if proc.poll() is None:
                proc.terminate()

    def close(self) -> None:
        """Terminate anything still running. Safe to call more than once."""

        with self._lock:
            running: list[subprocess.Popen[str]] = list(self._processes)
            self._processes.clear()
        for proc in running:
            if proc.poll() is None:
                proc.terminate()
                proc.wait()

    @property
    def running_process_count(self) -> int:
        with self._lock:
            return len(self._processes)

    def run(self, argv: list[str], *, cwd: pathlib.Path | None = None) -> list[str]:
        """Run a tool to completion and return its stdout lines.

        :param argv: Command and arguments.
        :param cwd: Optional working directory.
        :returns: Standard output split into lines.
        :raises RunCancelledError: If the run is (or becomes) cancelled.
        :raises ToolInvocationError: If the tool exits non-zero.
        """

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"make-swift-package: running: {' '.join(argv)}")

        with self._lock:
            if self._cancelled.is_set() is True:
                raise RunCancelledError(f"Packaging run was cancelled before running {argv[0]}")
            try:
                proc: subprocess.Popen[str] = subprocess.Popen(
                    argv,
                    cwd=cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except OSError as e:
                raise ToolInvocationError(argv, 127, str(e)) from e
            self._processes.add(proc)

        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._lock:
                self._processes.discard(proc)

        if self._cancelled.is_set() is True:
            raise RunCancelledError(f"Packaging run was cancelled while running {argv[0]}")
        if proc.returncode != 0:
            raise ToolInvocationError(argv, proc.returncode, stderr)
        return stdout.splitlines()


class Toolchain(Protocol):
    """Binary introspection and rewriting operations used by the packager."""

    def linked_libraries(self, dylib: pathlib.Path) -> list[LinkedLibrary]: ...

    def install_id(self, dylib: pathlib.Path) -> str | None: ...

    def load_commands(self, dylib: pathlib.Path) -> list[LoadCommand]: ...

    def build_platform(self, dylib: pathlib.Path) -> str: ...

    def architectures(self, dylib: pathlib.Path) -> tuple[str, ...]: ...

    def set_install_id(self, dylib: pathlib.Path, install_id: str) -> None: ...

    def change_reference(self, dylib: pathlib.Path, old: str, new: str) -> None: ...

    def codesign(self, bundle: pathlib.Path, identifier: str) -> None: ...


class DarwinToolchain:
    """:class:`Toolchain` backed by the Xcode command line tools."""

    def __init__(self, *, context: RunContext, code_sign_identity: str, logger: logging.Logger) -> None:
        self._context: RunContext = context
        self._code_sign_identity: str = code_sign_identity
        self._logger: logging.Logger = logger

    def linked_libraries(self, dylib: pathlib.Path) -> list[LinkedLibrary]:
        return parse_linked_libraries(self._context.run(["otool", "-L", str(dylib)]))

    def install_id(self, dylib: pathlib.Path) -> str | None:
        return parse_install_id(self._context.run(["otool", "-D", str(dylib)]))

    def load_commands(self, dylib: pathlib.Path) -> list[LoadCommand]:
        return parse_load_commands(self._context.run(["otool", "-l", str(dylib)]))

    def build_platform(self, dylib: pathlib.Path) -> str:
        raw: str = parse_build_platform(self._context.run(["vtool", "-show-build", str(dylib)]))
        return normalize_build_platform(raw, logger=self._logger)

    def architectures(self, dylib: pathlib.Path) -> tuple[str, ...]:
        return parse_architectures(self._context.run(["lipo", "-archs", str(dylib)]))

    def set_install_id(self, dylib: pathlib.Path, install_id: str) -> None:
        self._context.run(["install_name_tool", "-id", install_id, str(dylib)])

    def change_reference(self, dylib: pathlib.Path, old: str, new: str) -> None:
        self._context.run(["install_name_tool", "-change", old, new, str(dylib)])

    def codesign(self, bundle: pathlib.Path, identifier: str) -> None:
        # The signature identifier has to match the bundle identifier or
        # dylib loading fails on iOS. Xcode preserves it when re-signing.
        self._context.run(["codesign", "-f", "-s", self._code_sign_identity, "-i", identifier, str(bundle)])


def run_parallel(
    *,
    context: RunContext,
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
) -> list[R]:
    """Run ``func`` over ``items`` on a bounded pool and join.

    Results come back in completion order; callers that need determinism
    must sort them. The first failure cancels the run (terminating every
    in-flight subprocess) and is re-raised once all tasks have stopped.

    :param context: Run context.
    :param func: Task function.
    :param items: Work items.
    :param max_workers: Maximum concurrent tasks.
    :returns: Task results.
    """

    work: list[T] = list(items)
    results: list[R] = []
    if len(work) == 0:
        return results

    def task(item: T) -> R:
        context.check_cancelled()
        return func(item)

    with ThreadPoolExecutor(max_workers=min(max_workers, len(work))) as pool:
        futures: list[Future[R]] = [pool.submit(task, item) for item in work]
        try:
            for fut in as_completed(futures):
                results.append(fut.result())
        except BaseException:
            context.cancel()
            for fut in futures:
                fut.cancel()
            raise

    return results
