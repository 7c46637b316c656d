"""Exception types shared by every packaging stage."""


class PackagingError(RuntimeError):
    """Raised when packaging fails. Always fatal for the run."""


class ValidationError(PackagingError):
    """Raised for pre-flight configuration problems, before any file is written."""


class ToolInvocationError(PackagingError):
    """Raised when a spawned external tool exits non-zero.

    :ivar argv: Command that was run.
    :ivar returncode: Process exit status.
    :ivar stderr: Captured standard error (may be empty).
    """

    def __init__(self, argv: list[str], returncode: int, stderr: str = "") -> None:
        self.argv: list[str] = argv
        self.returncode: int = returncode
        self.stderr: str = stderr
        message: str = f"{argv[0]} failed (exit={returncode}): {' '.join(argv)}"
        if len(stderr.strip()) > 0:
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message)


class RunCancelledError(PackagingError):
    """Raised when work is attempted after the run has been cancelled."""
