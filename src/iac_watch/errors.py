"""Exception hierarchy for iac-watch."""

from typing import Optional


class IaCWatchError(Exception):
    """Base class for iac-watch errors."""
    pass


class ConfigurationError(IaCWatchError):
    """Missing or invalid configuration. Never retried automatically."""

    def __init__(self, message: str, remediation: str = "Open configuration"):
        super().__init__(message)
        self.remediation = remediation


class InstallationError(IaCWatchError):
    """The engine could not be installed or updated."""
    pass


class EngineNotReadyError(IaCWatchError):
    """A scan was requested before the engine was installed."""
    pass


class ScanExecutionError(IaCWatchError):
    """The engine process failed to produce a usable result."""
    pass


class ProcessError(ScanExecutionError):
    """The engine exited with a non-zero status or could not be started."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        stdout: str = "",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout


class ScanTimeoutError(ScanExecutionError):
    """The engine did not finish within the configured timeout."""
    pass


class MalformedOutputError(ScanExecutionError):
    """The engine output could not be decoded."""
    pass


class ScanCancelled(IaCWatchError):
    """The scan was superseded. Not a failure."""
    pass
