"""Installation manager for the scan engine."""

import asyncio
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

import httpx
from packaging.version import InvalidVersion, Version

from iac_watch.config import LATEST, MIN_ENGINE_VERSION, validate_engine_version
from iac_watch.errors import EngineNotReadyError, InstallationError, ScanExecutionError
from iac_watch.models import Installation, InstallationState, InstallationStatus
from iac_watch.process import run_process

logger = logging.getLogger(__name__)

PYPI_URL = "https://pypi.org/pypi/checkov/json"
ENGINE_PACKAGE = "checkov"
INSTALL_TIMEOUT = 600.0
VERSION_TIMEOUT = 60.0
STDERR_TAIL = 1000


class VersionResolver:
    """Capture and compare engine versions."""

    VERSION_PATTERN = re.compile(r"(\d+(?:\.\d+)+)")

    def normalize(self, raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        match = self.VERSION_PATTERN.search(raw)
        candidate = match.group(1) if match else raw.strip()
        try:
            Version(candidate)
        except InvalidVersion:
            return None
        return candidate

    def is_compatible(self, actual: Optional[str], requested: str) -> bool:
        """Check an installed version against a requested one ("latest" or exact)."""
        if actual is None:
            return False
        try:
            if Version(actual) < Version(MIN_ENGINE_VERSION):
                return False
            return requested == LATEST or Version(actual) == Version(requested)
        except InvalidVersion:
            return False

    async def capture(self, command: Sequence[str]) -> Optional[str]:
        """Run `<command> --version` and return the normalized version."""
        try:
            output = await run_process([*command, "--version"], timeout=VERSION_TIMEOUT)
        except ScanExecutionError as e:
            logger.debug("Could not read engine version from %s: %s", command[0], e)
            return None
        if output.returncode != 0:
            return None
        text = output.stdout.strip() or output.stderr.strip()
        return self.normalize(text.splitlines()[0]) if text else None


class PypiVersionResolver:
    """Resolves the latest engine release from the PyPI JSON API."""

    def __init__(self, url: str = PYPI_URL, timeout: float = 30.0) -> None:
        self.url = url
        self.timeout = timeout

    async def latest_version(self) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise InstallationError(f"Could not resolve latest checkov version: {e}") from e

        info = data.get("info") if isinstance(data, dict) else None
        version = info.get("version") if isinstance(info, dict) else None
        if not version:
            raise InstallationError("Could not resolve latest checkov version: no version in response")
        return version


class InstallationSource(Protocol):
    """Protocol for things that can provide an engine installation."""

    method: str

    async def install(self, version: str, install_dir: Path) -> Installation: ...


class SystemInstallationSource:
    """Uses an engine already available on PATH."""

    method = "system"

    def __init__(self, executable: str = "checkov", versions: Optional[VersionResolver] = None) -> None:
        self.executable = executable
        self._versions = versions or VersionResolver()

    async def install(self, version: str, install_dir: Path) -> Installation:
        path = shutil.which(self.executable)
        if not path:
            raise InstallationError(f"{self.executable} was not found on PATH")

        actual = await self._versions.capture([path])
        if not self._versions.is_compatible(actual, version):
            raise InstallationError(
                f"{path} has version {actual or 'unknown'}, requested {version}"
            )
        return Installation(command=(path,), version=actual, method=self.method, path=path)


class PipInstallationSource:
    """Installs the engine into a private virtual environment with pip."""

    method = "pip"

    def __init__(
        self,
        python: str = sys.executable,
        resolver: Optional[PypiVersionResolver] = None,
        versions: Optional[VersionResolver] = None,
    ) -> None:
        self.python = python
        self._resolver = resolver or PypiVersionResolver()
        self._versions = versions or VersionResolver()

    async def install(self, version: str, install_dir: Path) -> Installation:
        if version == LATEST:
            version = await self._resolver.latest_version()
            logger.info("Resolved latest checkov version to %s", version)

        venv_dir, venv_python, executable = venv_paths(install_dir)

        if executable.exists():
            current = await self._versions.capture([str(executable)])
            if current and self._versions.is_compatible(current, version):
                logger.info("Checkov %s is already installed in %s", current, venv_dir)
                return Installation((str(executable),), current, self.method, str(executable))

        if not venv_python.exists():
            try:
                install_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise InstallationError(f"Could not create {install_dir}: {e}") from e
            await self._run([self.python, "-m", "venv", str(venv_dir)], "create virtual environment")

        await self._run(
            [str(venv_python), "-m", "pip", "install", "--quiet", "--upgrade", f"{ENGINE_PACKAGE}=={version}"],
            f"install checkov {version}",
        )

        installed = await self._versions.capture([str(executable)])
        if not installed:
            raise InstallationError(f"Checkov was installed but {executable} is not runnable")
        return Installation((str(executable),), installed, self.method, str(executable))

    async def _run(self, argv: list[str], action: str) -> None:
        logger.debug("Running %s", " ".join(argv))
        try:
            output = await run_process(argv, timeout=INSTALL_TIMEOUT)
        except ScanExecutionError as e:
            raise InstallationError(f"Failed to {action}: {e}") from e
        if output.returncode != 0:
            raise InstallationError(
                f"Failed to {action} (exit code {output.returncode}): {output.stderr[-STDERR_TAIL:]}"
            )


class FallbackInstallationSource:
    """Tries each source in order until one succeeds."""

    method = "fallback"

    def __init__(self, sources: Sequence[InstallationSource]) -> None:
        self.sources = list(sources)

    async def install(self, version: str, install_dir: Path) -> Installation:
        errors = []
        for source in self.sources:
            try:
                return await source.install(version, install_dir)
            except (InstallationError, OSError) as e:
                logger.warning("Checkov installation via %s failed: %s", source.method, e)
                errors.append(f"{source.method}: {e}")
        raise InstallationError("All installation methods failed. " + "; ".join(errors))


def default_installation_source() -> FallbackInstallationSource:
    return FallbackInstallationSource([PipInstallationSource(), SystemInstallationSource()])


def venv_paths(install_dir: Path) -> tuple[Path, Path, Path]:
    """Return (venv dir, venv python, engine executable) under install_dir."""
    venv_dir = install_dir / "venv"
    bin_dir = venv_dir / ("Scripts" if os.name == "nt" else "bin")
    venv_python = bin_dir / ("python.exe" if os.name == "nt" else "python")
    executable = bin_dir / ("checkov.cmd" if os.name == "nt" else "checkov")
    return venv_dir, venv_python, executable


async def detect_installation(
    install_dir: Path, versions: Optional[VersionResolver] = None
) -> Optional[Installation]:
    """Find an existing installation without installing anything."""
    versions = versions or VersionResolver()
    candidates = [(venv_paths(install_dir)[2], PipInstallationSource.method)]
    system = shutil.which("checkov")
    if system:
        candidates.append((Path(system), SystemInstallationSource.method))

    for path, method in candidates:
        if not path.exists():
            continue
        version = await versions.capture([str(path)])
        if version:
            return Installation((str(path),), version, method, str(path))
    return None


class InstallationManager:
    """Serializes engine installation and tracks its state.

    Only one installation runs at a time; concurrent callers await the one
    in flight.
    """

    def __init__(self, source: InstallationSource, install_dir: Path) -> None:
        self._source = source
        self._install_dir = install_dir
        self._state = InstallationState.uninstalled()
        self._inflight: Optional[asyncio.Future] = None
        self._listeners: list[Callable[[InstallationState], None]] = []

    @property
    def state(self) -> InstallationState:
        return self._state

    @property
    def installation(self) -> Optional[Installation]:
        return self._state.installation

    @property
    def is_installing(self) -> bool:
        return self._inflight is not None

    def add_listener(self, listener: Callable[[InstallationState], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[InstallationState], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def ensure_installed(self, requested_version: Optional[str] = LATEST) -> InstallationState:
        """Install or update the engine.

        Raises:
            ConfigurationError: If the requested version is invalid. Raised
                before any installation work starts.
        """
        version = validate_engine_version(requested_version)
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._install(version))
        else:
            logger.debug("Installation already in progress, waiting for it")
        return await asyncio.shield(self._inflight)

    async def wait_until_settled(self) -> InstallationState:
        """Wait for an in-flight installation, if any, and return the state."""
        if self._inflight is not None:
            await asyncio.shield(self._inflight)
        return self._state

    async def wait_until_ready(self) -> Installation:
        """Return the installation once ready.

        Raises:
            InstallationError: The last installation attempt failed.
            EngineNotReadyError: No installation was ever attempted.
        """
        state = await self.wait_until_settled()
        if state.status == InstallationStatus.READY and state.installation:
            return state.installation
        if state.status == InstallationStatus.ERROR:
            raise InstallationError(state.last_error or "Checkov installation failed")
        raise EngineNotReadyError("Checkov has not been installed")

    async def _install(self, version: str) -> InstallationState:
        previous = self._state.installation
        self._transition(InstallationState.installing(previous))
        try:
            installation = await self._source.install(version, self._install_dir)
        except InstallationError as e:
            logger.error(
                "Error occurred while preparing Checkov. Verify your settings, or try again.",
                exc_info=True,
            )
            self._transition(InstallationState.error(str(e), previous))
        except asyncio.CancelledError:
            self._transition(InstallationState.error("Installation was cancelled", previous))
            raise
        except Exception as e:
            logger.error("Unexpected error while preparing Checkov: %s", e, exc_info=True)
            self._transition(InstallationState.error(f"Unexpected error: {e}", previous))
        else:
            logger.info(
                "Checkov installation: version %s via %s", installation.version, installation.method
            )
            self._transition(InstallationState.ready(installation))
        finally:
            self._inflight = None
        return self._state

    def _transition(self, state: InstallationState) -> None:
        logger.debug("Installation state %s -> %s", self._state.status.value, state.status.value)
        self._state = state
        for listener in list(self._listeners):
            listener(state)
