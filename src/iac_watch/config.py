"""Configuration for the scan engine integration."""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from packaging.version import InvalidVersion, Version

from iac_watch.errors import ConfigurationError
from iac_watch.logs import REDACTED

logger = logging.getLogger(__name__)

MIN_ENGINE_VERSION = "2.0.0"
LATEST = "latest"

# major.minor.patch with optional pre-release and build suffixes
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

ENGINE_CONFIG_FILE_NAMES = (".checkov.yaml", ".checkov.yml")
SUPPORTED_EXTENSIONS = {".tf", ".yml", ".yaml", ".json"}

# camelCase editor setting names, accepted as aliases
_SETTING_ALIASES = {
    "token": "auth_token",
    "certificate": "certificate_path",
    "useBridgecrewIDs": "use_alternate_ids",
    "checkovVersion": "engine_version",
    "disableErrorMessage": "disable_error_message",
    "prismaURL": "alternate_backend_url",
}


def default_install_dir() -> Path:
    """Get the directory holding the private engine installation."""
    if os.name == "nt":  # Windows
        base = Path(os.environ.get("LOCALAPPDATA", "~")).expanduser()
    else:
        xdg_data = os.environ.get("XDG_DATA_HOME")
        base = Path(xdg_data) if xdg_data else Path.home() / ".local" / "share"
    return base / "iac-watch" / "checkov-installation"


@dataclass
class ExtensionConfig:
    """Settings read by the scan scheduler."""

    auth_token: str | None = None
    certificate_path: str | None = None
    use_alternate_ids: bool = False
    engine_version: str = LATEST
    disable_error_message: bool = False
    alternate_backend_url: str | None = None

    # Upper bound for one engine run, in seconds. None disables it.
    scan_timeout: float | None = 300.0
    debounce_delay: float = 0.3

    install_dir: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict) -> "ExtensionConfig":
        """Create config from dictionary."""
        data = {_SETTING_ALIASES.get(key, key): value for key, value in data.items()}
        return cls(
            auth_token=data.get("auth_token")
            or os.environ.get("IAC_WATCH_TOKEN")
            or os.environ.get("BC_API_KEY"),
            certificate_path=data.get("certificate_path"),
            use_alternate_ids=bool(data.get("use_alternate_ids", False)),
            engine_version=str(data.get("engine_version") or LATEST),
            disable_error_message=bool(data.get("disable_error_message", False)),
            alternate_backend_url=data.get("alternate_backend_url")
            or os.environ.get("PRISMA_API_URL"),
            scan_timeout=coerce_timeout(data.get("scan_timeout", 300.0)),
            debounce_delay=float(data.get("debounce_delay", 0.3)),
            install_dir=data.get("install_dir"),
            log_level=data.get("log_level", "INFO"),
        )

    def to_dict(self) -> dict:
        """Convert config to dictionary. The token is never included."""
        return {
            "auth_token": REDACTED if self.auth_token else None,
            "certificate_path": self.certificate_path,
            "use_alternate_ids": self.use_alternate_ids,
            "engine_version": self.engine_version,
            "disable_error_message": self.disable_error_message,
            "alternate_backend_url": self.alternate_backend_url,
            "scan_timeout": self.scan_timeout,
            "debounce_delay": self.debounce_delay,
            "install_dir": self.install_dir,
            "log_level": self.log_level,
        }

    def resolved_install_dir(self) -> Path:
        return Path(self.install_dir).expanduser() if self.install_dir else default_install_dir()


def load_config(path: Optional[Path] = None) -> ExtensionConfig:
    """Load settings from a YAML file.

    Args:
        path: Settings file. Defaults are used when None or missing.

    Returns:
        ExtensionConfig instance.

    Raises:
        ConfigurationError: If the file is not a YAML mapping.
    """
    if path is None or not path.exists():
        return ExtensionConfig.from_dict({})

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid settings file {path}: expected a mapping")

    return ExtensionConfig.from_dict(data)


def validate_engine_version(value: Optional[str]) -> str:
    """Validate a requested engine version.

    Returns:
        "latest" or the cleaned version string.

    Raises:
        ConfigurationError: If the version is malformed or too old.
    """
    requested = (value or "").strip().lower()
    if requested in ("", LATEST):
        return LATEST

    cleaned = requested.lstrip("v=").strip()
    if not SEMVER_PATTERN.match(cleaned):
        raise ConfigurationError(f"Invalid checkov version: {value}")
    try:
        version = Version(cleaned)
    except InvalidVersion:
        raise ConfigurationError(f"Invalid checkov version: {value}") from None

    if version < Version(MIN_ENGINE_VERSION):
        raise ConfigurationError(
            f"Invalid checkov version: {value} (must be >={MIN_ENGINE_VERSION})"
        )

    return str(version)


def get_token_type(token: str) -> str:
    """Prisma tokens are access_key::secret_key pairs."""
    return "prisma" if "::" in token else "bridgecrew"


def assure_token(config: ExtensionConfig) -> str:
    """Return the auth token or raise a ConfigurationError."""
    token = config.auth_token
    if not token:
        raise ConfigurationError(
            "API token was not found. Please add it to the configuration in order to scan your code."
        )
    if get_token_type(token) == "prisma" and not config.alternate_backend_url:
        raise ConfigurationError(
            "Prisma token was identified but no Prisma URL was found. "
            "In order to authenticate with your app you must provide Prisma URL."
        )
    return token


def find_engine_config_file(roots: Iterable[Path] = ()) -> Optional[str]:
    """Find the engine's own config file.

    Workspace roots are searched first, then the home directory.
    """
    candidates = [*roots, Path.home()]
    for root in candidates:
        for name in ENGINE_CONFIG_FILE_NAMES:
            path = Path(root) / name
            if not path.is_file():
                continue
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Ignoring unreadable engine config file %s: %s", path, e)
                continue
            if data is not None and not isinstance(data, dict):
                logger.warning("Ignoring engine config file %s: expected a mapping", path)
                continue
            logger.debug("Using engine config file %s", path)
            return str(path)
    return None


def is_supported_file_type(file_name: str) -> bool:
    """Check if a file can be scanned."""
    path = Path(file_name)
    name = path.name
    if name == "Dockerfile" or name.startswith("Dockerfile.") or name.endswith(".Dockerfile"):
        return True
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def coerce_timeout(value: Any) -> Optional[float]:
    """Normalize a timeout setting; zero or negative disables it."""
    if value is None:
        return None
    timeout = float(value)
    return timeout if timeout > 0 else None
