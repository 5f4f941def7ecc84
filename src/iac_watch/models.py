"""Data models for scan requests, results and diagnostics."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Severity(Enum):
    """Finding severity levels as reported by the engine."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Severity":
        """Convert an engine severity string to a severity level."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class ScanTrigger(Enum):
    """What caused a scan to be requested."""

    EDIT = "edit"
    SAVE = "save"
    FOCUS = "focus"
    MANUAL = "manual"


class ScanState(Enum):
    """Lifecycle of the scan owned by one document."""

    IDLE = "idle"
    SCHEDULED = "scheduled"  # Waiting for the debounce window
    RUNNING = "running"
    CANCELLED = "cancelled"


class StatusState(Enum):
    """States shown to the user by the status reporter."""

    READY = "ready"
    SYNCING = "syncing"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    MISSING_CONFIGURATION = "missing_configuration"


class InstallationStatus(Enum):
    """Engine installation states."""

    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class Finding:
    """A single rule violation reported by the engine."""

    rule_id: str
    file_path: str
    start_line: int
    end_line: int
    severity: Severity = Severity.UNKNOWN
    title: str = ""
    resource: str = ""
    guideline_url: Optional[str] = None
    suggested_fix: Optional[str] = None
    alternate_id: Optional[str] = None

    @classmethod
    def from_engine(cls, data: dict[str, Any]) -> "Finding":
        """Create a finding from one failed check of the engine's JSON report."""
        line_range = data.get("file_line_range") or [1, 1]
        start_line = int(line_range[0]) if line_range else 1
        end_line = int(line_range[-1]) if line_range else start_line

        return cls(
            rule_id=data.get("check_id") or data.get("bc_check_id") or "UNKNOWN",
            file_path=data.get("file_path") or data.get("file_abs_path") or "",
            start_line=start_line,
            end_line=max(start_line, end_line),
            severity=Severity.parse(data.get("severity")),
            title=data.get("check_name") or "",
            resource=data.get("resource") or "",
            guideline_url=data.get("guideline") or None,
            suggested_fix=data.get("fixed_definition") or None,
            alternate_id=data.get("bc_check_id") or None,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "rule_id": self.rule_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "severity": self.severity.value,
            "title": self.title,
            "resource": self.resource,
            "guideline_url": self.guideline_url,
            "suggested_fix": self.suggested_fix,
            "alternate_id": self.alternate_id,
        }


@dataclass
class ScanResult:
    """Failed checks produced by one engine run."""

    failed_checks: list[Finding] = field(default_factory=list)
    engine_version: Optional[str] = None
    parsing_errors: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failed_checks

    @classmethod
    def from_engine_output(cls, output: Any) -> "ScanResult":
        """Build a result from the engine's decoded JSON output.

        The engine prints a single report object, a list of reports (one per
        framework that matched the file), or a bare summary object when no
        framework matched at all.
        """
        reports = output if isinstance(output, list) else [output]
        result = cls()

        for report in reports:
            if not isinstance(report, dict):
                continue
            summary = report.get("summary") or report
            if result.engine_version is None:
                result.engine_version = summary.get("checkov_version")

            results = report.get("results")
            if not isinstance(results, dict):
                continue
            for check in results.get("failed_checks") or []:
                result.failed_checks.append(Finding.from_engine(check))
            for error in results.get("parsing_errors") or []:
                result.parsing_errors.append(str(error))

        return result

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "failed_checks": [f.to_dict() for f in self.failed_checks],
            "engine_version": self.engine_version,
            "parsing_errors": self.parsing_errors,
        }


@dataclass(frozen=True)
class ScanRequest:
    """Everything needed to run the engine against one file."""

    file_path: str
    auth_token: str = field(repr=False)
    engine_version: str = "latest"
    cert_path: Optional[str] = None
    use_alternate_ids: bool = False
    backend_url: Optional[str] = None
    config_file_path: Optional[str] = None
    repo_id: str = "iac-watch/editor"


@dataclass(frozen=True)
class TextDocument:
    """Snapshot of an open document."""

    uri: str
    file_name: str
    text: str = ""
    version: int = 1

    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def line_count(self) -> int:
        return len(self.lines())

    def line(self, number: int) -> str:
        """Return the text of a 1-based line."""
        return self.lines()[number - 1]


@dataclass(frozen=True)
class Diagnostic:
    """Editor-facing projection of a finding, bound to one document version."""

    uri: str
    document_version: int
    rule_id: str
    message: str
    severity: Severity
    start_line: int
    start_character: int
    end_line: int
    end_character: int
    anchor_text: str
    finding: Finding
    guideline_url: Optional[str] = None
    source: str = "Checkov"

    def contains_line(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "uri": self.uri,
            "rule_id": self.rule_id,
            "message": self.message,
            "severity": self.severity.value,
            "start_line": self.start_line,
            "start_character": self.start_character,
            "end_line": self.end_line,
            "end_character": self.end_character,
            "guideline_url": self.guideline_url,
            "source": self.source,
        }


@dataclass(frozen=True)
class TextEdit:
    """A replacement of a line/character range. Lines are 1-based."""

    start_line: int
    start_character: int
    end_line: int
    end_character: int
    new_text: str
    title: str = ""


def apply_edit(text: str, edit: TextEdit) -> str:
    """Apply a text edit and return the new text."""
    lines = text.split("\n")

    def offset(line: int, character: int) -> int:
        line = min(max(line, 1), len(lines))
        return sum(len(l) + 1 for l in lines[: line - 1]) + min(character, len(lines[line - 1]))

    start = offset(edit.start_line, edit.start_character)
    end = offset(edit.end_line, edit.end_character)
    return text[:start] + edit.new_text + text[end:]


@dataclass(frozen=True)
class Installation:
    """A usable installation of the engine."""

    command: tuple[str, ...]
    version: Optional[str]
    method: str
    path: Optional[str] = None


@dataclass(frozen=True)
class InstallationState:
    """Current installation state; `installation` survives failed updates."""

    status: InstallationStatus
    installation: Optional[Installation] = None
    last_error: Optional[str] = None

    @classmethod
    def uninstalled(cls) -> "InstallationState":
        return cls(InstallationStatus.UNINSTALLED)

    @classmethod
    def installing(cls, previous: Optional[Installation] = None) -> "InstallationState":
        return cls(InstallationStatus.INSTALLING, installation=previous)

    @classmethod
    def ready(cls, installation: Installation) -> "InstallationState":
        return cls(InstallationStatus.READY, installation=installation)

    @classmethod
    def error(cls, message: str, previous: Optional[Installation] = None) -> "InstallationState":
        return cls(InstallationStatus.ERROR, installation=previous, last_error=message)

    @property
    def is_ready(self) -> bool:
        return self.status == InstallationStatus.READY

    @property
    def version(self) -> Optional[str]:
        return self.installation.version if self.installation else None
