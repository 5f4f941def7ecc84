"""Diagnostic report generators."""

import io
import json
from abc import ABC, abstractmethod
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from iac_watch.models import Diagnostic, Severity

SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
    Severity.UNKNOWN: 5,
}


class ReportGenerator(ABC):
    """Abstract base class for report generators."""

    @abstractmethod
    def generate(self, file_path: str, diagnostics: list[Diagnostic]) -> str:
        """Generate a report for the diagnostics of one file.

        Args:
            file_path: The scanned file.
            diagnostics: Diagnostics in display order.

        Returns:
            Formatted report as a string.
        """
        pass


class JSONReporter(ReportGenerator):
    """Generate JSON format reports."""

    def __init__(self, indent: int = 2) -> None:
        self.indent = indent

    def generate(self, file_path: str, diagnostics: list[Diagnostic]) -> str:
        report = {
            "file": file_path,
            "passed": not diagnostics,
            "diagnostics": [d.to_dict() for d in diagnostics],
        }
        return json.dumps(report, indent=self.indent)


class TableReporter(ReportGenerator):
    """Generate rich table format reports for CLI output."""

    SEVERITY_COLORS = {
        Severity.CRITICAL: "red bold",
        Severity.HIGH: "red",
        Severity.MEDIUM: "yellow",
        Severity.LOW: "blue",
        Severity.INFO: "cyan",
        Severity.UNKNOWN: "dim",
    }

    def __init__(self, show_details: bool = True) -> None:
        """Initialize table reporter.

        Args:
            show_details: Whether to show guideline links.
        """
        self.show_details = show_details
        self.console = Console(record=True, file=io.StringIO(), width=140)

    def generate(self, file_path: str, diagnostics: list[Diagnostic]) -> str:
        self._render_summary(file_path, diagnostics)
        if diagnostics:
            self._render_diagnostics(diagnostics)
        return self.console.export_text()

    def _render_summary(self, file_path: str, diagnostics: list[Diagnostic]) -> None:
        counts: dict[Severity, int] = {}
        for diagnostic in diagnostics:
            counts[diagnostic.severity] = counts.get(diagnostic.severity, 0) + 1

        summary_text = Text()
        summary_text.append(f"File: {file_path}\n")
        summary_text.append(f"Failed checks: {len(diagnostics)}\n")
        for severity, count in sorted(counts.items(), key=lambda item: SEVERITY_ORDER[item[0]]):
            summary_text.append(f"  {severity.value}: ", style=self.SEVERITY_COLORS[severity])
            summary_text.append(f"{count}\n")

        self.console.print(Panel(summary_text, title="Checkov Scan Summary", border_style="blue"))

    def _render_diagnostics(self, diagnostics: list[Diagnostic]) -> None:
        table = Table(title="Failed Checks", show_header=True, header_style="bold cyan")
        table.add_column("Line", width=9)
        table.add_column("Severity", width=10)
        table.add_column("Rule ID", width=16)
        table.add_column("Message", width=50)
        if self.show_details:
            table.add_column("Guideline", width=40)

        for diagnostic in diagnostics:
            lines = f"{diagnostic.start_line}-{diagnostic.end_line}"
            row = [
                lines,
                Text(diagnostic.severity.value, style=self.SEVERITY_COLORS[diagnostic.severity]),
                diagnostic.rule_id,
                diagnostic.finding.title or diagnostic.message,
            ]
            if self.show_details:
                row.append(diagnostic.guideline_url or "")
            table.add_row(*row)

        self.console.print(table)


class SARIFReporter(ReportGenerator):
    """Generate SARIF (Static Analysis Results Interchange Format) reports."""

    SARIF_VERSION = "2.1.0"
    SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"

    def __init__(self, tool_name: str = "iac-watch", tool_version: str = "0.1.0") -> None:
        self.tool_name = tool_name
        self.tool_version = tool_version

    def generate(self, file_path: str, diagnostics: list[Diagnostic]) -> str:
        rules: dict[str, dict[str, Any]] = {}
        results = []
        for diagnostic in diagnostics:
            rules.setdefault(diagnostic.rule_id, self._create_rule(diagnostic))
            results.append(self._create_result(file_path, diagnostic))

        sarif = {
            "$schema": self.SCHEMA,
            "version": self.SARIF_VERSION,
            "runs": [
                {
                    "tool": {
                        "driver": {
                            "name": self.tool_name,
                            "version": self.tool_version,
                            "rules": list(rules.values()),
                        }
                    },
                    "results": results,
                }
            ],
        }
        return json.dumps(sarif, indent=2)

    def _create_rule(self, diagnostic: Diagnostic) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "id": diagnostic.rule_id,
            "shortDescription": {"text": diagnostic.finding.title or diagnostic.rule_id},
            "defaultConfiguration": {"level": self._severity_to_sarif_level(diagnostic.severity)},
        }
        if diagnostic.guideline_url:
            rule["helpUri"] = diagnostic.guideline_url
        return rule

    def _create_result(self, file_path: str, diagnostic: Diagnostic) -> dict[str, Any]:
        return {
            "ruleId": diagnostic.rule_id,
            "level": self._severity_to_sarif_level(diagnostic.severity),
            "message": {"text": diagnostic.message},
            "locations": [
                {
                    "physicalLocation": {
                        "artifactLocation": {"uri": file_path},
                        "region": {
                            "startLine": diagnostic.start_line,
                            "startColumn": diagnostic.start_character + 1,
                            "endLine": diagnostic.end_line,
                            "endColumn": diagnostic.end_character + 1,
                        },
                    }
                }
            ],
        }

    def _severity_to_sarif_level(self, severity: Severity) -> str:
        mapping = {
            Severity.CRITICAL: "error",
            Severity.HIGH: "error",
            Severity.MEDIUM: "warning",
            Severity.LOW: "note",
            Severity.INFO: "note",
        }
        # The engine reports no severity without a platform token; treat as error.
        return mapping.get(severity, "error")


def create_reporter(format: str, show_details: bool = True, tool_version: str = "0.1.0") -> ReportGenerator:
    """Create a reporter for the specified format.

    Raises:
        ValueError: If format is not supported.
    """
    if format == "json":
        return JSONReporter()
    elif format == "table":
        return TableReporter(show_details=show_details)
    elif format == "sarif":
        return SARIFReporter(tool_version=tool_version)
    else:
        raise ValueError(f"Unsupported format: {format}. Use 'json', 'table', or 'sarif'.")
