"""Result mapper: findings to diagnostics."""

from typing import Iterable

from iac_watch.models import Diagnostic, Finding, TextDocument


class ResultMapper:
    """Maps engine findings onto positions of one document."""

    def map(self, findings: Iterable[Finding], document: TextDocument) -> list[Diagnostic]:
        """Convert findings into diagnostics ordered by (file, line, rule).

        Line numbers outside the document are clamped to the nearest valid
        line instead of being dropped. Identical findings are reported once.

        Args:
            findings: Failed checks of one scan.
            document: The document the scan ran against.

        Returns:
            Ordered list of diagnostics.
        """
        unique: dict[tuple, Finding] = {}
        for finding in findings:
            key = (finding.file_path, finding.start_line, finding.end_line, finding.rule_id, finding.resource)
            unique.setdefault(key, finding)

        ordered = sorted(
            unique.values(),
            key=lambda f: (f.file_path, f.start_line, f.rule_id, f.end_line, f.resource),
        )
        lines = document.lines()
        return [self._to_diagnostic(finding, document, lines) for finding in ordered]

    def _to_diagnostic(self, finding: Finding, document: TextDocument, lines: list[str]) -> Diagnostic:
        last_line = len(lines)
        start_line = self._clamp(finding.start_line, last_line)
        end_line = max(start_line, self._clamp(finding.end_line, last_line))

        start_text = lines[start_line - 1]
        start_character = len(start_text) - len(start_text.lstrip())
        end_character = len(lines[end_line - 1])

        return Diagnostic(
            uri=document.uri,
            document_version=document.version,
            rule_id=finding.rule_id,
            message=f"{finding.rule_id}: {finding.title}" if finding.title else finding.rule_id,
            severity=finding.severity,
            start_line=start_line,
            start_character=start_character,
            end_line=end_line,
            end_character=end_character,
            anchor_text="\n".join(lines[start_line - 1 : end_line]),
            finding=finding,
            guideline_url=finding.guideline_url,
        )

    @staticmethod
    def _clamp(line: int, last_line: int) -> int:
        return min(max(line, 1), last_line)
