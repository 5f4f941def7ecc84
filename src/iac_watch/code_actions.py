"""Quick fixes for diagnostics."""

from dataclasses import dataclass
from typing import Optional

from iac_watch.fixer import FixSynthesizer
from iac_watch.models import Diagnostic, TextDocument, TextEdit, apply_edit
from iac_watch.store import DiagnosticStore


@dataclass
class QuickFix:
    """A fix offered to the user for one diagnostic."""

    title: str
    diagnostic: Diagnostic
    edit: TextEdit


class CodeActionProvider:
    """Offers quick fixes for the diagnostics of a document."""

    def __init__(self, store: DiagnosticStore, synthesizer: Optional[FixSynthesizer] = None) -> None:
        self._store = store
        self._synthesizer = synthesizer or FixSynthesizer()

    def provide(
        self,
        document: TextDocument,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
    ) -> list[QuickFix]:
        """Quick fixes for diagnostics overlapping the given line range."""
        actions = []
        for diagnostic in self._store.get(document.uri):
            if start_line is not None and diagnostic.end_line < start_line:
                continue
            if end_line is not None and diagnostic.start_line > end_line:
                continue
            edit = self._synthesizer.synthesize_fix(diagnostic, document.text)
            if edit is not None:
                actions.append(QuickFix(title=edit.title, diagnostic=diagnostic, edit=edit))
        return actions

    def resolve(self, document: TextDocument, diagnostic: Diagnostic) -> Optional[TextEdit]:
        """Recompute the fix against the current text at apply time."""
        return self._synthesizer.synthesize_fix(diagnostic, document.text)

    def apply(self, document: TextDocument, diagnostic: Diagnostic) -> Optional[str]:
        """Return the fixed text, or None when the fix is unavailable or stale."""
        edit = self.resolve(document, diagnostic)
        if edit is None:
            return None
        return apply_edit(document.text, edit)
