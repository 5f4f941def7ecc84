"""Diagnostic storage."""

from typing import Protocol

from iac_watch.models import Diagnostic


class DiagnosticsSink(Protocol):
    """Receives the full diagnostic set of a document."""

    def set(self, uri: str, diagnostics: list[Diagnostic]) -> None: ...


class DiagnosticStore:
    """In-memory diagnostics sink; each set replaces the previous one."""

    def __init__(self) -> None:
        self._diagnostics: dict[str, list[Diagnostic]] = {}

    def set(self, uri: str, diagnostics: list[Diagnostic]) -> None:
        if diagnostics:
            self._diagnostics[uri] = list(diagnostics)
        else:
            self._diagnostics.pop(uri, None)

    def get(self, uri: str) -> list[Diagnostic]:
        return list(self._diagnostics.get(uri, []))

    def clear(self, uri: str) -> None:
        self._diagnostics.pop(uri, None)

    def uris(self) -> list[str]:
        return sorted(self._diagnostics)

