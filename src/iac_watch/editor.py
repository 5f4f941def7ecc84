"""Editor collaborators: events, protocols and an in-memory editor."""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from iac_watch.models import StatusState, TextDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentChange:
    """One change inside a document change event."""

    text: str
    start_line: int = 1
    end_line: int = 1


@dataclass(frozen=True)
class DocumentChanged:
    document: TextDocument
    changes: tuple[ContentChange, ...] = ()

    @property
    def inserts_newline(self) -> bool:
        return any("\n" in change.text for change in self.changes)


@dataclass(frozen=True)
class DocumentSaved:
    document: TextDocument


@dataclass(frozen=True)
class ActiveDocumentChanged:
    document: Optional[TextDocument]


EditorEvent = Union[DocumentChanged, DocumentSaved, ActiveDocumentChanged]


class Editor(Protocol):
    """Read access to the host editor's documents."""

    def active_document(self) -> Optional[TextDocument]: ...

    def get_document(self, uri: str) -> Optional[TextDocument]: ...


class StatusReporter(Protocol):
    """Status bar and notification surface of the host editor."""

    def set_status(self, state: StatusState, version: Optional[str] = None, message: Optional[str] = None) -> None: ...

    def show_error(self, message: str, actions: Sequence[str] = ()) -> None: ...

    def show_warning(self, message: str) -> None: ...


class LoggingStatusReporter:
    """Status reporter that only writes to the log."""

    def set_status(self, state: StatusState, version: Optional[str] = None, message: Optional[str] = None) -> None:
        logger.debug("Status: %s (checkov %s) %s", state.value, version or "unknown", message or "")

    def show_error(self, message: str, actions: Sequence[str] = ()) -> None:
        logger.error(message)

    def show_warning(self, message: str) -> None:
        logger.warning(message)


def uri_for(path: Path) -> str:
    return path.resolve().as_uri()


class InMemoryEditor:
    """A minimal editor holding open documents and the focused one.

    Every mutating call returns the event a real editor would emit, ready to
    be passed to the scheduler.
    """

    def __init__(self) -> None:
        self._documents: dict[str, TextDocument] = {}
        self._active: Optional[str] = None

    def active_document(self) -> Optional[TextDocument]:
        return self._documents.get(self._active) if self._active else None

    def get_document(self, uri: str) -> Optional[TextDocument]:
        return self._documents.get(uri)

    def open(self, file_name: str, text: str, uri: Optional[str] = None) -> TextDocument:
        document = TextDocument(uri=uri or uri_for(Path(file_name)), file_name=file_name, text=text)
        self._documents[document.uri] = document
        return document

    def open_file(self, path: Path) -> TextDocument:
        return self.open(str(path.resolve()), path.read_text(encoding="utf-8"))

    def close(self, uri: str) -> None:
        self._documents.pop(uri, None)
        if self._active == uri:
            self._active = None

    def focus(self, uri: Optional[str]) -> ActiveDocumentChanged:
        self._active = uri if uri in self._documents else None
        return ActiveDocumentChanged(self.active_document())

    def edit(self, uri: str, text: str, changes: Sequence[ContentChange] = ()) -> DocumentChanged:
        """Replace the text of a document, bumping its version."""
        document = self._documents[uri]
        updated = replace(document, text=text, version=document.version + 1)
        self._documents[uri] = updated
        return DocumentChanged(updated, tuple(changes))

    def insert(self, uri: str, line: int, text: str) -> DocumentChanged:
        """Insert text at the start of a 1-based line."""
        lines = self._documents[uri].text.split("\n")
        index = min(max(line - 1, 0), len(lines))
        lines[index:index] = [text] if not text.endswith("\n") else [text[:-1]]
        new_text = "\n".join(lines)
        change_text = text if text.endswith("\n") else text + "\n"
        return self.edit(uri, new_text, [ContentChange(change_text, line, line)])

    def save(self, uri: str) -> DocumentSaved:
        """Write the document to disk when it has a real path."""
        document = self._documents[uri]
        if uri.startswith("file:"):
            Path(document.file_name).write_text(document.text, encoding="utf-8")
        return DocumentSaved(document)
