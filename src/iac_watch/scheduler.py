"""Scan scheduler.

Decides when a document is scanned, makes sure at most one scan per document
is current, and applies results only while they still match the document.

Per document the scan state moves through:

    IDLE -> SCHEDULED (edit, waiting for the debounce window)
         -> RUNNING   (installation check, engine run, result application)
         -> IDLE

Any new request for the same document cancels the current generation, which
moves a SCHEDULED or RUNNING scan to CANCELLED; a cancelled scan never
touches diagnostics or the status bar again.
"""

import asyncio
import hashlib
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, Sequence

from iac_watch.cancellation import CancellationToken, CancellationTokenSource
from iac_watch.config import ExtensionConfig, find_engine_config_file, is_supported_file_type
from iac_watch.debounce import Debouncer, Timer
from iac_watch.editor import (
    ActiveDocumentChanged,
    DocumentChanged,
    DocumentSaved,
    Editor,
    EditorEvent,
    LoggingStatusReporter,
    StatusReporter,
)
from iac_watch.errors import (
    ConfigurationError,
    EngineNotReadyError,
    InstallationError,
    ProcessError,
    ScanCancelled,
    ScanExecutionError,
)
from iac_watch.installer import InstallationManager
from iac_watch.logs import SecretFilter
from iac_watch.mapper import ResultMapper
from iac_watch.models import (
    Installation,
    InstallationState,
    InstallationStatus,
    ScanRequest,
    ScanResult,
    ScanState,
    ScanTrigger,
    StatusState,
    TextDocument,
)
from iac_watch.runner import ScannerInvoker, build_scan_request
from iac_watch.store import DiagnosticsSink

logger = logging.getLogger(__name__)

OPEN_CONFIGURATION = "Open configuration"
OPEN_LOG = "Open log"

INSTALL_FAILED_MESSAGE = "Error occurred while preparing Checkov. Verify your settings, or try again."
SCAN_FAILED_MESSAGE = "Error occurred while running a Checkov scan. Check the log for details."
NOT_READY_MESSAGE = "Still installing/updating Checkov, please wait a few seconds and try again."


class Invoker(Protocol):
    async def invoke(self, request: ScanRequest, cancel_token: CancellationToken) -> ScanResult: ...


InvokerFactory = Callable[[Installation, Optional[float]], Invoker]


@dataclass
class DocumentScan:
    """Scan bookkeeping for one document."""

    state: ScanState = ScanState.IDLE
    source: Optional[CancellationTokenSource] = None
    task: Optional[asyncio.Task] = None


class ScanScheduler:
    """Orchestrates installation, scans and diagnostics for an editor.

    All methods must be called from the event loop thread; state is only
    mutated there.

    Usage:
        scheduler = ScanScheduler(editor, settings=lambda: config,
                                  installer=manager, sink=store)
        scheduler.start()
        scheduler.on_editor_event(event)
        ...
        await scheduler.aclose()
    """

    def __init__(
        self,
        editor: Editor,
        *,
        settings: Callable[[], ExtensionConfig],
        installer: InstallationManager,
        sink: DiagnosticsSink,
        status: Optional[StatusReporter] = None,
        invoker_factory: InvokerFactory = ScannerInvoker,
        mapper: Optional[ResultMapper] = None,
        timer: Optional[Timer] = None,
        temp_dir: Optional[Path] = None,
        workspace_roots: Iterable[Path] = (),
    ) -> None:
        self._editor = editor
        self._settings = settings
        self._installer = installer
        self._sink = sink
        self._status: StatusReporter = status or LoggingStatusReporter()
        self._invoker_factory = invoker_factory
        self._mapper = mapper or ResultMapper()
        self._debouncer = Debouncer(settings().debounce_delay, timer)
        self._temp_dir = temp_dir or Path(tempfile.gettempdir()) / "iac-watch"
        self._workspace_roots = list(workspace_roots)

        self._scans: dict[str, DocumentScan] = {}
        self._tasks: set[asyncio.Future] = set()
        self._closed = False
        self._secret_filter = SecretFilter()
        self._secret_filter.attach()
        self._installer.add_listener(self._on_installation_state)

    @property
    def installation_state(self) -> InstallationState:
        return self._installer.state

    def scan_state(self, uri: str) -> ScanState:
        scan = self._scans.get(uri)
        return scan.state if scan else ScanState.IDLE

    def start(self) -> asyncio.Future:
        """Start installing or updating the engine in the background."""
        self._status.set_status(StatusState.SYNCING, None, "Starting")
        return self._track(asyncio.ensure_future(self.install_or_update()))

    async def install_or_update(self) -> InstallationState:
        """Install or update the engine, then re-scan the focused document."""
        config = self._settings()
        self._status.set_status(StatusState.SYNCING, self._installer.state.version, "Updating Checkov")
        try:
            state = await self._installer.ensure_installed(config.engine_version)
        except ConfigurationError as e:
            logger.error("Invalid engine version setting: %s", e)
            self._status.set_status(StatusState.ERROR, self._installer.state.version)
            self._status.show_error(str(e), (e.remediation,))
            return self._installer.state

        if self._closed:
            return state

        if not state.is_ready:
            self._status.set_status(StatusState.ERROR, state.version)
            self._notify_error(config, INSTALL_FAILED_MESSAGE)
            return state

        self._status.set_status(StatusState.READY, state.version)
        active = self._editor.active_document()
        if active is not None and is_supported_file_type(active.file_name):
            self.request_scan(active, ScanTrigger.MANUAL)
        return state

    def on_editor_event(self, event: EditorEvent) -> None:
        """React to a document change, save or focus change."""
        if self._closed:
            return
        if isinstance(event, DocumentChanged):
            self._on_document_changed(event)
        elif isinstance(event, DocumentSaved):
            self._on_document_saved(event)
        elif isinstance(event, ActiveDocumentChanged):
            self._on_active_document_changed(event)
        else:
            raise TypeError(f"Unsupported editor event: {event!r}")

    def request_scan(self, document: TextDocument, trigger: ScanTrigger = ScanTrigger.MANUAL) -> None:
        """Schedule a scan, superseding any scan of the same document.

        Edit-triggered scans wait for the debounce window; every other
        trigger is dispatched immediately.
        """
        if self._closed:
            return
        scan = self._scans.setdefault(document.uri, DocumentScan())
        self._supersede(document.uri)
        self.remove_diagnostics(document.uri)

        if not self._is_active(document) or not is_supported_file_type(document.file_name):
            scan.state = ScanState.IDLE
            return

        source = CancellationTokenSource()
        scan.source = source
        if trigger == ScanTrigger.EDIT:
            scan.state = ScanState.SCHEDULED
            self._debouncer.schedule(
                document.uri, lambda: self._dispatch(document, source, trigger)
            )
        else:
            self._dispatch(document, source, trigger)

    def remove_diagnostics(self, uri: str) -> None:
        self._sink.set(uri, [])
        self._status.set_status(StatusState.READY, self._installer.state.version)

    async def drain(self) -> None:
        """Wait until no installation or scan task is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel everything in flight and wait for it to unwind."""
        self._closed = True
        self._debouncer.cancel_all()
        for uri in list(self._scans):
            self._supersede(uri)
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        self._installer.remove_listener(self._on_installation_state)
        self._secret_filter.detach()

    def _on_document_changed(self, event: DocumentChanged) -> None:
        document = event.document
        if not self._is_active(document) or not is_supported_file_type(document.file_name):
            return
        if event.inserts_newline or self.scan_state(document.uri) == ScanState.SCHEDULED:
            # a pending edit scan is rescheduled with the latest text
            self.request_scan(document, ScanTrigger.EDIT)
            return
        # Results are stale once the text changes, even without a rescan.
        self._supersede(document.uri)
        self.remove_diagnostics(document.uri)

    def _on_document_saved(self, event: DocumentSaved) -> None:
        document = event.document
        if not self._is_active(document) or not is_supported_file_type(document.file_name):
            self._status.set_status(StatusState.READY, self._installer.state.version)
            return
        self.request_scan(document, ScanTrigger.SAVE)

    def _on_active_document_changed(self, event: ActiveDocumentChanged) -> None:
        document = event.document
        if document is None or not is_supported_file_type(document.file_name):
            self._cancel_all()
            self._status.set_status(StatusState.READY, self._installer.state.version)
            return
        self._cancel_all(keep=document.uri)
        self.request_scan(document, ScanTrigger.FOCUS)

    def _on_installation_state(self, state: InstallationState) -> None:
        if self._closed:
            return
        if state.status == InstallationStatus.INSTALLING:
            self._status.set_status(StatusState.SYNCING, state.version, "Installing Checkov")

    def _is_active(self, document: TextDocument) -> bool:
        active = self._editor.active_document()
        return active is not None and active.uri == document.uri

    def _supersede(self, uri: str) -> None:
        self._debouncer.cancel(uri)
        scan = self._scans.get(uri)
        if scan is None or scan.source is None or scan.source.is_cancelled:
            return
        scan.source.cancel()
        if scan.state in (ScanState.SCHEDULED, ScanState.RUNNING):
            scan.state = ScanState.CANCELLED
            logger.debug("Cancelled scan of %s", uri)

    def _cancel_all(self, keep: Optional[str] = None) -> None:
        for uri in list(self._scans):
            if uri != keep:
                self._supersede(uri)

    def _dispatch(self, document: TextDocument, source: CancellationTokenSource, trigger: ScanTrigger) -> None:
        if source.is_cancelled or self._closed:
            return
        scan = self._scans[document.uri]
        scan.state = ScanState.RUNNING
        scan.task = self._track(asyncio.ensure_future(self._run_scan(document, source, trigger)))

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_scan(self, document: TextDocument, source: CancellationTokenSource, trigger: ScanTrigger) -> None:
        token = source.token
        config = self._settings()
        self._secret_filter.track(config.auth_token)
        try:
            installation = await self._installer.wait_until_ready()
            token.raise_if_cancelled()

            request = build_scan_request(
                config,
                self._scan_target(document, trigger),
                engine_version=installation.version or config.engine_version,
                config_file_path=find_engine_config_file(self._workspace_roots),
            )
            logger.info("Starting to scan %s (%s)", document.file_name, trigger.value)
            self._status.set_status(StatusState.SYNCING, installation.version, "Checkov scanning")

            invoker = self._invoker_factory(installation, config.scan_timeout)
            result = await invoker.invoke(request, token)
            token.raise_if_cancelled()

            current = self._editor.get_document(document.uri)
            if current is None or current.version != document.version:
                raise ScanCancelled(f"{document.uri} changed while it was scanned")

            self._apply(document, result, installation)
        except ScanCancelled:
            logger.debug("Scan of %s was superseded", document.uri)
        except ConfigurationError as e:
            logger.error("Configuration error: %s", e)
            self._status.set_status(StatusState.MISSING_CONFIGURATION, self._installer.state.version)
            self._status.show_error(str(e), (e.remediation,))
        except EngineNotReadyError:
            logger.warning(
                "Tried to scan before checkov finished installing or updating. "
                "Please wait a few seconds and try again."
            )
            self._status.show_warning(NOT_READY_MESSAGE)
        except InstallationError as e:
            if token.is_cancellation_requested:
                return
            logger.error("Scan rejected, Checkov is not installed: %s", e)
            self._status.set_status(StatusState.ERROR, self._installer.state.version)
            self._notify_error(config, INSTALL_FAILED_MESSAGE)
        except ScanExecutionError as e:
            if token.is_cancellation_requested:
                return
            self._log_scan_failure(e)
            self._status.set_status(StatusState.ERROR, self._installer.state.version)
            self._notify_error(config, SCAN_FAILED_MESSAGE)
        except Exception as e:
            if token.is_cancellation_requested:
                return
            logger.error("Unexpected error while scanning %s: %s", document.file_name, e, exc_info=True)
            self._status.set_status(StatusState.ERROR, self._installer.state.version)
            self._notify_error(config, SCAN_FAILED_MESSAGE)
        finally:
            scan = self._scans.get(document.uri)
            if scan is not None and scan.source is source:
                scan.state = ScanState.CANCELLED if source.is_cancelled else ScanState.IDLE
                scan.task = None

    def _apply(self, document: TextDocument, result: ScanResult, installation: Installation) -> None:
        diagnostics = self._mapper.map(result.failed_checks, document)
        self._sink.set(document.uri, diagnostics)
        state = StatusState.FAILED if diagnostics else StatusState.PASSED
        self._status.set_status(state, installation.version)
        logger.info("Scan of %s finished with %d finding(s)", document.file_name, len(diagnostics))

    def _scan_target(self, document: TextDocument, trigger: ScanTrigger) -> str:
        """Path handed to the engine.

        Unsaved edits, and documents without a file on disk, are written to a
        temporary file that keeps the original file name.

        Raises:
            ScanExecutionError: The temporary file could not be written.
        """
        path = Path(document.file_name)
        if trigger != ScanTrigger.EDIT and path.is_file():
            return str(path)

        digest = hashlib.sha1(document.uri.encode("utf-8")).hexdigest()[:12]
        target = self._temp_dir / digest / (path.name or "document")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(document.text, encoding="utf-8")
        except OSError as e:
            logger.error("Error occurred trying to save temp file %s: %s", target, e)
            raise ScanExecutionError(f"Could not write temporary file: {e}") from e
        logger.debug("Saved temporary file %s, now scanning", target)
        return str(target)

    def _log_scan_failure(self, error: ScanExecutionError) -> None:
        if isinstance(error, ProcessError):
            logger.error(
                "Error occurred while running a checkov scan: %s (exit code %s)\n%s",
                error,
                error.returncode,
                error.stderr,
            )
        else:
            logger.error("Error occurred while running a checkov scan: %s", error)

    def _notify_error(self, config: ExtensionConfig, message: str, actions: Sequence[str] = (OPEN_LOG,)) -> None:
        if not config.disable_error_message:
            self._status.show_error(message, actions)
