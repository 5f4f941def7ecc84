"""iac-watch - Editor-side scan orchestration for Checkov."""

__version__ = "0.1.0"

from iac_watch.models import Diagnostic, Finding, ScanResult, TextDocument, TextEdit
from iac_watch.scheduler import ScanScheduler

__all__ = [
    "__version__",
    "Diagnostic",
    "Finding",
    "ScanResult",
    "ScanScheduler",
    "TextDocument",
    "TextEdit",
]
