"""Shared fixtures for iac-watch tests."""

import asyncio
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import pytest
import pytest_asyncio

from iac_watch.cancellation import CancellationToken
from iac_watch.config import ExtensionConfig
from iac_watch.debounce import ManualTimer
from iac_watch.editor import InMemoryEditor
from iac_watch.errors import InstallationError, ScanCancelled
from iac_watch.installer import InstallationManager
from iac_watch.models import Installation, ScanRequest, ScanResult, StatusState
from iac_watch.scheduler import ScanScheduler
from iac_watch.store import DiagnosticStore

TERRAFORM = """resource "aws_s3_bucket" "example" {
  bucket = "my-bucket"
  acl    = "public-read"
}
"""

FAKE_ENGINE = '''
import json
import os
import sys
import time
from pathlib import Path

here = Path(__file__).parent
behavior = json.loads((here / "behavior.json").read_text())

if sys.argv[1:] == ["--version"]:
    print(behavior.get("version", "3.2.1"))
    sys.exit(0)

(here / "call.json").write_text(json.dumps({
    "argv": sys.argv[1:],
    "api_key": os.environ.get("BC_API_KEY"),
    "source": os.environ.get("BC_SOURCE"),
    "prisma_url": os.environ.get("PRISMA_API_URL"),
}))
time.sleep(behavior.get("sleep", 0))
if behavior.get("stderr"):
    sys.stderr.write(behavior["stderr"])
if "stdout" in behavior:
    sys.stdout.write(behavior["stdout"])
else:
    print(json.dumps(behavior.get("report", {})))
sys.exit(behavior.get("exit_code", 0))
'''


def engine_report(*checks: dict, version: str = "3.2.1") -> dict:
    """Build a report in the engine's JSON format."""
    return {
        "check_type": "terraform",
        "results": {"passed_checks": [], "failed_checks": list(checks), "parsing_errors": []},
        "summary": {"passed": 0, "failed": len(checks), "checkov_version": version},
    }


def failed_check(
    check_id: str = "CKV_AWS_20",
    file_path: str = "/main.tf",
    lines: Sequence[int] = (1, 4),
    **extra: Any,
) -> dict:
    check = {
        "check_id": check_id,
        "bc_check_id": f"BC_{check_id}",
        "check_name": f"Check {check_id}",
        "file_path": file_path,
        "file_line_range": list(lines),
        "resource": "aws_s3_bucket.example",
        "severity": "HIGH",
        "guideline": f"https://docs.example.com/{check_id}",
    }
    check.update(extra)
    return check


class FakeEngine:
    """A Python script standing in for the engine executable."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.script = directory / "fake_checkov.py"
        self.script.write_text(FAKE_ENGINE)
        self.configure()

    def configure(self, **behavior: Any) -> None:
        (self.directory / "behavior.json").write_text(json.dumps(behavior))

    @property
    def installation(self) -> Installation:
        return Installation((sys.executable, str(self.script)), "3.2.1", "fake", str(self.script))

    @property
    def last_call(self) -> Optional[dict]:
        path = self.directory / "call.json"
        return json.loads(path.read_text()) if path.exists() else None


@pytest.fixture
def fake_engine(tmp_path):
    """Create a fake engine in a temporary directory."""
    directory = tmp_path / "engine"
    directory.mkdir()
    return FakeEngine(directory)


class FakeInstallationSource:
    """Installation source that never touches the network or pip."""

    method = "fake"

    def __init__(self, version: str = "3.2.1", error: Optional[str] = None) -> None:
        self.version = version
        self.error = error
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def install(self, version: str, install_dir: Path) -> Installation:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise InstallationError(self.error)
        resolved = self.version if version == "latest" else version
        return Installation(("checkov",), resolved, self.method, "checkov")


@dataclass
class InvokeCall:
    request: ScanRequest
    token: CancellationToken
    future: asyncio.Future
    file_text: Optional[str] = None


class FakeInvoker:
    """Invoker whose results are supplied by the test."""

    def __init__(self) -> None:
        self.calls: list[InvokeCall] = []
        self.ignore_cancellation = False
        self.timeouts: list[Optional[float]] = []

    def factory(self, installation: Installation, timeout: Optional[float]) -> "FakeInvoker":
        self.timeouts.append(timeout)
        return self

    async def invoke(self, request: ScanRequest, cancel_token: CancellationToken) -> ScanResult:
        future = asyncio.get_running_loop().create_future()
        path = Path(request.file_path)
        text = path.read_text() if path.exists() else None
        self.calls.append(InvokeCall(request, cancel_token, future, text))

        if self.ignore_cancellation:
            return await future

        waiter = asyncio.ensure_future(cancel_token.wait())
        done, _ = await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        if future in done:
            return future.result()
        raise ScanCancelled("cancelled")


@dataclass
class RecordingStatus:
    """Status reporter that records everything."""

    states: list[StatusState] = field(default_factory=list)
    errors: list[tuple[str, tuple]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def set_status(self, state: StatusState, version: Optional[str] = None, message: Optional[str] = None) -> None:
        self.states.append(state)

    def show_error(self, message: str, actions: Sequence[str] = ()) -> None:
        self.errors.append((message, tuple(actions)))

    def show_warning(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def last(self) -> Optional[StatusState]:
        return self.states[-1] if self.states else None


class Harness:
    """A scheduler wired to in-memory collaborators."""

    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.config = ExtensionConfig(auth_token="secret-token")
        self.editor = InMemoryEditor()
        self.store = DiagnosticStore()
        self.status = RecordingStatus()
        self.timer = ManualTimer()
        self.invoker = FakeInvoker()
        self.source = FakeInstallationSource()
        self.installer = InstallationManager(self.source, tmp_path / "install")
        self.scheduler = ScanScheduler(
            self.editor,
            settings=lambda: self.config,
            installer=self.installer,
            sink=self.store,
            status=self.status,
            invoker_factory=self.invoker.factory,
            timer=self.timer,
            temp_dir=tmp_path / "scans",
        )

    def open(self, name: str = "main.tf", text: str = TERRAFORM, focus: bool = True):
        document = self.editor.open(str(self.tmp_path / name), text)
        if focus:
            self.editor.focus(document.uri)
        return document

    async def wait_for_calls(self, count: int) -> None:
        for _ in range(200):
            if len(self.invoker.calls) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} scan(s), got {len(self.invoker.calls)}")

    async def settle(self) -> None:
        for _ in range(20):
            await asyncio.sleep(0)


@pytest_asyncio.fixture
async def harness(tmp_path):
    """Create a scheduler harness and close it after the test."""
    harness = Harness(tmp_path)
    yield harness
    await harness.scheduler.aclose()
