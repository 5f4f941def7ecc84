"""Scanner invoker: runs the engine against one file."""

import json
import logging
import os
from typing import Optional

from iac_watch import __version__
from iac_watch.cancellation import CancellationToken
from iac_watch.config import ExtensionConfig, assure_token
from iac_watch.errors import MalformedOutputError, ProcessError
from iac_watch.logs import redact
from iac_watch.models import Installation, ScanRequest, ScanResult
from iac_watch.process import run_process

logger = logging.getLogger(__name__)

SOURCE_NAME = "iac-watch"
STDERR_TAIL = 2000


def build_scan_request(
    config: ExtensionConfig,
    file_path: str,
    engine_version: str,
    config_file_path: Optional[str] = None,
) -> ScanRequest:
    """Derive a scan request from settings.

    Raises:
        ConfigurationError: If the token is missing or incomplete.
    """
    token = assure_token(config)
    return ScanRequest(
        file_path=file_path,
        auth_token=token,
        engine_version=engine_version,
        cert_path=config.certificate_path or None,
        use_alternate_ids=config.use_alternate_ids,
        backend_url=config.alternate_backend_url or None,
        config_file_path=config_file_path,
    )


def build_engine_arguments(request: ScanRequest) -> list[str]:
    """Build the engine argv tail. The token is passed through the environment."""
    args = ["-s", "--repo-id", request.repo_id, "-f", request.file_path, "-o", "json"]
    if request.cert_path:
        args.extend(["--ca-certificate", request.cert_path])
    if request.use_alternate_ids:
        args.append("--output-bc-ids")
    if request.config_file_path:
        args.extend(["--config-file", request.config_file_path])
    return args


def build_engine_environment(request: ScanRequest) -> dict[str, str]:
    """Build the engine environment on top of the current one."""
    env = dict(os.environ)
    env["BC_API_KEY"] = request.auth_token
    env["BC_SOURCE"] = SOURCE_NAME
    env["BC_SOURCE_VERSION"] = __version__
    if request.backend_url:
        env["PRISMA_API_URL"] = request.backend_url
    else:
        env.pop("PRISMA_API_URL", None)
    return env


class ScannerInvoker:
    """Invokes an installed engine as a subprocess."""

    def __init__(self, installation: Installation, timeout: Optional[float] = None) -> None:
        """Initialize the invoker.

        Args:
            installation: The engine installation to run.
            timeout: Upper bound in seconds for one run. None disables it.
        """
        self.installation = installation
        self.timeout = timeout

    async def invoke(self, request: ScanRequest, cancel_token: CancellationToken) -> ScanResult:
        """Run the engine and decode its report.

        Raises:
            ScanCancelled: The token was cancelled before or during the run.
            ProcessError: The engine exited with a non-zero status.
            ScanTimeoutError: The engine outlived the timeout.
            MalformedOutputError: The engine output was not JSON.
        """
        cancel_token.raise_if_cancelled()

        argv = [*self.installation.command, *build_engine_arguments(request)]
        logger.info(
            "Running checkov",
            extra={"argv": argv, "installation_method": self.installation.method},
        )
        logger.debug("Engine command: %s", " ".join(argv))

        output = await run_process(
            argv,
            env=build_engine_environment(request),
            cancel_token=cancel_token,
            timeout=self.timeout,
        )
        cancel_token.raise_if_cancelled()

        secrets = [request.auth_token]
        if output.returncode != 0:
            stderr = redact(output.stderr, secrets)[-STDERR_TAIL:]
            raise ProcessError(
                f"Checkov exited with code {output.returncode}",
                returncode=output.returncode,
                stderr=stderr,
                stdout=redact(output.stdout, secrets)[-STDERR_TAIL:],
            )

        try:
            data = json.loads(output.stdout)
        except json.JSONDecodeError as e:
            raise MalformedOutputError(f"Checkov output is not valid JSON: {e}") from None

        result = ScanResult.from_engine_output(data)
        logger.debug(
            "Checkov finished with %d failed check(s)", len(result.failed_checks)
        )
        return result
