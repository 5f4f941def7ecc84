"""Non-blocking subprocess execution with cancellation and timeout."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from iac_watch.cancellation import CancellationToken
from iac_watch.errors import ProcessError, ScanCancelled, ScanTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ProcessOutput:
    """Captured output of a finished process."""

    returncode: int
    stdout: str
    stderr: str


async def run_process(
    argv: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    cancel_token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
) -> ProcessOutput:
    """Run a process to completion without blocking the event loop.

    The process is killed when the token is cancelled, when the timeout
    elapses, or when the awaiting task itself is cancelled.

    Raises:
        ScanCancelled: The token was cancelled while the process ran.
        ScanTimeoutError: The process outlived the timeout.
        ProcessError: The executable could not be started.
    """
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except OSError as e:
        raise ProcessError(f"Failed to start {argv[0]}: {e}") from e

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future] = {communicate}
    cancel_wait: Optional[asyncio.Future] = None
    if cancel_token is not None:
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if not communicate.done():
            await _terminate(proc, communicate)

    if communicate in done:
        stdout, stderr = communicate.result()
        return ProcessOutput(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    if cancel_token is not None and cancel_token.is_cancellation_requested:
        logger.debug("Process %s killed after cancellation", argv[0])
        raise ScanCancelled("Scan was superseded")

    raise ScanTimeoutError(f"{argv[0]} did not finish within {timeout} seconds")


async def _terminate(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    communicate.cancel()
    try:
        await proc.wait()
    except ProcessLookupError:
        pass
