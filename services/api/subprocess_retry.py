"""
Async subprocess runner with retry logic for the node helper scripts
(Poseidon hashing via circomlibjs, Groth16 proving via snarkjs).

The scripts read one JSON document on stdin and write one JSON document on
stdout, so callers only ever deal with dicts.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from services.api.logging_config import get_logger
from services.rpc.retry import Backoff, ErrorKind, RetryPolicy

logger = get_logger("subprocess")


class SubprocessRetryError(Exception):
    """Raised when subprocess fails after all retries"""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class _AttemptFailed(Exception):
    def __init__(self, message: str, kind: ErrorKind, returncode: Optional[int], stderr: str):
        super().__init__(message)
        self.kind = kind
        self.returncode = returncode
        self.stderr = stderr


def classify_stderr(stderr: str) -> ErrorKind:
    """Transient patterns worth another attempt; everything else is fatal."""
    lowered = stderr.lower()
    if "429" in lowered or "rate limit" in lowered:
        return ErrorKind.RATE_LIMITED
    if any(marker in lowered for marker in ("connection", "timeout", "econnrefused", "enotfound", "enomem")):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def _classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, _AttemptFailed):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


DEFAULT_POLICY = RetryPolicy(
    max_attempts=3,
    backoff=Backoff(base=1.0, multiplier=2.0),
    rate_limit_backoff=Backoff(base=1.0, multiplier=2.0),
    classifier=_classify,
)


async def run_with_retry(
    cmd: List[str],
    stdin_data: Optional[bytes] = None,
    timeout: float = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Command",
    policy: RetryPolicy = DEFAULT_POLICY,
    on_attempt: Optional[Callable[[int, str], None]] = None,
) -> bytes:
    """
    Run a subprocess with automatic retry.

    Args:
        cmd: Command list (e.g., ["node", "scripts/poseidon.js"])
        stdin_data: Bytes written to the process stdin
        timeout: Per-attempt timeout in seconds
        cwd: Working directory for command
        env: Environment variables
        description: Human-readable description for logging
        policy: Retry schedule; stderr decides transient vs fatal
        on_attempt: Optional callback called on each attempt: (attempt_num, status_msg)

    Returns:
        stdout bytes of the successful attempt

    Raises:
        SubprocessRetryError: If command fails after all retries (or fatally)
    """
    attempt = 0

    async def _attempt() -> bytes:
        nonlocal attempt
        attempt += 1
        status_msg = f"{description} (attempt {attempt}/{policy.max_attempts})"
        logger.debug(status_msg)
        if on_attempt:
            on_attempt(attempt, status_msg)

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_data), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"{description} timed out after {timeout}s")
            raise

        if proc.returncode == 0:
            return stdout

        err_text = stderr.decode(errors="replace")
        raise _AttemptFailed(
            f"{description} failed with exit code {proc.returncode}: {err_text[:500]}",
            classify_stderr(err_text),
            proc.returncode,
            err_text,
        )

    try:
        return await policy.run(_attempt, description=description)
    except _AttemptFailed as e:
        raise SubprocessRetryError(
            f"{description} failed after {attempt} attempt(s).\nLast error: {e.stderr[:500]}",
            returncode=e.returncode,
            stderr=e.stderr,
        ) from e
    except asyncio.TimeoutError as e:
        raise SubprocessRetryError(
            f"{description} timed out after {attempt} attempt(s) (timeout: {timeout}s)"
        ) from e
    except OSError as e:
        raise SubprocessRetryError(f"{description} could not start: {e}") from e


async def run_json_script_with_retry(
    cmd: List[str],
    payload: Dict[str, Any],
    timeout: float = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Script",
    policy: RetryPolicy = DEFAULT_POLICY,
) -> Dict[str, Any]:
    """
    Run a JSON-in / JSON-out script with retry logic.

    Raises:
        SubprocessRetryError: If the script fails or prints something that is not JSON
    """
    stdout = await run_with_retry(
        cmd=cmd,
        stdin_data=json.dumps(payload).encode(),
        timeout=timeout,
        cwd=cwd,
        env=env,
        description=description,
        policy=policy,
    )
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise SubprocessRetryError(
            f"Failed to parse {description} output as JSON: {e}\nOutput: {stdout[:500]!r}"
        ) from e
