"""
Runs the training worker as a child process and turns its output into a
result dict or a typed error.

The child reads one JSON request on stdin and writes one JSON document on
stdout; logs go to stderr. The child is killed when the timeout expires or
when the awaiting task is cancelled.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from modelstudio.common.exceptions import (
    BackendError,
    ModelStudioError,
    NotFoundError,
    ParseError,
    ValidationError,
)
from modelstudio.config import settings

logger = logging.getLogger(__name__)

WORKER_MODULE = "modelstudio.training.worker"

_ERROR_KINDS = {
    ValidationError.kind: ValidationError,
    NotFoundError.kind: NotFoundError,
}

# Raw output kept in errors is capped so a runaway child cannot bloat responses
_MAX_CAPTURE = 4000


def worker_argv(command: str) -> List[str]:
    python = settings.PYTHON_EXECUTABLE or sys.executable
    return [python, "-m", WORKER_MODULE, command]


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


def _raise_structured(payload: Any, stderr: str) -> None:
    if isinstance(payload, dict) and "error" in payload:
        error_cls = _ERROR_KINDS.get(payload.get("kind"))
        if error_cls is not None:
            raise error_cls(str(payload["error"]))
        raise BackendError(str(payload["error"]), stderr=stderr[-_MAX_CAPTURE:])


async def run_worker(
    command: str,
    payload: Dict[str, Any],
    timeout: Optional[float] = None,
    argv: Optional[List[str]] = None,
) -> Dict[str, Any]:
    timeout = timeout if timeout is not None else settings.SUBPROCESS_TIMEOUT_SEC
    argv = argv or worker_argv(command)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise BackendError(f"Could not start worker: {e}") from e

    request = json.dumps(payload, default=str).encode()
    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(request), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.error(f"Worker '{command}' timed out after {timeout}s (pid={proc.pid})")
        raise BackendError(f"Worker '{command}' timed out after {timeout}s")
    except asyncio.CancelledError:
        await _terminate(proc)
        logger.warning(f"Worker '{command}' cancelled (pid={proc.pid})")
        raise

    stdout = stdout_b.decode(errors="replace").strip()
    stderr = stderr_b.decode(errors="replace")

    if proc.returncode != 0:
        try:
            _raise_structured(json.loads(stdout), stderr)
        except json.JSONDecodeError:
            pass
        except ModelStudioError:
            raise
        logger.error(f"Worker '{command}' exited with code {proc.returncode}: {stderr[-500:]}")
        raise BackendError(
            f"Worker '{command}' exited with code {proc.returncode}",
            stderr=stderr[-_MAX_CAPTURE:],
        )

    try:
        result = json.loads(stdout)
    except json.JSONDecodeError as e:
        logger.error(f"Worker '{command}' produced unparseable output: {stdout[:200]!r}")
        raise ParseError(
            f"Worker '{command}' output is not valid JSON: {e}",
            raw_output=stdout[:_MAX_CAPTURE],
        ) from e
    if not isinstance(result, dict):
        raise ParseError(
            f"Worker '{command}' output is not a JSON object",
            raw_output=stdout[:_MAX_CAPTURE],
        )
    return result
