from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

_READ_CHUNK_BYTES = 64 * 1024

logger = logging.getLogger("uvicorn.error")


class CommandTimeoutError(TimeoutError):
    pass


@dataclass(slots=True)
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int


def build_command_env(overrides: Mapping[str, str] | None) -> dict[str, str] | None:
    if not overrides:
        return None
    env = dict(os.environ)
    env.update({str(key): str(value) for key, value in overrides.items()})
    return env


async def run_command(
    executable: str,
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
    on_stdout: Callable[[bytes], None] | None = None,
) -> CommandOutput:
    """Run ``executable`` with ``args`` and collect its output.

    stdout and stderr are drained concurrently. When ``on_stdout`` is given,
    stdout chunks are handed to it in arrival order instead of being buffered
    and ``CommandOutput.stdout`` is empty. The process (and its process group
    on POSIX) is killed if the deadline passes or the caller is cancelled.
    """
    process = await asyncio.create_subprocess_exec(
        executable,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd or None,
        env=build_command_env(env),
        start_new_session=os.name == "posix",
    )
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    stdout_sink = on_stdout if on_stdout is not None else stdout_chunks.append

    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump(process.stdout, stdout_sink),
                _pump(process.stderr, stderr_chunks.append),
                process.wait(),
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        raise CommandTimeoutError(
            f"{executable} timeout after {timeout_seconds}s"
        ) from exc
    finally:
        if process.returncode is None:
            await _terminate(process)

    return CommandOutput(
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        exit_code=process.returncode if process.returncode is not None else 0,
    )


async def _pump(
    stream: asyncio.StreamReader | None, sink: Callable[[bytes], None]
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        sink(chunk)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    logger.warning("subprocess_terminate pid=%s", process.pid)
    with contextlib.suppress(ProcessLookupError):
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    await process.wait()
