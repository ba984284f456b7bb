"""External command execution: timeouts, captured output, optional line streaming."""

import asyncio
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()

# Seconds. Status checks and other quick commands vs composer and database work.
DEFAULT_TIMEOUT = 60
LONG_TIMEOUT = 300

# Called as on_line(stream_name, line) for every line a process writes.
LineCallback = Callable[[str, str], None]


@dataclass
class ProcessResult:
    """Outcome of a single external command."""

    args: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return self.stdout.strip()


def tail(text: str, lines: int = 10) -> list[str]:
    """Return the last ``lines`` non-empty lines of ``text``."""
    if lines <= 0:
        return []
    kept = [line.rstrip() for line in text.splitlines() if line.strip()]
    return kept[-lines:]


class CommandRunner(ABC):
    """Runs external commands. Every orchestration phase depends on one."""

    @abstractmethod
    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_line: LineCallback | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        """Run ``args`` and return its result. Never raises for a failing command."""


class AsyncProcessRunner(CommandRunner):
    """CommandRunner backed by asyncio subprocesses."""

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_line: LineCallback | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        cmd = [str(a) for a in args]
        merged_env = {**os.environ, **(env or {})}
        logger.debug("process_started", command=" ".join(cmd), cwd=str(cwd) if cwd else None)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
            )
        except FileNotFoundError:
            return ProcessResult(args=cmd, returncode=127, stderr=f"Command not found: {cmd[0]}")
        except OSError as e:
            return ProcessResult(args=cmd, returncode=1, stderr=str(e))

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        try:
            if on_line is None:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    proc.communicate(), timeout=timeout
                )
                stdout_lines.append(stdout_bytes.decode("utf-8", errors="replace"))
                stderr_lines.append(stderr_bytes.decode("utf-8", errors="replace"))
            else:
                await asyncio.wait_for(
                    asyncio.gather(
                        self._pump(proc.stdout, "stdout", stdout_lines, on_line),
                        self._pump(proc.stderr, "stderr", stderr_lines, on_line),
                        proc.wait(),
                    ),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
            logger.warning("process_timed_out", command=" ".join(cmd), timeout=timeout)
            return ProcessResult(
                args=cmd,
                returncode=proc.returncode,
                stdout="".join(stdout_lines),
                stderr="".join(stderr_lines) or f"Command timed out after {timeout}s",
                timed_out=True,
            )

        result = ProcessResult(
            args=cmd,
            returncode=proc.returncode,
            stdout="".join(stdout_lines),
            stderr="".join(stderr_lines),
        )
        if not result.success:
            logger.debug(
                "process_failed",
                command=" ".join(cmd),
                returncode=result.returncode,
                stderr=result.stderr[-500:],
            )
        return result

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        name: str,
        sink: list[str],
        on_line: LineCallback,
    ) -> None:
        """Forward a stream to ``on_line`` one line at a time, keeping a copy."""
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace")
            sink.append(line)
            stripped = line.rstrip()
            if stripped:
                on_line(name, stripped)
