"""Typed execution of external device and filesystem tools.

Every destructive step shells out to a host utility. This module turns
each call into a ``CommandResult`` and, for checked calls, raises the
stage-specific ``StageError`` subclass the caller names, so the first
failure aborts the pipeline and the failing stage is inspectable.
"""

from __future__ import annotations

import re
import select
import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence, Type

from persistusb.logging import LoggerFactory, ThrottledLogger
from persistusb.storage.exceptions import StageError


log = LoggerFactory.for_command()


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


def _failure_detail(stdout: str, stderr: str) -> str:
    message = (stderr or "").strip() or (stdout or "").strip()
    if not message:
        return ""
    return message.splitlines()[-1]


def run_command(
    command: Sequence[str],
    *,
    error: Type[StageError] = StageError,
    check: bool = True,
    interactive: bool = False,
    log_output: bool = True,
) -> CommandResult:
    """Run a command and return its captured result.

    Args:
        command: Argument list, never a shell string
        error: StageError subclass raised when ``check`` is set and the
            command exits non-zero or cannot be started
        check: Raise on failure instead of returning the result
        interactive: Inherit the terminal so the tool can prompt the operator
            (stdout/stderr are not captured)
        log_output: Log captured stdout/stderr at DEBUG

    Returns:
        CommandResult with exit status and captured output
    """
    argv = [str(part) for part in command]
    log.debug(f"Running command: {format_command(argv)}")
    try:
        if interactive:
            process = subprocess.run(argv, check=False)
            stdout, stderr = "", ""
        else:
            process = subprocess.run(
                argv,
                text=True,
                capture_output=True,
                check=False,
            )
            stdout, stderr = process.stdout or "", process.stderr or ""
    except OSError as exc:
        if check:
            raise error(f"Cannot execute {argv[0]}", command=argv, detail=str(exc)) from exc
        return CommandResult(argv=argv, returncode=127, stdout="", stderr=str(exc))

    if log_output or process.returncode != 0:
        if stdout.strip():
            log.debug(f"stdout: {stdout.strip()}")
        if stderr.strip():
            log.debug(f"stderr: {stderr.strip()}")
    log.debug(f"Command completed with return code {process.returncode}")

    result = CommandResult(
        argv=argv, returncode=process.returncode, stdout=stdout, stderr=stderr
    )
    if check and not result.ok:
        raise error(
            f"Command failed: {format_command(argv)}",
            command=argv,
            returncode=result.returncode,
            detail=_failure_detail(stdout, stderr),
        )
    return result


def run_with_progress(
    command: Sequence[str],
    *,
    error: Type[StageError] = StageError,
    total_bytes: Optional[int] = None,
    title: str = "Writing",
) -> CommandResult:
    """Run a long command, parsing ``N bytes`` progress lines from stderr.

    Progress is reported through a throttled logger, as a percentage when
    ``total_bytes`` is known. A non-zero exit raises ``error`` with the last
    stderr line as detail.
    """
    argv = [str(part) for part in command]
    log.debug(f"Running command: {format_command(argv)}")
    progress_log = ThrottledLogger(LoggerFactory.for_device(), interval_seconds=5.0)
    try:
        process = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise error(f"Cannot execute {argv[0]}", command=argv, detail=str(exc)) from exc

    stderr_lines: list[str] = []
    bytes_pattern = re.compile(r"(\d+)\s+bytes")
    while True:
        ready, _, _ = select.select([process.stderr], [], [], 1.0)
        line = process.stderr.readline() if ready else ""
        if line:
            stderr_lines.append(line)
            log.trace(f"stderr: {line.strip()}")
            match = bytes_pattern.search(line)
            if match:
                done = int(match.group(1))
                if total_bytes:
                    ratio = max(0.0, min(1.0, done / total_bytes))
                    progress_log.emit(title, f"{title}: {ratio * 100:.0f}%", final=ratio >= 1.0)
                else:
                    progress_log.emit(title, f"{title}: {done} bytes")
        if process.poll() is not None and not line:
            break

    remaining = process.stderr.read() if process.stderr else ""
    if remaining:
        stderr_lines.append(remaining)
    stdout_data = ""
    if process.stdout:
        stdout_data = process.stdout.read()
    process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        raise error(
            f"Command failed: {format_command(argv)}",
            command=argv,
            returncode=process.returncode,
            detail=_failure_detail(stdout_data, stderr_output),
        )
    return CommandResult(
        argv=argv, returncode=process.returncode, stdout=stdout_data, stderr=stderr_output
    )
