from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from ..errors import ExternalToolFailure

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]

DEFAULT_TIMEOUT_S = 1800.0


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


# Anything with run_cmd's signature; tests substitute a recorder.
Runner = Callable[..., CmdResult]


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_S,
    on_line: Optional[LineSink] = None,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - With ``on_line`` the merged stdout/stderr is streamed line by line as it
      arrives; otherwise both are captured.
    - A timeout is reported exactly like a non-zero exit.
    """

    argv_list = list(argv)
    logger.info("CMD %s", fmt_argv(argv_list))

    full_env = dict(os.environ, **(env or {}))

    if on_line is not None:
        returncode, stdout, stderr, timed_out = _run_streaming(
            argv_list, cwd=cwd, env=full_env, input_text=input_text, timeout=timeout, on_line=on_line
        )
    else:
        try:
            p = subprocess.run(
                argv_list,
                input=input_text,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=full_env,
                timeout=timeout,
            )
            returncode, stdout, stderr, timed_out = p.returncode, p.stdout, p.stderr, False
        except subprocess.TimeoutExpired as e:
            returncode, timed_out = -1, True
            stdout = _decode(e.stdout)
            stderr = _decode(e.stderr)
        except OSError as e:
            raise ExternalToolFailure(
                f"Command could not be started: {fmt_argv(argv_list)}",
                argv=argv_list,
                output=str(e),
            ) from e

        if stdout:
            logger.debug("STDOUT %s", stdout.strip())
        if stderr:
            logger.debug("STDERR %s", stderr.strip())

    if timed_out:
        raise ExternalToolFailure(
            f"Command timed out after {timeout:.0f}s: {fmt_argv(argv_list)}",
            argv=argv_list,
            output=stdout + stderr,
        )

    if check and returncode != 0:
        raise ExternalToolFailure(
            f"Command failed ({returncode}): {fmt_argv(argv_list)}",
            argv=argv_list,
            returncode=returncode,
            output=stdout + stderr,
        )

    return CmdResult(argv=argv_list, returncode=returncode, stdout=stdout, stderr=stderr)


def _run_streaming(
    argv: list[str],
    *,
    cwd: str | None,
    env: Mapping[str, str],
    input_text: str | None,
    timeout: float | None,
    on_line: LineSink,
) -> tuple[int, str, str, bool]:
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            cwd=cwd,
            env=dict(env),
        )
    except OSError as e:
        raise ExternalToolFailure(
            f"Command could not be started: {fmt_argv(argv)}", argv=argv, output=str(e)
        ) from e

    expired = threading.Event()

    def _kill() -> None:
        expired.set()
        proc.kill()

    watchdog = threading.Timer(timeout, _kill) if timeout else None
    if watchdog is not None:
        watchdog.daemon = True
        watchdog.start()

    lines: list[str] = []
    try:
        if input_text is not None and proc.stdin is not None:
            proc.stdin.write(input_text)
            proc.stdin.close()
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.append(line)
            logger.debug("%s", line.rstrip("\n"))
            on_line(line)
        returncode = proc.wait()
    finally:
        if watchdog is not None:
            watchdog.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()

    return returncode, "".join(lines), "", expired.is_set()


def _decode(data: object) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)
