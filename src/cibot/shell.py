from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
import logging
import os
import subprocess


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


LOGGER = logging.getLogger("cibot.shell")
_MASK = "***"


def mask_secrets(text: str, secrets: Iterable[str | None]) -> str:
    masked = text
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, _MASK)
    return masked


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run_capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    secrets: tuple[str, ...] = (),
) -> CommandResult:
    """Run a command and return its exit code and output without checking the status.

    `env` entries are layered over the current process environment. When
    `timeout` expires the child is killed and `CommandTimeoutError` is raised.
    """
    command_text = mask_secrets(" ".join(argv), secrets)
    merged_env: dict[str, str] | None = None
    if env is not None:
        merged_env = dict(os.environ)
        merged_env.update(env)
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            env=merged_env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            command_text,
            timeout,
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout} seconds\ncmd: {command_text}",
            timeout_seconds=float(timeout or 0),
        ) from exc
    return CommandResult(
        exit_code=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    secrets: tuple[str, ...] = (),
) -> str:
    result = run_capture(
        argv,
        cwd=cwd,
        input_text=input_text,
        env=env,
        timeout=timeout,
        secrets=secrets,
    )
    if check and result.exit_code != 0:
        command_text = mask_secrets(" ".join(argv), secrets)
        stdout = mask_secrets(result.stdout, secrets)
        stderr = mask_secrets(result.stderr, secrets)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command_text,
            result.exit_code,
            _preview(stderr),
            _preview(stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command_text}\n"
            f"exit: {result.exit_code}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
    return result.stdout
