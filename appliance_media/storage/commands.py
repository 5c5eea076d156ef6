"""Command execution utilities shared by the capability adapters."""

from __future__ import annotations

import subprocess
from typing import Optional, Sequence

from appliance_media.exceptions import CommandError
from appliance_media.logging import get_logger

log = get_logger(source="command", tags=["command"])


def _excerpt(text: str, limit: int = 400) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def run_command(
    command: Sequence[str],
    *,
    input_text: Optional[str] = None,
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command without raising on a non-zero exit status."""
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
    )
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(
    command: Sequence[str],
    *,
    input_text: Optional[str] = None,
    log_output: bool = True,
) -> str:
    """Run a command and raise CommandError if it fails."""
    result = run_command(command, input_text=input_text, log_output=log_output)
    if result.returncode != 0:
        message = _excerpt(result.stderr or "") or _excerpt(result.stdout or "")
        raise CommandError(command, result.returncode, message)
    return result.stdout


def run_powershell(script: str) -> str:
    """Run a PowerShell snippet non-interactively and return its stdout."""
    return run_checked_command(
        [
            "powershell.exe",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            script,
        ]
    )


def ps_quote(value) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"
