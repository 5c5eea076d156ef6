"""Authenticode signature checks for downloaded artifacts."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path
from typing import Protocol

from appliance_media.logging import LoggerFactory
from appliance_media.storage.commands import ps_quote, run_command

log = LoggerFactory.for_fetch()


class SignatureVerifier(Protocol):
    def check(self, path: Path) -> tuple[bool, str]:
        """Return (is_valid, status text) for the file at ``path``."""


class AuthenticodeVerifier:
    """Checks Authenticode signatures.

    Windows hosts ask PowerShell's ``Get-AuthenticodeSignature``; elsewhere
    ``osslsigncode verify`` is used.
    """

    def __init__(self, use_powershell: bool | None = None):
        if use_powershell is None:
            use_powershell = sys.platform == "win32"
        self.use_powershell = use_powershell

    def check(self, path: Path) -> tuple[bool, str]:
        if self.use_powershell:
            result = run_command(
                [
                    "powershell.exe",
                    "-NoProfile",
                    "-NonInteractive",
                    "-Command",
                    f"(Get-AuthenticodeSignature -LiteralPath {ps_quote(path)}).Status",
                ]
            )
            status = result.stdout.strip() or "Unknown"
            return result.returncode == 0 and status == "Valid", status

        if shutil.which("osslsigncode") is None:
            return False, "osslsigncode not installed"
        result = run_command(["osslsigncode", "verify", "-in", str(path)])
        if result.returncode == 0:
            return True, "Valid"
        lines = (result.stderr or result.stdout or "").strip().splitlines()
        return False, lines[-1] if lines else f"exit code {result.returncode}"
