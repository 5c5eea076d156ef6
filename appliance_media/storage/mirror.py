"""Idempotent recursive directory mirroring.

``mirror(src, dst)`` makes the destination tree identical to the source,
except files matching the exclude patterns. Extraneous destination entries are
deleted. Nothing is retried: copies run for hours, and a transient failure must
surface immediately rather than stall.

Status codes follow robocopy's bit field, for every backend:
    0  no changes needed
    1  files copied
    2  extra destination entries removed
    4  mismatched entries found
    8+ unrecoverable failure (raised as MirrorError)

Backends:
    RobocopyBackend      Windows hosts (robocopy.exe /MIR)
    NativeMirrorBackend  any host; pure Python using shutil/filecmp
"""

from __future__ import annotations

import filecmp
import fnmatch
import os
import shutil
import subprocess
from enum import IntFlag
from pathlib import Path
from typing import Protocol, Sequence

from appliance_media.exceptions import MirrorError
from appliance_media.logging import LoggerFactory

log = LoggerFactory.for_mirror()

FAILURE_THRESHOLD = 8


class MirrorStatus(IntFlag):
    NO_CHANGES = 0
    COPIED = 1
    EXTRAS_REMOVED = 2
    MISMATCHED = 4
    FAILED = 8
    FATAL = 16

    @property
    def failed(self) -> bool:
        return int(self) >= FAILURE_THRESHOLD


class MirrorBackend(Protocol):
    def flags(self, exclude: Sequence[str]) -> list[str]: ...

    def run(self, source: Path, destination: Path, exclude: Sequence[str]) -> tuple[int, str]:
        """Mirror and return (status code, diagnostic text)."""


class RobocopyBackend:
    """Mirrors with ``robocopy /MIR`` and zero retries."""

    def __init__(self, executable: str = "robocopy.exe"):
        self.executable = executable

    def flags(self, exclude: Sequence[str]) -> list[str]:
        flags = ["/MIR", "/R:0", "/W:0", "/NP", "/NFL", "/NDL", "/NJH"]
        if exclude:
            flags += ["/XF", *exclude]
        return flags

    def run(self, source: Path, destination: Path, exclude: Sequence[str]) -> tuple[int, str]:
        command = [self.executable, str(source), str(destination), *self.flags(exclude)]
        log.debug(f"Running command: {' '.join(command)}")
        result = subprocess.run(
            command, text=True, capture_output=True, encoding="utf-8", errors="replace"
        )
        output = (result.stdout or "") + (result.stderr or "")
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        return result.returncode, lines[-1] if lines else ""


class NativeMirrorBackend:
    """Mirrors with the standard library, reporting robocopy-style status codes."""

    def flags(self, exclude: Sequence[str]) -> list[str]:
        return [f"exclude={pattern}" for pattern in exclude]

    def run(self, source: Path, destination: Path, exclude: Sequence[str]) -> tuple[int, str]:
        status = MirrorStatus.NO_CHANGES
        try:
            destination.mkdir(parents=True, exist_ok=True)
            for current, dirnames, filenames in os.walk(source):
                current_path = Path(current)
                relative = current_path.relative_to(source)
                target_dir = destination / relative
                dirnames.sort()

                expected = set(dirnames)
                for name in filenames:
                    if self._excluded(name, exclude):
                        continue
                    expected.add(name)
                    src_file = current_path / name
                    dst_file = target_dir / name
                    if dst_file.is_dir():
                        shutil.rmtree(dst_file)
                        status |= MirrorStatus.MISMATCHED
                    if not dst_file.exists() or not filecmp.cmp(
                        src_file, dst_file, shallow=False
                    ):
                        shutil.copy2(src_file, dst_file)
                        status |= MirrorStatus.COPIED

                for name in dirnames:
                    dst_dir = target_dir / name
                    if dst_dir.exists() and not dst_dir.is_dir():
                        dst_dir.unlink()
                        status |= MirrorStatus.MISMATCHED
                    dst_dir.mkdir(exist_ok=True)

                for entry in target_dir.iterdir():
                    if entry.name in expected or self._excluded(entry.name, exclude):
                        continue
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                    status |= MirrorStatus.EXTRAS_REMOVED
        except OSError as e:
            return int(MirrorStatus.FATAL), str(e)
        return int(status), ""

    @staticmethod
    def _excluded(name: str, exclude: Sequence[str]) -> bool:
        return any(fnmatch.fnmatch(name.lower(), pattern.lower()) for pattern in exclude)


class DirectoryMirror:
    """Synchronizes directory trees through a mirror backend."""

    def __init__(self, backend: MirrorBackend | None = None):
        self.backend = backend or self.default_backend()

    @staticmethod
    def default_backend() -> MirrorBackend:
        if shutil.which("robocopy") or shutil.which("robocopy.exe"):
            return RobocopyBackend()
        return NativeMirrorBackend()

    def mirror(self, source, destination, exclude: Sequence[str] = ()) -> MirrorStatus:
        """Make ``destination`` identical to ``source``.

        Raises:
            MirrorError: The source is missing or the backend reported a failure
        """
        source = Path(source)
        destination = Path(destination)
        flags = self.backend.flags(exclude)
        if not source.is_dir():
            raise MirrorError(source, destination, flags, int(MirrorStatus.FATAL),
                              "source directory does not exist")

        log.info(f"Mirroring {source} to {destination}")
        code, detail = self.backend.run(source, destination, list(exclude))
        if code >= FAILURE_THRESHOLD:
            raise MirrorError(source, destination, flags, code, detail or None)
        status = MirrorStatus(code)
        if status == MirrorStatus.NO_CHANGES:
            log.debug(f"{destination} already up to date")
        else:
            log.debug(f"Mirror of {source} finished with status {code}")
        return status
