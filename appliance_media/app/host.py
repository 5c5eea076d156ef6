"""Host preconditions checked before any artifact is acquired."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Optional

import psutil

from appliance_media.exceptions import PreconditionError
from appliance_media.logging import LoggerFactory

log = LoggerFactory.for_system()

LONG_PATHS_KEY = r"SYSTEM\CurrentControlSet\Control\FileSystem"
LONG_PATHS_VALUE = "LongPathsEnabled"
FAT_FILESYSTEMS = {"fat", "fat12", "fat16", "fat32", "vfat", "msdos"}


def is_elevated() -> bool:
    if sys.platform == "win32":
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except OSError:
            return False
    return os.geteuid() == 0


def is_64bit_process() -> bool:
    return sys.maxsize > 2**32


def is_interactive_session() -> bool:
    """True when imported into a REPL rather than started as a program."""
    return hasattr(sys, "ps1") or bool(sys.flags.interactive)


def long_paths_enabled() -> bool:
    if sys.platform != "win32":
        return True
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, LONG_PATHS_KEY) as key:
            value, _ = winreg.QueryValueEx(key, LONG_PATHS_VALUE)
    except OSError:
        return False
    return value == 1


def _existing_ancestor(path: Path) -> Path:
    path = Path(path).expanduser().absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def filesystem_type(path: Path) -> Optional[str]:
    """Return the filesystem type of the volume holding ``path``."""
    target = str(_existing_ancestor(path)).lower()
    best = None
    for partition in psutil.disk_partitions(all=True):
        mountpoint = partition.mountpoint.lower()
        if not target.startswith(mountpoint):
            continue
        if best is None or len(mountpoint) > len(best.mountpoint):
            best = partition
    return best.fstype if best else None


def free_bytes(path: Path) -> int:
    return psutil.disk_usage(str(_existing_ancestor(path))).free


def check_host(
    scratch_dir: Path,
    min_scratch_bytes: int,
    allow_low_space: Optional[Callable[[str], bool]] = None,
) -> None:
    """Verify the process and host can run the pipeline.

    ``allow_low_space`` is asked whether to continue when the scratch volume
    has less free space than ``min_scratch_bytes``; without it low space is
    fatal.

    Raises:
        PreconditionError: The first requirement that is not met
    """
    if is_interactive_session():
        raise PreconditionError(
            "must run as a program", "Start it with the appliance-media command"
        )
    if not is_elevated():
        raise PreconditionError(
            "administrator privileges", "Run the tool from an elevated prompt"
        )
    if not is_64bit_process():
        raise PreconditionError("64-bit interpreter", "Install a 64-bit Python")
    if not long_paths_enabled():
        raise PreconditionError(
            "long path support",
            f"Set HKLM\\{LONG_PATHS_KEY}\\{LONG_PATHS_VALUE} to 1 and sign in again",
        )

    fstype = (filesystem_type(scratch_dir) or "").lower()
    if fstype in FAT_FILESYSTEMS:
        raise PreconditionError(
            f"scratch directory {scratch_dir} is on a {fstype} volume",
            "Use an NTFS volume that supports long names and files over 4 GiB",
        )

    free = free_bytes(scratch_dir)
    if free < min_scratch_bytes:
        message = (
            f"Only {free / 1024**3:.1f} GiB free at {scratch_dir}; "
            f"{min_scratch_bytes / 1024**3:.1f} GiB is recommended"
        )
        log.warning(message)
        if allow_low_space is None or not allow_low_space(message):
            raise PreconditionError(
                "free scratch space", "Free up space or choose another --scratch directory"
            )
        log.warning("Continuing with low scratch space at operator request")
    log.info("Host preconditions met")
