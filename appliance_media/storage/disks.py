"""Target disk enumeration and preparation using the Windows storage cmdlets.

Disk Detection:
    ``Get-Disk`` output is converted to JSON and parsed into TargetDisk
    objects. Candidates are filtered for safety:

    1. Bus type must be in the allowed set (default: USB)
    2. Must NOT be the boot disk
    3. Must NOT be the system disk

Preparation:
    The selected disk is cleared, initialized as MBR and given one active
    FAT32 partition of at most 32 GiB. That layout boots on both UEFI and BIOS
    firmware. The new volume's root path is returned.

Nothing here asks for confirmation; callers must confirm first.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from appliance_media.domain import TargetDisk
from appliance_media.exceptions import CommandError, DiskError
from appliance_media.logging import LoggerFactory

from .commands import ps_quote, run_powershell

log = LoggerFactory.for_disk()

FAT32_MAX_BYTES = 32 * 1024**3

LIST_DISKS_SCRIPT = (
    "Get-Disk | Select-Object Number,FriendlyName,BusType,Size,PartitionStyle,"
    "IsBoot,IsSystem | ConvertTo-Json -Compress"
)


class DiskService(Protocol):
    def list_disks(self) -> list[TargetDisk]: ...

    def prepare_disk(self, disk: TargetDisk, label: str) -> Path: ...


def parse_disks(output: str) -> list[TargetDisk]:
    """Parse ``ConvertTo-Json`` output; a single disk is emitted as an object."""
    output = output.strip()
    if not output:
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise DiskError(f"Unable to parse disk list: {e}") from e
    if isinstance(data, dict):
        data = [data]
    disks = []
    for record in data:
        try:
            disks.append(TargetDisk.from_json(record))
        except (KeyError, TypeError, ValueError) as e:
            log.debug(f"Skipping unreadable disk record {record!r}: {e}")
    return disks


def filter_candidates(
    disks: Iterable[TargetDisk], allowed_bus_types: Sequence[str]
) -> list[TargetDisk]:
    allowed = {bus.upper() for bus in allowed_bus_types}
    candidates = []
    for disk in disks:
        if disk.is_boot or disk.is_system:
            log.debug(f"Excluding disk {disk.number}: boot/system disk")
            continue
        if disk.bus_type.upper() not in allowed:
            log.debug(f"Excluding disk {disk.number}: bus type {disk.bus_type}")
            continue
        candidates.append(disk)
    return sorted(candidates, key=lambda disk: disk.number)


class PowerShellDiskService:
    def list_disks(self) -> list[TargetDisk]:
        try:
            return parse_disks(run_powershell(LIST_DISKS_SCRIPT))
        except CommandError as e:
            raise DiskError(f"Unable to list disks: {e}") from e

    def prepare_disk(self, disk: TargetDisk, label: str) -> Path:
        """Wipe ``disk`` and create one bootable FAT32 volume on it."""
        size = min(disk.size_bytes, FAT32_MAX_BYTES)
        size_arg = "-UseMaximumSize" if size == disk.size_bytes else f"-Size {size}"
        script = "; ".join(
            [
                "$ErrorActionPreference = 'Stop'",
                f"$disk = Get-Disk -Number {disk.number}",
                "if ($disk.PartitionStyle -ne 'RAW') "
                "{ $disk | Clear-Disk -RemoveData -RemoveOEM -Confirm:$false }",
                f"Initialize-Disk -Number {disk.number} -PartitionStyle MBR",
                f"$part = New-Partition -DiskNumber {disk.number} {size_arg} "
                "-IsActive -AssignDriveLetter",
                "$part | Format-Volume -FileSystem FAT32 "
                f"-NewFileSystemLabel {ps_quote(label[:11])} -Confirm:$false | Out-Null",
                "(Get-Partition -DiskNumber "
                f"{disk.number} -PartitionNumber $part.PartitionNumber).DriveLetter",
            ]
        )
        log.warning(f"Erasing {disk.format_label()}")
        try:
            output = run_powershell(script)
        except CommandError as e:
            raise DiskError(f"Failed to prepare disk {disk.number}: {e}") from e
        letter = output.strip().splitlines()[-1].strip() if output.strip() else ""
        if len(letter) != 1 or not letter.isalpha():
            raise DiskError(f"Disk {disk.number} was formatted but has no drive letter")
        root = Path(f"{letter.upper()}:\\")
        log.info(f"Disk {disk.number} ready at {root}")
        return root
