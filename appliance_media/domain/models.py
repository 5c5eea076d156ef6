"""Domain model for the media assembly pipeline.

Typed, immutable objects replace the raw dicts read from the kit descriptor,
the disk enumeration JSON and the servicing tool output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional


# ==============================================================================
# Enumerations
# ==============================================================================


class PowerAction(Enum):
    """What sysprep does after generalizing."""

    REBOOT = "reboot"
    SHUTDOWN = "shutdown"

    @property
    def flag(self) -> str:
        return f"/{self.value}"


class FirmwareMode(Enum):
    """Boot firmware of the appliance the media is built for."""

    UEFI = "UEFI"
    BIOS = "BIOS"

    @classmethod
    def parse(cls, value: Optional[str]) -> FirmwareMode:
        if not value:
            return cls.UEFI
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown firmware mode: {value}") from None


class MountState(Enum):
    """Lifecycle of a mounted OS image."""

    MOUNTED = "mounted"
    COMMITTED = "committed"
    DISCARDED = "discarded"


# ==============================================================================
# Kit Domain
# ==============================================================================


def _relative_path(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Kit field '{key}' must be a non-empty path")
    normalized = value.replace("\\", "/").strip("/")
    parts = PurePosixPath(normalized).parts
    if ".." in parts:
        raise ValueError(f"Kit field '{key}' must stay inside the media: {value}")
    return normalized


@dataclass(frozen=True)
class PackSpec:
    """An optional language pack the kit knows how to fetch."""

    pack_id: str
    url: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PackSpec:
        pack_id = data.get("id")
        url = data.get("url")
        if not isinstance(pack_id, str) or not pack_id:
            raise ValueError("Pack entry requires an 'id'")
        if not isinstance(url, str) or not url:
            raise ValueError(f"Pack '{pack_id}' requires a 'url'")
        return cls(pack_id=pack_id, url=url, description=str(data.get("description", "")))


@dataclass(frozen=True)
class Kit:
    """Immutable descriptor of the vendor deployment payload.

    Loaded once from ``kit.json`` at the root of the extracted kit package.
    Paths named ``*_destination`` and ``*_manifest`` are relative to the root
    of the target media.
    """

    name: str
    version: str
    os_version: str
    root: Path
    payload: str
    payload_destination: str
    driver_destination: str
    manifest: str
    outer_manifest: str = "AutoUnattend.xml"
    inner_manifest: str = "$OEM$/$$/Panther/unattend.xml"
    pack_version: Optional[str] = None
    updates: tuple[str, ...] = ()
    packs: tuple[PackSpec, ...] = ()
    drivers: Mapping[str, Any] = field(default_factory=dict)
    transient_directories: tuple[str, ...] = ()

    @property
    def payload_path(self) -> Path:
        return self.root / self.payload

    @property
    def manifest_path(self) -> Path:
        return self.root / self.manifest

    @property
    def os_release(self) -> str:
        """``os_version`` without the update build: ``10.0.19045.3803`` -> ``10.0.19045``."""
        return ".".join(self.os_version.split(".")[:3])

    @property
    def required_pack_version(self) -> str:
        """Version prefix a language pack or update must carry.

        Packages are built per release, not per cumulative update, so the
        default is ``os_release``.
        """
        return self.pack_version or self.os_release

    def find_pack(self, pack_id: str) -> Optional[PackSpec]:
        for pack in self.packs:
            if pack.pack_id.lower() == pack_id.lower():
                return pack
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], root: Path) -> Kit:
        """Build a kit from the parsed ``kit.json`` document.

        Raises:
            ValueError: If a required field is missing or has the wrong type
        """
        if not isinstance(data, Mapping):
            raise ValueError("Kit descriptor must be a JSON object")
        for key in ("name", "version", "os_version"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"Kit field '{key}' is required")

        updates = data.get("updates", [])
        if not isinstance(updates, list) or not all(isinstance(u, str) for u in updates):
            raise ValueError("Kit field 'updates' must be a list of URLs")
        packs = data.get("packs", [])
        if not isinstance(packs, list):
            raise ValueError("Kit field 'packs' must be a list")
        drivers = data.get("drivers")
        if not isinstance(drivers, Mapping):
            raise ValueError("Kit field 'drivers' must describe a decision graph")
        transient = data.get("transient_directories", ["System Volume Information"])
        if not isinstance(transient, list):
            raise ValueError("Kit field 'transient_directories' must be a list")

        optional: dict[str, Any] = {}
        for key in ("outer_manifest", "inner_manifest"):
            if key in data:
                optional[key] = _relative_path(data[key], key)

        return cls(
            name=data["name"],
            version=data["version"],
            os_version=data["os_version"],
            root=Path(root),
            payload=_relative_path(data.get("payload", "payload"), "payload"),
            payload_destination=_relative_path(
                data.get("payload_destination"), "payload_destination"
            ),
            driver_destination=_relative_path(
                data.get("driver_destination"), "driver_destination"
            ),
            manifest=_relative_path(data.get("manifest"), "manifest"),
            pack_version=data.get("pack_version"),
            updates=tuple(updates),
            packs=tuple(PackSpec.from_dict(p) for p in packs),
            drivers=dict(drivers),
            transient_directories=tuple(
                _relative_path(d, "transient_directories") for d in transient
            ),
            **optional,
        )


# ==============================================================================
# Source media and image metadata
# ==============================================================================


@dataclass(frozen=True)
class ImageInfo:
    """One image inside a monolithic OS image file."""

    index: int
    name: str
    edition_id: str = ""
    architecture: str = ""
    version: str = ""

    @property
    def is_iot(self) -> bool:
        return "iot" in self.edition_id.lower() or "iot" in self.name.lower()


@dataclass(frozen=True)
class SourceMedia:
    """A validated OS installation tree.

    Only ``validate_source_media`` constructs these.
    """

    path: Path
    image_name: str
    image_index: int
    edition_id: str
    architecture: str
    version: str
    is_iot: bool

    @property
    def install_image(self) -> Path:
        return self.path / "sources" / "install.wim"


@dataclass(frozen=True)
class PackageInfo:
    """Metadata reported for a servicing package (.cab/.msu)."""

    path: Path
    name: str
    architecture: str
    version: str
    release_type: str = ""
    custom_properties: Mapping[str, str] = field(default_factory=dict)


# ==============================================================================
# Artifacts
# ==============================================================================


@dataclass(frozen=True)
class Artifact:
    """A downloaded file."""

    url: str
    resolved_url: str
    local_path: Path
    verified: bool = False

    @property
    def name(self) -> str:
        return self.local_path.name


# ==============================================================================
# Target disk
# ==============================================================================


@dataclass(frozen=True)
class TargetDisk:
    """A disk that may receive the media."""

    number: int
    friendly_name: str
    bus_type: str
    size_bytes: int
    partition_style: str = ""
    is_boot: bool = False
    is_system: bool = False

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Format a human-readable label, e.g. "Disk 2: SanDisk Ultra (28.7GB, USB)"."""
        name = self.friendly_name.strip() or "Unknown disk"
        return f"Disk {self.number}: {name} ({self.size_gb:.1f}GB, {self.bus_type})"

    @classmethod
    def from_json(cls, disk: Mapping[str, Any]) -> TargetDisk:
        """Convert one ``Get-Disk`` JSON record to a TargetDisk.

        Raises:
            KeyError: If the disk number is missing
            ValueError: If the size cannot be converted to int
        """
        return cls(
            number=int(disk["Number"]),
            friendly_name=str(disk.get("FriendlyName") or ""),
            bus_type=str(disk.get("BusType") or ""),
            size_bytes=int(disk.get("Size") or 0),
            partition_style=str(disk.get("PartitionStyle") or ""),
            is_boot=bool(disk.get("IsBoot")),
            is_system=bool(disk.get("IsSystem")),
        )


# ==============================================================================
# Build plan
# ==============================================================================


@dataclass(frozen=True)
class BuildPlan:
    """Everything resolved before the destructive stage begins."""

    kit: Kit
    source: SourceMedia
    disk: TargetDisk
    is_oem: bool
    firmware_mode: FirmwareMode
    driver_paths: tuple[Path, ...]
    packages: tuple[PackageInfo, ...] = ()
    license_key: Optional[str] = None
    variables: Mapping[str, str] = field(default_factory=dict)

    def summary_rows(self) -> list[tuple[str, str]]:
        rows = [
            ("Deployment kit", f"{self.kit.name} {self.kit.version}"),
            ("Source media", f"{self.source.path} ({self.source.image_name} {self.source.version})"),
            ("Target disk", self.disk.format_label()),
            ("Edition", "IoT Enterprise (OEM)" if self.is_oem else "Enterprise"),
            ("Firmware", self.firmware_mode.value),
            ("Drivers", ", ".join(p.name for p in self.driver_paths) or "-"),
            ("Packages", ", ".join(p.path.name for p in self.packages) or "-"),
        ]
        if self.is_oem:
            rows.append(("License key", self.license_key or "-"))
        for key, value in sorted(self.variables.items()):
            rows.append((f"Variable {key}", value))
        return rows
