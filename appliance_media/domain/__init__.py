"""Domain models for the media assembly pipeline."""

from __future__ import annotations

from .models import (
    Artifact,
    BuildPlan,
    FirmwareMode,
    ImageInfo,
    Kit,
    MountState,
    PackageInfo,
    PackSpec,
    PowerAction,
    SourceMedia,
    TargetDisk,
)


__all__ = [
    "Artifact",
    "BuildPlan",
    "FirmwareMode",
    "ImageInfo",
    "Kit",
    "MountState",
    "PackageInfo",
    "PackSpec",
    "PowerAction",
    "SourceMedia",
    "TargetDisk",
]
