"""Custom exceptions for the media assembly pipeline.

This module defines a hierarchy of exceptions so each stage can report exactly
which requirement failed and where to obtain a fix, instead of a generic error.

Exception Hierarchy:
    MediaBuildError (base)
        ├── PreconditionError
        ├── ValidationError
        │   ├── SourceMediaError
        │   │   ├── MissingMediaEntriesError
        │   │   ├── ConsumerMediaError
        │   │   ├── EditionNotFoundError
        │   │   ├── IotMediaRequiredError
        │   │   ├── IotMediaNotAllowedError
        │   │   ├── ArchitectureMismatchError
        │   │   └── VersionMismatchError
        │   ├── LicenseKeyError
        │   ├── KitError
        │   │   └── KitCompatibilityError
        │   └── PackageMismatchError
        ├── AcquisitionError
        │   ├── RedirectLimitError
        │   ├── DownloadStatusError
        │   └── SignatureError
        ├── DecisionGraphError
        ├── CommandError
        ├── DiskError
        ├── MirrorError
        ├── ImageError
        │   ├── ImageServicingError
        │   └── ImageStateError
        └── ManifestError
            └── UnsupportedLayoutError

Usage:
    from appliance_media.exceptions import VersionMismatchError

    if image.version != required_version:
        raise VersionMismatchError(path, required_version, image.version)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Sequence


class MediaBuildError(Exception):
    """Base exception for all media build failures."""


class PreconditionError(MediaBuildError):
    """The host environment cannot run the pipeline."""

    def __init__(self, requirement: str, remediation: str = ""):
        self.requirement = requirement
        self.remediation = remediation
        msg = f"Host requirement not met: {requirement}"
        if remediation:
            msg += f". {remediation}"
        super().__init__(msg)


class ValidationError(MediaBuildError):
    """Base exception for rejected inputs."""


# ==============================================================================
# Source media
# ==============================================================================


class SourceMediaError(ValidationError):
    """Base exception for installation media that cannot be used."""

    def __init__(self, path, message: str):
        self.path = Path(path)
        super().__init__(f"{path}: {message}")


class MissingMediaEntriesError(SourceMediaError):
    """Expected top-level entries of installation media are missing."""

    def __init__(self, path, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(
            path,
            "not an installation media folder, missing "
            + ", ".join(self.missing),
        )


class ConsumerMediaError(SourceMediaError):
    """Media was produced by the consumer media creation tool."""

    def __init__(self, path):
        super().__init__(
            path,
            "media contains sources/install.esd, which means it was created by "
            "the consumer Media Creation Tool. Download the Enterprise ISO from "
            "the volume licensing or OEM portal instead",
        )


class EditionNotFoundError(SourceMediaError):
    """No image named for the required edition exists in install.wim."""

    def __init__(self, path, edition: str, available: Sequence[str] = ()):
        self.edition = edition
        self.available = list(available)
        message = f"install.wim does not contain a '{edition}' image"
        if self.available:
            message += f" (found: {', '.join(self.available)})"
        super().__init__(path, message)


class IotMediaRequiredError(SourceMediaError):
    """OEM builds require IoT Enterprise media."""

    def __init__(self, path):
        super().__init__(
            path,
            "OEM media must be built from IoT Enterprise media, but this is "
            "plain Enterprise media. Obtain IoT Enterprise media from your OEM "
            "distributor, or rerun without --oem",
        )


class IotMediaNotAllowedError(SourceMediaError):
    """Non-OEM builds must not use IoT Enterprise media."""

    def __init__(self, path):
        super().__init__(
            path,
            "this is IoT Enterprise media, which is only valid for OEM builds. "
            "Use Enterprise media from volume licensing, or rerun with --oem",
        )


class ArchitectureMismatchError(SourceMediaError):
    """Media architecture is not x64."""

    def __init__(self, path, architecture: str):
        self.architecture = architecture
        super().__init__(
            path, f"media architecture is {architecture}, only x64 is supported"
        )


class VersionMismatchError(SourceMediaError):
    """Media build version differs from the version the kit requires."""

    def __init__(self, path, required: str, actual: str):
        self.required = required
        self.actual = actual
        super().__init__(
            path,
            f"media version {actual} does not match the version {required} "
            f"required by the deployment kit",
        )


# ==============================================================================
# License key, kit and packages
# ==============================================================================


class LicenseKeyError(ValidationError):
    """License key does not have the expected shape."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            "License key must be five groups of five letters or digits "
            "separated by hyphens (XXXXX-XXXXX-XXXXX-XXXXX-XXXXX)"
        )


class KitError(ValidationError):
    """Deployment kit is malformed."""


class KitCompatibilityError(KitError):
    """Deployment kit requires a newer pipeline revision."""

    def __init__(self, required_revision: int, supported_revision: int):
        self.required_revision = required_revision
        self.supported_revision = supported_revision
        super().__init__(
            f"Deployment kit requires compatibility revision {required_revision}, "
            f"but this tool supports revision {supported_revision}. "
            f"Update this tool before using the kit"
        )


class PackageMismatchError(ValidationError):
    """Language pack or update does not match the target image."""

    def __init__(self, package_path, reason: str):
        self.package_path = Path(package_path)
        self.reason = reason
        super().__init__(f"Package {self.package_path.name} rejected: {reason}")


# ==============================================================================
# Acquisition
# ==============================================================================


class AcquisitionError(MediaBuildError):
    """Base exception for download failures."""


class RedirectLimitError(AcquisitionError):
    """Redirect chain exceeded the fixed bound."""

    def __init__(self, url: str, limit: int):
        self.url = url
        self.limit = limit
        super().__init__(f"Too many redirects (more than {limit}) resolving {url}")


class DownloadStatusError(AcquisitionError):
    """Server answered with a non-success status."""

    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"Unable to download {url}: HTTP status {status}")


class SignatureError(AcquisitionError):
    """Artifact signature is absent or invalid. The artifact was deleted."""

    def __init__(self, path, status: str = ""):
        self.path = Path(path)
        self.status = status
        msg = f"Signature verification failed for {self.path.name}"
        if status:
            msg += f" ({status})"
        super().__init__(msg + "; the file has been deleted")


# ==============================================================================
# Engine, commands and storage
# ==============================================================================


class DecisionGraphError(MediaBuildError):
    """Decision graph document is malformed or cannot be traversed."""


class CommandError(MediaBuildError):
    """External command exited with a failure status."""

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) "
            f"with exit code {returncode}: {message}"
        )


class DiskError(MediaBuildError):
    """Target disk enumeration or preparation failed."""


class MirrorError(MediaBuildError):
    """Bulk copy reported an unrecoverable condition."""

    def __init__(
        self,
        source,
        destination,
        flags: Sequence[str],
        status: int,
        detail: Optional[str] = None,
    ):
        self.source = Path(source)
        self.destination = Path(destination)
        self.flags = list(flags)
        self.status = status
        self.detail = detail
        msg = (
            f"Mirror of {self.source} to {self.destination} failed "
            f"(flags: {' '.join(self.flags) or '-'}, status {status})"
        )
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ImageError(MediaBuildError):
    """Base exception for OS image servicing."""


class ImageServicingError(ImageError):
    """Image servicing command failed."""


class ImageStateError(ImageError):
    """Mounted image handle used after it reached a terminal state."""


class ManifestError(MediaBuildError):
    """Provisioning manifest does not have the expected structure."""


class UnsupportedLayoutError(ManifestError):
    """Partition layout cannot be converted for BIOS firmware."""

    def __init__(self, partition_count: int):
        self.partition_count = partition_count
        super().__init__(
            "BIOS conversion requires a two-partition UEFI layout "
            f"(EFI + OS), but the manifest declares {partition_count} partition(s)"
        )
