"""Compatibility checks run before anything destructive happens.

This module checks:
- Installation media shape, edition, architecture and version
- License key shape
- Deployment kit compatibility revision
- Language pack and update metadata

Media and package checks raise specific exceptions from the exceptions module,
so the operator learns which requirement failed and how to fix it. The
boolean helpers log that message and return False for callers that re-prompt.

Example:
    from appliance_media.storage.validation import validate_source_media

    try:
        source = validate_source_media(path, kit.os_version, is_oem, servicing)
    except IotMediaRequiredError:
        ...
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

from appliance_media.domain import ImageInfo, PackageInfo, SourceMedia
from appliance_media.exceptions import (
    ArchitectureMismatchError,
    ConsumerMediaError,
    EditionNotFoundError,
    IotMediaNotAllowedError,
    IotMediaRequiredError,
    LicenseKeyError,
    MissingMediaEntriesError,
    PackageMismatchError,
    SourceMediaError,
    VersionMismatchError,
)
from appliance_media.logging import get_logger

if TYPE_CHECKING:
    from .image import ImageServicing
    from .manifest import Manifest

log = get_logger(source="validate", tags=["validation"])

REQUIRED_MEDIA_ENTRIES = ("boot", "efi", "sources", "bootmgr", "setup.exe")
CONSUMER_IMAGE = Path("sources") / "install.esd"
INSTALL_IMAGE = Path("sources") / "install.wim"

ENTERPRISE_IMAGE_NAME = "Windows 10 Enterprise"
IOT_ENTERPRISE_IMAGE_NAME = "Windows 10 IoT Enterprise"
REQUIRED_ARCHITECTURE = "x64"
PACKAGE_ARCHITECTURE = "amd64"

LICENSE_KEY_PATTERN = re.compile(r"^[A-Z0-9]{5}(-[A-Z0-9]{5}){4}$", re.IGNORECASE)
COMPATIBILITY_MARKER = re.compile(r"CompatibilityRevision\s*[:=]\s*(\d+)", re.IGNORECASE)


def _find_image(images: Sequence[ImageInfo], name: str) -> Optional[ImageInfo]:
    for image in images:
        if image.name == name:
            return image
    return None


def validate_source_media(
    path,
    required_version: str,
    is_oem: bool,
    servicing: ImageServicing,
) -> SourceMedia:
    """Validate an installation media tree and describe the edition to deploy.

    Args:
        path: Root of the installation media (drive or extracted ISO)
        required_version: Exact build the kit requires including the update
            level, e.g. 10.0.19045.3803
        is_oem: Whether IoT Enterprise (OEM) media is required
        servicing: Image metadata capability

    Raises:
        MissingMediaEntriesError: Not an installation media tree
        ConsumerMediaError: Media created by the consumer Media Creation Tool
        EditionNotFoundError: install.wim lacks the required edition image
        IotMediaRequiredError: OEM build but plain Enterprise media
        IotMediaNotAllowedError: Non-OEM build but IoT Enterprise media
        ArchitectureMismatchError: Media is not x64
        VersionMismatchError: Media build differs from required_version
    """
    root = Path(path)
    if not root.is_dir():
        raise SourceMediaError(root, "path does not exist or is not a folder")

    missing = [entry for entry in REQUIRED_MEDIA_ENTRIES if not (root / entry).exists()]
    if missing:
        raise MissingMediaEntriesError(root, missing)

    # The consumer tool ships install.esd; checked before install.wim so the
    # operator gets the specific explanation.
    if (root / CONSUMER_IMAGE).exists():
        raise ConsumerMediaError(root)
    if not (root / INSTALL_IMAGE).is_file():
        raise MissingMediaEntriesError(root, [str(INSTALL_IMAGE)])

    images = servicing.list_images(root / INSTALL_IMAGE)
    log.debug(f"Images in {root / INSTALL_IMAGE}: {[image.name for image in images]}")
    enterprise = _find_image(images, ENTERPRISE_IMAGE_NAME)
    iot = _find_image(images, IOT_ENTERPRISE_IMAGE_NAME)

    if is_oem:
        if iot is None:
            if enterprise is not None:
                raise IotMediaRequiredError(root)
            raise EditionNotFoundError(
                root, IOT_ENTERPRISE_IMAGE_NAME, [image.name for image in images]
            )
        selected = iot
    else:
        if enterprise is None:
            if iot is not None:
                raise IotMediaNotAllowedError(root)
            raise EditionNotFoundError(
                root, ENTERPRISE_IMAGE_NAME, [image.name for image in images]
            )
        selected = enterprise

    details = servicing.describe_image(root / INSTALL_IMAGE, selected.index)
    if is_oem and not details.is_iot:
        raise IotMediaRequiredError(root)
    if not is_oem and details.is_iot:
        raise IotMediaNotAllowedError(root)
    if details.architecture.lower() != REQUIRED_ARCHITECTURE:
        raise ArchitectureMismatchError(root, details.architecture or "unknown")
    if details.version != required_version:
        raise VersionMismatchError(root, required_version, details.version or "unknown")

    return SourceMedia(
        path=root,
        image_name=selected.name,
        image_index=selected.index,
        edition_id=details.edition_id,
        architecture=details.architecture,
        version=details.version,
        is_iot=details.is_iot,
    )


def is_valid_source_media(
    path,
    required_version: str,
    is_oem: bool,
    servicing: ImageServicing,
) -> bool:
    """Boolean form of validate_source_media; logs the failure reason."""
    try:
        validate_source_media(path, required_version, is_oem, servicing)
    except SourceMediaError as error:
        log.warning(str(error))
        return False
    return True


def validate_license_key_format(key: Optional[str]) -> bool:
    """Check the XXXXX-XXXXX-XXXXX-XXXXX-XXXXX shape. Does not contact any authority."""
    if not key:
        return False
    return LICENSE_KEY_PATTERN.fullmatch(key.strip()) is not None


def require_license_key(key: Optional[str]) -> str:
    """Return ``key`` trimmed and upper-cased.

    Raises:
        LicenseKeyError: Key does not have the XXXXX-XXXXX-XXXXX-XXXXX-XXXXX shape
    """
    if not validate_license_key_format(key):
        raise LicenseKeyError(key or "")
    return key.strip().upper()


def find_compatibility_revisions(manifest: Manifest) -> list[int]:
    """Return every compatibility revision marker embedded in the manifest."""
    revisions = []
    for text in manifest.comments():
        for match in COMPATIBILITY_MARKER.finditer(text):
            revisions.append(int(match.group(1)))
    return revisions


def required_compatibility_revision(manifest: Manifest) -> Optional[int]:
    """Highest marker value, or None for kits that predate the marker."""
    revisions = find_compatibility_revisions(manifest)
    if not revisions:
        return None
    if len(revisions) > 1:
        log.warning(
            f"Manifest carries {len(revisions)} compatibility markers "
            f"{revisions}; using the highest"
        )
    return max(revisions)


def validate_kit_compatibility(manifest: Manifest, supported_revision: int) -> bool:
    """True when this tool supports the revision the kit declares.

    A manifest without a marker is compatible with every revision.
    """
    required = required_compatibility_revision(manifest)
    if required is None:
        return True
    return supported_revision >= required


def validate_package(
    info: PackageInfo,
    version_prefix: str,
    architecture: str = PACKAGE_ARCHITECTURE,
) -> None:
    """Reject a language pack or update built for another architecture or release.

    Raises:
        PackageMismatchError: Architecture or version does not match
    """
    if info.architecture.lower() != architecture.lower():
        raise PackageMismatchError(
            info.path, f"architecture {info.architecture or 'unknown'}, expected {architecture}"
        )
    prefix = version_prefix.rstrip(".")
    if not (info.version == prefix or info.version.startswith(prefix + ".")):
        raise PackageMismatchError(
            info.path, f"version {info.version or 'unknown'}, expected {prefix}.x"
        )
