"""Offline OS image servicing with guaranteed unmount.

An image mounted for servicing must end in exactly one of two states:
committed (changes persisted) or discarded (changes dropped). ``ImageEditor``
tracks that on the ``MountedImage`` handle, and the ``mounted()`` context
manager discards any handle that was not committed when the block exits,
whether by exception or early return.

The servicing capability itself is DISM, driven through ``DismServicing``.
Its English ``Key : Value`` output is parsed into domain objects.

Example:
    >>> editor = ImageEditor(DismServicing())
    >>> with editor.mounted(wim, "Windows 10 Enterprise", mount_dir) as handle:
    ...     editor.add_package(handle, language_pack)
    ...     editor.cleanup(handle)
    ...     editor.commit(handle)
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, Sequence

from appliance_media.domain import ImageInfo, MountState, PackageInfo
from appliance_media.exceptions import (
    CommandError,
    ImageError,
    ImageServicingError,
    ImageStateError,
)
from appliance_media.logging import LoggerFactory

from .commands import run_checked_command

log = LoggerFactory.for_image()


class ImageServicing(Protocol):
    def list_images(self, image_file: Path) -> list[ImageInfo]: ...

    def describe_image(self, image_file: Path, index: int) -> ImageInfo: ...

    def export_image(
        self, source: Path, index: int, destination: Path, compress: str = "max"
    ) -> None: ...

    def mount_image(self, image_file: Path, index: int, mount_dir: Path) -> None: ...

    def add_package(self, mount_dir: Path, package: Path) -> None: ...

    def cleanup_image(self, mount_dir: Path) -> None: ...

    def unmount_image(self, mount_dir: Path, commit: bool) -> None: ...

    def split_image(self, image_file: Path, destination: Path, size_mb: int) -> None: ...

    def package_info(self, package: Path) -> PackageInfo: ...


# ==============================================================================
# DISM adapter
# ==============================================================================

_KEY_VALUE = re.compile(r"^\s*([^:]+?)\s*:\s*(.*?)\s*$")


def parse_dism_records(output: str) -> list[dict[str, str]]:
    """Split DISM ``Key : Value`` output into records separated by blank lines."""
    records: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                records.append(current)
                current = {}
            continue
        match = _KEY_VALUE.match(line)
        if match and not line.startswith(" " * 4):
            current[match.group(1)] = match.group(2)
    if current:
        records.append(current)
    return [record for record in records if record]


def _image_info(record: dict[str, str]) -> Optional[ImageInfo]:
    if "Index" not in record:
        return None
    try:
        index = int(record["Index"])
    except ValueError:
        return None
    return ImageInfo(
        index=index,
        name=record.get("Name", ""),
        edition_id=record.get("Edition", ""),
        architecture=record.get("Architecture", ""),
        version=image_version(record),
    )


def image_version(record: dict[str, str]) -> str:
    """Full build of an image, e.g. ``10.0.19045.3803``.

    DISM reports ``Version : 10.0.19045`` and the cumulative update level
    separately as ``ServicePack Build : 3803``.
    """
    version = record.get("Version", "")
    build = record.get("ServicePack Build", "")
    if version and build.isdigit():
        return f"{version}.{build}"
    return version


def parse_package_info(package: Path, output: str) -> PackageInfo:
    """Parse ``/Get-PackageInfo`` output.

    The package identity has the shape
    ``Name~PublicKeyToken~Architecture~Language~Version``; custom properties
    follow a ``Custom Properties:`` header as indented ``Key : Value`` lines.
    """
    fields: dict[str, str] = {}
    custom: dict[str, str] = {}
    in_custom = False
    for line in output.splitlines():
        if line.strip().lower().startswith("custom properties"):
            in_custom = True
            continue
        match = _KEY_VALUE.match(line)
        if not match:
            continue
        key, value = match.group(1), match.group(2)
        if in_custom and line[:1].isspace():
            custom[key] = value
            continue
        in_custom = False
        fields[key] = value

    identity = fields.get("Package Identity", "")
    parts = identity.split("~")
    if len(parts) < 5:
        raise ImageServicingError(f"Unrecognized package identity for {package.name}: {identity!r}")
    return PackageInfo(
        path=Path(package),
        name=parts[0],
        architecture=parts[2],
        version=parts[4],
        release_type=fields.get("Release Type", ""),
        custom_properties=custom,
    )


class DismServicing:
    """Runs ``dism.exe`` for every image servicing operation."""

    def __init__(self, executable: str = "dism.exe"):
        self.executable = executable

    def _run(self, *arguments: str) -> str:
        command = [self.executable, "/English", *arguments]
        try:
            return run_checked_command(command)
        except CommandError as e:
            raise ImageServicingError(str(e)) from e

    def list_images(self, image_file: Path) -> list[ImageInfo]:
        output = self._run("/Get-WimInfo", f"/WimFile:{image_file}")
        return [info for info in map(_image_info, parse_dism_records(output)) if info]

    def describe_image(self, image_file: Path, index: int) -> ImageInfo:
        output = self._run("/Get-WimInfo", f"/WimFile:{image_file}", f"/Index:{index}")
        merged: dict[str, str] = {}
        for record in parse_dism_records(output):
            merged.update(record)
        info = _image_info(merged)
        if info is None:
            raise ImageServicingError(f"No image {index} in {image_file}")
        return info

    def export_image(
        self, source: Path, index: int, destination: Path, compress: str = "max"
    ) -> None:
        self._run(
            "/Export-Image",
            f"/SourceImageFile:{source}",
            f"/SourceIndex:{index}",
            f"/DestinationImageFile:{destination}",
            f"/Compress:{compress}",
            "/CheckIntegrity",
        )

    def mount_image(self, image_file: Path, index: int, mount_dir: Path) -> None:
        self._run(
            "/Mount-Image",
            f"/ImageFile:{image_file}",
            f"/Index:{index}",
            f"/MountDir:{mount_dir}",
        )

    def add_package(self, mount_dir: Path, package: Path) -> None:
        self._run(f"/Image:{mount_dir}", "/Add-Package", f"/PackagePath:{package}")

    def cleanup_image(self, mount_dir: Path) -> None:
        self._run(
            f"/Image:{mount_dir}",
            "/Cleanup-Image",
            "/StartComponentCleanup",
            "/ResetBase",
        )

    def unmount_image(self, mount_dir: Path, commit: bool) -> None:
        self._run(
            "/Unmount-Image",
            f"/MountDir:{mount_dir}",
            "/Commit" if commit else "/Discard",
        )

    def split_image(self, image_file: Path, destination: Path, size_mb: int) -> None:
        self._run(
            "/Split-Image",
            f"/ImageFile:{image_file}",
            f"/SWMFile:{destination}",
            f"/FileSize:{size_mb}",
        )

    def package_info(self, package: Path) -> PackageInfo:
        output = self._run("/Get-PackageInfo", f"/PackagePath:{package}")
        return parse_package_info(Path(package), output)


# ==============================================================================
# Editor
# ==============================================================================


@dataclass
class MountedImage:
    """Handle to an image attached to a scratch directory."""

    image_path: Path
    index: int
    name: str
    mount_dir: Path
    state: MountState = MountState.MOUNTED
    packages: list[Path] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.state is MountState.COMMITTED

    @property
    def is_mounted(self) -> bool:
        return self.state is MountState.MOUNTED


class ImageEditor:
    """Mounts, services and unmounts monolithic OS images."""

    def __init__(
        self,
        servicing: ImageServicing,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self.servicing = servicing
        self.notify = notify

    def image_info(self, image_file: Path) -> list[ImageInfo]:
        return self.servicing.list_images(Path(image_file))

    def find_index(self, image_file: Path, image_name: str) -> int:
        images = self.image_info(image_file)
        for image in images:
            if image.name == image_name:
                return image.index
        raise ImageError(
            f"{image_file} has no image named '{image_name}' "
            f"(found: {', '.join(image.name for image in images) or 'none'})"
        )

    def export(self, source: Path, image_name: str, destination: Path) -> Path:
        """Export one named image into a new, maximally compressed image file."""
        index = self.find_index(source, image_name)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        log.info(f"Exporting '{image_name}' from {source} to {destination}")
        self.servicing.export_image(Path(source), index, destination)
        return destination

    def split(self, image_file: Path, destination: Path, size_mb: int) -> list[Path]:
        """Split an image into size-bounded parts next to ``destination``."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        log.info(f"Splitting {image_file} into {size_mb} MB parts at {destination}")
        self.servicing.split_image(Path(image_file), destination, size_mb)
        return split_parts(destination)

    def mount(self, image_path: Path, image_name: str, mount_dir: Path) -> MountedImage:
        image_path = Path(image_path)
        mount_dir = Path(mount_dir)
        index = self.find_index(image_path, image_name)
        mount_dir.mkdir(parents=True, exist_ok=True)
        log.info(f"Mounting '{image_name}' (index {index}) at {mount_dir}")
        self.servicing.mount_image(image_path, index, mount_dir)
        return MountedImage(
            image_path=image_path, index=index, name=image_name, mount_dir=mount_dir
        )

    def add_package(self, handle: MountedImage, package: Path) -> None:
        """Apply a package; any failure aborts the whole servicing session."""
        self._require_mounted(handle)
        log.info(f"Adding package {Path(package).name}")
        self.servicing.add_package(handle.mount_dir, Path(package))
        handle.packages.append(Path(package))

    def cleanup(self, handle: MountedImage, target_root: Optional[Path] = None) -> None:
        """Compact the mounted tree and clear stale images from ``target_root``.

        Component cleanup with base reset runs against the mounted tree. On the
        target media, any install image already under ``sources`` (a monolithic
        ``install.wim``/``install.esd`` or split parts from an earlier attempt)
        is removed so Setup only finds the parts written after this call.
        """
        self._require_mounted(handle)
        message = (
            "Starting component cleanup. This can take several hours; "
            "do not interrupt it or remove the target disk"
        )
        log.warning(message)
        if self.notify:
            self.notify(message)
        self.servicing.cleanup_image(handle.mount_dir)
        if target_root is not None:
            stale = stale_install_images(Path(target_root) / "sources")
            if stale:
                log.info(f"Removing stale install images: {', '.join(p.name for p in stale)}")
                remove_files(stale)

    def commit(self, handle: MountedImage) -> None:
        self._require_mounted(handle)
        log.info(f"Committing changes to {handle.image_path}")
        self.servicing.unmount_image(handle.mount_dir, commit=True)
        handle.state = MountState.COMMITTED

    def discard(self, handle: MountedImage) -> None:
        self._require_mounted(handle)
        log.warning(f"Discarding changes to {handle.image_path}")
        try:
            self.servicing.unmount_image(handle.mount_dir, commit=False)
        finally:
            handle.state = MountState.DISCARDED

    @contextmanager
    def mounted(
        self, image_path: Path, image_name: str, mount_dir: Path
    ) -> Iterator[MountedImage]:
        """Mount an image and discard it on exit unless it was committed."""
        handle = self.mount(image_path, image_name, mount_dir)
        try:
            yield handle
        finally:
            if handle.is_mounted:
                try:
                    self.discard(handle)
                except Exception as e:
                    # Already unwinding; the original error is the one to report.
                    log.error(f"Failed to discard {handle.mount_dir}: {e}")

    @staticmethod
    def _require_mounted(handle: MountedImage) -> None:
        if not handle.is_mounted:
            raise ImageStateError(
                f"Image at {handle.mount_dir} is already {handle.state.value}"
            )


def split_parts(destination: Path) -> list[Path]:
    """Return ``install.swm`` and its numbered siblings ``install2.swm``..."""
    destination = Path(destination)
    if not destination.parent.exists():
        return []
    pattern = re.compile(
        rf"^{re.escape(destination.stem)}\d*{re.escape(destination.suffix)}$",
        re.IGNORECASE,
    )
    return sorted(
        path for path in destination.parent.iterdir() if pattern.match(path.name)
    )


def remove_files(paths: Sequence[Path]) -> None:
    """Best-effort removal of partial image files."""
    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            log.warning(f"Could not remove {path}: {e}")


def stale_install_images(sources: Path) -> list[Path]:
    """Install images under a media ``sources`` directory."""
    if not sources.is_dir():
        return []
    found = [sources / "install.wim", sources / "install.esd", *split_parts(sources / "install.swm")]
    return [path for path in found if path.is_file()]
