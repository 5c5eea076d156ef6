"""
Pytest configuration and shared fixtures for appliance-media tests.

This module provides fakes for the capability interfaces (HTTP transport,
signature check, image servicing, disks) and builders for media trees and
unattend manifests, so tests run on any host without Windows tooling.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from appliance_media.domain import ImageInfo, PackageInfo, TargetDisk
from appliance_media.logging import logger


# ==============================================================================
# Logging
# ==============================================================================


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)


# ==============================================================================
# Manifest Fixtures
# ==============================================================================


SAMPLE_MANIFEST = """<?xml version="1.0" encoding="utf-8"?>
<unattend xmlns="urn:schemas-microsoft-com:unattend" xmlns:wcm="http://schemas.microsoft.com/WMIConfig/2002/State">
  <!-- CompatibilityRevision: 2 -->
  <settings pass="windowsPE">
    <component name="Microsoft-Windows-Setup" processorArchitecture="amd64">
      <DiskConfiguration>
        <Disk wcm:action="add">
          <DiskID>0</DiskID>
          <WillWipeDisk>true</WillWipeDisk>
          <CreatePartitions>
            <CreatePartition wcm:action="add">
              <Order>1</Order>
              <Type>EFI</Type>
              <Size>260</Size>
            </CreatePartition>
            <CreatePartition wcm:action="add">
              <Order>2</Order>
              <Type>Primary</Type>
              <Extend>true</Extend>
            </CreatePartition>
          </CreatePartitions>
        </Disk>
      </DiskConfiguration>
      <ImageInstall>
        <OSImage>
          <InstallTo>
            <DiskID>0</DiskID>
            <PartitionID>2</PartitionID>
          </InstallTo>
        </OSImage>
      </ImageInstall>
    </component>
  </settings>
  <settings pass="specialize">
    <component name="Microsoft-Windows-Shell-Setup" processorArchitecture="amd64">
      <ComputerName>*</ComputerName>
    </component>
    <component name="Microsoft-Windows-Deployment" processorArchitecture="amd64">
      <RunSynchronous>
        <RunSynchronousCommand wcm:action="add">
          <Order>1</Order>
          <!-- The power flag below is rewritten per copy -->
          <Path>C:\\Windows\\System32\\Sysprep\\sysprep.exe /generalize /oobe /reboot</Path>
        </RunSynchronousCommand>
      </RunSynchronous>
    </component>
  </settings>
</unattend>
"""


@pytest.fixture
def manifest_text() -> str:
    """Unattend manifest with a UEFI layout, a sysprep command and a revision marker."""
    return SAMPLE_MANIFEST


@pytest.fixture
def manifest_file(tmp_path, manifest_text) -> Path:
    path = tmp_path / "unattend.xml"
    path.write_text(manifest_text, encoding="utf-8")
    return path


# ==============================================================================
# Acquisition Fakes
# ==============================================================================


class FakeTransport:
    """In-memory Transport: ``routes`` maps url -> (status, location)."""

    def __init__(
        self,
        routes: Optional[Dict[str, Tuple[int, Optional[str]]]] = None,
        payloads: Optional[Dict[str, bytes]] = None,
    ) -> None:
        self.routes = routes or {}
        self.payloads = payloads or {}
        self.head_calls: List[str] = []
        self.download_calls: List[str] = []
        self.fail_download: Optional[BaseException] = None

    async def head(self, url: str):
        self.head_calls.append(url)
        return self.routes.get(url, (200, None))

    async def download(self, url: str, destination: Path, progress=None) -> None:
        self.download_calls.append(url)
        data = self.payloads.get(url, b"payload:" + url.encode())
        destination.write_bytes(data[: len(data) // 2])
        if self.fail_download is not None:
            raise self.fail_download
        destination.write_bytes(data)
        if progress:
            progress(len(data), len(data))


class FakeVerifier:
    def __init__(self, valid: bool = True, status: str = "Valid") -> None:
        self.valid = valid
        self.status = status
        self.checked: List[Path] = []

    def check(self, path: Path):
        self.checked.append(Path(path))
        return self.valid, self.status


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


# ==============================================================================
# Image Servicing Fake
# ==============================================================================


class FakeServicing:
    """ImageServicing double that records every call."""

    def __init__(self, images: Optional[List[ImageInfo]] = None) -> None:
        self.images = images or [
            ImageInfo(1, "Windows 10 Education", "Education", "x64", "10.0.19045.3803"),
            ImageInfo(2, "Windows 10 Enterprise", "Enterprise", "x64", "10.0.19045.3803"),
        ]
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, BaseException] = {}
        self.packages: Dict[str, PackageInfo] = {}

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise self.fail_on[name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def list_images(self, image_file: Path):
        self._record("list_images", image_file)
        return list(self.images)

    def describe_image(self, image_file: Path, index: int):
        self._record("describe_image", image_file, index)
        for image in self.images:
            if image.index == index:
                return image
        raise KeyError(index)

    def export_image(self, source, index, destination, compress="max"):
        self._record("export_image", source, index, destination)
        Path(destination).write_bytes(b"wim")

    def mount_image(self, image_file, index, mount_dir):
        self._record("mount_image", image_file, index, mount_dir)

    def add_package(self, mount_dir, package):
        self._record("add_package", mount_dir, package)

    def cleanup_image(self, mount_dir):
        self._record("cleanup_image", mount_dir)

    def unmount_image(self, mount_dir, commit):
        self._record("unmount_image", mount_dir, commit)

    def split_image(self, image_file, destination, size_mb):
        self._record("split_image", image_file, destination, size_mb)
        destination = Path(destination)
        destination.write_bytes(b"part1")
        destination.with_name(f"{destination.stem}2{destination.suffix}").write_bytes(b"part2")

    def package_info(self, package):
        self._record("package_info", package)
        return self.packages.get(
            Path(package).name,
            PackageInfo(Path(package), "Package_for_RollupFix", "amd64", "10.0.19045.3803"),
        )


@pytest.fixture
def fake_servicing() -> FakeServicing:
    return FakeServicing()


@pytest.fixture
def iot_images() -> List[ImageInfo]:
    return [ImageInfo(1, "Windows 10 IoT Enterprise", "IoTEnterprise", "x64", "10.0.19045.3803")]


# ==============================================================================
# Media Trees
# ==============================================================================


def build_media_tree(root: Path, *, esd: bool = False, wim: bool = True,
                     skip: Tuple[str, ...] = ()) -> Path:
    """Create a minimal installation media tree under ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    for directory in ("boot", "efi", "sources"):
        if directory not in skip:
            (root / directory).mkdir(exist_ok=True)
    for name in ("bootmgr", "setup.exe"):
        if name not in skip:
            (root / name).write_bytes(b"binary")
    if "boot" not in skip:
        (root / "boot" / "bcd").write_bytes(b"bcd")
    if wim and "sources" not in skip:
        (root / "sources" / "install.wim").write_bytes(b"wim")
    if esd and "sources" not in skip:
        (root / "sources" / "install.esd").write_bytes(b"esd")
    return root


@pytest.fixture
def media_tree(tmp_path) -> Path:
    return build_media_tree(tmp_path / "media")


# ==============================================================================
# Disks
# ==============================================================================


@pytest.fixture
def usb_disk() -> TargetDisk:
    return TargetDisk(
        number=2,
        friendly_name="SanDisk Ultra",
        bus_type="USB",
        size_bytes=30_752_636_928,
        partition_style="MBR",
    )


@pytest.fixture
def transport_factory():
    """Build FakeTransport instances with custom routes."""
    return FakeTransport


@pytest.fixture
def verifier_factory():
    return FakeVerifier


@pytest.fixture
def servicing_factory():
    return FakeServicing


@pytest.fixture
def media_tree_factory():
    return build_media_tree
