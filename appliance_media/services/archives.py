"""Archive expansion for installer packages (.msi), cabinets (.cab) and
standalone update packages (.msu, which are cabinets)."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from appliance_media.exceptions import AcquisitionError
from appliance_media.logging import LoggerFactory
from appliance_media.storage.commands import run_checked_command

log = LoggerFactory.for_fetch()


class ArchiveExtractor:
    """Expands archives with the host's native tools.

    Windows uses ``msiexec /a`` (administrative install) and ``expand.exe``;
    other hosts use ``msiextract`` and ``cabextract``.
    """

    def __init__(self, windows: bool | None = None):
        self.windows = sys.platform == "win32" if windows is None else windows

    def extract(self, archive: Path, destination: Path) -> Path:
        archive = Path(archive)
        suffix = archive.suffix.lower()
        if suffix == ".msi":
            return self.extract_msi(archive, destination)
        if suffix in (".cab", ".msu"):
            return self.extract_cab(archive, destination)
        raise AcquisitionError(f"Unsupported archive type: {archive.name}")

    def extract_msi(self, package: Path, destination: Path) -> Path:
        destination = self._fresh(destination)
        log.info(f"Extracting {package.name} to {destination}")
        if self.windows:
            run_checked_command(
                [
                    "msiexec.exe",
                    "/a",
                    str(package),
                    "/qn",
                    f"TARGETDIR={destination}",
                ]
            )
        else:
            self._require("msiextract")
            run_checked_command(["msiextract", "-C", str(destination), str(package)])
        return destination

    def extract_cab(self, cabinet: Path, destination: Path) -> Path:
        destination = self._fresh(destination)
        log.info(f"Extracting {cabinet.name} to {destination}")
        if self.windows:
            run_checked_command(["expand.exe", str(cabinet), "-F:*", str(destination)])
        else:
            self._require("cabextract")
            run_checked_command(["cabextract", "-q", "-d", str(destination), str(cabinet)])
        return destination

    @staticmethod
    def _fresh(destination: Path) -> Path:
        destination = Path(destination)
        if destination.exists():
            shutil.rmtree(destination)
        destination.mkdir(parents=True)
        return destination

    @staticmethod
    def _require(tool: str) -> None:
        if shutil.which(tool) is None:
            raise AcquisitionError(f"{tool} is required to expand archives on this host")


def largest_cabinet(directory: Path) -> Path:
    """Return the biggest .cab under ``directory``; an expanded .msu keeps its payload there."""
    cabinets = sorted(
        Path(directory).rglob("*.cab"), key=lambda path: path.stat().st_size, reverse=True
    )
    if not cabinets:
        raise AcquisitionError(f"No cabinet found in {directory}")
    return cabinets[0]
