"""End-to-end media build.

Stages run strictly in order:

    1. self-update check
    2. host preconditions
    3. deployment kit acquisition and compatibility check
    4. driver resolution through the kit's decision graph
    5. language pack and update acquisition
    6. target disk, source media and license key selection
    7. summary and typed confirmation
    8. destructive stage: disk, OS tree, image, payload, drivers, manifests
    9. scratch cleanup

Everything before step 8 only reads, downloads or asks. Any failure there is
reported and the disk is untouched. Step 8 owns the target disk from the moment
the operator confirms.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from appliance_media.config import settings
from appliance_media.domain import (
    BuildPlan,
    FirmwareMode,
    Kit,
    PackageInfo,
    PowerAction,
    SourceMedia,
    TargetDisk,
)
from appliance_media.exceptions import (
    DecisionGraphError,
    DiskError,
    KitCompatibilityError,
    KitError,
    LicenseKeyError,
    SourceMediaError,
)
from appliance_media.logging import LoggerFactory, operation_context
from appliance_media.menu.graph import load_graph
from appliance_media.services.archives import ArchiveExtractor, largest_cabinet
from appliance_media.services.fetcher import ArtifactFetcher
from appliance_media.services.updates import check_for_update
from appliance_media.storage.disks import DiskService, PowerShellDiskService, filter_candidates
from appliance_media.storage.image import (
    DismServicing,
    ImageEditor,
    ImageServicing,
    remove_files,
    split_parts,
)
from appliance_media.storage.manifest import (
    Manifest,
    inject_key,
    load_manifest,
    save_manifest,
    set_firmware_mode,
    set_power_action,
)
from appliance_media.storage.mirror import DirectoryMirror
from appliance_media.storage.validation import (
    INSTALL_IMAGE,
    find_compatibility_revisions,
    require_license_key,
    validate_kit_compatibility,
    validate_package,
    validate_source_media,
)
from appliance_media.ui.console import Console

from .host import check_host

log = LoggerFactory.for_system()

KIT_DESCRIPTOR = "kit.json"
CONFIRMATION_WORD = "ERASE"
ARCHIVE_SUFFIXES = (".msi", ".cab", ".msu")

EI_CFG_OEM = "[EditionID]\nIoTEnterprise\n[Channel]\nOEM\n"
EI_CFG_VOLUME = "[EditionID]\nEnterprise\n[Channel]\nVolume\n"


@dataclass(frozen=True)
class BuildOptions:
    kit_path: Optional[Path] = None
    is_oem: Optional[bool] = None
    packs: tuple[str, ...] = ()
    skip_updates: bool = False
    skip_update_check: bool = False
    source: Optional[Path] = None
    scratch_dir: Optional[Path] = None


class MediaBuilder:
    """Runs the media assembly pipeline against injected capabilities."""

    def __init__(
        self,
        options: BuildOptions,
        console: Optional[Console] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        servicing: Optional[ImageServicing] = None,
        disks: Optional[DiskService] = None,
        mirror: Optional[DirectoryMirror] = None,
        extractor: Optional[ArchiveExtractor] = None,
        host_check=check_host,
    ) -> None:
        self.options = options
        self.console = console or Console()
        self.scratch_dir = Path(options.scratch_dir or settings.get_path("scratch_dir"))
        self.download_dir = self.scratch_dir / "downloads"
        self.work_dir = self.scratch_dir / "work"
        self.fetcher = fetcher or ArtifactFetcher(
            self.download_dir, progress_factory=self.console.download_progress
        )
        self.servicing = servicing or DismServicing()
        self.editor = ImageEditor(self.servicing, notify=self.console.warn)
        self.disks = disks or PowerShellDiskService()
        self.mirror = mirror or DirectoryMirror()
        self.extractor = extractor or ArchiveExtractor()
        self.host_check = host_check
        self.destructive_started = False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run every stage; returns the process exit status.

        MediaBuildError raised before the confirmation propagates with the
        disk untouched. Errors from the destructive stage propagate as well,
        after the image guard has discarded any mounted image.
        """
        if not self.options.skip_update_check and self.check_for_update():
            return 0

        self.host_check(
            self.scratch_dir,
            settings.get_int("min_scratch_bytes", settings.DEFAULT_MIN_SCRATCH_BYTES),
            allow_low_space=self._allow_low_space,
        )
        self._reset_work_dir()

        kit = self.acquire_kit()
        template = self.check_kit_compatibility(kit)
        is_oem = self._ask_oem()

        variables = {"FirmwareMode": FirmwareMode.UEFI.value}
        driver_paths = self.resolve_drivers(kit, variables)
        try:
            firmware_mode = FirmwareMode.parse(variables.get("FirmwareMode"))
        except ValueError as e:
            raise DecisionGraphError(str(e)) from e
        packages = self.acquire_packages(kit)

        disk = self.select_disk()
        source = self.select_source(kit, is_oem)
        license_key = self.ask_license_key() if is_oem else None

        plan = BuildPlan(
            kit=kit,
            source=source,
            disk=disk,
            is_oem=is_oem,
            firmware_mode=firmware_mode,
            driver_paths=tuple(driver_paths),
            packages=tuple(packages),
            license_key=license_key,
            variables=dict(variables),
        )
        manifests = self.render_manifests(plan, template)

        if not self.confirm(plan):
            self.console.info("Nothing was changed")
            self.cleanup()
            return 0

        self.destructive_started = True
        with operation_context("build", disk=disk.number, source=str(source.path)):
            self.build(plan, manifests)
        self.cleanup()
        self.console.success(f"Media for {kit.name} {kit.version} is ready on disk {disk.number}")
        return 0

    def check_for_update(self) -> bool:
        result = check_for_update(self.fetcher, settings.get_setting("update_url"))
        if not result.update_available:
            return False
        self.console.banner(f"Version {result.latest} is available")
        self.console.info(
            f"The verified installer was saved to {result.installer}. "
            "Run it, then start this tool again"
        )
        return True

    def _allow_low_space(self, message: str) -> bool:
        self.console.warn(message)
        return self.console.confirm("Continue anyway?", default=False)

    def _reset_work_dir(self) -> None:
        if self.work_dir.exists():
            log.debug(f"Removing previous work directory {self.work_dir}")
            shutil.rmtree(self.work_dir)
        self.work_dir.mkdir(parents=True)

    def cleanup(self) -> None:
        shutil.rmtree(self.work_dir, ignore_errors=True)
        log.debug(f"Removed work directory {self.work_dir}")

    # ------------------------------------------------------------------
    # Kit
    # ------------------------------------------------------------------

    def acquire_kit(self) -> Kit:
        """Fetch, verify, extract and load the deployment kit."""
        if self.options.kit_path is not None:
            local = Path(self.options.kit_path)
            if not local.is_file():
                raise KitError(f"Deployment kit {local} does not exist")
            self.download_dir.mkdir(parents=True, exist_ok=True)
            package = self.download_dir / local.name
            shutil.copy2(local, package)
            self.fetcher.verify_signature(package)
        else:
            package = self.fetcher.fetch_verified(
                settings.get_setting("kit_url"), "Deployment kit"
            ).local_path

        extracted = self.extractor.extract(package, self.work_dir / "kit")
        return load_kit(extracted)

    def check_kit_compatibility(self, kit: Kit) -> Manifest:
        template = load_manifest(kit.manifest_path)
        if not validate_kit_compatibility(template, settings.SUPPORTED_COMPATIBILITY_REVISION):
            raise KitCompatibilityError(
                max(find_compatibility_revisions(template)),
                settings.SUPPORTED_COMPATIBILITY_REVISION,
            )
        return template

    def _ask_oem(self) -> bool:
        if self.options.is_oem is not None:
            return self.options.is_oem
        return self.console.confirm("Build OEM media (IoT Enterprise)?", default=False)

    # ------------------------------------------------------------------
    # Drivers and packages
    # ------------------------------------------------------------------

    def resolve_drivers(self, kit: Kit, variables: dict[str, str]) -> list[Path]:
        """Walk the kit's driver graph and expand every selected archive.

        Returns:
            Directories holding the expanded drivers, one per artifact
        """
        graph = load_graph(kit.drivers, fetcher=self.fetcher, operator=self.console)
        artifacts = graph.resolve(variables)
        if not artifacts:
            raise DecisionGraphError("No drivers were selected for this device")

        driver_root = self.work_dir / "drivers"
        expanded = []
        for artifact in artifacts:
            destination = driver_root / artifact.stem
            if artifact.suffix.lower() in ARCHIVE_SUFFIXES:
                expanded.append(self.extractor.extract(artifact, destination))
            else:
                destination.mkdir(parents=True, exist_ok=True)
                shutil.copy2(artifact, destination / artifact.name)
                expanded.append(destination)
        return expanded

    def acquire_packages(self, kit: Kit) -> list[PackageInfo]:
        """Fetch, verify and inspect the requested language packs and kit updates."""
        requested = []
        for pack_id in self.options.packs:
            pack = kit.find_pack(pack_id)
            if pack is None:
                available = ", ".join(p.pack_id for p in kit.packs) or "none"
                raise KitError(f"Kit has no language pack '{pack_id}' (available: {available})")
            requested.append((pack.url, f"Language pack {pack.pack_id}"))
        if self.options.skip_updates:
            log.info("Skipping kit updates")
        else:
            requested.extend((url, f"Update {n}") for n, url in enumerate(kit.updates, 1))

        packages = []
        for url, friendly_name in requested:
            artifact = self.fetcher.fetch_verified(url, friendly_name)
            info = self.servicing.package_info(self._package_file(artifact.local_path))
            validate_package(info, kit.required_pack_version)
            log.info(f"{friendly_name}: {info.name} {info.version} ({info.architecture})")
            packages.append(info)
        return packages

    def _package_file(self, path: Path) -> Path:
        if path.suffix.lower() != ".msu":
            return path
        expanded = self.extractor.extract(path, self.work_dir / "packages" / path.stem)
        return largest_cabinet(expanded)

    # ------------------------------------------------------------------
    # Operator selections
    # ------------------------------------------------------------------

    def select_disk(self) -> TargetDisk:
        candidates = filter_candidates(
            self.disks.list_disks(), settings.get_list("allowed_bus_types")
        )
        if not candidates:
            raise DiskError("No removable disks found. Connect the target disk and try again")
        self.console.show_disks(candidates)
        while True:
            answer = self.console.ask(f"Target disk [0-{len(candidates) - 1}]").strip()
            if answer.isdigit() and int(answer) < len(candidates):
                disk = candidates[int(answer)]
                log.info(f"Selected {disk.format_label()}")
                return disk
            self.console.warn(f"Enter a number between 0 and {len(candidates) - 1}")

    def select_source(self, kit: Kit, is_oem: bool) -> SourceMedia:
        candidate = self.options.source
        while True:
            if candidate is None:
                answer = self.console.ask("Path to the installation media").strip().strip('"')
                if not answer:
                    continue
                candidate = Path(answer)
            try:
                source = validate_source_media(candidate, kit.os_version, is_oem, self.servicing)
            except SourceMediaError as e:
                self.console.error(str(e))
                candidate = None
                continue
            log.info(f"Using {source.image_name} {source.version} from {source.path}")
            return source

    def ask_license_key(self) -> str:
        while True:
            answer = self.console.ask("Product key (XXXXX-XXXXX-XXXXX-XXXXX-XXXXX)")
            try:
                return require_license_key(answer)
            except LicenseKeyError as e:
                self.console.warn(str(e))

    def confirm(self, plan: BuildPlan) -> bool:
        self.console.summary("Media build", plan.summary_rows())
        self.console.warn(f"All data on {plan.disk.format_label()} will be erased")
        answer = self.console.ask(f"Type {CONFIRMATION_WORD} to continue")
        if answer.strip() != CONFIRMATION_WORD:
            log.info("Operator declined the build")
            return False
        return True

    # ------------------------------------------------------------------
    # Destructive stage
    # ------------------------------------------------------------------

    def render_manifests(self, plan: BuildPlan, template: Manifest) -> list[tuple[str, Manifest]]:
        """Produce the outer (setup-time) and inner (post-imaging) manifests."""
        rendered = []
        for destination, action in (
            (plan.kit.outer_manifest, PowerAction.SHUTDOWN),
            (plan.kit.inner_manifest, PowerAction.REBOOT),
        ):
            manifest = load_manifest(template.path)
            set_power_action(manifest, action)
            set_firmware_mode(manifest, plan.firmware_mode)
            if plan.is_oem and plan.license_key:
                inject_key(manifest, plan.license_key)
            rendered.append((destination, manifest))
        return rendered

    def build(self, plan: BuildPlan, manifests: Sequence[tuple[str, Manifest]]) -> Path:
        kit = plan.kit
        root = self.disks.prepare_disk(
            plan.disk, settings.get_setting("volume_label", settings.DEFAULT_VOLUME_LABEL)
        )
        self.mirror.mirror(plan.source.path, root, exclude=[INSTALL_IMAGE.name])
        self.build_image(plan, root)

        # Payload first: mirroring removes entries the source does not have.
        self.mirror.mirror(kit.payload_path, root / kit.payload_destination)
        self.mirror.mirror(self.work_dir / "drivers", root / kit.driver_destination)

        for destination, manifest in manifests:
            save_manifest(manifest, root / destination)
        write_edition_config(root, plan.is_oem)
        remove_transient_directories(root, kit.transient_directories)
        return root

    def build_image(self, plan: BuildPlan, root: Path) -> list[Path]:
        """Export, service, compact and split the OS image onto the target."""
        image_dir = self.work_dir / "image"
        exported = image_dir / "install.wim"
        compacted = image_dir / "install-compact.wim"
        swm = root / "sources" / "install.swm"
        name = plan.source.image_name

        try:
            self.editor.export(plan.source.install_image, name, exported)
            with self.editor.mounted(exported, name, self.work_dir / "mount") as handle:
                for package in plan.packages:
                    self.editor.add_package(handle, package.path)
                self.editor.cleanup(handle, target_root=root)
                self.editor.commit(handle)
            self.editor.export(exported, name, compacted)
            parts = self.editor.split(
                compacted,
                swm,
                settings.get_int("split_size_mb", settings.DEFAULT_SPLIT_SIZE_MB),
            )
        except BaseException as e:
            log.error(f"Image stage failed: {e}")
            remove_files([exported, compacted, *split_parts(swm)])
            raise
        remove_files([exported, compacted])
        log.info(f"Wrote {len(parts)} image part(s) to {swm.parent}")
        return parts


def load_kit(extracted: Path) -> Kit:
    """Find ``kit.json`` in an extracted kit and load it."""
    descriptors = sorted(
        Path(extracted).rglob(KIT_DESCRIPTOR), key=lambda path: len(path.parts)
    )
    if not descriptors:
        raise KitError(f"No {KIT_DESCRIPTOR} found in {extracted}")
    descriptor = descriptors[0]
    try:
        data = json.loads(descriptor.read_text(encoding="utf-8-sig"))
        kit = Kit.from_dict(data, descriptor.parent)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        raise KitError(f"Invalid deployment kit descriptor {descriptor}: {e}") from e
    log.info(f"Loaded deployment kit {kit.name} {kit.version}")
    return kit


def write_edition_config(root: Path, is_oem: bool) -> Path:
    path = Path(root) / "sources" / "ei.cfg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(EI_CFG_OEM if is_oem else EI_CFG_VOLUME, encoding="ascii")
    return path


def remove_transient_directories(root: Path, directories: Sequence[str]) -> None:
    for directory in directories:
        target = Path(root) / directory
        if not target.exists():
            continue
        try:
            shutil.rmtree(target)
            log.debug(f"Removed {target}")
        except OSError as e:
            log.warning(f"Could not remove {target}: {e}")
