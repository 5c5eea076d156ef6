"""Unattended-install manifest editing.

The deployment kit ships one manifest template which is written to the media
twice:
    outer copy  -> read by setup at boot time, sysprep must /shutdown
    inner copy  -> applied after imaging, sysprep must /reboot

Comments are kept when the document is parsed because compatibility revision
markers live in them.

Operations:
    - inject_key(): add a product key unless one is present
    - set_power_action(): rewrite the sysprep generalize/audit power flag
    - set_firmware_mode(): convert the UEFI partition layout for BIOS
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from appliance_media.domain import FirmwareMode, PowerAction
from appliance_media.exceptions import ManifestError, UnsupportedLayoutError
from appliance_media.logging import LoggerFactory

log = LoggerFactory.for_manifest()

UNATTEND_NS = "urn:schemas-microsoft-com:unattend"
WCM_NS = "http://schemas.microsoft.com/WMIConfig/2002/State"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
NS = {"u": UNATTEND_NS}

ET.register_namespace("", UNATTEND_NS)
ET.register_namespace("wcm", WCM_NS)
ET.register_namespace("xsi", XSI_NS)

SHELL_SETUP = "Microsoft-Windows-Shell-Setup"
WINDOWS_SETUP = "Microsoft-Windows-Setup"

SYSPREP_COMMAND = re.compile(r"sysprep(\.exe)?\b", re.IGNORECASE)
SYSPREP_MODE = re.compile(r"/(generalize|audit)\b", re.IGNORECASE)
POWER_FLAG = re.compile(r"/(reboot|shutdown)\b", re.IGNORECASE)
COMMAND_TAGS = ("Path", "CommandLine")


def _q(tag: str) -> str:
    return f"{{{UNATTEND_NS}}}{tag}"


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


@dataclass
class Manifest:
    """A parsed manifest document and where it came from."""

    tree: ET.ElementTree
    path: Optional[Path] = None

    @property
    def root(self) -> ET.Element:
        return self.tree.getroot()

    def comments(self) -> Iterator[str]:
        for element in self.root.iter(ET.Comment):
            yield element.text or ""

    def component(self, pass_name: str, component_name: str) -> Optional[ET.Element]:
        for settings in self.root.findall("u:settings", NS):
            if settings.get("pass") != pass_name:
                continue
            for component in settings.findall("u:component", NS):
                if component.get("name") == component_name:
                    return component
        return None

    def parent_map(self) -> dict[ET.Element, ET.Element]:
        return {child: parent for parent in self.root.iter() for child in parent}


def parse_manifest(text: str, path: Optional[Path] = None) -> Manifest:
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
    try:
        root = ET.fromstring(text, parser=parser)
    except ET.ParseError as e:
        raise ManifestError(f"Manifest {path or ''} is not valid XML: {e}") from e
    if _local_name(root.tag) != "unattend":
        raise ManifestError(f"Manifest {path or ''} is not an unattend document")
    return Manifest(tree=ET.ElementTree(root), path=path)


def load_manifest(path) -> Manifest:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}") from e
    return parse_manifest(text, path)


def manifest_to_string(manifest: Manifest) -> str:
    return ET.tostring(manifest.root, encoding="unicode")


def save_manifest(manifest: Manifest, path=None) -> Path:
    target = Path(path) if path is not None else manifest.path
    if target is None:
        raise ManifestError("No destination given for manifest")
    target.parent.mkdir(parents=True, exist_ok=True)
    manifest.tree.write(target, encoding="utf-8", xml_declaration=True)
    log.debug(f"Wrote manifest {target}")
    return target


def inject_key(manifest: Manifest, key: str) -> bool:
    """Add ProductKey to the specialize pass shell setup component.

    An existing key is never overwritten.

    Returns:
        True if the key was added, False if one was already present
    """
    component = manifest.component("specialize", SHELL_SETUP)
    if component is None:
        raise ManifestError(
            f"Manifest has no {SHELL_SETUP} component in the specialize pass"
        )
    if component.find("u:ProductKey", NS) is not None:
        log.info("Manifest already contains a product key; leaving it unchanged")
        return False
    element = ET.SubElement(component, _q("ProductKey"))
    element.text = key.strip().upper()
    log.info("Added product key to manifest")
    return True


def find_sysprep_command(manifest: Manifest) -> ET.Element:
    """Return the single element holding the sysprep generalize/audit command line."""
    matches = [
        element
        for element in manifest.root.iter()
        if _local_name(element.tag) in COMMAND_TAGS
        and element.text
        and SYSPREP_COMMAND.search(element.text)
        and SYSPREP_MODE.search(element.text)
    ]
    if len(matches) != 1:
        raise ManifestError(
            f"Expected exactly one sysprep generalize/audit command, found {len(matches)}"
        )
    return matches[0]


def _strip_comments(element: ET.Element) -> int:
    removed = 0
    for child in list(element):
        if child.tag is ET.Comment:
            element.remove(child)
            removed += 1
        else:
            removed += _strip_comments(child)
    return removed


def set_power_action(manifest: Manifest, action: PowerAction) -> None:
    """Point the sysprep invocation at ``action``.

    Comments under the command's parent element are removed as part of the
    edit.
    """
    command = find_sysprep_command(manifest)
    text = command.text or ""
    if POWER_FLAG.search(text):
        updated = POWER_FLAG.sub(action.flag, text)
    else:
        updated = f"{text.rstrip()} {action.flag}"
    command.text = updated

    parent = manifest.parent_map().get(command)
    if parent is not None:
        removed = _strip_comments(parent)
        if removed:
            log.debug(f"Removed {removed} comment(s) around the sysprep command")
    log.info(f"Sysprep power action set to {action.value}")


def set_firmware_mode(manifest: Manifest, mode: FirmwareMode) -> None:
    """Adapt the disk layout to the target firmware.

    UEFI is the layout the kit ships, so nothing changes. BIOS drops the EFI
    system partition from a two-partition layout and installs to partition 1.

    Raises:
        UnsupportedLayoutError: The layout is not exactly EFI + OS partitions
        ManifestError: The disk configuration or install target is missing
    """
    if mode is FirmwareMode.UEFI:
        return

    setup = manifest.component("windowsPE", WINDOWS_SETUP)
    if setup is None:
        raise ManifestError(f"Manifest has no {WINDOWS_SETUP} component in windowsPE")
    create = setup.find("u:DiskConfiguration/u:Disk/u:CreatePartitions", NS)
    partitions = create.findall("u:CreatePartition", NS) if create is not None else []
    if len(partitions) != 2:
        raise UnsupportedLayoutError(len(partitions))

    create.remove(partitions[0])
    order = partitions[1].find("u:Order", NS)
    if order is None:
        order = ET.SubElement(partitions[1], _q("Order"))
    order.text = "1"

    partition_id = setup.find("u:ImageInstall/u:OSImage/u:InstallTo/u:PartitionID", NS)
    if partition_id is None:
        raise ManifestError("Manifest has no ImageInstall/OSImage/InstallTo/PartitionID")
    partition_id.text = "1"
    log.info("Converted partition layout for BIOS firmware")
