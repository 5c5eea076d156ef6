"""Check for a newer release of this tool.

The update URL redirects to the current release installer, whose file name
carries its version (``ApplianceMedia-1.5.0.msi``). A newer release is
downloaded and its signature verified; the operator then runs it by hand.
The running process never replaces itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from appliance_media.__version__ import __version__
from appliance_media.exceptions import AcquisitionError, SignatureError
from appliance_media.logging import get_logger

from .fetcher import ArtifactFetcher

log = get_logger(source="update", tags=["update"])

VERSION_IN_NAME = re.compile(r"(\d+(?:\.\d+)+)")


@dataclass(frozen=True)
class UpdateResult:
    current: str
    latest: Optional[str] = None
    installer: Optional[Path] = None

    @property
    def update_available(self) -> bool:
        return self.installer is not None


def parse_version(text: str) -> Optional[tuple[int, ...]]:
    match = VERSION_IN_NAME.search(text)
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def version_from_url(url: str) -> Optional[str]:
    name = Path(unquote(urlparse(url).path)).name
    match = VERSION_IN_NAME.search(name)
    return match.group(1) if match else None


def is_newer(candidate: str, current: str) -> bool:
    """Compare dotted versions numerically; missing parts count as zero."""
    left = parse_version(candidate) or ()
    right = parse_version(current) or ()
    width = max(len(left), len(right))
    left = left + (0,) * (width - len(left))
    right = right + (0,) * (width - len(right))
    return left > right


def check_for_update(
    fetcher: ArtifactFetcher, update_url: str, current: str = __version__
) -> UpdateResult:
    """Fetch and verify a newer release if one is published.

    Network and HTTP failures are logged and treated as "no update". A newer
    release with a bad signature is fatal.

    Raises:
        SignatureError: The newer release failed signature verification
    """
    try:
        resolved = fetcher.resolve(update_url)
    except SignatureError:
        raise
    except AcquisitionError as e:
        log.warning(f"Could not check for updates: {e}")
        return UpdateResult(current=current)

    latest = version_from_url(resolved)
    if latest is None:
        log.warning(f"Could not read a version from {resolved}")
        return UpdateResult(current=current)
    if not is_newer(latest, current):
        log.info(f"Version {current} is up to date (latest {latest})")
        return UpdateResult(current=current, latest=latest)

    log.info(f"Version {latest} is available (running {current})")
    try:
        artifact = fetcher.fetch_verified(update_url, f"Release {latest}")
    except SignatureError:
        raise
    except AcquisitionError as e:
        log.warning(f"Could not download version {latest}: {e}")
        return UpdateResult(current=current, latest=latest)
    return UpdateResult(current=current, latest=latest, installer=artifact.local_path)
