"""Tests for the self-update check (services/updates.py)."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from appliance_media.domain import Artifact
from appliance_media.exceptions import DownloadStatusError, SignatureError
from appliance_media.services.fetcher import AiohttpTransport, ArtifactFetcher
from appliance_media.services.updates import (
    check_for_update,
    is_newer,
    parse_version,
    version_from_url,
)

UPDATE_URL = "https://example.com/appliance-media/latest"


def fetcher_resolving_to(url):
    fetcher = Mock()
    fetcher.resolve.return_value = url
    fetcher.fetch_verified.return_value = Artifact(
        url=UPDATE_URL, resolved_url=url, local_path=Path("downloads") / url.rsplit("/", 1)[-1],
        verified=True,
    )
    return fetcher


class TestVersionHelpers:
    @pytest.mark.parametrize(
        "candidate, current, expected",
        [
            ("1.5.0", "1.4.0", True),
            ("1.4.0", "1.4.0", False),
            ("1.4", "1.4.0", False),
            ("1.4.0.1", "1.4", True),
            ("1.10.0", "1.9.9", True),
            ("0.9", "1.0", False),
        ],
    )
    def test_is_newer(self, candidate, current, expected):
        assert is_newer(candidate, current) is expected

    def test_version_from_url(self):
        assert version_from_url("https://cdn.example.com/r/ApplianceMedia-1.5.2.msi") == "1.5.2"
        assert version_from_url("https://cdn.example.com/r/ApplianceMedia%201.6.msi") == "1.6"
        assert version_from_url("https://cdn.example.com/r/latest.msi") is None

    def test_parse_version(self):
        assert parse_version("v2.0.1-beta") == (2, 0, 1)
        assert parse_version("none") is None


class TestCheckForUpdate:
    """Tests for check_for_update()."""

    def test_newer_release_is_fetched_and_verified(self):
        fetcher = fetcher_resolving_to("https://cdn.example.com/ApplianceMedia-1.5.0.msi")

        result = check_for_update(fetcher, UPDATE_URL, current="1.4.0")

        assert result.update_available
        assert result.latest == "1.5.0"
        assert result.installer == Path("downloads") / "ApplianceMedia-1.5.0.msi"
        fetcher.fetch_verified.assert_called_once_with(UPDATE_URL, "Release 1.5.0")

    def test_same_version_is_not_downloaded(self):
        fetcher = fetcher_resolving_to("https://cdn.example.com/ApplianceMedia-1.4.0.msi")

        result = check_for_update(fetcher, UPDATE_URL, current="1.4.0")

        assert not result.update_available
        assert result.latest == "1.4.0"
        fetcher.fetch_verified.assert_not_called()

    def test_network_failure_is_not_fatal(self, log_records):
        fetcher = Mock()
        fetcher.resolve.side_effect = DownloadStatusError(UPDATE_URL, 503)

        result = check_for_update(fetcher, UPDATE_URL, current="1.4.0")

        assert not result.update_available
        assert result.latest is None
        assert any("Could not check for updates" in r["message"] for r in log_records)

    def test_unversioned_release_name(self):
        fetcher = fetcher_resolving_to("https://cdn.example.com/latest.msi")

        assert not check_for_update(fetcher, UPDATE_URL, current="1.4.0").update_available
        fetcher.fetch_verified.assert_not_called()

    def test_bad_signature_is_fatal(self):
        fetcher = fetcher_resolving_to("https://cdn.example.com/ApplianceMedia-2.0.msi")
        fetcher.fetch_verified.side_effect = SignatureError(Path("ApplianceMedia-2.0.msi"), "NotSigned")

        with pytest.raises(SignatureError):
            check_for_update(fetcher, UPDATE_URL, current="1.4.0")

    def test_download_failure_reports_no_installer(self):
        fetcher = fetcher_resolving_to("https://cdn.example.com/ApplianceMedia-2.0.msi")
        fetcher.fetch_verified.side_effect = DownloadStatusError(UPDATE_URL, 404)

        result = check_for_update(fetcher, UPDATE_URL, current="1.4.0")

        assert result.latest == "2.0"
        assert not result.update_available

    def test_stalled_update_server_is_not_fatal(self, tmp_path, log_records):
        """Test a timed-out update check through the real transport means no update."""
        session = MagicMock()
        session.head.side_effect = asyncio.TimeoutError()
        fetcher = ArtifactFetcher(tmp_path, transport=AiohttpTransport(timeout_seconds=1), verifier=Mock())

        with patch("aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)

            result = check_for_update(fetcher, UPDATE_URL, current="1.4.0")

        assert not result.update_available
        assert any("timed out" in r["message"] for r in log_records)
