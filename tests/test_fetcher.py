"""Tests for artifact acquisition (services/fetcher.py)."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from appliance_media.exceptions import (
    AcquisitionError,
    DownloadStatusError,
    RedirectLimitError,
    SignatureError,
)
from appliance_media.services.fetcher import (
    MAX_REDIRECTS,
    AiohttpTransport,
    ArtifactFetcher,
)


def redirect_chain(transport_factory, hops: int, base: str = "https://go.example.com/start"):
    """Transport where ``base`` redirects ``hops`` times before a 200."""
    routes = {}
    current = base
    for hop in range(hops):
        following = f"https://cdn{hop}.example.com/files/Kit.msi"
        routes[current] = (302, following)
        current = following
    routes[current] = (200, None)
    return transport_factory(routes)


@pytest.fixture
def fetcher(tmp_path, fake_transport, fake_verifier):
    return ArtifactFetcher(tmp_path / "downloads", transport=fake_transport, verifier=fake_verifier)


class TestResolve:
    """Tests for redirect resolution."""

    def test_url_without_redirect_resolves_to_itself(self, fetcher):
        url = "https://example.com/files/Kit.msi"
        assert fetcher.resolve(url) == url

    def test_follows_ten_redirects(self, tmp_path, transport_factory, fake_verifier):
        transport = redirect_chain(transport_factory, MAX_REDIRECTS)
        fetcher = ArtifactFetcher(tmp_path, transport=transport, verifier=fake_verifier)

        resolved = fetcher.resolve("https://go.example.com/start")

        assert resolved == f"https://cdn{MAX_REDIRECTS - 1}.example.com/files/Kit.msi"
        assert len(transport.head_calls) == MAX_REDIRECTS + 1

    def test_eleven_redirects_fail_naming_original_url(
        self, tmp_path, transport_factory, fake_verifier
    ):
        transport = redirect_chain(transport_factory, MAX_REDIRECTS + 1)
        fetcher = ArtifactFetcher(tmp_path, transport=transport, verifier=fake_verifier)

        with pytest.raises(RedirectLimitError) as exc_info:
            fetcher.resolve("https://go.example.com/start")

        assert exc_info.value.url == "https://go.example.com/start"
        assert exc_info.value.limit == MAX_REDIRECTS

    def test_relative_location_is_joined(self, tmp_path, transport_factory, fake_verifier):
        transport = transport_factory(
            {
                "https://example.com/latest": (301, "/releases/Tool-1.2.0.msi"),
                "https://example.com/releases/Tool-1.2.0.msi": (200, None),
            }
        )
        fetcher = ArtifactFetcher(tmp_path, transport=transport, verifier=fake_verifier)

        assert fetcher.resolve("https://example.com/latest") == (
            "https://example.com/releases/Tool-1.2.0.msi"
        )

    def test_error_status_raises(self, tmp_path, transport_factory, fake_verifier):
        transport = transport_factory({"https://example.com/missing": (404, None)})
        fetcher = ArtifactFetcher(tmp_path, transport=transport, verifier=fake_verifier)

        with pytest.raises(DownloadStatusError) as exc_info:
            fetcher.resolve("https://example.com/missing")

        assert exc_info.value.status == 404


class TestFetch:
    """Tests for cached downloads."""

    def test_downloads_to_name_from_resolved_url(self, fetcher, fake_transport, tmp_path):
        artifact = fetcher.fetch("https://example.com/files/Drivers%20A.msi", "Drivers")

        assert artifact.local_path == tmp_path / "downloads" / "Drivers A.msi"
        assert artifact.local_path.read_bytes().startswith(b"payload:")
        assert artifact.verified is False
        assert fake_transport.download_calls == ["https://example.com/files/Drivers%20A.msi"]

    def test_dest_name_overrides_url_name(self, fetcher, tmp_path):
        artifact = fetcher.fetch("https://example.com/download?id=7", "Kit", dest_name="Kit.msi")

        assert artifact.local_path == tmp_path / "downloads" / "Kit.msi"

    def test_second_fetch_uses_cache(self, fetcher, fake_transport):
        first = fetcher.fetch("https://example.com/files/Kit.msi", "Kit")
        second = fetcher.fetch("https://example.com/files/Kit.msi", "Kit")

        assert first.local_path == second.local_path
        assert len(fake_transport.download_calls) == 1

    def test_failed_download_leaves_no_file(self, fetcher, fake_transport, tmp_path):
        fake_transport.fail_download = AcquisitionError("connection reset")

        with pytest.raises(AcquisitionError):
            fetcher.fetch("https://example.com/files/Kit.msi", "Kit")

        assert list((tmp_path / "downloads").iterdir()) == []

    def test_stale_partial_is_replaced(self, fetcher, fake_transport, tmp_path):
        downloads = tmp_path / "downloads"
        downloads.mkdir()
        (downloads / "Kit.msi.partial").write_bytes(b"truncated")

        artifact = fetcher.fetch("https://example.com/files/Kit.msi", "Kit")

        assert not (downloads / "Kit.msi.partial").exists()
        assert artifact.local_path.read_bytes() == b"payload:https://example.com/files/Kit.msi"
        assert len(fake_transport.download_calls) == 1

    def test_progress_factory_receives_updates(self, tmp_path, fake_transport, fake_verifier):
        updates = []

        @contextmanager
        def progress_factory(name):
            yield lambda received, total: updates.append((name, received, total))

        fetcher = ArtifactFetcher(
            tmp_path, transport=fake_transport, verifier=fake_verifier,
            progress_factory=progress_factory,
        )
        fetcher.fetch("https://example.com/files/Kit.msi", "Kit")

        assert updates and updates[-1][0] == "Kit"


class TestVerification:
    """Tests for signature verification and the verified marker."""

    def test_invalid_signature_deletes_file(self, tmp_path, fake_transport, verifier_factory):
        fetcher = ArtifactFetcher(
            tmp_path, transport=fake_transport, verifier=verifier_factory(False, "NotSigned")
        )

        with pytest.raises(SignatureError) as exc_info:
            fetcher.fetch_verified("https://example.com/files/Kit.msi", "Kit")

        assert exc_info.value.status == "NotSigned"
        assert not (tmp_path / "Kit.msi").exists()
        assert "deleted" in str(exc_info.value)

    def test_verified_once_across_runs(self, tmp_path, fake_transport, fake_verifier):
        url = "https://example.com/files/Kit.msi"
        first = ArtifactFetcher(tmp_path, transport=fake_transport, verifier=fake_verifier)
        second = ArtifactFetcher(tmp_path, transport=fake_transport, verifier=fake_verifier)

        one = first.fetch_verified(url, "Kit")
        two = second.fetch_verified(url, "Kit")

        assert one.verified and two.verified
        assert len(fake_verifier.checked) == 1
        assert len(fake_transport.download_calls) == 1
        assert (tmp_path / "Kit.msi.verified").exists()

    def test_cached_unverified_file_is_verified(self, tmp_path, fake_transport, fake_verifier):
        (tmp_path / "Kit.msi").write_bytes(b"cached")
        fetcher = ArtifactFetcher(tmp_path, transport=fake_transport, verifier=fake_verifier)

        artifact = fetcher.fetch_verified("https://example.com/files/Kit.msi", "Kit")

        assert artifact.verified
        assert fake_verifier.checked == [tmp_path / "Kit.msi"]
        assert fake_transport.download_calls == []


class TestAiohttpTransport:
    """Tests for the aiohttp transport."""

    def test_default_timeout(self):
        transport = AiohttpTransport()
        assert transport.timeout.total == 3600

    @pytest.mark.asyncio
    async def test_head_returns_status_and_location(self):
        response = MagicMock(status=302, headers={"Location": "https://cdn.example.com/a"})
        session = MagicMock()
        session.head.return_value.__aenter__ = AsyncMock(return_value=response)
        session.head.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)

            status, location = await AiohttpTransport().head("https://example.com/a")

        assert (status, location) == (302, "https://cdn.example.com/a")
        session.head.assert_called_once_with("https://example.com/a", allow_redirects=False)

    @pytest.mark.asyncio
    async def test_client_error_becomes_acquisition_error(self):
        session = MagicMock()
        session.head.side_effect = aiohttp.ClientError("unreachable")

        with patch("aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(AcquisitionError, match="unreachable"):
                await AiohttpTransport().head("https://example.com/a")

    @pytest.mark.asyncio
    async def test_timeout_resolving_becomes_acquisition_error(self):
        """Test an expired ClientTimeout during HEAD is reported as a network error."""
        session = MagicMock()
        session.head.side_effect = asyncio.TimeoutError()

        with patch("aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(AcquisitionError, match="timed out"):
                await AiohttpTransport(timeout_seconds=1).head("https://example.com/a")

    @pytest.mark.asyncio
    async def test_timeout_downloading_becomes_acquisition_error(self, tmp_path):
        session = MagicMock()
        session.get.side_effect = asyncio.TimeoutError()

        with patch("aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_session_class.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(AcquisitionError, match="Network error downloading"):
                await AiohttpTransport().download("https://example.com/a.msi", tmp_path / "a.msi")
