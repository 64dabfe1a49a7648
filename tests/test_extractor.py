"""Extractor tests: listing parser, download client and staging tick."""

import asyncio
import hashlib
import io
import zipfile
from dataclasses import replace
from pathlib import Path

import pytest
from aiohttp import test_utils, web

from extractor.gdelt import (
    ChecksumMismatchError,
    GdeltFetchError,
    GdeltSource,
    SourceFile,
    parse_lastupdate,
)
from extractor.staging import Extractor
from utils.gcs import GCSError
from utils.retry import RetryPolicy

LISTING = """\
183047 1d2b7c8c1fa0a2bb0a8d44bc5d7e8a31 http://data.gdeltproject.org/gdeltv2/20240101001500.export.CSV.zip
296145 4c6a0e8f47d35a0ab9e2c7f9e0e6d7f1 http://data.gdeltproject.org/gdeltv2/20240101001500.mentions.CSV.zip
7413290 A8F2C4D9B1E3F5A7C9D1E3F5A7B9C1D3 http://data.gdeltproject.org/gdeltv2/20240101001500.gkg.csv.zip
"""

FAST = RetryPolicy(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0)


def _zip_bytes(member: str, content: bytes) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(member, content)
    return buffer.getvalue()


# =============================================================================
# lastupdate.txt
# =============================================================================

class TestParseLastupdate:
    def test_parses_all_kinds(self):
        files = parse_lastupdate(LISTING)

        assert [f.kind for f in files] == ["export", "mentions", "gkg"]
        gkg = files[2]
        assert gkg.batch_timestamp == "20240101001500"
        assert gkg.size == 7413290
        assert gkg.md5 == "a8f2c4d9b1e3f5a7c9d1e3f5a7b9c1d3"
        assert gkg.name == "20240101001500.gkg.csv.zip"
        assert gkg.csv_name == "20240101001500.gkg.csv"

    def test_ignores_blank_lines(self):
        assert len(parse_lastupdate("\n" + LISTING + "\n\n")) == 3

    @pytest.mark.parametrize(
        "line",
        [
            "183047 http://data.gdeltproject.org/gdeltv2/20240101001500.export.CSV.zip",
            "big 1d2b http://data.gdeltproject.org/gdeltv2/20240101001500.export.CSV.zip",
            "1 1d2b http://data.gdeltproject.org/gdeltv2/masterfilelist.txt",
        ],
    )
    def test_rejects_bad_lines(self, line):
        with pytest.raises(ValueError):
            parse_lastupdate(line)


# =============================================================================
# GdeltSource against a local HTTP server
# =============================================================================

GKG_CSV = b"20240101001500-1\t20240101001500\n"
GKG_ZIP = _zip_bytes("20240101001500.gkg.csv", GKG_CSV)


def _app(listing: str, payload: bytes, fail_first: int = 0) -> web.Application:
    state = {"zip_requests": 0}

    async def lastupdate(request):
        return web.Response(text=listing)

    async def archive(request):
        state["zip_requests"] += 1
        if state["zip_requests"] <= fail_first:
            return web.Response(status=503)
        return web.Response(body=payload)

    app = web.Application()
    app["state"] = state
    app.router.add_get("/gdeltv2/lastupdate.txt", lastupdate)
    app.router.add_get("/gdeltv2/{name}", archive)
    return app


def _source_file(server: test_utils.TestServer, md5: str) -> SourceFile:
    return SourceFile(
        kind="gkg",
        url=str(server.make_url("/gdeltv2/20240101001500.gkg.csv.zip")),
        size=len(GKG_ZIP),
        md5=md5,
        batch_timestamp="20240101001500",
    )


class TestGdeltSource:
    def test_list_published(self):
        async def scenario():
            async with test_utils.TestServer(_app(LISTING, GKG_ZIP)) as server:
                url = str(server.make_url("/gdeltv2/lastupdate.txt"))
                async with GdeltSource(url, policy=FAST) as source:
                    return await source.list_published()

        files = asyncio.run(scenario())
        assert [f.kind for f in files] == ["export", "mentions", "gkg"]

    def test_download_verifies_and_extracts(self, tmp_path):
        async def scenario():
            app = _app(LISTING, GKG_ZIP, fail_first=1)
            async with test_utils.TestServer(app) as server:
                source_file = _source_file(server, hashlib.md5(GKG_ZIP).hexdigest())
                async with GdeltSource("unused", policy=FAST) as source:
                    path = await source.download(source_file, tmp_path)
                return path, app["state"]["zip_requests"]

        path, requests = asyncio.run(scenario())

        assert path == tmp_path / "20240101001500.gkg.csv"
        assert path.read_bytes() == GKG_CSV
        assert requests == 2  # one 503, one success
        assert not (tmp_path / "20240101001500.gkg.csv.zip").exists()

    def test_download_rejects_checksum_mismatch(self, tmp_path):
        async def scenario():
            async with test_utils.TestServer(_app(LISTING, GKG_ZIP)) as server:
                source_file = _source_file(server, "0" * 32)
                async with GdeltSource("unused", policy=RetryPolicy(max_attempts=1)) as source:
                    await source.download(source_file, tmp_path)

        with pytest.raises(ChecksumMismatchError):
            asyncio.run(scenario())
        assert list(tmp_path.iterdir()) == []

    def test_download_rejects_multi_member_archive(self, tmp_path):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("a.csv", b"a")
            archive.writestr("b.csv", b"b")
        payload = buffer.getvalue()

        async def scenario():
            async with test_utils.TestServer(_app(LISTING, payload)) as server:
                source_file = _source_file(server, hashlib.md5(payload).hexdigest())
                async with GdeltSource("unused", policy=FAST) as source:
                    await source.download(source_file, tmp_path)

        with pytest.raises(GdeltFetchError, match="expected 1 member"):
            asyncio.run(scenario())

    def test_session_required(self):
        with pytest.raises(RuntimeError):
            GdeltSource("http://example.invalid").session


# =============================================================================
# Extractor tick
# =============================================================================

class FakeSource:
    """Stands in for GdeltSource; writes a small CSV per download."""

    def __init__(self, files, failing=()):
        self.files = files
        self.failing = set(failing)
        self.downloaded = []

    def __call__(self, url):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def list_published(self):
        return list(self.files)

    async def download(self, source_file, work_dir):
        if source_file.name in self.failing:
            raise GdeltFetchError(f"boom: {source_file.name}")
        path = Path(work_dir) / source_file.csv_name
        path.write_text("data\n")
        self.downloaded.append(path)
        return path


@pytest.fixture
def published():
    return parse_lastupdate(LISTING)


class TestExtractorRunOnce:
    def test_stages_new_files_create_only(self, settings, fake_gcs, published):
        source = FakeSource(published)
        extractor = Extractor(settings, fake_gcs, source_factory=source)

        result = asyncio.run(extractor.run_once())

        assert result["published"] == 3
        assert result["staged"] == 3
        assert result["failed"] == 0
        assert "gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz" in result["objects"]
        assert all(compress and if_absent for _, _, compress, if_absent in fake_gcs.uploads)
        # Working copies are gone once the tick ends
        assert source.downloaded and not any(p.exists() for p in source.downloaded)

    def test_skips_already_staged(self, settings, fake_gcs, published):
        extractor = Extractor(settings, fake_gcs, source_factory=FakeSource(published))
        asyncio.run(extractor.run_once())
        uploads = len(fake_gcs.uploads)

        second = asyncio.run(extractor.run_once())

        assert second["staged"] == 0
        assert second["skipped"] == 3
        assert len(fake_gcs.uploads) == uploads

    def test_concurrent_writer_counts_as_skipped(self, settings, fake_gcs, published, monkeypatch):
        gkg = [f for f in published if f.kind == "gkg"]
        extractor = Extractor(settings, fake_gcs, source_factory=FakeSource(gkg))
        uri = extractor.target_uri(gkg[0])

        # Another run stages the object between the exists check and the upload
        monkeypatch.setattr(fake_gcs, "exists", lambda _uri: False)
        fake_gcs.add(uri.removeprefix("gs://bucket/"), None)

        result = asyncio.run(extractor.run_once())

        assert result["staged"] == 0
        assert result["skipped"] == 1
        assert result["failed"] == 0

    def test_failed_file_does_not_stop_the_tick(self, settings, fake_gcs, published):
        source = FakeSource(published, failing={"20240101001500.mentions.CSV.zip"})
        result = asyncio.run(Extractor(settings, fake_gcs, source_factory=source).run_once())

        assert result["staged"] == 2
        assert result["failed"] == 1
        assert not any("mentions" in uri for uri in fake_gcs.objects)

    def test_upload_error_is_counted(self, settings, fake_gcs, published, monkeypatch):
        source = FakeSource(published)

        def _denied(local_path, gcs_uri, compress=False, if_absent=False):
            raise GCSError("denied")

        monkeypatch.setattr(fake_gcs, "upload_file", _denied)
        result = asyncio.run(Extractor(settings, fake_gcs, source_factory=source).run_once())

        assert result["failed"] == 3
        assert not any(p.exists() for p in source.downloaded)

    def test_filters_by_configured_kinds(self, settings, fake_gcs, published):
        gkg_only = replace(settings, gdelt_file_kinds=("gkg",))
        result = asyncio.run(Extractor(gkg_only, fake_gcs, source_factory=FakeSource(published)).run_once())

        assert result["published"] == 1
        assert result["objects"] == ["gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz"]
