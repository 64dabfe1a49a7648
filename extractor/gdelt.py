"""GDELT 2.1 source client.

GDELT publishes a new batch every 15 minutes. `lastupdate.txt` lists the
current batch, one line per file:

    <size> <md5> http://data.gdeltproject.org/gdeltv2/20240101001500.export.CSV.zip
    <size> <md5> http://data.gdeltproject.org/gdeltv2/20240101001500.mentions.CSV.zip
    <size> <md5> http://data.gdeltproject.org/gdeltv2/20240101001500.gkg.csv.zip

Each zip holds a single tab-delimited CSV.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

import aiohttp

from utils.retry import RetryPolicy, retry_async_call

logger = logging.getLogger(__name__)

FILE_KINDS = ("export", "mentions", "gkg")
_NAME_RE = re.compile(r"^(?P<batch>\d{14})\.(?P<kind>[a-z]+)\.csv\.zip$", re.IGNORECASE)

DOWNLOAD_CHUNK_BYTES = 1 << 20


class GdeltFetchError(Exception):
    """Raised when a listing or file cannot be fetched or unpacked."""


class ChecksumMismatchError(GdeltFetchError):
    """Raised when a downloaded file does not match the published md5."""


@dataclass(frozen=True, slots=True)
class SourceFile:
    """One file announced by lastupdate.txt."""

    kind: str  # export, mentions, gkg
    url: str
    size: int
    md5: str
    batch_timestamp: str  # YYYYMMDDHHMMSS

    @property
    def name(self) -> str:
        """Zip file name, e.g. 20240101001500.gkg.csv.zip"""
        return Path(urlparse(self.url).path).name

    @property
    def csv_name(self) -> str:
        """Name of the decompressed file, e.g. 20240101001500.gkg.csv"""
        return self.name[: -len(".zip")]


def parse_lastupdate(text: str) -> List[SourceFile]:
    """Parse a lastupdate.txt listing.

    Raises:
        ValueError: On a line that is not `<size> <md5> <url>` or a file name
            that does not follow the GDELT batch naming.
    """
    files = []
    for line_num, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue

        parts = line.split()
        if len(parts) != 3:
            raise ValueError(f"lastupdate line {line_num}: expected 3 fields, got {len(parts)}")
        raw_size, md5, url = parts

        try:
            size = int(raw_size)
        except ValueError:
            raise ValueError(f"lastupdate line {line_num}: invalid size {raw_size!r}") from None

        match = _NAME_RE.match(Path(urlparse(url).path).name)
        if not match:
            raise ValueError(f"lastupdate line {line_num}: unexpected file name in {url}")

        files.append(
            SourceFile(
                kind=match.group("kind").lower(),
                url=url,
                size=size,
                md5=md5.lower(),
                batch_timestamp=match.group("batch"),
            )
        )
    return files


class GdeltSource:
    """Async client for the GDELT file endpoint.

    Usage:
        async with GdeltSource(settings.gdelt_lastupdate_url) as source:
            for source_file in await source.list_published():
                path = await source.download(source_file, work_dir)
    """

    def __init__(
        self,
        lastupdate_url: str,
        *,
        policy: RetryPolicy = RetryPolicy(max_attempts=3, base_delay_seconds=2.0),
        timeout_seconds: float = 300.0,
    ) -> None:
        self._lastupdate_url = lastupdate_url
        self._policy = policy
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> GdeltSource:
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("GdeltSource not initialized. Use 'async with GdeltSource(...)'")
        return self._session

    def _on_retry(self, what: str):
        return lambda attempt, exc: logger.warning(f"[Extractor] Retry {attempt} for {what}: {exc}")

    async def list_published(self) -> List[SourceFile]:
        """Fetch and parse the current batch listing."""

        async def _request() -> str:
            async with self.session.get(self._lastupdate_url) as response:
                response.raise_for_status()
                return await response.text()

        try:
            text = await retry_async_call(
                _request,
                policy=self._policy,
                retry_on=(aiohttp.ClientError, asyncio.TimeoutError),
                on_retry=self._on_retry(self._lastupdate_url),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GdeltFetchError(f"Failed to fetch {self._lastupdate_url}: {e}") from e

        files = parse_lastupdate(text)
        logger.info(f"[Extractor] Listing has {len(files)} files: {[f.name for f in files]}")
        return files

    async def download(self, source_file: SourceFile, work_dir: str | Path) -> Path:
        """Download, verify and decompress one file into `work_dir`.

        The zip is removed after extraction; the caller owns the returned CSV.

        Raises:
            GdeltFetchError: Download failed after retries, checksum mismatch,
                or the archive is not a single-member zip.
        """
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        zip_path = work_dir / source_file.name

        async def _request() -> None:
            digest = hashlib.md5()
            async with self.session.get(source_file.url) as response:
                response.raise_for_status()
                with open(zip_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_BYTES):
                        digest.update(chunk)
                        f.write(chunk)
            if digest.hexdigest() != source_file.md5:
                raise ChecksumMismatchError(
                    f"md5 mismatch for {source_file.name}: "
                    f"expected {source_file.md5}, got {digest.hexdigest()}"
                )

        try:
            await retry_async_call(
                _request,
                policy=self._policy,
                retry_on=(aiohttp.ClientError, asyncio.TimeoutError, ChecksumMismatchError),
                on_retry=self._on_retry(source_file.name),
            )
            return _extract_single(zip_path, work_dir)
        except GdeltFetchError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GdeltFetchError(f"Failed to download {source_file.url}: {e}") from e
        finally:
            zip_path.unlink(missing_ok=True)


def _extract_single(zip_path: Path, dest_dir: Path) -> Path:
    try:
        with zipfile.ZipFile(zip_path) as archive:
            members = [m for m in archive.infolist() if not m.is_dir()]
            if len(members) != 1:
                raise GdeltFetchError(f"{zip_path.name}: expected 1 member, found {len(members)}")
            member = members[0]
            # Flatten the member name so an archive cannot write outside dest_dir.
            target = dest_dir / Path(member.filename).name
            with archive.open(member) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst, DOWNLOAD_CHUNK_BYTES)
    except zipfile.BadZipFile as e:
        raise GdeltFetchError(f"{zip_path.name} is not a valid zip: {e}") from e

    logger.info(f"[Extractor] Extracted {target.name} ({target.stat().st_size / 1024 / 1024:.2f} MB)")
    return target
