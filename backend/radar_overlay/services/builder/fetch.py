"""MRMS source acquisition over HTTP.

Lists the remote directory index, picks the newest ``*.grib2.gz`` product
and downloads it into the local data directory.

Usage
-----
    from radar_overlay.services.builder.fetch import SourceAcquirer

    acquirer = SourceAcquirer(
        "https://mrms.ncep.noaa.gov/data/2D/ReflectivityAtLowestAltitude/",
        Path("./data"),
    )
    result = acquirer.fetch_latest()
"""

from __future__ import annotations

import logging
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from html.parser import HTMLParser
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urljoin, urlsplit

import httpx

from radar_overlay.services.retention import RetainedFileSet

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_SUFFIX = ".grib2.gz"
_CHUNK_SIZE = 64 * 1024

_TIMESTAMP_RE = re.compile(r"(\d{8})-(\d{6})")


class AcquisitionError(RuntimeError):
    """Raised when the source index or the newest product cannot be obtained."""


class _LinkParser(HTMLParser):
    """Collect relative href targets from an Apache-style directory listing."""

    def __init__(self) -> None:
        super().__init__()
        self.links: list[str] = []

    def handle_starttag(self, tag, attrs):
        if tag != "a":
            return
        for name, value in attrs:
            # "?C=M;O=D" sort links and absolute "/parent/" links are not products.
            if name == "href" and value and not value.startswith(("?", "/", "#")):
                self.links.append(value)


def _parse_links(html: str) -> list[str]:
    parser = _LinkParser()
    parser.feed(html)
    parser.close()
    return parser.links


def _product_name(href: str) -> str | None:
    """Plain basename an href should be stored under, or None if it has none."""
    path = unquote(urlsplit(href).path)
    name = PurePosixPath(path.rstrip("/")).name
    if not name or name in {".", ".."} or "\\" in name or "\x00" in name:
        return None
    return name


@dataclass(frozen=True)
class Candidate:
    name: str
    locator: str
    timestamp: datetime


@dataclass(frozen=True)
class FetchResult:
    locator: str
    local_path: Path
    timestamp: datetime
    name: str


def extract_timestamp(name: str, now: datetime | None = None) -> datetime:
    """Parse the ``YYYYMMDD-HHMMSS`` token of a product name as UTC.

    Names without a token, or with an impossible date, map to *now*.
    """
    fallback = now if now is not None else datetime.now(timezone.utc)
    match = _TIMESTAMP_RE.search(name)
    if match is None:
        return fallback
    try:
        parsed = datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S")
    except ValueError:
        return fallback
    return parsed.replace(tzinfo=timezone.utc)


def _is_rolling_alias(name: str) -> bool:
    return ".latest." in name.lower()


class SourceAcquirer:
    def __init__(
        self,
        source_url: str,
        data_dir: Path,
        *,
        list_timeout: float = 10.0,
        download_timeout: float = 30.0,
        max_download_bytes: int = 100 * 1024 * 1024,
        retries: int = 2,
        retry_sleep: float = 0.6,
        candidate_suffix: str = DEFAULT_CANDIDATE_SUFFIX,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.source_url = source_url if source_url.endswith("/") else source_url + "/"
        self.data_dir = Path(data_dir)
        self.list_timeout = float(list_timeout)
        self.download_timeout = float(download_timeout)
        self.max_download_bytes = int(max_download_bytes)
        self.retries = max(1, int(retries))
        self.retry_sleep = max(0.0, float(retry_sleep))
        self.candidate_suffix = candidate_suffix
        self._client = client
        self._owns_client = client is None
        self._local_files = RetainedFileSet(self.data_dir, f"*{candidate_suffix}")

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    # -- listing ----------------------------------------------------------

    def _fetch_index(self) -> str:
        last_exc: Exception | None = None
        for attempt_idx in range(1, self.retries + 1):
            try:
                response = self.client.get(self.source_url, timeout=self.list_timeout)
                response.raise_for_status()
                return response.text
            except httpx.HTTPError as exc:
                last_exc = exc
                logger.warning(
                    "Source index request failed (%s; attempt=%d/%d): %s",
                    self.source_url,
                    attempt_idx,
                    self.retries,
                    exc,
                )
                if self.retry_sleep > 0 and attempt_idx < self.retries:
                    time.sleep(self.retry_sleep)
        raise AcquisitionError(
            f"Source index unavailable after {self.retries} attempts: {self.source_url}"
        ) from last_exc

    def list_candidates(self) -> list[Candidate]:
        """Remote products, newest first."""
        html = self._fetch_index()
        now = datetime.now(timezone.utc)

        seen: set[str] = set()
        candidates: list[Candidate] = []
        for href in _parse_links(html):
            name = _product_name(href)
            if name is None or not name.endswith(self.candidate_suffix) or _is_rolling_alias(name):
                continue
            if name in seen:
                continue
            seen.add(name)
            candidates.append(
                Candidate(
                    name=name,
                    locator=urljoin(self.source_url, href),
                    timestamp=extract_timestamp(name, now),
                )
            )

        if not candidates:
            raise AcquisitionError(f"No {self.candidate_suffix} products listed at {self.source_url}")

        candidates.sort(key=lambda c: (c.timestamp, c.name), reverse=True)
        logger.info("Found %d source products; newest=%s", len(candidates), candidates[0].name)
        return candidates

    # -- download ---------------------------------------------------------

    def fetch_latest(self) -> FetchResult:
        newest = self.list_candidates()[0]
        local_path = self.data_dir / newest.name
        if local_path.is_file():
            logger.info("Source file already present: %s", newest.name)
        else:
            self._download(newest.locator, local_path)
        return FetchResult(
            locator=newest.locator,
            local_path=local_path,
            timestamp=newest.timestamp,
            name=newest.name,
        )

    def _download(self, locator: str, local_path: Path) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(suffix=".part", delete=False, dir=str(self.data_dir)) as tmp:
            tmp_path = Path(tmp.name)

        logger.info("Downloading %s", locator)
        try:
            written = 0
            with self.client.stream("GET", locator, timeout=self.download_timeout) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > self.max_download_bytes:
                    raise AcquisitionError(
                        f"Source product too large ({declared} bytes > {self.max_download_bytes}): {locator}"
                    )
                with tmp_path.open("wb") as fh:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        written += len(chunk)
                        if written > self.max_download_bytes:
                            raise AcquisitionError(
                                f"Source product exceeded {self.max_download_bytes} bytes: {locator}"
                            )
                        fh.write(chunk)
            tmp_path.replace(local_path)
        except httpx.HTTPError as exc:
            self._discard(tmp_path)
            raise AcquisitionError(f"Download failed for {locator}: {exc}") from exc
        except BaseException:
            self._discard(tmp_path)
            raise
        logger.info("Downloaded %s (%d bytes)", local_path.name, written)

    @staticmethod
    def _discard(tmp_path: Path) -> None:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            logger.warning("Failed to remove partial download: %s", tmp_path)

    # -- retention --------------------------------------------------------

    def prune_local(self, keep_count: int) -> list[Path]:
        return self._local_files.cleanup(keep_count)
