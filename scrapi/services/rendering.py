"""
Ad landing page rendering and storage collaborators.

HTML snapshots of the ad landing pages are fetched with httpx and cleaned
with BeautifulSoup so they render offline: scripts and external stylesheets
are dropped, link and image URLs are made absolute. PNG rendering and
object-storage upload are external concerns; the workflow only talks to them
through the protocols below.
"""

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol
from urllib.parse import urljoin, urlparse

import aiofiles
import aiofiles.os
import httpx
import structlog
from bs4 import BeautifulSoup

from scrapi.core.models import PaidListing

logger = structlog.get_logger()

_ABSOLUTE_PREFIXES = ("http://", "https://")


class HtmlRenderer(Protocol):
    async def render(self, job_id: str, ads: list[PaidListing]) -> list[Path]: ...


class PngRenderer(Protocol):
    async def render(self, job_id: str, html_files: list[Path]) -> list[Path]: ...


class StorageUploader(Protocol):
    async def upload(self, job_id: str, files: list[Path]) -> list[str]:
        """Upload files and return their public URLs."""
        ...


def clean_landing_page(html: str, base_url: str) -> str:
    """Strip scripts and external stylesheets, absolutize link/image URLs."""
    soup = BeautifulSoup(html, "lxml")

    for tag in soup.find_all("script"):
        tag.decompose()

    for link in soup.find_all("link", rel="stylesheet"):
        if (link.get("href") or "").startswith(_ABSOLUTE_PREFIXES):
            link.decompose()

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not href.startswith(_ABSOLUTE_PREFIXES) and not href.startswith("#"):
            anchor["href"] = urljoin(base_url, href)

    for img in soup.find_all("img", src=True):
        src = img["src"]
        if not src.startswith(_ABSOLUTE_PREFIXES) and not src.startswith("data:"):
            img["src"] = urljoin(base_url, src)

    return str(soup)


def snapshot_filename(url: str, position: int | None) -> str:
    hostname = urlparse(url).hostname or "unknown"
    hostname = re.sub(r"[^A-Za-z0-9.-]", "_", hostname)
    stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
    return f"rendered-{position or 0}-{hostname}-{stamp}.html"


class LandingPageRenderer:
    """Fetches ad landing pages and stores cleaned HTML snapshots per job."""

    HEADERS = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml",
        "Accept-Language": "en-US,en;q=0.9",
    }

    def __init__(
        self,
        output_dir: Path,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self._client = client
        self.log = logger.bind(component="LandingPageRenderer")

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str | None:
        try:
            response = await client.get(url, headers=self.HEADERS, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.log.warning("Landing page fetch failed", url=url[:100], error=str(e))
            return None
        if "html" not in response.headers.get("content-type", "text/html"):
            self.log.warning("Landing page is not HTML", url=url[:100])
            return None
        return clean_landing_page(response.text, str(response.url))

    async def render(self, job_id: str, ads: list[PaidListing]) -> list[Path]:
        job_dir = self.output_dir / job_id / "html"
        await aiofiles.os.makedirs(job_dir, exist_ok=True)
        rendered: list[Path] = []

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            for ad in ads:
                if not ad.url:
                    continue
                html = await self._fetch(client, ad.url)
                if html is None:
                    continue
                path = job_dir / snapshot_filename(ad.url, ad.pos)
                async with aiofiles.open(path, "w", encoding="utf-8") as f:
                    await f.write(html)
                rendered.append(path)
                self.log.debug("Landing page rendered", job_id=job_id, url=ad.url[:100], path=str(path))
        finally:
            if self._client is None:
                await client.aclose()

        return rendered
