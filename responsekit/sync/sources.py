"""
Document fetching for vector index synchronization.

Supported sources:
- http(s) URLs, fetched with httpx
- Google Docs / Sheets URLs, rewritten to their export endpoints
- Local filesystem paths, read with aiofiles
"""

import re
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import httpx

from responsekit.config.logging import get_logger
from responsekit.store.models import TemplateFile

logger = get_logger(__name__)

GOOGLE_DOCS_HOST = "docs.google.com"
SPREADSHEET_EXPORT_URL = "https://docs.google.com/spreadsheets/d/{id}/gviz/tq?tqx=out:json"
DOCUMENT_EXPORT_URL = (
    "https://docs.google.com/feeds/download/documents/export/Export?id={id}&exportFormat=txt"
)

_DOCUMENT_ID = re.compile(r"/d/([a-zA-Z0-9_-]+)")
# The gviz endpoint wraps its JSON in a JavaScript callback.
_GVIZ_PAYLOAD = re.compile(r"({.*})", re.DOTALL)


class DocumentFetchError(Exception):
    """Raised when a manifest entry's content cannot be fetched."""


@dataclass
class FetchedDocument:
    """
    Content of one manifest entry.

    Attributes:
        content: Raw bytes
        local_path: Set when the source already is a local file, so no
                    temporary copy is needed for upload
    """

    content: bytes
    local_path: Path | None = None


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def google_export_url(url: str, file_type: str) -> str | None:
    """Export endpoint for a Google Docs/Sheets URL, or None for any other URL."""
    if GOOGLE_DOCS_HOST not in url:
        return None
    match = _DOCUMENT_ID.search(url)
    if not match:
        return None
    if file_type == "json":
        return SPREADSHEET_EXPORT_URL.format(id=match.group(1))
    return DOCUMENT_EXPORT_URL.format(id=match.group(1))


def strip_gviz_wrapper(text: str) -> str:
    match = _GVIZ_PAYLOAD.search(text)
    return match.group(1) if match else text


class DocumentFetcher:
    """
    Fetches manifest entry content.

    Args:
        timeout: Download timeout in seconds
        transport: Optional httpx transport, mainly for tests
    """

    def __init__(self, timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None):
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, entry: TemplateFile) -> FetchedDocument:
        """
        Fetch the current content of a manifest entry.

        Raises:
            DocumentFetchError: If the source cannot be read or is empty
        """
        source = entry.file_url.strip()
        if not source:
            raise DocumentFetchError("Empty file URL")

        if is_remote(source):
            content = await self._download(source, entry.file_type)
            local_path = None
        else:
            local_path = Path(source)
            content = await self._read_local(local_path)

        if not content:
            raise DocumentFetchError(f"No content at {source}")

        logger.debug(f"Fetched {len(content)} bytes from {source}")
        return FetchedDocument(content=content, local_path=local_path)

    async def _read_local(self, path: Path) -> bytes:
        if not path.is_file():
            raise DocumentFetchError(f"File not found: {path}")
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise DocumentFetchError(f"Could not read '{path}': {e}") from e

    async def _download(self, url: str, file_type: str) -> bytes:
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            export_url = google_export_url(url, file_type)
            if export_url is not None:
                try:
                    response = await client.get(export_url)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    logger.warning(f"Google export failed for {url}, falling back to plain GET: {e}")
                else:
                    if file_type == "json":
                        return strip_gviz_wrapper(response.text).encode("utf-8")
                    return response.content

            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Download of {url} failed: {e}")
                raise DocumentFetchError(f"Could not download '{url}': {e}") from e
            return response.content
