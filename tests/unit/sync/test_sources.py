"""Unit tests for DocumentFetcher and URL helpers."""

import httpx
import pytest
import respx

from responsekit.store.models import TemplateFile
from responsekit.sync.sources import (
    DocumentFetcher,
    DocumentFetchError,
    google_export_url,
    is_remote,
    strip_gviz_wrapper,
)

DOC_URL = "https://docs.google.com/document/d/abc_123/edit"
SHEET_URL = "https://docs.google.com/spreadsheets/d/sheet-9/edit#gid=0"
DOC_EXPORT = "https://docs.google.com/feeds/download/documents/export/Export"
SHEET_EXPORT = "https://docs.google.com/spreadsheets/d/sheet-9/gviz/tq"


def _entry(url: str, file_type: str = "txt") -> TemplateFile:
    return TemplateFile(id=1, template_id=1, file_url=url, file_type=file_type)


class TestUrlHelpers:
    def test_is_remote(self):
        assert is_remote("https://example.com/a.txt")
        assert is_remote("http://example.com/a.txt")
        assert not is_remote("/srv/docs/a.txt")

    def test_document_export_url(self):
        assert google_export_url(DOC_URL, "txt") == (
            "https://docs.google.com/feeds/download/documents/export/Export?id=abc_123&exportFormat=txt"
        )

    def test_spreadsheet_export_url(self):
        assert google_export_url(SHEET_URL, "json") == (
            "https://docs.google.com/spreadsheets/d/sheet-9/gviz/tq?tqx=out:json"
        )

    def test_other_urls_are_not_rewritten(self):
        assert google_export_url("https://example.com/d/abc", "txt") is None
        assert google_export_url("https://docs.google.com/forms", "txt") is None

    def test_strip_gviz_wrapper(self):
        wrapped = '/*O_o*/\ngoogle.visualization.Query.setResponse({"table": {"rows": []}});'
        assert strip_gviz_wrapper(wrapped) == '{"table": {"rows": []}}'
        assert strip_gviz_wrapper("plain") == "plain"


class TestLocalFiles:
    @pytest.mark.asyncio
    async def test_reads_local_file(self, tmp_path):
        path = tmp_path / "faq.txt"
        path.write_bytes(b"Q: A?")

        document = await DocumentFetcher().fetch(_entry(str(path)))

        assert document.content == b"Q: A?"
        assert document.local_path == path

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentFetchError, match="File not found"):
            await DocumentFetcher().fetch(_entry(str(tmp_path / "missing.txt")))

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_bytes(b"")

        with pytest.raises(DocumentFetchError, match="No content"):
            await DocumentFetcher().fetch(_entry(str(path)))

    @pytest.mark.asyncio
    async def test_blank_url(self):
        with pytest.raises(DocumentFetchError, match="Empty file URL"):
            await DocumentFetcher().fetch(_entry("   "))


class TestRemoteFiles:
    @pytest.mark.asyncio
    @respx.mock
    async def test_plain_download(self):
        respx.get("https://example.com/faq.txt").mock(return_value=httpx.Response(200, content=b"hello"))

        document = await DocumentFetcher().fetch(_entry("https://example.com/faq.txt"))

        assert document.content == b"hello"
        assert document.local_path is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error(self):
        respx.get("https://example.com/faq.txt").mock(return_value=httpx.Response(404))

        with pytest.raises(DocumentFetchError, match="Could not download"):
            await DocumentFetcher().fetch(_entry("https://example.com/faq.txt"))

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self):
        respx.get("https://example.com/faq.txt").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(DocumentFetchError):
            await DocumentFetcher().fetch(_entry("https://example.com/faq.txt"))

    @pytest.mark.asyncio
    @respx.mock
    async def test_google_document_export(self):
        export = respx.get(DOC_EXPORT).mock(return_value=httpx.Response(200, content=b"doc text"))

        document = await DocumentFetcher().fetch(_entry(DOC_URL))

        assert document.content == b"doc text"
        assert export.called
        assert export.calls.last.request.url.params["id"] == "abc_123"

    @pytest.mark.asyncio
    @respx.mock
    async def test_google_sheet_export_is_unwrapped(self):
        respx.get(SHEET_EXPORT).mock(
            return_value=httpx.Response(200, text='setResponse({"table": {}});')
        )

        document = await DocumentFetcher().fetch(_entry(SHEET_URL, file_type="json"))

        assert document.content == b'{"table": {}}'

    @pytest.mark.asyncio
    @respx.mock
    async def test_google_export_failure_falls_back(self):
        respx.get(DOC_EXPORT).mock(return_value=httpx.Response(403))
        respx.get(DOC_URL).mock(return_value=httpx.Response(200, content=b"published"))

        document = await DocumentFetcher().fetch(_entry(DOC_URL))

        assert document.content == b"published"

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_download(self):
        respx.get("https://example.com/empty.txt").mock(return_value=httpx.Response(200, content=b""))

        with pytest.raises(DocumentFetchError, match="No content"):
            await DocumentFetcher().fetch(_entry("https://example.com/empty.txt"))
