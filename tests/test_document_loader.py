"""
Tests for Document Loader Module

Files are written to a temporary upload directory; URLs are served by
httpx.MockTransport.

Run with: pytest tests/test_document_loader.py -v
"""

from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from config.settings import LoaderConfig
from botkit.document_loader import DocumentLoader
from botkit.exceptions import FetchError, IngestionError, UnsupportedFormat


def serve(routes):
    """httpx client answering {url: (status, content_type, body)}."""
    def handler(request):
        status, content_type, body = routes.get(str(request.url), (404, "text/plain", "not found"))
        content = body if isinstance(body, bytes) else body.encode("utf-8")
        return httpx.Response(status, headers={"content-type": content_type}, content=content)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def uploads(tmp_path):
    directory = tmp_path / "uploads"
    directory.mkdir()
    return directory


@pytest.fixture
def loader(uploads):
    return DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]))


class TestFileLoading:
    """Tests for local file extraction."""

    def test_text_file(self, loader, uploads):
        path = uploads / "faq.txt"
        path.write_text("Refunds are issued within five business days.\n", encoding="utf-8")

        assert loader.load("file", str(path)) == "Refunds are issued within five business days."

    def test_markdown_file(self, loader, uploads):
        path = uploads / "notes.md"
        path.write_text("# Shipping\n\nFree over $50.", encoding="utf-8")

        assert loader.load("file", path) == "# Shipping\n\nFree over $50."

    def test_html_file(self, loader, uploads):
        path = uploads / "page.html"
        path.write_text("<html><head><title>x</title></head><body><p>Hello</p><p>World</p></body></html>")

        assert loader.load("file", path) == "Hello\n\nWorld"

    def test_pdf_pages_joined(self, loader, uploads):
        """Test PDF pages are joined with blank lines and empty pages dropped."""
        path = uploads / "manual.pdf"
        path.write_bytes(b"%PDF-1.4")
        pages = [Mock(page_content="Page one. "), Mock(page_content="   "), Mock(page_content="Page two.")]
        pdf_loader = MagicMock()
        pdf_loader.return_value.load.return_value = pages

        with patch.dict(DocumentLoader.FILE_LOADERS, {".pdf": pdf_loader}):
            text = loader.load("file", path)

        pdf_loader.assert_called_once_with(str(path))
        assert text == "Page one.\n\nPage two."

    def test_parser_error_wrapped(self, loader, uploads):
        path = uploads / "broken.docx"
        path.write_bytes(b"not a zip")
        docx_loader = MagicMock()
        docx_loader.return_value.load.side_effect = ValueError("bad zip")

        with patch.dict(DocumentLoader.FILE_LOADERS, {".docx": docx_loader}):
            with pytest.raises(IngestionError, match="Failed to parse broken.docx"):
                loader.load("file", path)

    def test_unsupported_extension(self, loader, uploads):
        path = uploads / "sheet.xlsx"
        path.write_bytes(b"")
        with pytest.raises(UnsupportedFormat, match="Unsupported file type: .xlsx"):
            loader.load("file", path)

    def test_missing_file(self, loader, uploads):
        with pytest.raises(IngestionError, match="Document not found"):
            loader.load("file", uploads / "gone.txt")

    def test_outside_allowed_dirs(self, loader, tmp_path):
        """Test paths escaping the upload directory are refused."""
        secret = tmp_path / "secret.txt"
        secret.write_text("password")

        with pytest.raises(IngestionError, match="outside the allowed upload directories"):
            loader.load("file", secret)
        with pytest.raises(IngestionError, match="outside"):
            loader.load("file", tmp_path / "uploads" / ".." / "secret.txt")

    def test_supported_extensions(self, loader):
        assert loader.supported_extensions == [".docx", ".htm", ".html", ".md", ".pdf", ".txt"]


class TestUrlLoading:
    """Tests for URL fetching."""

    def test_html_page(self, uploads):
        client = serve({"https://shop.test/faq": (200, "text/html; charset=utf-8", "<h1>FAQ</h1><p>Ask us.</p>")})
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), http_client=client)

        assert loader.load("url", "https://shop.test/faq") == "FAQ\n\nAsk us."

    def test_plain_text(self, uploads):
        client = serve({"https://shop.test/robots.txt": (200, "text/plain", "  User-agent: *  ")})
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), http_client=client)

        assert loader.load("url", "https://shop.test/robots.txt") == "User-agent: *"

    def test_http_error_status(self, uploads):
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), http_client=serve({}))

        with pytest.raises(FetchError) as excinfo:
            loader.load("url", "https://shop.test/missing")
        assert excinfo.value.status_code == 404
        assert excinfo.value.url == "https://shop.test/missing"

    def test_transport_error(self, uploads):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), http_client=client)

        with pytest.raises(FetchError, match="Failed to fetch"):
            loader.load("url", "https://shop.test/slow")

    def test_invalid_url(self, loader):
        with pytest.raises(FetchError, match="Invalid URL"):
            loader.load("url", "ftp://shop.test/file")

    def test_unsupported_content_type(self, uploads):
        client = serve({"https://shop.test/logo.png": (200, "image/png", b"\x89PNG")})
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), http_client=client)

        with pytest.raises(UnsupportedFormat, match="image/png"):
            loader.load("url", "https://shop.test/logo.png")


class TestContentLoading:
    def test_entity_mapping(self, loader):
        text = loader.load("product", {"name": "Mug", "price": "9.99", "description": "Holds coffee."})
        assert text.startswith("Product Name: Mug")

    def test_entity_by_id(self, uploads):
        provider = Mock(return_value={"title": "About us", "content": "<p>We sell mugs.</p>"})
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), content_provider=provider)

        assert loader.load("page", 3) == "Title: About us\n\nWe sell mugs."
        provider.assert_called_once_with("page", "3")

    def test_entity_not_found(self, uploads):
        loader = DocumentLoader(LoaderConfig(allowed_dirs=[str(uploads)]), content_provider=Mock(return_value=None))
        with pytest.raises(IngestionError, match="Post not found: 9"):
            loader.load("post", 9)

    def test_entity_id_without_provider(self, loader):
        with pytest.raises(IngestionError, match="No content provider"):
            loader.load("course", 4)

    def test_text_and_unknown_types(self, loader):
        assert loader.load("text", "  raw text  ") == "raw text"
        assert loader.load("text", None) == ""
        with pytest.raises(UnsupportedFormat, match="Unsupported source type: video"):
            loader.load("video", "clip.mp4")


class TestDetectMimeType:
    @pytest.mark.parametrize("source_type,ref,expected", [
        ("file", "faq.pdf", "application/pdf"),
        ("file", "notes.md", "text/markdown"),
        ("file", "blob.unknownext", "application/octet-stream"),
        ("url", "https://shop.test", "text/html"),
        ("product", 5, "text/plain"),
    ])
    def test_detect(self, loader, source_type, ref, expected):
        assert loader.detect_mime_type(source_type, ref) == expected


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
