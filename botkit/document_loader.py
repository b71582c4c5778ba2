"""
Document Loader Module

Extracts normalized text from every supported source:
- file: PDF (.pdf), Word (.docx), plain text (.txt, .md), HTML (.html, .htm)
- url: HTTP fetch with timeout, HTML converted to text
- post / product / course: structured field concatenation
- text: raw text passed through

File parsing uses the LangChain community loaders; URL fetching uses httpx.
Empty content is returned as "" so the caller decides what to do with it.
"""

import logging
import mimetypes
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx
from langchain_community.document_loaders import (
    Docx2txtLoader,
    PyPDFLoader,
    TextLoader,
)

from config.settings import get_settings, LoaderConfig
from botkit.content import CONTENT_BUILDERS, html_to_text
from botkit.exceptions import FetchError, IngestionError, UnsupportedFormat

# Configure logging
logger = logging.getLogger(__name__)

ContentProvider = Callable[[str, str], Optional[Mapping[str, Any]]]


class DocumentLoader:
    """
    Loads raw text from files, URLs and structured content.

    Example:
        loader = DocumentLoader()
        text = loader.load("file", "data/uploads/faq.pdf")
        text = loader.load("url", "https://example.com/help")
        text = loader.load("product", {"name": "Mug", "price": "9.99"})
    """

    # Supported file extensions and their loaders
    FILE_LOADERS = {
        ".pdf": PyPDFLoader,
        ".docx": Docx2txtLoader,
        ".txt": TextLoader,
        ".md": TextLoader,
    }
    HTML_EXTENSIONS = {".html", ".htm"}

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        content_provider: Optional[ContentProvider] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the loader.

        Args:
            config: Optional LoaderConfig instance
            content_provider: Resolves (source_type, source_id) to an entity
                mapping when structured content is referenced by id
            http_client: Optional httpx.Client (tests inject a mock transport)
        """
        self.config = config or get_settings().loader
        self.content_provider = content_provider
        self._http_client = http_client
        self._allowed_dirs = [Path(d).resolve() for d in self.config.allowed_dirs]

    @property
    def supported_extensions(self) -> List[str]:
        return sorted(list(self.FILE_LOADERS) + list(self.HTML_EXTENSIONS))

    def load(self, source_type: str, source_ref: Any) -> str:
        """
        Extract text from a source.

        Args:
            source_type: file, url, text, post, page, product or course
            source_ref: Path, URL, raw text, entity mapping or entity id

        Returns:
            Extracted text ("" when the source is empty)

        Raises:
            UnsupportedFormat: Unknown source type or file format
            FetchError: URL could not be fetched
            IngestionError: File missing or outside the allowed directories
        """
        if source_type == "file":
            return self.load_from_file(source_ref)
        elif source_type == "url":
            return self.load_from_url(source_ref)
        elif source_type == "text":
            return (source_ref or "").strip()
        elif source_type in CONTENT_BUILDERS:
            return self.load_from_content(source_type, source_ref)
        else:
            raise UnsupportedFormat(f"Unsupported source type: {source_type}")

    def _check_allowed(self, path: Path) -> None:
        resolved = path.resolve()
        for allowed in self._allowed_dirs:
            if resolved == allowed or allowed in resolved.parents:
                return
        raise IngestionError(f"File is outside the allowed upload directories: {path}")

    def load_from_file(self, file_path: Union[str, Path]) -> str:
        """
        Extract text from a local file.

        Args:
            file_path: Path to the document

        Returns:
            Extracted text
        """
        path = Path(file_path)
        self._check_allowed(path)

        if not path.exists():
            raise IngestionError(f"Document not found: {path}")

        extension = path.suffix.lower()
        if extension in self.HTML_EXTENSIONS:
            return html_to_text(path.read_text(encoding="utf-8", errors="replace"))

        if extension not in self.FILE_LOADERS:
            raise UnsupportedFormat(
                f"Unsupported file type: {extension}. "
                f"Supported types: {self.supported_extensions}"
            )

        logger.info(f"Loading document: {path.name}")
        text = self._run_loader(extension, path)
        logger.debug(f"Extracted {len(text)} chars from {path.name}")
        return text

    def _run_loader(self, extension: str, path: Path) -> str:
        loader_class = self.FILE_LOADERS[extension]
        if loader_class is TextLoader:
            loader = TextLoader(str(path), encoding="utf-8")
        else:
            loader = loader_class(str(path))

        try:
            pages = loader.load()
        except Exception as e:
            logger.error(f"Failed to parse {path.name}: {e}")
            raise IngestionError(f"Failed to parse {path.name}: {e}") from e

        return "\n\n".join(page.page_content.strip() for page in pages if page.page_content.strip())

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=self.config.fetch_timeout,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._http_client

    def load_from_url(self, url: str) -> str:
        """
        Fetch a URL and extract its text.

        Args:
            url: http(s) URL

        Returns:
            Extracted text
        """
        if not url or not url.lower().startswith(("http://", "https://")):
            raise FetchError(f"Invalid URL: {url}", url=url)

        logger.info(f"Fetching URL: {url}")
        try:
            response = self._client().get(url, timeout=self.config.fetch_timeout)
        except httpx.HTTPError as e:
            logger.error(f"Fetch error for {url}: {e}")
            raise FetchError(f"Failed to fetch {url}: {e}", url=url) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise FetchError(
                f"Failed to fetch {url}: HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type or content_type in ("text/html", "application/xhtml+xml"):
            return html_to_text(response.text)
        if content_type.startswith("text/"):
            return response.text.strip()
        if content_type == "application/pdf":
            return self._pdf_from_bytes(response.content)

        raise UnsupportedFormat(f"Unsupported content type from {url}: {content_type}")

    def _pdf_from_bytes(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "download.pdf"
            path.write_bytes(data)
            return self._run_loader(".pdf", path)

    def load_from_content(self, source_type: str, source_ref: Any) -> str:
        """
        Build text from a structured entity.

        Args:
            source_type: post, page, product or course
            source_ref: Entity mapping, or an id resolved via the content provider

        Returns:
            Concatenated field text
        """
        entity = source_ref
        if not isinstance(entity, Mapping):
            if self.content_provider is None:
                raise IngestionError(
                    f"No content provider configured to resolve {source_type} {source_ref}"
                )
            entity = self.content_provider(source_type, str(source_ref))
            if entity is None:
                raise IngestionError(f"{source_type.capitalize()} not found: {source_ref}")

        return CONTENT_BUILDERS[source_type](entity)

    def detect_mime_type(self, source_type: str, source_ref: Any) -> str:
        """Best-effort MIME type for the documents table."""
        if source_type == "file":
            guessed, _ = mimetypes.guess_type(str(source_ref))
            if str(source_ref).lower().endswith(".md"):
                return "text/markdown"
            return guessed or "application/octet-stream"
        if source_type == "url":
            return "text/html"
        return "text/plain"

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
