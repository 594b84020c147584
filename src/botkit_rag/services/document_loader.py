"""Document loading: files, URLs and CMS posts normalized to plain text."""

import io
import mimetypes
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import httpx
import PyPDF2
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from pydantic import BaseModel

from botkit_rag.config import Settings, get_settings
from botkit_rag.models.document import LoadedDocument
from botkit_rag.utils.errors import (
    DisallowedPathError,
    FetchError,
    HTTPStatusError,
    NotFoundError,
    ParseError,
    UnsupportedFormatError,
)
from botkit_rag.utils.logging import get_logger

logger = get_logger("document_loader")

CONTENT_TYPE_EXTENSIONS = {
    "text/html": "html",
    "text/plain": "txt",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/json": "json",
    "text/markdown": "md",
}

# Formats with no text extractor available
UNSUPPORTED_EXTENSIONS = frozenset(
    {"doc", "ppt", "pptx", "xls", "xlsx", "odt", "rtf", "png", "jpg", "jpeg", "gif", "webp", "zip"}
)

STATUS_MESSAGES = {
    403: "Access forbidden (HTTP 403): the site is blocking automated requests",
    404: "Page not found (HTTP 404): check that the URL is correct",
    429: "Too many requests (HTTP 429): the site is rate limiting, try again later",
    500: "Server error (HTTP 500): the remote site failed to serve the page",
}

# Substitutions for text mangled by lossy PDF font encodings
PDF_CLEANUP_MAP = (
    ("â€™", "'"),
    ("â€˜", "'"),
    ("â€œ", '"'),
    ("â€\x9d", '"'),
    ("â€“", "-"),
    ("â€”", "-"),
    ("â€¦", "..."),
    ("â€¢", "-"),
    ("ï¬\x81", "fi"),
    ("ï¬‚", "fl"),
    ("ﬁ", "fi"),
    ("ﬂ", "fl"),
    ("ﬀ", "ff"),
    ("ﬃ", "ffi"),
    ("ﬄ", "ffl"),
    ("’", "'"),
    ("‘", "'"),
    ("“", '"'),
    ("”", '"'),
    ("­", ""),
    ("Â ", " "),
    ("\x00", ""),
)

BOILERPLATE_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside", "form", "iframe", "svg")


class CMSPost(BaseModel):
    """A post as supplied by the host content management system."""

    id: int
    content: str
    post_type: str = "post"
    title: str = ""
    modified: Optional[str] = None


class PostSource(Protocol):
    """Host CMS access used to load posts and resolve their public URLs."""

    def get_post(self, post_id: int) -> Optional[CMSPost]:
        ...

    def get_permalink(self, post_id: int) -> Optional[str]:
        ...


ContentFilter = Callable[[str, int], str]


def clean_pdf_text(text: str) -> str:
    """Undo common encoding corruption in extracted PDF text."""
    for bad, good in PDF_CLEANUP_MAP:
        text = text.replace(bad, good)
    return text


def html_to_text(html: str) -> str:
    """Strip markup, keeping block boundaries as line breaks."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def extract_main_content(html: str) -> str:
    """
    Readability-style extraction of the main readable content of a page.

    Boilerplate elements are dropped, then the first ``<article>`` or
    ``<main>`` element is preferred, falling back to ``<body>``.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(list(BOILERPLATE_TAGS)):
        tag.decompose()
    root = soup.find("article") or soup.find("main") or soup.find(attrs={"role": "main"}) or soup.body or soup
    return root.get_text("\n", strip=True)


def extension_for_content_type(content_type: str) -> str:
    mime = (content_type or "").split(";")[0].strip().lower()
    return CONTENT_TYPE_EXTENSIONS.get(mime, "txt")


class DocumentLoader:
    """
    Fetch and normalize content into ``(text, metadata)``.

    Supports:
    - Files inside the allow-listed directories (txt, md, html, pdf, docx)
    - URLs fetched with browser-like headers (HTML reduced to main content)
    - CMS posts through a ``PostSource``
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        post_source: Optional[PostSource] = None,
        content_filters: Optional[List[ContentFilter]] = None,
    ):
        self.settings = settings or get_settings()
        self.loader_settings = self.settings.loader
        self._http_client = http_client
        self.post_source = post_source
        self.content_filters: List[ContentFilter] = list(content_filters or [])

    def _get_http_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                timeout=self.loader_settings.url_timeout,
                verify=self.loader_settings.verify_ssl,
                follow_redirects=True,
            )
        return self._http_client

    def _is_allowed(self, real_path: str) -> bool:
        for directory in self.loader_settings.allowed_dirs:
            allowed = os.path.realpath(directory)
            try:
                if os.path.commonpath([real_path, allowed]) == allowed:
                    return True
            except ValueError:
                continue
        return False

    def load_from_file(self, file_path: str, document_id: int) -> LoadedDocument:
        """
        Load a file from an allow-listed directory.

        Raises:
            DisallowedPathError: If the file resolves outside the allow-list
            NotFoundError: If the file does not exist or cannot be read
            UnsupportedFormatError: If no extractor exists for the extension
        """
        real_path = os.path.realpath(file_path)
        if not self._is_allowed(real_path):
            raise DisallowedPathError(file_path)
        if not os.path.isfile(real_path) or not os.access(real_path, os.R_OK):
            raise NotFoundError("File", file_path)

        extension = os.path.splitext(real_path)[1].lstrip(".").lower()
        with open(real_path, "rb") as f:
            data = f.read()
        stat = os.stat(real_path)
        mime_type = mimetypes.guess_type(real_path)[0]

        text = self.parse_content(data, extension)
        logger.info(f"Loaded file: {file_path} ({extension}, {len(text)} chars)")
        return LoadedDocument(
            content=text,
            metadata={
                "source": file_path,
                "document_id": document_id,
                "file_path": file_path,
                "mime_type": mime_type,
                "extension": extension,
                "size": stat.st_size,
                "last_modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            },
        )

    def load_from_url(self, url: str, document_id: int) -> LoadedDocument:
        """
        Fetch a URL and extract its readable text.

        Raises:
            FetchError: On invalid URLs or network failure
            HTTPStatusError: On any non-200 response
            ParseError: If no readable content can be extracted
        """
        parsed = urlparse(url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FetchError(f"Invalid URL: {url}", url=url)

        headers = {
            "User-Agent": self.loader_settings.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        try:
            response = self._get_http_client().get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch {url}: {e}")
            raise FetchError(f"Failed to fetch document from URL: {e}", url=url) from e

        if response.status_code != 200:
            raise HTTPStatusError(
                response.status_code,
                message=STATUS_MESSAGES.get(response.status_code),
                url=url,
            )

        content_type = response.headers.get("content-type", "")
        extension = extension_for_content_type(content_type)
        if extension == "html":
            try:
                text = extract_main_content(response.text)
            except Exception as e:
                raise ParseError(f"Failed to parse HTML document from URL: {e}", file_type="html") from e
            if not text.strip():
                raise ParseError("No readable content found at URL", file_type="html")
        else:
            text = self.parse_content(response.content, extension)

        return LoadedDocument(
            content=text,
            metadata={
                "source": url,
                "url": url,
                "document_id": document_id,
                "mime_type": content_type,
                "extension": extension,
                "size": len(response.content),
                "last_modified": response.headers.get("last-modified"),
            },
        )

    def load_from_post(self, post_id: int, document_id: int) -> LoadedDocument:
        """Load a CMS post, strip its markup and run content filters."""
        if self.post_source is None:
            raise NotFoundError("Post", str(post_id), details={"reason": "no post source configured"})
        post = self.post_source.get_post(post_id)
        if post is None:
            raise NotFoundError("Post", str(post_id))

        text = html_to_text(post.content)
        for content_filter in self.content_filters:
            text = content_filter(text, post_id)

        return LoadedDocument(
            content=text,
            metadata={
                "source": "post",
                "post_id": post_id,
                "document_id": document_id,
                "post_type": post.post_type,
                "title": post.title or None,
                "mime_type": "text/plain",
                "extension": "txt",
                "size": len(text),
                "last_modified": post.modified,
            },
        )

    def parse_content(self, data: bytes, extension: str) -> str:
        """Extract text from raw bytes according to the file extension."""
        extension = (extension or "").lower()
        if extension in UNSUPPORTED_EXTENSIONS:
            raise UnsupportedFormatError(
                f"No text extractor is available for .{extension} files. "
                "Please convert to PDF, DOCX or TXT format.",
                extension=extension,
            )
        if extension == "pdf":
            return self._parse_pdf(data)
        if extension == "docx":
            return self._parse_docx(data)
        text = data.decode("utf-8", errors="replace")
        if extension in ("html", "htm"):
            return html_to_text(text)
        return text

    def _parse_pdf(self, data: bytes) -> str:
        try:
            reader = PyPDF2.PdfReader(io.BytesIO(data))
        except (PyPDF2.errors.PdfReadError, ValueError) as e:
            raise ParseError(f"PDF file is corrupted or invalid: {e}", file_type="pdf") from e

        parts = []
        for page_num, page in enumerate(reader.pages, start=1):
            try:
                page_text = page.extract_text() or ""
            except Exception as e:
                logger.warning(f"Failed to extract text from PDF page {page_num}: {e}")
                continue
            if page_text.strip():
                parts.append(page_text)

        if not parts:
            raise ParseError(
                "No text could be extracted from PDF. The file may be image-based or corrupted.",
                file_type="pdf",
            )
        return clean_pdf_text("\n\n".join(parts))

    def _parse_docx(self, data: bytes) -> str:
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as e:
            raise ParseError(f"Failed to parse DOCX: {e}", file_type="docx") from e

        parts = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                row_text = " | ".join(cell.text.strip() for cell in row.cells if cell.text.strip())
                if row_text:
                    parts.append(row_text)
        return "\n\n".join(parts)

    def cleanup_temp_files(self, now: Optional[float] = None) -> int:
        """Delete temp uploads older than the configured max age. Returns files removed."""
        temp_dir = self.loader_settings.temp_dir
        if not os.path.isdir(temp_dir):
            return 0
        now = now if now is not None else time.time()
        removed = 0
        for name in os.listdir(temp_dir):
            path = os.path.join(temp_dir, name)
            if not os.path.isfile(path):
                continue
            if now - os.path.getmtime(path) >= self.loader_settings.temp_max_age:
                try:
                    os.remove(path)
                    removed += 1
                except OSError as e:
                    logger.warning(f"Could not remove temp file {path}: {e}")
        if removed:
            logger.info(f"Removed {removed} expired temp files from {temp_dir}")
        return removed

    def get_settings(self) -> Dict[str, Any]:
        return {
            "allowed_dirs": self.loader_settings.allowed_dirs,
            "temp_dir": self.loader_settings.temp_dir,
            "temp_max_age": self.loader_settings.temp_max_age,
            "url_timeout": self.loader_settings.url_timeout,
            "verify_ssl": self.loader_settings.verify_ssl,
        }
