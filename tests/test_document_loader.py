"""Tests for file, URL and post loading."""

import io
import os
import time

import docx
import httpx
import PyPDF2
import pytest

from botkit_rag.services.document_loader import (
    CMSPost,
    DocumentLoader,
    clean_pdf_text,
    extension_for_content_type,
    extract_main_content,
)
from botkit_rag.utils.errors import (
    DisallowedPathError,
    FetchError,
    HTTPStatusError,
    NotFoundError,
    ParseError,
    UnsupportedFormatError,
)

ARTICLE_HTML = """
<html><head><title>FAQ</title><script>var x = 1;</script></head>
<body>
  <nav>Home | About</nav>
  <article><h1>Returns</h1><p>Items can be returned within 30 days.</p></article>
  <footer>Copyright</footer>
</body></html>
"""


class FakePostSource:
    def __init__(self, posts):
        self.posts = posts

    def get_post(self, post_id):
        return self.posts.get(post_id)

    def get_permalink(self, post_id):
        return f"https://example.com/?p={post_id}"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def loader(settings):
    return DocumentLoader(settings=settings)


def _write(directory, name, data):
    path = os.path.join(directory, name)
    mode = "wb" if isinstance(data, bytes) else "w"
    with open(path, mode) as f:
        f.write(data)
    return path


class TestLoadFromFile:
    def test_text_file(self, loader, upload_dir):
        path = _write(upload_dir, "notes.txt", "Plain text body")
        document = loader.load_from_file(path, 3)

        assert document.content == "Plain text body"
        assert document.metadata["document_id"] == 3
        assert document.metadata["extension"] == "txt"
        assert document.metadata["mime_type"] == "text/plain"
        assert document.metadata["file_path"] == path
        assert document.metadata["size"] == len("Plain text body")

    def test_html_file_is_stripped(self, loader, upload_dir):
        path = _write(upload_dir, "page.html", "<p>Hello <b>world</b></p><script>x()</script>")
        content = loader.load_from_file(path, 1).content
        assert "Hello" in content and "world" in content
        assert "<" not in content and "x()" not in content

    def test_docx_file(self, loader, upload_dir):
        document = docx.Document()
        document.add_paragraph("First paragraph")
        table = document.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "Size"
        table.rows[0].cells[1].text = "Large"
        path = os.path.join(upload_dir, "doc.docx")
        document.save(path)

        content = loader.load_from_file(path, 1).content
        assert "First paragraph" in content
        assert "Size | Large" in content

    def test_outside_allow_list_is_rejected(self, loader, tmp_path):
        outside = tmp_path / "private"
        outside.mkdir()
        path = _write(str(outside), "secret.txt", "secret")
        with pytest.raises(DisallowedPathError):
            loader.load_from_file(path, 1)

    def test_traversal_is_rejected(self, loader, upload_dir, tmp_path):
        _write(str(tmp_path), "secret.txt", "secret")
        with pytest.raises(DisallowedPathError):
            loader.load_from_file(os.path.join(upload_dir, "..", "secret.txt"), 1)

    def test_allow_list_is_checked_before_existence(self, loader, tmp_path):
        with pytest.raises(DisallowedPathError):
            loader.load_from_file(str(tmp_path / "missing.txt"), 1)

    def test_missing_file_in_allowed_dir(self, loader, upload_dir):
        with pytest.raises(NotFoundError):
            loader.load_from_file(os.path.join(upload_dir, "missing.txt"), 1)

    def test_unsupported_format(self, loader, upload_dir):
        path = _write(upload_dir, "sheet.xlsx", b"PK\x03\x04")
        with pytest.raises(UnsupportedFormatError) as exc_info:
            loader.load_from_file(path, 1)
        assert exc_info.value.details["extension"] == "xlsx"

    def test_corrupt_pdf(self, loader, upload_dir):
        path = _write(upload_dir, "broken.pdf", b"this is not a pdf")
        with pytest.raises(ParseError):
            loader.load_from_file(path, 1)

    def test_pdf_without_text(self, loader, upload_dir):
        writer = PyPDF2.PdfWriter()
        writer.add_blank_page(width=200, height=200)
        buffer = io.BytesIO()
        writer.write(buffer)
        path = _write(upload_dir, "blank.pdf", buffer.getvalue())

        with pytest.raises(ParseError) as exc_info:
            loader.load_from_file(path, 1)
        assert "No text could be extracted" in exc_info.value.message


class TestLoadFromUrl:
    def test_html_page_main_content(self, settings):
        def handler(request):
            assert "Mozilla" in request.headers["user-agent"]
            return httpx.Response(200, text=ARTICLE_HTML, headers={"content-type": "text/html; charset=utf-8"})

        loader = DocumentLoader(settings=settings, http_client=_client(handler))
        document = loader.load_from_url("https://example.com/faq", 5)

        assert "Items can be returned within 30 days." in document.content
        assert "Home | About" not in document.content
        assert "Copyright" not in document.content
        assert document.metadata["url"] == "https://example.com/faq"
        assert document.metadata["extension"] == "html"

    def test_plain_text_response(self, settings):
        loader = DocumentLoader(
            settings=settings,
            http_client=_client(lambda r: httpx.Response(200, text="raw text", headers={"content-type": "text/plain"})),
        )
        assert loader.load_from_url("https://example.com/a.txt", 1).content == "raw text"

    @pytest.mark.parametrize("status", [403, 404, 429, 500])
    def test_error_statuses(self, settings, status):
        loader = DocumentLoader(settings=settings, http_client=_client(lambda r: httpx.Response(status)))
        with pytest.raises(HTTPStatusError) as exc_info:
            loader.load_from_url("https://example.com/", 1)
        assert exc_info.value.http_status == status
        assert f"HTTP {status}" in exc_info.value.message

    def test_other_status_has_generic_message(self, settings):
        loader = DocumentLoader(settings=settings, http_client=_client(lambda r: httpx.Response(301)))
        with pytest.raises(HTTPStatusError) as exc_info:
            loader.load_from_url("https://example.com/", 1)
        assert exc_info.value.message == "Failed to fetch document from URL: HTTP 301"

    def test_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        loader = DocumentLoader(settings=settings, http_client=_client(handler))
        with pytest.raises(FetchError):
            loader.load_from_url("https://example.com/", 1)

    @pytest.mark.parametrize("url", ["", "ftp://example.com/file", "not a url"])
    def test_invalid_url(self, loader, url):
        with pytest.raises(FetchError):
            loader.load_from_url(url, 1)

    def test_empty_page_is_parse_error(self, settings):
        html = "<html><body><nav>menu</nav></body></html>"
        loader = DocumentLoader(
            settings=settings,
            http_client=_client(lambda r: httpx.Response(200, text=html, headers={"content-type": "text/html"})),
        )
        with pytest.raises(ParseError):
            loader.load_from_url("https://example.com/", 1)


class TestLoadFromPost:
    def test_post_is_stripped_and_filtered(self, settings):
        source = FakePostSource(
            {4: CMSPost(id=4, content="<p>Hello <em>reader</em></p>", post_type="page", title="Welcome")}
        )
        loader = DocumentLoader(
            settings=settings,
            post_source=source,
            content_filters=[lambda text, post_id: text.upper()],
        )
        document = loader.load_from_post(4, 10)

        assert "HELLO" in document.content and "READER" in document.content
        assert document.metadata["post_id"] == 4
        assert document.metadata["post_type"] == "page"
        assert document.metadata["title"] == "Welcome"
        assert document.metadata["source"] == "post"

    def test_missing_post(self, settings):
        loader = DocumentLoader(settings=settings, post_source=FakePostSource({}))
        with pytest.raises(NotFoundError):
            loader.load_from_post(99, 1)

    def test_no_post_source(self, loader):
        with pytest.raises(NotFoundError):
            loader.load_from_post(1, 1)


def test_clean_pdf_text():
    assert clean_pdf_text("Itâ€™s a ﬁne day â€” really") == "It's a fine day - really"


def test_extension_for_content_type():
    assert extension_for_content_type("text/html; charset=UTF-8") == "html"
    assert extension_for_content_type("application/pdf") == "pdf"
    assert extension_for_content_type("application/octet-stream") == "txt"
    assert extension_for_content_type("") == "txt"


def test_extract_main_content_falls_back_to_body():
    assert extract_main_content("<html><body><p>Only body</p></body></html>") == "Only body"


def test_cleanup_temp_files(settings, loader):
    temp_dir = settings.loader.temp_dir
    os.makedirs(temp_dir)
    old = _write(temp_dir, "old.tmp", "x")
    new = _write(temp_dir, "new.tmp", "y")
    now = time.time()
    os.utime(old, (now - 2 * 86400, now - 2 * 86400))

    assert loader.cleanup_temp_files(now=now) == 1
    assert not os.path.exists(old)
    assert os.path.exists(new)


def test_cleanup_without_temp_dir(loader):
    assert loader.cleanup_temp_files() == 0
