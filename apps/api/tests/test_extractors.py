"""
Unit tests for extractors.py: MIME dispatch, placeholders, archive order,
never-raise contract.
"""

from __future__ import annotations

import io
import zipfile

import docx
import pytest
from pypdf import PdfWriter

import extractors
from extractors import (
    BINARY_MARKER,
    TRUNCATED_MARKER,
    ZIP_LIMIT_MARKER,
    UploadedFile,
    extract_text,
    read_zip,
)


def _upload(data: bytes, mime: str, name: str = "upload.bin") -> UploadedFile:
    return UploadedFile(data=data, mime_type=mime, filename=name)


def _zip_bytes(entries, compression=zipfile.ZIP_STORED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, content in entries:
            zf.writestr(name, content)
    return buf.getvalue()


def _docx_bytes(*paragraphs: str) -> bytes:
    document = docx.Document()
    for p in paragraphs:
        document.add_paragraph(p)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


class _FakePage:
    def __init__(self, text):
        self._text = text

    def extract_text(self):
        return self._text


class _FakeReader:
    is_encrypted = False
    texts = ["Page one", "", "Page three"]

    def __init__(self, stream):
        self.pages = [_FakePage(t) for t in self.texts]


async def test_no_file_is_empty_string():
    assert await extract_text(None) == ""


async def test_empty_file_is_empty_string():
    assert await extract_text(_upload(b"", "text/plain", "empty.txt")) == ""


@pytest.mark.parametrize("mime", [
    "text/plain",
    "text/markdown",
    "text/csv; charset=utf-8",
    "application/json",
    "application/javascript",
    "application/xml",
    "text/html",
    "text/css",
])
async def test_text_like_mimes_decoded_verbatim(mime):
    content = "line one\nline two — ünïcode"
    assert await extract_text(_upload(content.encode("utf-8"), mime, "f")) == content


async def test_invalid_utf8_in_text_is_replaced_not_raised():
    text = await extract_text(_upload(b"ok \xff\xfe done", "text/plain", "bad.txt"))
    assert text.startswith("ok ")
    assert text.endswith(" done")


async def test_pdf_pages_kept_in_order(monkeypatch):
    monkeypatch.setattr(extractors, "PdfReader", _FakeReader)
    text = await extract_text(_upload(b"%PDF-1.4", "application/pdf", "report.pdf"))
    assert text == "Page one\n\nPage three"


async def test_blank_pdf_gives_empty_text():
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)

    assert await extract_text(_upload(buf.getvalue(), "application/pdf", "blank.pdf")) == ""


async def test_corrupt_pdf_degrades_to_placeholder():
    text = await extract_text(_upload(b"%PDF-1.4 this is not a pdf", "application/pdf", "broken.pdf"))
    assert text == "[Error processing file: broken.pdf]"


async def test_docx_raw_text():
    data = _docx_bytes("Hello", "", "World")
    mime = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    assert await extract_text(_upload(data, mime, "memo.docx")) == "Hello\nWorld"


async def test_legacy_doc_is_reported_unsupported():
    text = await extract_text(_upload(b"\xd0\xcf\x11\xe0 not a docx", "application/msword", "old.doc"))
    assert text == "[Unsupported file type: application/msword (old.doc)]"


async def test_zip_entries_in_archive_order_with_labels():
    data = _zip_bytes([
        ("src/", ""),
        ("src/b.py", "print('b')"),
        ("a.txt", "alpha"),
        ("logo.png", b"\x89PNG\r\n\x1a\n\xff\xd8"),
    ])

    text = await extract_text(_upload(data, "application/zip", "project.zip"))

    assert text.startswith("Archive: project.zip")
    assert "--- File: src/ ---" not in text
    b_pos = text.index("--- File: src/b.py ---\nprint('b')")
    a_pos = text.index("--- File: a.txt ---\nalpha")
    png_pos = text.index(f"--- File: logo.png ---\n{BINARY_MARKER}")
    assert b_pos < a_pos < png_pos


async def test_corrupt_zip_degrades_to_placeholder():
    text = await extract_text(_upload(b"PK\x03\x04garbage", "application/zip", "bad.zip"))
    assert text == "[Error processing file: bad.zip]"


def test_zip_stops_collecting_at_text_limit():
    data = _zip_bytes([("a.txt", "x" * 8), ("b.txt", "y" * 8), ("c.txt", "z")])

    text = read_zip(data, "notes.zip", max_chars=10)

    assert text.startswith("Archive: notes.zip (3 files)")
    assert "--- File: a.txt ---\nxxxxxxxx" in text
    assert text.endswith("--- File: b.txt ---\nyy\n\n" + ZIP_LIMIT_MARKER)
    assert "c.txt" not in text


async def test_highly_compressed_entry_is_not_fully_inflated(monkeypatch):
    data = _zip_bytes([("huge.txt", b"a" * (16 * 1024 * 1024))], compression=zipfile.ZIP_DEFLATED)
    assert len(data) < 100_000

    inflated = []
    real_read = zipfile.ZipExtFile.read

    def counting_read(self, n=-1):
        out = real_read(self, n)
        inflated.append(len(out))
        return out

    monkeypatch.setattr(zipfile.ZipExtFile, "read", counting_read)

    text = await extract_text(_upload(data, "application/zip", "bomb.zip"), max_chars=1000)

    assert sum(inflated) <= 4 * 1000
    assert len(text) <= 1000 + len(TRUNCATED_MARKER)
    assert text.startswith("Archive: bomb.zip (1 files)")


async def test_image_placeholder_not_bytes():
    text = await extract_text(_upload(b"\x89PNG" + b"\x00" * 60, "image/png", "cat.png"))
    assert "cat.png" in text
    assert "image/png" in text
    assert "PNG" not in text.replace("image/png", "")


async def test_unsupported_mime_names_type_and_file():
    text = await extract_text(_upload(b"MZ\x90\x00", "application/x-msdownload", "setup.exe"))
    assert text == "[Unsupported file type: application/x-msdownload (setup.exe)]"


async def test_long_text_is_truncated():
    text = await extract_text(_upload(b"x" * 50, "text/plain", "long.txt"), max_chars=10)
    assert text == "x" * 10 + TRUNCATED_MARKER


async def test_unexpected_parser_exception_never_escapes(monkeypatch):
    def boom(data):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr(extractors, "read_pdf", boom)
    text = await extract_text(_upload(b"%PDF", "application/pdf", "x.pdf"))
    assert text == "[Error processing file: x.pdf]"
