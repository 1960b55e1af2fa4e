# extractors.py
import asyncio
import codecs
import logging
import zipfile
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

import docx
from pypdf import PdfReader

from errors import FileProcessingError
from settings import MAX_FILE_CHARS

logger = logging.getLogger(__name__)

PDF_MIMES = {"application/pdf"}
WORD_MIMES = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
ZIP_MIMES = {"application/zip", "application/x-zip-compressed"}
TEXT_MIMES = {
    "application/json",
    "application/javascript",
    "application/x-javascript",
    "application/xml",
    "text/html",
    "text/css",
}

BINARY_MARKER = "[binary file, not shown]"
TRUNCATED_MARKER = "\n…(truncated)…"
ZIP_LIMIT_MARKER = "[text limit reached, remaining archive entries skipped]"


@dataclass
class UploadedFile:
    data: bytes
    mime_type: str
    filename: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def _normalize_mime(mime: Optional[str]) -> str:
    # "text/plain; charset=utf-8" -> "text/plain"
    return (mime or "").split(";", 1)[0].strip().lower()


def is_text_mime(mime: str) -> bool:
    return mime.startswith("text/") or mime in TEXT_MIMES


def read_pdf(data: bytes) -> str:
    reader = PdfReader(BytesIO(data))
    if reader.is_encrypted:
        raise FileProcessingError("PDF is encrypted")
    parts: List[str] = []
    for page in reader.pages:
        t = page.extract_text() or ""
        if t.strip():
            parts.append(t.strip())
    return "\n\n".join(parts)


def read_docx(data: bytes) -> str:
    document = docx.Document(BytesIO(data))
    return "\n".join(p.text for p in document.paragraphs if p.text.strip())


def _read_zip_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, max_chars: Optional[int]) -> str:
    # never inflate more than max_chars could ever need (4 bytes per UTF-8 char)
    limit = max_chars * 4 if max_chars else -1
    with zf.open(info) as fh:
        raw = fh.read(limit)
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        content = decoder.decode(raw, final=limit < 0 or len(raw) < limit)
    except UnicodeDecodeError:
        return BINARY_MARKER
    return content[:max_chars] if max_chars else content


def read_zip(data: bytes, archive_name: str, max_chars: Optional[int] = MAX_FILE_CHARS) -> str:
    """Entries in archive order, each labelled; stops once max_chars of entry text is collected."""
    blocks: List[str] = []
    remaining = max_chars
    with zipfile.ZipFile(BytesIO(data)) as zf:
        entries = [info for info in zf.infolist() if not info.is_dir()]
        for info in entries:
            if max_chars and remaining <= 0:
                blocks.append(ZIP_LIMIT_MARKER)
                break
            content = _read_zip_entry(zf, info, remaining)
            if max_chars:
                remaining -= len(content)
            blocks.append(f"--- File: {info.filename} ---\n{content}")

    header = f"Archive: {archive_name} ({len(entries)} files)"
    if not blocks:
        return header
    return header + "\n\n" + "\n\n".join(blocks)


def image_placeholder(upload: UploadedFile, mime: str) -> str:
    return (
        f"[Image file: {upload.filename} ({mime}, {upload.size_bytes} bytes). "
        "Image content cannot be included as text.]"
    )


def unsupported_placeholder(mime: str, filename: str) -> str:
    return f"[Unsupported file type: {mime or 'unknown'} ({filename})]"


def error_placeholder(filename: str) -> str:
    return f"[Error processing file: {filename}]"


def read_upload_bytes_to_text(upload: UploadedFile, max_chars: Optional[int] = MAX_FILE_CHARS) -> str:
    """Synchronous MIME dispatch. May raise; callers go through extract_text."""
    mime = _normalize_mime(upload.mime_type)
    data = upload.data

    if mime in PDF_MIMES:
        return read_pdf(data)
    if mime in WORD_MIMES:
        return read_docx(data)
    if mime in ZIP_MIMES:
        return read_zip(data, upload.filename, max_chars)
    if is_text_mime(mime):
        return data.decode("utf-8", errors="replace")
    if mime.startswith("image/"):
        return image_placeholder(upload, mime)
    return unsupported_placeholder(mime, upload.filename)


async def extract_text(upload: Optional[UploadedFile], max_chars: int = MAX_FILE_CHARS) -> str:
    """
    Turn an optional upload into prompt context.

    Never raises: parser failures degrade to a placeholder naming the file, so
    a broken attachment can't abort the request. Returns "" when there is no
    file (or it is empty).
    """
    if upload is None or not upload.data:
        return ""

    loop = asyncio.get_running_loop()
    try:
        text = await loop.run_in_executor(None, read_upload_bytes_to_text, upload, max_chars)
    except Exception as e:
        logger.warning(
            "[extract] failed reading %s (%s): %s: %s",
            upload.filename, upload.mime_type, type(e).__name__, e,
        )
        return error_placeholder(upload.filename)

    if max_chars and len(text) > max_chars:
        text = text[:max_chars] + TRUNCATED_MARKER

    logger.debug("[extract] %s -> %d chars", upload.filename, len(text))
    return text
