"""
Text extraction handlers.

Each handler declares the media types it understands and turns a binary
stream into text chunks, lazily, so large documents never have to be held
as one string.
"""

import io
import zipfile
import zlib
from abc import ABC, abstractmethod
from html.parser import HTMLParser
from typing import BinaryIO, FrozenSet, Iterator, List
from xml.etree import ElementTree as ET

from pypdf import PdfReader

from .errors import DecodeError


CHUNK_SIZE = 64 * 1024


class Extractor(ABC):
    """A capability handler that decodes documents to text."""

    name: str = ""

    @abstractmethod
    def supported_types(self) -> FrozenSet[str]:
        """Media types (``type/subtype``) this handler can decode."""

    @abstractmethod
    def extract(self, stream: BinaryIO) -> Iterator[str]:
        """Yield the document's text in order."""


class PlainTextExtractor(Extractor):
    name = "text"

    def supported_types(self) -> FrozenSet[str]:
        return frozenset({"text/plain", "text/csv", "text/markdown"})

    def extract(self, stream: BinaryIO) -> Iterator[str]:
        reader = io.TextIOWrapper(stream, encoding="utf-8-sig", errors="replace")
        try:
            while True:
                chunk = reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            # leave the caller's stream open
            reader.detach()


class _TextCollector(HTMLParser):
    SKIPPED = {"script", "style"}
    BREAKS = {"p", "br", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.pieces: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIPPED:
            self._skip_depth += 1
        elif tag in self.BREAKS:
            self.pieces.append("\n")

    def handle_endtag(self, tag):
        if tag in self.SKIPPED and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data):
        if not self._skip_depth:
            self.pieces.append(data)

    def drain(self) -> str:
        text = "".join(self.pieces)
        self.pieces = []
        return text


class HtmlExtractor(Extractor):
    name = "html"

    def supported_types(self) -> FrozenSet[str]:
        return frozenset({"text/html", "application/xhtml+xml"})

    def extract(self, stream: BinaryIO) -> Iterator[str]:
        parser = _TextCollector()
        for chunk in PlainTextExtractor().extract(stream):
            parser.feed(chunk)
            text = parser.drain()
            if text:
                yield text
        parser.close()
        tail = parser.drain()
        if tail:
            yield tail


class PdfExtractor(Extractor):
    name = "pdf"

    def supported_types(self) -> FrozenSet[str]:
        return frozenset({"application/pdf"})

    def extract(self, stream: BinaryIO) -> Iterator[str]:
        if not stream.seekable():
            stream = io.BytesIO(stream.read())
        try:
            reader = PdfReader(stream)
            for page in reader.pages:
                page_text = (page.extract_text() or "").strip()
                if page_text:
                    yield page_text + "\n\n"
        except DecodeError:
            raise
        except Exception as e:
            # pypdf surfaces malformed objects as arbitrary exception types
            raise DecodeError(f"PDF text extraction failed: {e}") from e


class DocxExtractor(Extractor):
    name = "docx"

    WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

    def supported_types(self) -> FrozenSet[str]:
        return frozenset(
            {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
        )

    def extract(self, stream: BinaryIO) -> Iterator[str]:
        try:
            with zipfile.ZipFile(stream) as archive:
                root = ET.fromstring(archive.read("word/document.xml"))
        except (
            zipfile.BadZipFile,
            zipfile.LargeZipFile,
            zlib.error,
            KeyError,
            ET.ParseError,
            NotImplementedError,
            RuntimeError,
            ValueError,
            EOFError,
        ) as e:
            raise DecodeError(f"DOCX parser failed to read word/document.xml: {e}") from e

        for paragraph in root.iter(self.WORD_NS + "p"):
            texts = [node.text for node in paragraph.iter(self.WORD_NS + "t") if node.text]
            if texts:
                yield "".join(texts) + "\n"


def builtin_extractors() -> List[Extractor]:
    return [PlainTextExtractor(), HtmlExtractor(), PdfExtractor(), DocxExtractor()]
