import csv
import io
from typing import List

from bs4 import BeautifulSoup
from docx import Document
from openpyxl import load_workbook
from pypdf import PdfReader

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

PLAIN_TEXT_EXTENSIONS = {
    "txt", "md", "csv", "json", "xml", "js", "ts", "jsx", "tsx", "py", "java", "c", "cpp", "h",
    "go", "rs", "rb", "php", "sh", "bash", "yaml", "yml", "toml", "sql", "css", "scss", "log",
    "env", "ini", "cfg", "conf", "rtf",
}
PLAIN_TEXT_MIMES = {"application/json", "application/xml", "application/javascript"}


class ExtractionError(Exception):
    pass


def extension_of(filename: str) -> str:
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


class Extractor:
    def can_handle(self, mime: str, ext: str) -> bool:
        raise NotImplementedError

    def extract(self, data: bytes) -> str:
        raise NotImplementedError


class HtmlExtractor(Extractor):
    def can_handle(self, mime: str, ext: str) -> bool:
        return mime == "text/html" or ext in {"html", "htm"}

    def extract(self, data: bytes) -> str:
        soup = BeautifulSoup(data.decode("utf-8", errors="replace"), "html.parser")
        for tag in soup(["script", "style"]):
            tag.decompose()
        lines = [line.strip() for line in soup.get_text("\n").splitlines()]
        return "\n".join(line for line in lines if line)


class PdfExtractor(Extractor):
    def can_handle(self, mime: str, ext: str) -> bool:
        return mime == "application/pdf" or ext == "pdf"

    def extract(self, data: bytes) -> str:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        return "\n".join(pages)


class DocxExtractor(Extractor):
    def can_handle(self, mime: str, ext: str) -> bool:
        return mime == DOCX_MIME or ext == "docx"

    def extract(self, data: bytes) -> str:
        document = Document(io.BytesIO(data))
        paragraphs = [p.text for p in document.paragraphs]
        return "\n".join(paragraphs)


class XlsxExtractor(Extractor):
    """Each worksheet rendered as CSV under a ``--- Sheet: name ---`` header."""

    def can_handle(self, mime: str, ext: str) -> bool:
        return mime == XLSX_MIME or ext == "xlsx"

    def extract(self, data: bytes) -> str:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        parts: List[str] = []
        try:
            for sheet in workbook.worksheets:
                buffer = io.StringIO()
                writer = csv.writer(buffer, lineterminator="\n")
                for row in sheet.iter_rows(values_only=True):
                    if all(cell is None or str(cell).strip() == "" for cell in row):
                        continue
                    writer.writerow(["" if cell is None else cell for cell in row])
                body = buffer.getvalue()
                if body.strip():
                    parts.append(f"--- Sheet: {sheet.title} ---\n{body}")
        finally:
            workbook.close()
        return "\n\n".join(parts)


class PlainTextExtractor(Extractor):
    def can_handle(self, mime: str, ext: str) -> bool:
        return ext in PLAIN_TEXT_EXTENSIONS or mime.startswith("text/") or mime in PLAIN_TEXT_MIMES

    def extract(self, data: bytes) -> str:
        return data.decode("utf-8", errors="replace")


class ExtractorRegistry:
    """First registered extractor that accepts the mime/extension wins."""

    def __init__(self) -> None:
        self._extractors: List[Extractor] = []

    def register(self, extractor: Extractor) -> None:
        self._extractors.append(extractor)

    def _find(self, mime: str, filename: str):
        ext = extension_of(filename)
        mime = (mime or "").lower()
        for extractor in self._extractors:
            if extractor.can_handle(mime, ext):
                return extractor
        return None

    def can_extract(self, mime: str, filename: str) -> bool:
        return self._find(mime, filename) is not None

    def extract(self, data: bytes, mime: str, filename: str) -> str:
        extractor = self._find(mime, filename)
        if extractor is None:
            raise ExtractionError(f'No extractor found for mime="{mime}" ext="{extension_of(filename)}"')
        return extractor.extract(data)


def default_registry() -> ExtractorRegistry:
    registry = ExtractorRegistry()
    registry.register(HtmlExtractor())
    registry.register(PdfExtractor())
    registry.register(DocxExtractor())
    registry.register(XlsxExtractor())
    registry.register(PlainTextExtractor())
    return registry
