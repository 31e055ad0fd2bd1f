"""
File masking and unmasking.

Plain text formats (csv, tsv, txt) are transformed as a whole. Office
formats (docx, xlsx, pptx) are ZIP containers: only the entries that hold
document text are rewritten, every other entry (styles, media,
relationships) is copied through with identical content.

A file that cannot be processed is returned unchanged; a corrupt or
half-rewritten archive is never produced.
"""

import csv
import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape as xml_escape
from xml.sax.saxutils import unescape as xml_unescape

import regex

from edmcp_pii.core.config import DEFAULT_STUDENT_ID_PATTERN
from edmcp_pii.core.errors import (
    MALFORMED_ARCHIVE,
    UNSUPPORTED_FILE_FORMAT,
    Diagnostic,
    MalformedArchive,
    UnsupportedFileFormat,
)
from edmcp_pii.core.masker import Masker
from edmcp_pii.core.roster_index import RosterIndex
from edmcp_pii.core.unmasker import Unmasker

logger = logging.getLogger("edmcp_pii.core.file_processor")

CSV = "csv"
TSV = "tsv"
TXT = "txt"
DOCX = "docx"
XLSX = "xlsx"
PPTX = "pptx"
UNKNOWN = "unknown"

TEXT_TYPES = (CSV, TSV, TXT)
OFFICE_TYPES = (DOCX, XLSX, PPTX)

MIME_TYPES = {
    CSV: "text/csv",
    TSV: "text/tab-separated-values",
    TXT: "text/plain",
    DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    PPTX: "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    UNKNOWN: "application/octet-stream",
}

# Entries that carry document text, per office format.
CONTENT_ENTRY_PATTERNS = {
    DOCX: (
        regex.compile(r"word/document\.xml"),
        regex.compile(r"word/header\d*\.xml"),
        regex.compile(r"word/footer\d*\.xml"),
    ),
    XLSX: (
        regex.compile(r"xl/worksheets/sheet\d+\.xml"),
        regex.compile(r"xl/sharedStrings\.xml"),
    ),
    PPTX: (
        regex.compile(r"ppt/slides/slide\d+\.xml"),
        regex.compile(r"ppt/notesSlides/notesSlide\d+\.xml"),
    ),
}

# Character data between two tags; markup and attribute values are never rewritten.
XML_TEXT_NODE = regex.compile(r">([^<]+)<")
_XML_QUOTE_ENTITIES = {"&apos;": "'", "&quot;": "\""}

MASK = "mask"
UNMASK = "unmask"


@dataclass
class ProcessedFile:
    content: bytes
    filename: str
    mime_type: str
    file_type: str
    diagnostics: List[Diagnostic] = field(default_factory=list)


def detect_file_type(filename: str) -> str:
    """File type from the extension only; content is never sniffed."""
    name = (filename or "").lower()
    if "." not in name:
        return UNKNOWN
    extension = name.rsplit(".", 1)[1]
    if extension in TEXT_TYPES or extension in OFFICE_TYPES:
        return extension
    return UNKNOWN


def is_content_entry(file_type: str, entry_name: str) -> bool:
    return any(p.fullmatch(entry_name) for p in CONTENT_ENTRY_PATTERNS.get(file_type, ()))


class FileProcessor:
    """
    Applies the mask or unmask engine to file bytes.

    One engine serves a whole file, so its diagnostics (ambiguous names,
    unresolved tokens) come back on the ProcessedFile.
    """

    def __init__(self, index: Optional[RosterIndex], student_id_pattern: str = DEFAULT_STUDENT_ID_PATTERN):
        self.index = index
        self.student_id_pattern = student_id_pattern

    def mask_file(self, content: bytes, filename: str) -> ProcessedFile:
        return self._process(content, filename, MASK)

    def unmask_file(self, content: bytes, filename: str) -> ProcessedFile:
        return self._process(content, filename, UNMASK)

    def _engine(self, file_type: str, direction: str) -> Union[Masker, Unmasker]:
        if direction == MASK:
            return Masker(self.index, student_id_pattern=self.student_id_pattern)
        return Unmasker(self.index, escape=xml_escape if file_type in OFFICE_TYPES else None)

    def _process(self, content: bytes, filename: str, direction: str) -> ProcessedFile:
        file_type = detect_file_type(filename)
        result = ProcessedFile(
            content=content,
            filename=filename,
            mime_type=MIME_TYPES[file_type],
            file_type=file_type,
        )
        engine = self._engine(file_type, direction)

        try:
            if file_type in OFFICE_TYPES:
                processed = self._process_archive(content, file_type, engine)
            elif file_type in TEXT_TYPES:
                processed = self._process_text(content, engine)
            else:
                processed = self._process_unknown(content, engine)
        except MalformedArchive as e:
            logger.warning("%s: %s; returning the original bytes", filename, e)
            result.diagnostics.append(Diagnostic(
                kind=MALFORMED_ARCHIVE,
                message=str(e),
                detail={"filename": filename, "entry": e.entry},
            ))
            return result
        except UnsupportedFileFormat as e:
            logger.info("%s: %s; passing through unchanged", filename, e)
            result.diagnostics.append(Diagnostic(
                kind=UNSUPPORTED_FILE_FORMAT,
                message=str(e),
                detail={"filename": filename},
            ))
            return result

        result.content = processed
        result.diagnostics.extend(engine.report.diagnostics)
        return result

    @staticmethod
    def _transform_text(text: str, engine: Union[Masker, Unmasker]) -> str:
        if isinstance(engine, Masker):
            return engine.mask_text(text)
        return engine.unmask_text(text)

    def _transform_xml(self, xml: str, engine: Union[Masker, Unmasker]) -> str:
        """Rewrites text nodes only; tags and attribute values stay byte-identical."""

        def replace(match: regex.Match) -> str:
            node = match.group(1)
            if isinstance(engine, Unmasker):
                # Substituted values are escaped by the engine itself.
                return ">" + engine.unmask_text(node) + "<"
            text = xml_unescape(node, _XML_QUOTE_ENTITIES)
            masked = engine.mask_text(text)
            return match.group(0) if masked == text else ">" + xml_escape(masked) + "<"

        return XML_TEXT_NODE.sub(replace, xml)

    def _process_text(self, content: bytes, engine: Union[Masker, Unmasker]) -> bytes:
        try:
            text, encoding = content.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            # Spreadsheet exports are often cp1252; latin-1 reads any byte and writes it back unchanged.
            text, encoding = content.decode("latin-1"), "latin-1"
        try:
            return self._transform_text(text, engine).encode(encoding)
        except UnicodeEncodeError:
            raise UnsupportedFileFormat(f"Substituted values cannot be written back as {encoding}")

    def _process_unknown(self, content: bytes, engine: Union[Masker, Unmasker]) -> bytes:
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            raise UnsupportedFileFormat("Unrecognized binary file format")
        return self._transform_text(text, engine).encode("utf-8")

    def _process_archive(self, content: bytes, file_type: str, engine: Union[Masker, Unmasker]) -> bytes:
        try:
            source = zipfile.ZipFile(io.BytesIO(content))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
            raise MalformedArchive(f"Cannot open {file_type} container: {e}")

        output = io.BytesIO()
        with source, zipfile.ZipFile(output, "w") as target:
            for info in source.infolist():
                try:
                    data = source.read(info)
                except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError) as e:
                    raise MalformedArchive(f"Cannot read entry: {e}", entry=info.filename)

                if is_content_entry(file_type, info.filename):
                    try:
                        text = data.decode("utf-8")
                    except UnicodeDecodeError:
                        raise MalformedArchive("Content entry is not valid UTF-8", entry=info.filename)
                    data = self._transform_xml(text, engine).encode("utf-8")

                # Reusing the ZipInfo keeps name, order, timestamps and compression.
                target.writestr(info, data)

        return output.getvalue()


def mask_file(content: bytes, filename: str, index: Optional[RosterIndex]) -> Tuple[bytes, str]:
    """Masks a file; returns (bytes, mime type)."""
    result = FileProcessor(index).mask_file(content, filename)
    return result.content, result.mime_type


def unmask_file(content: bytes, filename: str, index: Optional[RosterIndex]) -> Tuple[bytes, str]:
    """Unmasks a file; returns (bytes, mime type)."""
    result = FileProcessor(index).unmask_file(content, filename)
    return result.content, result.mime_type


def _escape_csv_cell(value: str) -> str:
    if any(ch in value for ch in (",", '"', "\n", "\r")):
        return '"' + value.replace('"', '""') + '"'
    return value


def generate_unmasked_csv(headers: Sequence[str], rows: Sequence[Sequence[str]],
                          index: Optional[RosterIndex]) -> str:
    """
    Builds a CSV from model-produced (masked) cells and unmasks it.
    Useful when the model drafts a table for export.
    """
    unmasker = Unmasker(index)

    def render(cells: Sequence[str]) -> str:
        # Unmask before escaping: a real name may bring its own comma.
        return ",".join(_escape_csv_cell(unmasker.unmask_text(str(cell))) for cell in cells)

    return "\n".join([render(headers)] + [render(row) for row in rows])


def parse_and_unmask_csv(content: str, index: Optional[RosterIndex]) -> Tuple[List[str], List[List[str]]]:
    """Unmasks CSV text and parses it into (headers, rows); blank lines are skipped."""
    unmasked = Unmasker(index).unmask_text(content)
    records = [row for row in csv.reader(io.StringIO(unmasked)) if any(cell.strip() for cell in row)]
    if not records:
        return [], []
    return records[0], records[1:]
