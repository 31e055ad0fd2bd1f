"""Tests for file masking and unmasking."""

import io
import zipfile

import pytest

from edmcp_pii.core.errors import AMBIGUOUS_VARIATION, MALFORMED_ARCHIVE, UNRESOLVED_TOKEN, UNSUPPORTED_FILE_FORMAT
from edmcp_pii.core.file_processor import (
    DOCX,
    MIME_TYPES,
    UNKNOWN,
    XLSX,
    FileProcessor,
    detect_file_type,
    generate_unmasked_csv,
    is_content_entry,
    mask_file,
    parse_and_unmask_csv,
    unmask_file,
)
from edmcp_pii.core.models import RosterEntry
from edmcp_pii.core.roster_index import RosterIndex

CONTENT_TYPES = '<?xml version="1.0"?><Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types"/>'
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(256))


@pytest.fixture
def csv_index():
    entry = RosterEntry(
        owner_id="o",
        course_id=1,
        anchor_id=21011,
        display_name="Jackson Smith",
        student_id="C00123456",
        email="jackson.smith@x.edu",
    )
    return RosterIndex([entry])


@pytest.fixture
def docx_index():
    entry = RosterEntry(
        owner_id="o",
        course_id=1,
        anchor_id=5741,
        display_name="Mary Johnson",
        email="mary.johnson@louisiana.edu",
    )
    return RosterIndex([entry])


def read_entries(content: bytes) -> dict:
    """Entry name -> bytes for a ZIP container."""
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        return {info.filename: archive.read(info) for info in archive.infolist()}


def _document(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
        f"<w:body><w:p><w:r><w:t>{body}</w:t></w:r></w:p></w:body></w:document>"
    )


class TestDetection:
    """Tests for choosing the handling from the file name."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("grades.csv", "csv"),
            ("GRADES.TSV", "tsv"),
            ("notes.txt", "txt"),
            ("report.docx", "docx"),
            ("book.xlsx", "xlsx"),
            ("deck.pptx", "pptx"),
            ("scan.pdf", UNKNOWN),
            ("README", UNKNOWN),
        ],
    )
    def test_by_extension(self, filename, expected):
        """Only the extension decides the file type."""
        assert detect_file_type(filename) == expected

    def test_content_entries(self):
        """Only text-bearing entries are rewritten."""
        assert is_content_entry(DOCX, "word/document.xml")
        assert is_content_entry(DOCX, "word/header2.xml")
        assert not is_content_entry(DOCX, "word/styles.xml")
        assert is_content_entry(XLSX, "xl/sharedStrings.xml")
        assert is_content_entry(XLSX, "xl/worksheets/sheet1.xml")
        assert not is_content_entry(XLSX, "xl/worksheets/_rels/sheet1.xml.rels")
        assert is_content_entry("pptx", "ppt/notesSlides/notesSlide3.xml")


class TestTextFiles:
    """Tests for csv, tsv and txt files."""

    def test_unmask_csv(self, csv_index):
        """A masked CSV row is restored to real values."""
        content = b"Name,Email,Student ID\nM21011_name,M21011_email,M21011_CID\n"
        result, mime = unmask_file(content, "export.csv", csv_index)
        assert result == b"Name,Email,Student ID\nJackson Smith,jackson.smith@x.edu,C00123456\n"
        assert mime == "text/csv"

    def test_mask_csv(self, csv_index):
        """A real CSV row is masked into tokens."""
        content = b"Name,Email\nJackson Smith,jackson.smith@x.edu\n"
        result, _ = mask_file(content, "roster.csv", csv_index)
        assert result == b"Name,Email\nM21011_name,M21011_email\n"

    def test_tsv_mime(self, csv_index):
        """TSV files keep their mime type."""
        _, mime = mask_file(b"a\tb\n", "data.tsv", csv_index)
        assert mime == "text/tab-separated-values"

    def test_latin1_text(self, csv_index):
        """Non-UTF-8 text is read as latin-1 and written back the same way."""
        content = "Café notes for Jackson Smith".encode("latin-1")
        result, _ = mask_file(content, "notes.txt", csv_index)
        assert result == "Café notes for M21011_name".encode("latin-1")


class TestOfficeFiles:
    """Tests for docx, xlsx and pptx containers."""

    def test_unmask_docx_keeps_other_entries(self, docx_index, make_office_file):
        """Only the document body changes; every other entry is byte-identical."""
        original = make_office_file({
            "[Content_Types].xml": CONTENT_TYPES,
            "word/document.xml": _document("Reply to M5741_email"),
            "word/styles.xml": "<w:styles/>",
            "word/media/image1.png": PNG_BYTES,
        })
        result, mime = unmask_file(original, "letter.docx", docx_index)
        assert mime == MIME_TYPES[DOCX]

        before = read_entries(original)
        after = read_entries(result)
        assert list(after) == list(before)
        assert "mary.johnson@louisiana.edu" in after["word/document.xml"].decode("utf-8")
        for name in ("[Content_Types].xml", "word/styles.xml", "word/media/image1.png"):
            assert after[name] == before[name]

    def test_mask_xlsx_shared_strings(self, docx_index, make_office_file):
        """Cell text in the shared strings table is masked."""
        original = make_office_file({
            "xl/sharedStrings.xml": "<sst><si><t>Mary Johnson</t></si></sst>",
            "xl/styles.xml": "<styleSheet/>",
        })
        result, _ = mask_file(original, "grades.xlsx", docx_index)
        after = read_entries(result)
        assert after["xl/sharedStrings.xml"] == b"<sst><si><t>M5741_name</t></si></sst>"
        assert after["xl/styles.xml"] == b"<styleSheet/>"

    def test_unmask_pptx_escapes_values(self, make_office_file):
        """Values put into slide XML are escaped."""
        entry = RosterEntry(owner_id="o", course_id=1, anchor_id=77, display_name="Ann O'Neil & Co")
        original = make_office_file({"ppt/slides/slide1.xml": "<a:t>M77_name</a:t>"})
        result, _ = unmask_file(original, "deck.pptx", RosterIndex([entry]))
        assert read_entries(result)["ppt/slides/slide1.xml"] == b"<a:t>Ann O'Neil &amp; Co</a:t>"

    def test_mask_docx_leaves_markup_alone(self, docx_index, make_office_file):
        """Attribute values that look like ids or names are not rewritten."""
        body = (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"><w:body>'
            '<w:p w:rsidR="C0123456" w:rsidRDefault="C00123456"><w:r>'
            '<w:rPr><w:rFonts w:ascii="Frank Ruehl" w:cs="Frank Ruehl"/></w:rPr>'
            '<w:t>Mary Johnson wrote to Bill Miller</w:t></w:r></w:p></w:body></w:document>'
        )
        original = make_office_file({"word/document.xml": body})
        result, _ = mask_file(original, "letter.docx", docx_index)
        xml = read_entries(result)["word/document.xml"].decode("utf-8")
        assert '<w:p w:rsidR="C0123456" w:rsidRDefault="C00123456">' in xml
        assert '<w:rFonts w:ascii="Frank Ruehl" w:cs="Frank Ruehl"/>' in xml
        assert "<w:t>M5741_name wrote to Bil*** Mil***</w:t>" in xml

    def test_mask_escaped_text_node(self, make_office_file):
        """Entities in a text node are read as text and escaped again after masking."""
        entry = RosterEntry(owner_id="o", course_id=1, anchor_id=77, display_name="Ann O'Neil")
        original = make_office_file({"ppt/slides/slide1.xml": "<a:t>Ann O&apos;Neil &amp; friends</a:t>"})
        result, _ = mask_file(original, "deck.pptx", RosterIndex([entry]))
        assert read_entries(result)["ppt/slides/slide1.xml"] == b"<a:t>M77_name &amp; friends</a:t>"

    def test_untouched_text_node_kept_verbatim(self, docx_index, make_office_file):
        """A text node without PII keeps its original escaping."""
        original = make_office_file({"word/document.xml": "<w:t>&quot;Q&amp;A&quot; session</w:t>"})
        result, _ = mask_file(original, "a.docx", docx_index)
        assert read_entries(result)["word/document.xml"] == b"<w:t>&quot;Q&amp;A&quot; session</w:t>"

    def test_entry_metadata_preserved(self, docx_index, make_office_file):
        """Entry order and compression survive a rewrite."""
        original = make_office_file({
            "[Content_Types].xml": CONTENT_TYPES,
            "word/document.xml": _document("M5741_name"),
        })
        result, _ = unmask_file(original, "a.docx", docx_index)
        with zipfile.ZipFile(io.BytesIO(result)) as archive:
            infos = archive.infolist()
        assert [i.filename for i in infos] == ["[Content_Types].xml", "word/document.xml"]
        assert all(i.compress_type == zipfile.ZIP_DEFLATED for i in infos)


class TestFailures:
    """Tests for files that cannot be processed."""

    def test_malformed_archive_returned_unchanged(self, docx_index):
        """A corrupt container comes back byte for byte with a diagnostic."""
        content = b"PK\x03\x04 this is not really a zip"
        result = FileProcessor(docx_index).unmask_file(content, "broken.docx")
        assert result.content == content
        assert result.diagnostics[0].kind == MALFORMED_ARCHIVE

    def test_non_utf8_content_entry(self, docx_index, make_office_file):
        """A content entry that is not UTF-8 makes the whole file pass through."""
        original = make_office_file({"word/document.xml": b"\xff\xfe\x00bad"})
        result = FileProcessor(docx_index).mask_file(original, "bad.docx")
        assert result.content == original
        assert result.diagnostics[0].kind == MALFORMED_ARCHIVE
        assert result.diagnostics[0].detail["entry"] == "word/document.xml"

    def test_unknown_text_file(self, csv_index):
        """An unknown extension holding UTF-8 text is processed as text."""
        result, mime = unmask_file(b"hello M21011_name", "message.md", csv_index)
        assert result == b"hello Jackson Smith"
        assert mime == "application/octet-stream"

    def test_unknown_binary_file(self, csv_index):
        """An unknown binary file passes through unchanged."""
        content = PNG_BYTES
        result = FileProcessor(csv_index).mask_file(content, "photo.png")
        assert result.content == content
        assert result.file_type == UNKNOWN
        assert result.diagnostics[0].kind == UNSUPPORTED_FILE_FORMAT


class TestFileDiagnostics:
    """Tests for engine findings reported on processed files."""

    @pytest.fixture
    def nery_index(self):
        return RosterIndex([
            RosterEntry(owner_id="o", course_id=1, anchor_id=21011, display_name="Matheus John Nery"),
            RosterEntry(owner_id="o", course_id=1, anchor_id=21012, display_name="Maria Nery"),
        ])

    def test_mask_reports_ambiguous_name(self, nery_index):
        """An ambiguous name in a text file is reported by token."""
        result = FileProcessor(nery_index).mask_file(b"Thanks, M. Nery!", "notes.txt")
        assert result.content == b"Thanks, M. Nery!"
        assert [d.kind for d in result.diagnostics] == [AMBIGUOUS_VARIATION]
        assert result.diagnostics[0].detail == {"candidates": ["M21011_name", "M21012_name"]}

    def test_mask_office_reports_once(self, nery_index, make_office_file):
        """One report covers every entry of an office file."""
        original = make_office_file({
            "word/document.xml": "<w:t>M. Nery</w:t>",
            "word/header1.xml": "<w:t>M. Nery</w:t>",
        })
        result = FileProcessor(nery_index).mask_file(original, "a.docx")
        assert [d.kind for d in result.diagnostics] == [AMBIGUOUS_VARIATION]

    def test_unmask_reports_unresolved_token(self, csv_index):
        """A token that is not on the roster is reported and left as written."""
        result = FileProcessor(csv_index).unmask_file(b"M21011_name,M55555_name\n", "a.csv")
        assert result.content == b"Jackson Smith,M55555_name\n"
        assert [d.kind for d in result.diagnostics] == [UNRESOLVED_TOKEN]
        assert result.diagnostics[0].detail == {"token": "M55555_name"}

    def test_no_findings_no_diagnostics(self, csv_index):
        result = FileProcessor(csv_index).mask_file(b"Jackson Smith\n", "a.txt")
        assert result.diagnostics == []


class TestCsvHelpers:
    """Tests for building and parsing CSV from masked cells."""

    def test_generate_unmasked_csv(self, csv_index):
        """Cells are unmasked and escaped."""
        csv_text = generate_unmasked_csv(
            ["Name", "Comment"],
            [["M21011_name", 'Said "hi", M21011_name']],
            csv_index,
        )
        assert csv_text == 'Name,Comment\nJackson Smith,"Said ""hi"", Jackson Smith"'

    def test_unmasked_value_with_comma_is_quoted(self):
        """A real value that brings its own comma is quoted."""
        entry = RosterEntry(owner_id="o", course_id=1, anchor_id=9, display_name="Smith, Jackson")
        csv_text = generate_unmasked_csv(["Name"], [["M9_name"]], RosterIndex([entry]))
        assert csv_text == 'Name\n"Smith, Jackson"'

    def test_parse_and_unmask_csv(self, csv_index):
        """Text is unmasked, parsed, and blank rows are dropped."""
        headers, rows = parse_and_unmask_csv("Name,ID\nM21011_name,M21011_CID\n\n", csv_index)
        assert headers == ["Name", "ID"]
        assert rows == [["Jackson Smith", "C00123456"]]

    def test_parse_empty(self, csv_index):
        """Empty input gives no headers and no rows."""
        assert parse_and_unmask_csv("", csv_index) == ([], [])
