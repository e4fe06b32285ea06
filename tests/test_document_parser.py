"""
Tests for execution/legal_kb/document_parser.py

Covers: detect_file_type, extract_text for pdf/docx/html/txt,
        and failure mapping to ExtractionError.

PyMuPDF is mocked; python-docx builds a real file in tmp_path.
"""

from unittest.mock import patch, MagicMock

import pytest


class TestDetectFileType:
    """Tests for detect_file_type."""

    @pytest.mark.parametrize("name,expected", [
        ("Employment_Act_2007.pdf", "pdf"),
        ("judgment.DOCX", "docx"),
        ("legacy.doc", "doc"),
        ("page.htm", "html"),
        ("notes.txt", "txt"),
    ])
    def test_known_extensions(self, name, expected):
        from execution.legal_kb.document_parser import detect_file_type
        assert detect_file_type(name) == expected

    def test_unsupported_extension(self):
        from execution.legal_kb.document_parser import detect_file_type
        from execution.legal_kb.errors import ExtractionError
        with pytest.raises(ExtractionError, match="Unsupported file type") as exc_info:
            detect_file_type("spreadsheet.xlsx")
        assert exc_info.value.file_type == "xlsx"


class TestExtractText:
    """Tests for extract_text."""

    def test_plain_text_bytes(self):
        from execution.legal_kb.document_parser import extract_text
        assert extract_text("Section 1. Short title.".encode(), "txt") == "Section 1. Short title."

    def test_plain_text_path(self, tmp_path):
        from execution.legal_kb.document_parser import extract_text
        path = tmp_path / "act.txt"
        path.write_text("The Land Act", encoding="utf-8")
        assert extract_text(path, "txt") == "The Land Act"

    def test_html_drops_scripts_and_collapses_whitespace(self):
        from execution.legal_kb.document_parser import extract_text
        html = b"""
        <html><head><title>ignored</title><style>p {color: red}</style></head>
        <body><script>var x = 1;</script>
        <h1>Land   Registration</h1>
        <p>Section 3.
        Application.</p></body></html>
        """
        assert extract_text(html, "html") == "Land Registration Section 3. Application."

    def test_html_without_body(self):
        from execution.legal_kb.document_parser import extract_html_text
        assert extract_html_text("<p>Just a fragment</p>") == "Just a fragment"

    def test_pdf_pages_joined_in_order(self):
        from execution.legal_kb.document_parser import extract_text

        pages = [MagicMock(), MagicMock()]
        pages[0].get_text.return_value = "Page one"
        pages[1].get_text.return_value = "Page two"
        mock_fitz = MagicMock()
        mock_fitz.open.return_value.__enter__.return_value = pages

        with patch.dict("sys.modules", {"fitz": mock_fitz}):
            text = extract_text(b"%PDF-1.4", "pdf")

        assert text == "Page one\nPage two"
        mock_fitz.open.assert_called_once_with(stream=b"%PDF-1.4", filetype="pdf")

    def test_docx_paragraphs(self, tmp_path):
        from docx import Document
        from execution.legal_kb.document_parser import extract_text

        path = tmp_path / "judgment.docx"
        doc = Document()
        doc.add_paragraph("IN THE HIGH COURT OF KENYA")
        doc.add_paragraph("JUDGMENT")
        doc.save(str(path))

        assert extract_text(path, "docx") == "IN THE HIGH COURT OF KENYA\nJUDGMENT"

    def test_unsupported_type(self):
        from execution.legal_kb.document_parser import extract_text
        from execution.legal_kb.errors import ExtractionError
        with pytest.raises(ExtractionError, match="Only PDF and DOCX"):
            extract_text(b"data", "doc")

    def test_parser_failure_wrapped(self):
        from execution.legal_kb.document_parser import extract_text
        from execution.legal_kb.errors import ExtractionError

        mock_fitz = MagicMock()
        mock_fitz.open.side_effect = RuntimeError("cannot open broken document")
        with patch.dict("sys.modules", {"fitz": mock_fitz}):
            with pytest.raises(ExtractionError) as exc_info:
                extract_text(b"not a pdf", "pdf")

        assert exc_info.value.file_type == "pdf"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_missing_file_wrapped(self, tmp_path):
        from execution.legal_kb.document_parser import extract_text
        from execution.legal_kb.errors import ExtractionError
        with pytest.raises(ExtractionError):
            extract_text(tmp_path / "missing.txt", "txt")
