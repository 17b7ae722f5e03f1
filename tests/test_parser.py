"""
Tests for the format parser adapter.

Covers:
    - File type resolution (declared aliases, extension, MIME)
    - CSV / JSON / spreadsheet row parsing with malformed-row warnings
    - Plain text and Markdown section splitting
    - PDF page extraction (pypdf mocked)
    - Fatal errors for unreadable or empty documents
    - Stream is lazy and forward-only
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from sampledesk.errors import FatalParseError, UnsupportedFormat
from sampledesk.ingestion.parser import detect_file_type, parse_file, resolve_file_type


def _write(tmp_path, name: str, content: str):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return str(path)


# =========================================================================
# File type resolution
# =========================================================================
class TestFileTypes:
    @pytest.mark.parametrize(
        "declared,expected",
        [("csv", "csv"), ("XLSX", "excel"), ("xlsm", "excel"), ("md", "markdown"),
         ("txt", "text"), ("json", "json"), ("pdf", "pdf")],
    )
    def test_declared_aliases(self, declared, expected):
        assert resolve_file_type(declared) == expected

    def test_unknown_declared_type_raises(self):
        with pytest.raises(UnsupportedFormat):
            resolve_file_type("docx")

    def test_legacy_xls_not_supported(self):
        with pytest.raises(UnsupportedFormat):
            resolve_file_type("xls")
        with pytest.raises(UnsupportedFormat):
            detect_file_type("old.xls", "application/vnd.ms-excel")

    def test_parse_file_rejects_unknown_type_before_file_access(self):
        with pytest.raises(UnsupportedFormat):
            parse_file("/does/not/exist.docx", "docx")

    def test_detect_from_extension(self):
        assert detect_file_type("faq.MD") == "markdown"
        assert detect_file_type("data.xlsx") == "excel"

    def test_detect_falls_back_to_mime(self):
        assert detect_file_type("upload", "application/json") == "json"

    def test_detect_unknown_raises(self):
        with pytest.raises(UnsupportedFormat):
            detect_file_type("archive.zip", "application/zip")


# =========================================================================
# CSV
# =========================================================================
class TestCsv:
    def test_one_record_per_row_with_malformed_warning(self, tmp_path):
        path = _write(
            tmp_path,
            "faq.csv",
            "question,answer,type\n"
            "How do I reset my password?,Use the forgot password link,faq\n"
            "\n"
            "Where are invoices?,Under Billing > Invoices,faq\n"
            "broken row only\n"
            "Can I export data?,Yes from the settings page,qa\n",
        )
        stream = parse_file(path, "csv")
        records = list(stream)

        assert len(records) == 3
        assert records[0] == {
            "question": "How do I reset my password?",
            "answer": "Use the forgot password link",
            "type": "faq",
        }
        assert len(stream.warnings) == 1
        assert "expected 3 fields, got 1" in stream.warnings[0].reason
        assert stream.rows_read == 3

    def test_on_warning_callback_receives_each_warning(self, tmp_path):
        path = _write(tmp_path, "f.csv", "q,a\nx,y,z\n1,2,3,4\n")
        seen = []
        list(parse_file(path, "csv", on_warning=seen.append))
        assert [w.location for w in seen] == ["Line 2", "Line 3"]

    def test_missing_file_is_fatal_when_iterated(self, tmp_path):
        stream = parse_file(str(tmp_path / "missing.csv"), "csv")
        with pytest.raises(FatalParseError):
            list(stream)

    def test_stream_is_not_restartable(self, tmp_path):
        path = _write(tmp_path, "f.csv", "q,a\nquestion one,answer one\n")
        stream = parse_file(path, "csv")
        assert len(list(stream)) == 1
        assert list(stream) == []


# =========================================================================
# JSON
# =========================================================================
class TestJson:
    def test_top_level_array(self, tmp_path):
        path = _write(tmp_path, "f.json", json.dumps([{"q": "a"}, {"q": "b"}]))
        assert list(parse_file(path, "json")) == [{"q": "a"}, {"q": "b"}]

    @pytest.mark.parametrize("wrapper", ["data", "items"])
    def test_wrapped_array(self, tmp_path, wrapper):
        path = _write(tmp_path, "f.json", json.dumps({wrapper: [{"q": 1}, {"q": 2}]}))
        assert len(list(parse_file(path, "json"))) == 2

    def test_single_object(self, tmp_path):
        path = _write(tmp_path, "f.json", json.dumps({"question": "x", "answer": "y"}))
        assert list(parse_file(path, "json")) == [{"question": "x", "answer": "y"}]

    def test_non_object_items_are_malformed(self, tmp_path):
        path = _write(tmp_path, "f.json", json.dumps([{"q": 1}, "oops", 3]))
        stream = parse_file(path, "json")
        assert len(list(stream)) == 1
        assert [w.location for w in stream.warnings] == ["Item 2", "Item 3"]

    def test_invalid_json_is_fatal(self, tmp_path):
        path = _write(tmp_path, "f.json", "{not json")
        with pytest.raises(FatalParseError):
            list(parse_file(path, "json"))


# =========================================================================
# Spreadsheet
# =========================================================================
class TestExcel:
    def _workbook(self, tmp_path, rows):
        from openpyxl import Workbook

        wb = Workbook()
        ws = wb.active
        for row in rows:
            ws.append(row)
        second = wb.create_sheet("Ignored")
        second.append(["question", "answer"])
        second.append(["Never read this?", "Second sheets are skipped"])
        path = tmp_path / "book.xlsx"
        wb.save(path)
        return str(path)

    def test_first_sheet_rows(self, tmp_path):
        path = self._workbook(
            tmp_path,
            [
                [None, None],
                ["question", "answer"],
                ["What is SampleDesk?", "A training data tool"],
                [None, None],
                ["How are tags split?", "On commas and semicolons"],
            ],
        )
        records = list(parse_file(path, "xlsx"))
        assert records == [
            {"question": "What is SampleDesk?", "answer": "A training data tool"},
            {"question": "How are tags split?", "answer": "On commas and semicolons"},
        ]

    def test_values_beyond_header_are_malformed(self, tmp_path):
        path = self._workbook(
            tmp_path,
            [
                ["question", "answer"],
                ["Good row here?", "Yes it is fine", None],
                ["Bad row here?", "Too many", "extra"],
            ],
        )
        stream = parse_file(path, "excel")
        assert len(list(stream)) == 1
        assert len(stream.warnings) == 1

    def test_corrupt_workbook_is_fatal(self, tmp_path):
        path = _write(tmp_path, "bad.xlsx", "not a zip file")
        with pytest.raises(FatalParseError):
            list(parse_file(path, "excel"))


# =========================================================================
# Plain text
# =========================================================================
class TestText:
    def test_qa_blocks_and_document_sections(self, tmp_path):
        path = _write(
            tmp_path,
            "notes.txt",
            "Q: How do I reset my password?\nA: Use the forgot password link.\n\n"
            "Q: Where do I find invoices?\n\n"
            "A: Under Billing, then Invoices.\n\n"
            "General notes about the product.\n",
        )
        records = list(parse_file(path, "txt"))

        assert records[0] == {
            "question": "How do I reset my password?",
            "answer": "Use the forgot password link.",
            "type": "qa",
        }
        assert records[1]["question"] == "Where do I find invoices?"
        assert records[1]["answer"] == "Under Billing, then Invoices."
        assert records[2]["type"] == "doc"
        assert records[2]["question"].startswith("Document Section")
        assert len(records) == 3

    def test_document_sections_numbered_without_gaps(self, tmp_path):
        path = _write(
            tmp_path,
            "guide.txt",
            "Welcome to the admin guide.\n\n"
            "Q: Can I rename a workspace?\n\n"
            "A: Yes, from Workspace settings.\n\n"
            "Billing runs on the first of each month.\n\n"
            "Support is available on weekdays.\n",
        )
        records = list(parse_file(path, "text"))

        sections = [r["question"] for r in records if r["type"] == "doc"]
        assert sections == ["Document Section 1", "Document Section 2", "Document Section 3"]
        assert records[1]["type"] == "qa"

    def test_empty_file_is_fatal(self, tmp_path):
        path = _write(tmp_path, "empty.txt", "  \n\n ")
        with pytest.raises(FatalParseError):
            list(parse_file(path, "text"))

    def test_undecodable_file_is_fatal(self, tmp_path):
        path = tmp_path / "latin.txt"
        path.write_bytes(b"\xff\xfe\xfa not utf-8 \x81")
        with pytest.raises(FatalParseError):
            list(parse_file(str(path), "text"))


# =========================================================================
# Markdown
# =========================================================================
class TestMarkdown:
    def test_headings_become_questions(self, tmp_path):
        path = _write(
            tmp_path,
            "guide.md",
            "Product Guide\nIntro paragraph for the guide.\n\n"
            "# Installing the agent\nRun the installer.\n\n"
            "## Empty section\n\n"
            "## Using C#\nCall the SDK.\n\n"
            "```bash\n# not a heading\n```\n",
        )
        records = list(parse_file(path, "md"))
        questions = [r["question"] for r in records]

        assert questions == ["Product Guide", "Installing the agent", "Using C#"]
        assert all(r["type"] == "doc" for r in records)
        assert "# not a heading" in records[2]["answer"]


# =========================================================================
# PDF
# =========================================================================
class TestPdf:
    def _reader(self, *texts, fail_page=None):
        pages = []
        for i, text in enumerate(texts, start=1):
            page = MagicMock()
            if i == fail_page:
                page.extract_text.side_effect = RuntimeError("bad font")
            else:
                page.extract_text.return_value = text
            pages.append(page)
        return SimpleNamespace(is_encrypted=False, pages=pages)

    def test_one_record_per_page_dropping_short_pages(self):
        reader = self._reader("First page with enough text", "tiny", "Third page text here")
        with patch("pypdf.PdfReader", return_value=reader):
            records = list(parse_file("manual.pdf", "pdf"))

        assert [r["question"] for r in records] == ["Page 1", "Page 3"]
        assert records[0]["answer"] == "First page with enough text"

    def test_failed_page_is_a_warning(self):
        reader = self._reader("Readable page content", "x", fail_page=2)
        with patch("pypdf.PdfReader", return_value=reader):
            stream = parse_file("manual.pdf", "pdf")
            records = list(stream)

        assert len(records) == 1
        assert stream.warnings[0].location == "Page 2"

    def test_document_mode_yields_single_record(self):
        reader = self._reader("First page with enough text", "Second page with text")
        with patch("pypdf.PdfReader", return_value=reader):
            records = list(parse_file("/tmp/manual.pdf", "pdf", pdf_split_mode="document"))

        assert len(records) == 1
        assert records[0]["question"] == "Document: manual"

    def test_corrupt_pdf_is_fatal(self):
        from pypdf.errors import PdfReadError

        with patch("pypdf.PdfReader", side_effect=PdfReadError("EOF marker not found")):
            with pytest.raises(FatalParseError):
                list(parse_file("broken.pdf", "pdf"))

    def test_invalid_split_mode(self):
        with pytest.raises(ValueError):
            parse_file("x.pdf", "pdf", pdf_split_mode="chapter")
