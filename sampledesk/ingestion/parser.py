"""
SampleDesk Format Parser

Turns an uploaded training-data file into a lazy stream of raw records
(string-keyed dicts). The stream is forward-only: iterating a ParseStream a
second time yields nothing, so call parse_file again to re-read a file.

Supported types:
- csv       one record per data row (header row required)
- json      one record per array element ({data: [...]}, {items: [...]}
            and single objects are accepted too)
- excel     one record per row of the first sheet (openpyxl)
- text      one record per blank-line separated section, Q:/A: aware
- markdown  one record per heading section
- pdf       one record per page, or one per document (pypdf)

Row-oriented formats are partial-success: a bad row becomes a
MalformedRecord warning and parsing continues. Whole-document formats
raise FatalParseError when the file is empty or unreadable.
"""

import csv
import json
import re
import zipfile
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import structlog

from sampledesk.errors import FatalParseError, MalformedRecord, UnsupportedFormat

logger = structlog.get_logger(__name__)

RawRecord = dict[str, Any]
WarningCallback = Callable[[MalformedRecord], None]

# Declared type (or alias) → canonical file type
FILE_TYPE_ALIASES = {
    "csv": "csv",
    "json": "json",
    "markdown": "markdown",
    "md": "markdown",
    "text": "text",
    "txt": "text",
    "excel": "excel",
    "xlsx": "excel",
    "xlsm": "excel",
    "pdf": "pdf",
}

EXTENSION_MAP = {
    ".csv": "csv",
    ".json": "json",
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "text",
    ".xlsx": "excel",
    ".xlsm": "excel",
    ".pdf": "pdf",
}

MIME_MAP = {
    "text/csv": "csv",
    "application/json": "json",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "text/plain": "text",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "excel",
    "application/pdf": "pdf",
}

PDF_SPLIT_MODES = ("page", "document")

_Q_PREFIX = re.compile(r"^\s*Q\s*:\s*", re.IGNORECASE)
_A_LINE = re.compile(r"^\s*A\s*:\s*", re.IGNORECASE | re.MULTILINE)
_BLANK_LINES = re.compile(r"\n[ \t]*\n+")
_MD_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$", re.MULTILINE)
_MD_FENCE = re.compile(r"^(```|~~~).*?^\1[ \t]*$", re.MULTILINE | re.DOTALL)


def resolve_file_type(declared_type: str) -> str:
    """Map a declared type or alias (``xlsx``, ``md``, ``txt``...) to a canonical file type."""
    file_type = FILE_TYPE_ALIASES.get((declared_type or "").strip().lower().lstrip("."))
    if file_type is None:
        raise UnsupportedFormat(f"Unsupported file type: {declared_type!r}")
    return file_type


def detect_file_type(filename: str, mime_type: Optional[str] = None) -> str:
    """
    Detect the canonical file type from the file extension, falling back
    to the MIME type. Raises UnsupportedFormat when neither is known.
    """
    ext = Path(filename or "").suffix.lower()
    if ext in EXTENSION_MAP:
        return EXTENSION_MAP[ext]

    if mime_type:
        base_mime = mime_type.split(";", 1)[0].strip().lower()
        if base_mime in MIME_MAP:
            return MIME_MAP[base_mime]

    raise UnsupportedFormat(
        f"Unsupported file type: extension {ext or '(none)'!r}, mime type {mime_type!r}"
    )


class ParseStream:
    """
    Lazy, finite, forward-only stream of raw records for one file.

    The underlying file is only opened once iteration starts. Iterating a
    second time yields nothing; the stream is not restartable.
    """

    def __init__(
        self,
        file_path: str,
        file_type: str,
        records: Callable[["ParseStream"], Iterator[RawRecord]],
        on_warning: Optional[WarningCallback] = None,
    ):
        self.file_path = file_path
        self.file_type = file_type
        self.warnings: list[MalformedRecord] = []
        self.rows_read = 0
        self._records = records
        self._on_warning = on_warning
        self._consumed = False

    def warn(self, location: str, reason: str) -> None:
        warning = MalformedRecord(location=location, reason=reason)
        self.warnings.append(warning)
        logger.warning(
            "malformed_record_skipped",
            file_type=self.file_type,
            location=location,
            reason=reason,
        )
        if self._on_warning is not None:
            self._on_warning(warning)

    def __iter__(self) -> Iterator[RawRecord]:
        if self._consumed:
            return
        self._consumed = True
        for record in self._records(self):
            self.rows_read += 1
            yield record


def parse_file(
    file_path: str,
    declared_type: str,
    *,
    on_warning: Optional[WarningCallback] = None,
    pdf_split_mode: str = "page",
    pdf_min_chars: int = 10,
) -> ParseStream:
    """
    Open a lazy record stream for *file_path*.

    Raises UnsupportedFormat immediately for an unknown declared type; no
    file access happens until the returned stream is iterated.
    """
    file_type = resolve_file_type(declared_type)

    if file_type == "pdf":
        if pdf_split_mode not in PDF_SPLIT_MODES:
            raise ValueError(f"pdf_split_mode must be one of {PDF_SPLIT_MODES}, got {pdf_split_mode!r}")

        def records(stream: ParseStream) -> Iterator[RawRecord]:
            return _iter_pdf(stream, pdf_split_mode, pdf_min_chars)
    else:
        records = _ROW_PARSERS[file_type]

    return ParseStream(file_path, file_type, records, on_warning=on_warning)


# =============================================================================
# Row-oriented formats
# =============================================================================


def _iter_csv(stream: ParseStream) -> Iterator[RawRecord]:
    try:
        handle = open(stream.file_path, newline="", encoding="utf-8-sig")
    except OSError as e:
        raise FatalParseError(f"Cannot open CSV file: {e}") from e

    with handle:
        reader = csv.reader(handle)
        header: Optional[list[str]] = None
        while True:
            try:
                row = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                stream.warn(f"Line {reader.line_num}", f"unparseable CSV row ({e})")
                continue
            except UnicodeDecodeError as e:
                raise FatalParseError(f"CSV file is not valid UTF-8: {e}") from e

            if not any(cell.strip() for cell in row):
                continue

            if header is None:
                header = [cell.strip() for cell in row]
                continue

            if len(row) != len(header):
                stream.warn(
                    f"Line {reader.line_num}",
                    f"expected {len(header)} fields, got {len(row)}",
                )
                continue

            yield {key: value for key, value in zip(header, row) if key}


def _iter_json(stream: ParseStream) -> Iterator[RawRecord]:
    try:
        with open(stream.file_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FatalParseError(f"Cannot parse JSON file: {e}") from e

    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        wrapped = data.get("data", data.get("items"))
        items = wrapped if isinstance(wrapped, list) else [data]
    else:
        raise FatalParseError(
            f"JSON root must be an array or object, got {type(data).__name__}"
        )

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            stream.warn(f"Item {index + 1}", f"expected an object, got {type(item).__name__}")
            continue
        yield item


def _iter_excel(stream: ParseStream) -> Iterator[RawRecord]:
    from openpyxl import load_workbook
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        workbook = load_workbook(stream.file_path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise FatalParseError(f"Cannot open spreadsheet: {e}") from e

    try:
        if not workbook.worksheets:
            return
        sheet = workbook.worksheets[0]
        header: Optional[list[str]] = None

        for row_number, values in enumerate(sheet.iter_rows(values_only=True), start=1):
            cells = list(values)
            if all(_is_blank_cell(v) for v in cells):
                continue

            if header is None:
                header = ["" if v is None else str(v).strip() for v in cells]
                # read-only sheets pad rows to the widest column
                while header and not header[-1]:
                    header.pop()
                continue

            overflow = cells[len(header):]
            if any(not _is_blank_cell(v) for v in overflow):
                stream.warn(
                    f"Row {row_number}",
                    f"{len(cells)} values but only {len(header)} header columns",
                )
                continue

            yield {
                key: value
                for key, value in zip(header, cells)
                if key and not _is_blank_cell(value)
            }
    finally:
        workbook.close()


def _is_blank_cell(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# =============================================================================
# Whole-document formats
# =============================================================================


def _read_document(stream: ParseStream) -> str:
    try:
        content = Path(stream.file_path).read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise FatalParseError(f"Cannot read {stream.file_type} file: {e}") from e

    content = content.replace("\r\n", "\n").replace("\r", "\n")
    if not content.strip():
        raise FatalParseError(f"{stream.file_type.capitalize()} file is empty")
    return content


def _split_inline_qa(block: str) -> Optional[tuple[str, str]]:
    """Split a block holding both a ``Q:`` line and an ``A:`` line."""
    if not _Q_PREFIX.match(block):
        return None
    answer_match = _A_LINE.search(block)
    if answer_match is None:
        return None
    question = _Q_PREFIX.sub("", block[: answer_match.start()], count=1).strip()
    answer = block[answer_match.end():].strip()
    return question, answer


def _iter_text(stream: ParseStream) -> Iterator[RawRecord]:
    content = _read_document(stream)
    blocks = [b.strip() for b in _BLANK_LINES.split(content) if b.strip()]

    i = 0
    section = 0
    while i < len(blocks):
        block = blocks[i]

        inline = _split_inline_qa(block)
        if inline is not None:
            yield {"question": inline[0], "answer": inline[1], "type": "qa"}
            i += 1
            continue

        # "Q: ..." block followed by an "A: ..." block
        if (
            _Q_PREFIX.match(block)
            and i + 1 < len(blocks)
            and _A_LINE.match(blocks[i + 1])
        ):
            yield {
                "question": _Q_PREFIX.sub("", block, count=1).strip(),
                "answer": _A_LINE.sub("", blocks[i + 1], count=1).strip(),
                "type": "qa",
            }
            i += 2
            continue

        section += 1
        yield {"question": f"Document Section {section}", "answer": block, "type": "doc"}
        i += 1


def _iter_markdown(stream: ParseStream) -> Iterator[RawRecord]:
    content = _read_document(stream)

    fenced = [(m.start(), m.end()) for m in _MD_FENCE.finditer(content)]
    headings = [
        m for m in _MD_HEADING.finditer(content)
        if not any(start <= m.start() < end for start, end in fenced)
    ]

    preamble_end = headings[0].start() if headings else len(content)
    preamble = content[:preamble_end].strip()
    if preamble:
        first_line, _, rest = preamble.partition("\n")
        title = first_line.strip()
        body = rest.strip()
        if title and body:
            yield {"question": title, "answer": body, "type": "doc"}

    for index, heading in enumerate(headings):
        next_start = headings[index + 1].start() if index + 1 < len(headings) else len(content)
        title = heading.group(2).strip()
        body = content[heading.end():next_start].strip()
        if title and body:
            yield {"question": title, "answer": body, "type": "doc"}


def _iter_pdf(stream: ParseStream, split_mode: str, min_chars: int) -> Iterator[RawRecord]:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(stream.file_path)
        if reader.is_encrypted:
            raise FatalParseError("PDF file is encrypted")
        pages = list(reader.pages)
    except (PdfReadError, OSError, ValueError) as e:
        raise FatalParseError(f"Cannot read PDF file: {e}") from e

    texts: list[tuple[int, str]] = []
    for page_number, page in enumerate(pages, start=1):
        try:
            text = (page.extract_text() or "").strip()
        except Exception as e:
            stream.warn(f"Page {page_number}", f"text extraction failed ({e})")
            continue
        if len(text) > min_chars:
            texts.append((page_number, text))

    if split_mode == "document":
        combined = "\n\n".join(text for _, text in texts)
        if combined:
            yield {
                "question": f"Document: {Path(stream.file_path).stem}",
                "answer": combined,
                "type": "doc",
            }
        return

    for page_number, text in texts:
        yield {"question": f"Page {page_number}", "answer": text, "type": "doc"}


_ROW_PARSERS: dict[str, Callable[[ParseStream], Iterator[RawRecord]]] = {
    "csv": _iter_csv,
    "json": _iter_json,
    "excel": _iter_excel,
    "text": _iter_text,
    "markdown": _iter_markdown,
}
