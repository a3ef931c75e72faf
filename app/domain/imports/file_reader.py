"""
Reading uploaded contact files (CSV and Excel) into ordered rows.

Upload uses :func:`inspect_file` to detect encoding, delimiter, sheet and
header row. The parse stage re-reads the stored file with the detected
settings through :func:`iter_data_rows`, which yields rows lazily and always
numbers the same bytes the same way, so a chunk can start at any offset
without materializing the rows before it.
"""

import codecs
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import chardet
import pandas as pd
from openpyxl import load_workbook

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv": "csv", ".txt": "csv", ".xlsx": "xlsx", ".xls": "xls"}
EXCEL_TYPES = ("xlsx", "xls")
CANDIDATE_DELIMITERS = (",", ";", "\t", "|")
HEADER_SCAN_ROWS = 10
PREVIEW_ROWS = 5
ENCODING_SAMPLE_BYTES = 50000

_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)

_NUMERIC_CELL = re.compile(r"^[\d\s+().,/-]+$")


class FileParseError(Exception):
    """Raised when an uploaded file cannot be decoded into rows."""
    pass


@dataclass
class FileInspection:
    file_type: str
    encoding: Optional[str]
    delimiter: Optional[str]
    sheet_name: Optional[str]
    headers: List[str]
    has_header_row: bool
    header_row_index: int
    total_rows: int
    sample_rows: List[List[str]] = field(default_factory=list)


@dataclass
class SourceRow:
    """A data row with its stable 1-based position among data rows."""
    row_number: int
    values: List[str]
    raw_data: Dict[str, str]


def detect_file_type(file_name: str) -> str:
    lowered = (file_name or "").lower()
    for extension, file_type in SUPPORTED_EXTENSIONS.items():
        if lowered.endswith(extension):
            return file_type
    raise FileParseError(f"Unsupported file type: {file_name}")


def detect_encoding(content: bytes) -> str:
    """
    Detect the text encoding of a CSV payload.

    A byte order mark wins; UTF-8 is kept when the payload decodes as UTF-8;
    otherwise chardet guesses from the first bytes. A guess that cannot decode
    the payload falls back to cp1252, the usual encoding of Excel CSV exports.
    """
    for bom, encoding in _BOMS:
        if content.startswith(bom):
            return encoding

    try:
        content.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        pass

    guess = chardet.detect(content[:ENCODING_SAMPLE_BYTES])
    encoding = guess.get("encoding") or "cp1252"
    try:
        content.decode(encoding)
    except (UnicodeDecodeError, LookupError):
        logger.info(f"Detected encoding {encoding} does not decode the file; using cp1252")
        encoding = "cp1252"
    return encoding


def detect_delimiter(text: str) -> str:
    """Choose the candidate delimiter that occurs most in the first non-empty line."""
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    counts = {delimiter: first_line.count(delimiter) for delimiter in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def _clean_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        if value.is_integer():
            value = int(value)
    return str(value).strip()


def _is_blank(row: Sequence[str]) -> bool:
    return all(not cell for cell in row)


def _iter_csv_rows(content: bytes, encoding: Optional[str], delimiter: Optional[str]) -> Iterator[Sequence[Any]]:
    encoding = encoding or detect_encoding(content)
    try:
        codecs.lookup(encoding)
    except LookupError as e:
        raise FileParseError(f"Could not decode CSV file: {e}")
    if delimiter is None:
        delimiter = detect_delimiter(content[:ENCODING_SAMPLE_BYTES].decode(encoding, errors="replace"))

    stream = io.TextIOWrapper(io.BytesIO(content), encoding=encoding, newline="")
    try:
        yield from csv.reader(stream, delimiter=delimiter)
    except UnicodeDecodeError as e:
        raise FileParseError(f"Could not decode CSV file: {e}")
    except csv.Error as e:
        raise FileParseError(f"Malformed CSV: {e}")


def _iter_xlsx_rows(content: bytes, sheet_name: Optional[str]) -> Iterator[Sequence[Any]]:
    # read-only mode streams rows from the sheet XML
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise FileParseError(f"Could not read Excel file: {e}")
    try:
        if sheet_name:
            if sheet_name not in workbook.sheetnames:
                raise FileParseError(f"Worksheet not found: {sheet_name}")
            worksheet = workbook[sheet_name]
        else:
            worksheet = workbook.worksheets[0]
        yield from worksheet.iter_rows(values_only=True)
    finally:
        workbook.close()


def _iter_xls_rows(content: bytes, sheet_name: Optional[str]) -> Iterator[Sequence[Any]]:
    # legacy .xls sheets are capped at 65,536 rows, so the whole sheet is loaded
    try:
        df = pd.read_excel(
            io.BytesIO(content),
            sheet_name=sheet_name if sheet_name else 0,
            header=None,
            dtype=object,
            engine="xlrd",
        )
    except Exception as e:
        raise FileParseError(f"Could not read Excel file: {e}")
    yield from df.itertuples(index=False, name=None)


def iter_table_rows(
    content: bytes,
    file_type: str,
    *,
    encoding: Optional[str] = None,
    delimiter: Optional[str] = None,
    sheet_name: Optional[str] = None,
) -> Iterator[List[str]]:
    """
    Lazily decode a file into non-empty rows of string cells.

    Args:
        content: Raw file bytes
        file_type: "csv", "xlsx" or "xls"
        encoding: Text encoding for CSV (detected when omitted)
        delimiter: CSV delimiter (detected when omitted)
        sheet_name: Worksheet to read for Excel (first sheet when omitted)

    Yields:
        Lists of trimmed strings, blank rows skipped

    Raises:
        FileParseError: If the bytes cannot be read as the given type
    """
    if file_type == "csv":
        rows: Iterable[Sequence[Any]] = _iter_csv_rows(content, encoding, delimiter)
    elif file_type == "xlsx":
        rows = _iter_xlsx_rows(content, sheet_name)
    elif file_type == "xls":
        rows = _iter_xls_rows(content, sheet_name)
    else:
        raise FileParseError(f"Unsupported file type: {file_type}")

    for row in rows:
        cells = [_clean_cell(cell) for cell in row]
        if not _is_blank(cells):
            yield cells


def read_table(
    content: bytes,
    file_type: str,
    *,
    encoding: Optional[str] = None,
    delimiter: Optional[str] = None,
    sheet_name: Optional[str] = None,
) -> List[List[str]]:
    """Decode a whole file into non-empty rows. See :func:`iter_table_rows`."""
    return list(
        iter_table_rows(content, file_type, encoding=encoding, delimiter=delimiter, sheet_name=sheet_name)
    )


def first_sheet_name(content: bytes, file_type: str = "xlsx") -> Optional[str]:
    try:
        if file_type == "xls":
            with pd.ExcelFile(io.BytesIO(content), engine="xlrd") as workbook:
                names = workbook.sheet_names
        else:
            workbook = load_workbook(io.BytesIO(content), read_only=True)
            try:
                names = workbook.sheetnames
            finally:
                workbook.close()
    except Exception as e:
        raise FileParseError(f"Could not read Excel file: {e}")
    return names[0] if names else None


def _looks_like_data(cell: str) -> bool:
    return "@" in cell or bool(_NUMERIC_CELL.match(cell))


def detect_header_row(rows: Sequence[Sequence[str]]) -> Tuple[bool, int]:
    """
    Guess where the header row is.

    The header is the first row within the scan window whose filled cells
    are all text (no emails, numbers or phone-like values) and which fills at
    least half of the widest row. Files without such a row are headerless.
    """
    window = rows[:HEADER_SCAN_ROWS]
    if not window:
        return True, 0
    width = max(len(row) for row in window)
    for index, row in enumerate(window):
        filled = [cell for cell in row if cell]
        if len(filled) * 2 < width:
            continue
        if any(_looks_like_data(cell) for cell in filled):
            return False, 0
        return True, index
    return False, 0


def _unique_headers(header_cells: Sequence[str], width: int) -> List[str]:
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for index in range(width):
        name = header_cells[index] if index < len(header_cells) and header_cells[index] else f"Column {index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name} ({seen[name]})"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def split_header(
    rows: Sequence[Sequence[str]],
    has_header_row: bool,
    header_row_index: int,
) -> Tuple[List[str], List[List[str]]]:
    """Apply the header-row rule: rows above the header are dropped."""
    width = max((len(row) for row in rows), default=0)
    if has_header_row:
        header_cells = rows[header_row_index] if header_row_index < len(rows) else []
        data = [list(row) for row in rows[header_row_index + 1:]]
    else:
        header_cells = []
        data = [list(row) for row in rows[header_row_index:]]
    return _unique_headers(header_cells, width), data




def _raw_data(headers: Sequence[str], values: Sequence[str]) -> Dict[str, str]:
    return {headers[i] if i < len(headers) else f"Column {i + 1}": value for i, value in enumerate(values)}


def iter_data_rows(
    content: bytes,
    file_type: str,
    *,
    encoding: Optional[str],
    delimiter: Optional[str],
    sheet_name: Optional[str],
    has_header_row: bool,
    header_row_index: int,
    start: int = 0,
) -> Iterator[SourceRow]:
    """
    Yield data rows numbered from 1 in source order, beginning after ``start`` rows.

    Rows above the header (or above ``header_row_index`` for headerless files)
    are dropped. Rows before ``start`` are read past but never built into
    ``SourceRow`` objects.
    """
    rows = iter_table_rows(content, file_type, encoding=encoding, delimiter=delimiter, sheet_name=sheet_name)
    for _ in range(header_row_index):
        if next(rows, None) is None:
            return

    header_cells: List[str] = []
    if has_header_row:
        header_cells = next(rows, [])
    headers = _unique_headers(header_cells, len(header_cells))

    for position, values in enumerate(islice(rows, start, None), start=start + 1):
        yield SourceRow(row_number=position, values=values, raw_data=_raw_data(headers, values))


def read_data_rows(
    content: bytes,
    file_type: str,
    *,
    encoding: Optional[str],
    delimiter: Optional[str],
    sheet_name: Optional[str],
    has_header_row: bool,
    header_row_index: int,
    start: int = 0,
    limit: Optional[int] = None,
) -> List[SourceRow]:
    """Return at most ``limit`` data rows starting after ``start`` rows."""
    rows = iter_data_rows(
        content,
        file_type,
        encoding=encoding,
        delimiter=delimiter,
        sheet_name=sheet_name,
        has_header_row=has_header_row,
        header_row_index=header_row_index,
        start=start,
    )
    return list(islice(rows, limit))


def inspect_file(content: bytes, file_name: str) -> FileInspection:
    """
    Detect how to read an uploaded file and summarize its contents.

    Raises:
        FileParseError: If the file type is unsupported or it holds no rows
    """
    file_type = detect_file_type(file_name)
    encoding = delimiter = sheet_name = None

    if file_type == "csv":
        encoding = detect_encoding(content)
        delimiter = detect_delimiter(content[:ENCODING_SAMPLE_BYTES].decode(encoding, errors="replace"))
    else:
        sheet_name = first_sheet_name(content, file_type)

    rows = read_table(content, file_type, encoding=encoding, delimiter=delimiter, sheet_name=sheet_name)
    if not rows:
        raise FileParseError("The file does not contain any rows")

    has_header_row, header_row_index = detect_header_row(rows)
    headers, data = split_header(rows, has_header_row, header_row_index)

    logger.info(
        f"Inspected {file_name}: type={file_type} encoding={encoding} delimiter={delimiter!r} "
        f"sheet={sheet_name} header={has_header_row}@{header_row_index} rows={len(data)}"
    )

    return FileInspection(
        file_type=file_type,
        encoding=encoding,
        delimiter=delimiter,
        sheet_name=sheet_name,
        headers=headers,
        has_header_row=has_header_row,
        header_row_index=header_row_index,
        total_rows=len(data),
        sample_rows=data[:PREVIEW_ROWS],
    )
