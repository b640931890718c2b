# api/services/amount_extraction.py
# ================================
# Statement amount extraction
# ================================
# Reports are built from card/bank statements exported as CSV or HTML.
# The billable figure lives in a "Total amount charged" column; every
# positive value in that column is summed into the report amount.
#
# Functions:
#   validate_upload(filename, size) -> FileValidation
#   parse_csv_amounts(text) -> ColumnAmounts
#   parse_html_amounts(text) -> ColumnAmounts
#   extract_file(filename, content) -> ExtractedFile

import io
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from typing import List, Optional

import pandas as pd
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB
MAX_FILES_PER_REPORT = 10
ALLOWED_EXTENSIONS = (".csv", ".html", ".htm")
PREVIEW_CHARS = 500

PRIMARY_CSV_COLUMN = "TOTAL_AMOUNT_CHARGED"
FALLBACK_CSV_COLUMNS = (
    "Total_Charged_Amount",
    "TOTAL_CHARGED_AMOUNT",
    "total_amount_charged",
    "Total Amount Charged",
    "TOTAL AMOUNT CHARGED",
    "TotalAmountCharged",
    "total_charged_amount",
)

_NON_NUMERIC = re.compile(r"[^\d.\-]")
_LEADING_MINUS = re.compile(r"^-+")
_TRAILING_MINUS = re.compile(r"-+$")
_NUMBER_PREFIX = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")
_PLAIN_DECIMAL = re.compile(r"^\d+(?:\.\d{1,2})?$")


@dataclass
class FileValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    extension: str = ""


@dataclass
class ColumnAmounts:
    amounts: List[float] = field(default_factory=list)
    column: Optional[str] = None
    row_count: int = 0
    headers: List[str] = field(default_factory=list)


@dataclass
class ExtractedFile:
    name: str
    type: str
    content: str
    amounts: List[float]
    total_amount: float
    has_required_column: bool
    column_found: Optional[str]
    row_count: int
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        # camelCase keys are what the dashboard already stores in processing_details
        data["totalAmount"] = data.pop("total_amount")
        data["hasRequiredColumn"] = data.pop("has_required_column")
        data["columnFound"] = data.pop("column_found")
        data["rowCount"] = data.pop("row_count")
        return data


class UnsupportedFileType(ValueError):
    pass


# ====== HELPERS ======

def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def format_file_size(size: int) -> str:
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{size} Bytes"


def parse_amount(raw) -> Optional[float]:
    """
    Turns a cell like "₹1,234.50" or "$ 99" into a float.
    Returns None for blanks, non-numbers and non-positive values.
    """
    if raw is None:
        return None
    cleaned = _NON_NUMERIC.sub("", str(raw))
    cleaned = _LEADING_MINUS.sub("-", cleaned)
    cleaned = _TRAILING_MINUS.sub("", cleaned)
    match = _NUMBER_PREFIX.match(cleaned)
    if not match:
        return None
    value = float(match.group(0))
    return value if value > 0 else None


def _is_amount_header(text: str) -> bool:
    normalized = text.strip().lower()
    if "total amount charged" in normalized or "totalamountcharged" in normalized:
        return True
    return "total" in normalized and "amount" in normalized and "charged" in normalized


def _find_csv_column(headers: List[str]) -> Optional[str]:
    if PRIMARY_CSV_COLUMN in headers:
        return PRIMARY_CSV_COLUMN
    for col in FALLBACK_CSV_COLUMNS:
        if col in headers:
            return col
    for header in headers:
        letters = re.sub(r"[^a-z]", "", header.lower())
        if "totalamountcharged" in letters or ("total" in letters and "amount" in letters and "charged" in letters):
            return header
    return None


# ====== VALIDATION ======

def validate_upload(filename: str, size: int) -> FileValidation:
    errors: List[str] = []
    warnings: List[str] = []
    extension = file_extension(filename)

    if not filename or not filename.strip():
        errors.append("File name is invalid")

    if size > MAX_FILE_SIZE:
        errors.append(
            f"File size ({format_file_size(size)}) exceeds maximum allowed size ({format_file_size(MAX_FILE_SIZE)})"
        )
    if size == 0:
        errors.append("File is empty")

    if extension not in ALLOWED_EXTENSIONS:
        errors.append(
            f"File type '{extension}' is not allowed. Allowed types: {', '.join(ALLOWED_EXTENSIONS)}"
        )

    lowered = (filename or "").lower()
    if "temp" in lowered or "tmp" in lowered:
        warnings.append("File appears to be a temporary file")

    return FileValidation(is_valid=not errors, errors=errors, warnings=warnings, extension=extension)


# ====== CSV ======

def parse_csv_amounts(text: str) -> ColumnAmounts:
    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines="skip",
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        logger.warning("[AmountExtraction] CSV could not be parsed: %s", e)
        return ColumnAmounts()

    df.columns = [str(c).strip() for c in df.columns]
    headers = list(df.columns)
    column = _find_csv_column(headers)
    if column is None:
        logger.warning("[AmountExtraction] No amount column in CSV. Headers: %s", headers)
        return ColumnAmounts(headers=headers, row_count=len(df))

    amounts = [a for a in (parse_amount(v) for v in df[column].tolist()) if a is not None]
    return ColumnAmounts(amounts=amounts, column=column, row_count=len(df), headers=headers)


# ====== HTML ======

def _cell_texts(row, tags=("td", "th")) -> List[str]:
    return [cell.get_text(strip=True) for cell in row.find_all(list(tags), recursive=False)]


def parse_html_amounts(text: str) -> ColumnAmounts:
    soup = BeautifulSoup(text, "html.parser")
    tables = soup.find_all("table")
    result = ColumnAmounts()

    # Strategy 1: a header cell naming the "Total amount charged" column
    for table in tables:
        thead = table.find("thead")
        header_row = thead.find("tr") if thead else table.find("tr")
        if header_row is None:
            continue

        headers = _cell_texts(header_row)
        index = next((i for i, h in enumerate(headers) if _is_amount_header(h)), -1)
        if index < 0:
            continue

        if thead:
            data_rows = [tr for tr in table.find_all("tr") if tr.find_parent("thead") is None]
        else:
            data_rows = table.find_all("tr")[1:]

        result.column = result.column or headers[index]
        result.headers = result.headers or headers
        result.row_count += len(data_rows)
        for row in data_rows:
            cells = _cell_texts(row)
            if index < len(cells):
                value = parse_amount(cells[index])
                if value is not None:
                    result.amounts.append(value)

    if result.amounts:
        return result

    # Strategy 2: plain decimals sitting under a total/amount/charged header
    for table in tables:
        rows = table.find_all("tr")
        if not rows:
            continue
        headers = [h.lower() for h in _cell_texts(rows[0])]
        for row in rows[1:]:
            for i, cell in enumerate(_cell_texts(row)):
                if i >= len(headers) or not _PLAIN_DECIMAL.match(cell):
                    continue
                header = headers[i]
                if "total" in header or "amount" in header or "charged" in header:
                    value = float(cell)
                    if value > 0:
                        result.amounts.append(value)
                        result.row_count += 1

    return result


# ====== ENTRYPOINT ======

def extract_file(filename: str, content: bytes) -> ExtractedFile:
    """
    Parses one statement file. Raises UnsupportedFileType for anything that
    is not CSV/HTML; the caller maps that to a 400.
    """
    extension = file_extension(filename)
    text = content.decode("utf-8", errors="replace")

    if extension == ".csv":
        parsed = parse_csv_amounts(text)
        file_type = "csv"
    elif extension in (".html", ".htm"):
        parsed = parse_html_amounts(text)
        file_type = "html"
    else:
        raise UnsupportedFileType("Unsupported file type. Please upload HTML or CSV files only.")

    warnings: List[str] = []
    if parsed.column is None and not parsed.amounts:
        warnings.append("No amount columns found. Please ensure your file contains a 'Total amount charged' column.")
    elif not parsed.amounts:
        warnings.append("Amount column found but it holds no positive values.")

    preview = text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")
    total = round(sum(parsed.amounts), 2)

    logger.info(
        "[AmountExtraction] %s: %d amounts, total=%s, column=%s",
        filename, len(parsed.amounts), total, parsed.column,
    )

    return ExtractedFile(
        name=filename,
        type=file_type,
        content=preview,
        amounts=parsed.amounts,
        total_amount=total,
        has_required_column=parsed.column is not None,
        column_found=parsed.column,
        row_count=parsed.row_count,
        warnings=warnings,
    )
