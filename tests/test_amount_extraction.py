import pytest

from api.services.amount_extraction import (
    MAX_FILE_SIZE,
    UnsupportedFileType,
    extract_file,
    format_file_size,
    parse_amount,
    parse_csv_amounts,
    parse_html_amounts,
    validate_upload,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("₹1,234.50", 1234.5),
        ("$ 99", 99.0),
        ("42", 42.0),
        ("-5", None),
        ("0.00", None),
        ("", None),
        ("n/a", None),
        (None, None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_csv_uses_primary_column_and_skips_blanks():
    text = "Date,TOTAL_AMOUNT_CHARGED\n2024-01-01,100.50\n2024-01-02,$200\n2024-01-03,\n"

    parsed = parse_csv_amounts(text)

    assert parsed.column == "TOTAL_AMOUNT_CHARGED"
    assert parsed.amounts == [100.5, 200.0]
    assert parsed.row_count == 3


def test_csv_falls_back_to_fuzzy_header():
    text = "Merchant,Grand Total Amount (Charged)\nShop,10\nCafe,2.5\n"

    parsed = parse_csv_amounts(text)

    assert parsed.column == "Grand Total Amount (Charged)"
    assert parsed.amounts == [10.0, 2.5]


def test_csv_without_amount_column():
    parsed = parse_csv_amounts("Merchant,Price\nShop,10\n")
    assert parsed.column is None
    assert parsed.amounts == []
    assert parsed.headers == ["Merchant", "Price"]


def test_html_header_match():
    html = """
    <table>
      <thead><tr><th>Item</th><th>Total Amount Charged</th></tr></thead>
      <tbody>
        <tr><td>A</td><td>₹1,000.00</td></tr>
        <tr><td>B</td><td>250</td></tr>
        <tr><td>C</td><td>-</td></tr>
      </tbody>
    </table>
    """

    parsed = parse_html_amounts(html)

    assert parsed.column == "Total Amount Charged"
    assert parsed.amounts == [1000.0, 250.0]


def test_html_plain_decimal_fallback():
    html = """
    <table>
      <tr><td>Description</td><td>Amount</td></tr>
      <tr><td>Fee</td><td>45.50</td></tr>
      <tr><td>Tax</td><td>abc</td></tr>
    </table>
    """

    parsed = parse_html_amounts(html)

    assert parsed.amounts == [45.5]


def test_validate_upload():
    assert validate_upload("statement.csv", 10).is_valid

    tmp = validate_upload("tmp_statement.csv", 10)
    assert tmp.is_valid
    assert tmp.warnings

    bad_type = validate_upload("statement.pdf", 10)
    assert not bad_type.is_valid
    assert "not allowed" in bad_type.errors[0]

    assert "File is empty" in validate_upload("statement.csv", 0).errors
    assert not validate_upload("statement.csv", MAX_FILE_SIZE + 1).is_valid


def test_format_file_size():
    assert format_file_size(512) == "512 Bytes"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(50 * 1024 * 1024) == "50 MB"


def test_extract_file_totals_and_warnings():
    csv = b"Date,Total_Charged_Amount\n2024-01-01,10.10\n2024-01-02,20.25\n"

    extracted = extract_file("jan.csv", csv)

    assert extracted.type == "csv"
    assert extracted.total_amount == 30.35
    assert extracted.has_required_column
    assert extracted.warnings == []
    data = extracted.to_dict()
    assert data["totalAmount"] == 30.35
    assert data["columnFound"] == "Total_Charged_Amount"
    assert "total_amount" not in data


def test_extract_file_without_column_warns():
    extracted = extract_file("feb.csv", b"Merchant,Price\nShop,10\n")
    assert extracted.total_amount == 0
    assert "No amount columns found" in extracted.warnings[0]


def test_extract_file_rejects_other_types():
    with pytest.raises(UnsupportedFileType):
        extract_file("scan.pdf", b"%PDF")
