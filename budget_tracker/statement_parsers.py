import html
import logging
import re


logger = logging.getLogger(__name__)

DATE_FORMAT_MDY = "MM/DD/YYYY"
DATE_FORMAT_DMY = "DD/MM/YYYY"
DATE_FORMAT_YMD = "YYYY-MM-DD"
DATE_FORMATS = (DATE_FORMAT_MDY, DATE_FORMAT_DMY, DATE_FORMAT_YMD)
DEFAULT_DATE_FORMAT = DATE_FORMAT_MDY

MIN_YEAR = 1900
MAX_YEAR = 2100
TWO_DIGIT_YEAR_PIVOT = 50

QIF_TERMINATOR = "^"
QIF_HEADER_MARKER = "!"
QIF_MEMO_SEPARATOR = " - "

STATEMENT_KINDS = {
    ".qif": "qif",
    ".ofx": "ofx",
    ".qfx": "ofx",
}

OFX_BLOCK_START = re.compile(r"<STMTTRN>", re.IGNORECASE)
OFX_BLOCK_END = re.compile(r"</STMTTRN>|<STMTTRN>|</BANKTRANLIST>", re.IGNORECASE)


class StatementImportError(Exception):
    """Base class for errors raised by the statement import pipeline."""


class StatementFormatError(StatementImportError):
    """Raised when a file is not a statement format we can read."""


def decode_statement_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def detect_statement_kind(filename):
    name = (filename or "").strip().lower()
    for extension, kind in STATEMENT_KINDS.items():
        if name.endswith(extension):
            return kind
    raise StatementFormatError(f"Unsupported statement file {filename!r}. Please upload a .qif or .ofx file.")


def parse_amount(value):
    cleaned = (value or "").strip().replace(",", "").replace("$", "")
    if not cleaned:
        return None
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return round(amount, 2)


def build_date(year, month, day):
    if not (1 <= month <= 12 and 1 <= day <= 31 and MIN_YEAR <= year <= MAX_YEAR):
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def normalize_date(value, date_format=DEFAULT_DATE_FORMAT):
    if date_format not in DATE_FORMATS:
        raise ValueError(f"Unknown date format {date_format!r}; expected one of {', '.join(DATE_FORMATS)}")

    # Quicken writes years after an apostrophe ("1/5'24"); some banks use dashes.
    parts = [part.strip() for part in re.split(r"[/'\-]", (value or "").strip())]
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        return None

    if date_format == DATE_FORMAT_DMY:
        day, month, year = parts
    elif date_format == DATE_FORMAT_YMD:
        year, month, day = parts
    else:
        month, day, year = parts

    if len(year) == 2:
        year = ("19" if int(year) > TWO_DIGIT_YEAR_PIVOT else "20") + year

    return build_date(int(year), int(month), int(day))


def split_qif_line(line):
    """Return ``(tag, value)`` for a QIF field line, or ``None`` for lines that carry no field."""
    stripped = line.strip()
    if not stripped or stripped.startswith(QIF_HEADER_MARKER):
        return None
    if stripped == QIF_TERMINATOR:
        return QIF_TERMINATOR, ""
    if len(stripped) < 2:
        return None
    return stripped[0], stripped[1:].strip()


class QifAccumulator:
    """Field state for the QIF transaction currently being read."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.date = None
        self.amount = None
        self.description = ""
        self.check_number = None

    def set_description(self, value):
        self.description = value

    def add_memo(self, value):
        if not value:
            return
        if not self.description:
            self.description = value
        elif value != self.description:
            self.description = f"{self.description}{QIF_MEMO_SEPARATOR}{value}"

    def is_complete(self):
        return bool(self.date) and self.amount is not None and bool(self.description)

    def to_record(self):
        record = {"date": self.date, "amount": self.amount, "description": self.description}
        if self.check_number:
            record["check_number"] = self.check_number
        return record


def parse_qif(text, date_format=DEFAULT_DATE_FORMAT):
    if date_format not in DATE_FORMATS:
        raise ValueError(f"Unknown date format {date_format!r}; expected one of {', '.join(DATE_FORMATS)}")

    records = []
    current = QifAccumulator()
    dropped = 0

    for line in (text or "").splitlines():
        field = split_qif_line(line)
        if field is None:
            continue
        tag, value = field

        if tag == QIF_TERMINATOR:
            if current.is_complete():
                records.append(current.to_record())
            else:
                dropped += 1
            current.reset()
        elif tag == "D":
            current.date = normalize_date(value, date_format) or current.date
        elif tag == "T":
            amount = parse_amount(value)
            if amount is not None:
                current.amount = amount
        elif tag == "P":
            current.set_description(value)
        elif tag == "M":
            current.add_memo(value)
        elif tag == "N":
            current.check_number = value

    if current.is_complete():
        records.append(current.to_record())

    if dropped:
        logger.debug("QIF parse dropped %s incomplete transaction block(s)", dropped)
    return records


def find_ofx_blocks(text):
    blocks = []
    content = text or ""
    for start in OFX_BLOCK_START.finditer(content):
        end = OFX_BLOCK_END.search(content, start.end())
        blocks.append(content[start.end():end.start() if end else len(content)])
    return blocks


def extract_ofx_field(block, field_name):
    match = re.search(rf"<{field_name}>([^<\r\n]*)", block, re.IGNORECASE)
    if not match:
        return ""
    return html.unescape(match.group(1)).strip()


def parse_ofx_date(value):
    digits = (value or "").strip()[:8]
    if len(digits) != 8 or not digits.isdigit():
        return None
    return build_date(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))


def parse_ofx_amount(value):
    # OFX has no thousands separator; a lone comma is the decimal point.
    cleaned = (value or "").strip()
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return round(amount, 2)


def build_ofx_description(name, memo):
    if name and memo and name != memo:
        return f"{name}{QIF_MEMO_SEPARATOR}{memo}"
    return name or memo


def parse_ofx(text):
    blocks = find_ofx_blocks(text)
    if not blocks:
        raise StatementFormatError("No <STMTTRN> transactions found. Is this really an OFX file?")

    records = []
    for block in blocks:
        date = parse_ofx_date(extract_ofx_field(block, "DTPOSTED"))
        amount = parse_ofx_amount(extract_ofx_field(block, "TRNAMT"))
        description = build_ofx_description(extract_ofx_field(block, "NAME"), extract_ofx_field(block, "MEMO"))
        if not date or amount is None or not description:
            logger.debug("OFX parse skipped block without date, amount or description")
            continue

        record = {"date": date, "amount": amount, "description": description}
        check_number = extract_ofx_field(block, "CHECKNUM") or extract_ofx_field(block, "REFNUM")
        if check_number:
            record["check_number"] = check_number
        records.append(record)
    return records


def parse_statement(kind, text, date_format=DEFAULT_DATE_FORMAT):
    if kind == "qif":
        return parse_qif(text, date_format)
    if kind == "ofx":
        return parse_ofx(text)
    raise StatementFormatError(f"Unsupported statement kind {kind!r}")
