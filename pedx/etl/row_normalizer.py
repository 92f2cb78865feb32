# =========================================
# 📄 File: pedx/etl/row_normalizer.py
# Purpose: Decode CSV bytes (trial decoders + corruption scoring), parse into
#          string records with pandas, and convert cells to typed values
# =========================================

import io
import math
import re
import logging
import unicodedata
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd

from pedx.errors import DecodeError, RowParseError

log = logging.getLogger(__name__)

# Tried in this order; on equal corruption score the earlier one wins
ENCODING_CANDIDATES = ("utf-8-sig", "cp1252", "latin-1")

NULL_SENTINELS = {"", "na", "n/a", "nan", "null", "none"}
TRUTHY = {"1", "true", "t", "yes", "y"}
FALSY = {"0", "false", "f", "no", "n"}

# UTF-8 lead byte read as Latin-1/cp1252, followed by a continuation byte read the same way
_MOJIBAKE_PAIR = re.compile(
    "[ÂÃÄÅ]"
    "[\u0080-¿ŒœŠšŸŽžƒ"
    "ˆ˜–—‘-„†-•…‰"
    "‹›€™]"
)
# GBK round-trip artifact ("Asunci¨®n")
_GBK_MARKER = "¨"
_REPLACEMENT_CHAR = "\ufffd"

_AGE_RANGE = re.compile(r"(?:age)?\s*(\d+)\s*-\s*(\d+)", re.IGNORECASE)


def corruption_score(text: str) -> int:
    """Count known corruption markers; lower is cleaner."""
    return (
        text.count(_REPLACEMENT_CHAR)
        + len(_MOJIBAKE_PAIR.findall(text))
        + text.count(_GBK_MARKER)
    )


def rank_decodings(raw: bytes) -> List[Tuple[str, str]]:
    """
    Decode `raw` with every candidate encoding and return (encoding, text)
    pairs ordered best-first by corruption score, then by candidate priority.
    Encodings that cannot decode the bytes at all are left out.
    """
    scored = []
    for priority, encoding in enumerate(ENCODING_CANDIDATES):
        try:
            text = raw.decode(encoding)
        except UnicodeDecodeError:
            log.debug(f"Decoder {encoding} rejected input")
            continue
        scored.append((corruption_score(text), priority, encoding, text))
    scored.sort(key=lambda item: (item[0], item[1]))
    return [(encoding, text) for _, _, encoding, text in scored]


def _nfc(value: str) -> str:
    return unicodedata.normalize("NFC", value).strip()


def _clean_frame(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.fillna("")
    columns = [_nfc(str(c)) for c in frame.columns]
    # pandas writes its index as a blank (or "Unnamed: 0") first header
    if columns and (columns[0] == "" or columns[0].startswith("Unnamed: 0")):
        columns[0] = "index"
    frame.columns = columns
    return frame.map(lambda v: _nfc(str(v)))


class ParsedCsv:
    """
    Rows of one CSV file as string-keyed records.

    Iterating is lazy and restartable: every `iter()` walks the frame again.
    """

    def __init__(self, source: str, frame: pd.DataFrame, encoding: str):
        self.source = source
        self.frame = frame
        self.encoding = encoding

    @property
    def columns(self) -> List[str]:
        return list(self.frame.columns)

    def __len__(self) -> int:
        return len(self.frame)

    def __iter__(self) -> Iterator[Dict[str, str]]:
        columns = self.columns
        for values in self.frame.itertuples(index=False, name=None):
            yield dict(zip(columns, values))

    def typed_rows(self) -> Iterator["TypedRow"]:
        """Like iteration, but wraps each record with its 1-based data row number."""
        for number, record in enumerate(self, start=1):
            yield TypedRow(record, self.source, number)


def parse_bytes(raw: bytes, source: str) -> ParsedCsv:
    """Pick the cleanest decoding that pandas can parse; DecodeError if none can."""
    for encoding, text in rank_decodings(raw):
        if not text.strip():
            return ParsedCsv(source, pd.DataFrame(), encoding)
        try:
            frame = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
        except ValueError as e:  # ParserError / EmptyDataError
            log.debug(f"{source}: pandas could not parse {encoding} decoding: {e}")
            continue
        if encoding != ENCODING_CANDIDATES[0]:
            log.info(f"{source}: decoded as {encoding}")
        return ParsedCsv(source, _clean_frame(frame), encoding)
    raise DecodeError(source)


def read_csv(path, source: Optional[str] = None) -> ParsedCsv:
    """Read a CSV file from disk (FileNotFoundError propagates)."""
    path = Path(path)
    parsed = parse_bytes(path.read_bytes(), source or path.name)
    log.info(f"Loaded {len(parsed)} rows from {parsed.source}")
    return parsed


# -----------------------
# Typed cell parsers
# -----------------------
def is_null(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return str(value).strip().lower() in NULL_SENTINELS


def clean_string(value) -> Optional[str]:
    if is_null(value):
        return None
    return _nfc(str(value))


def parse_float(value, column=None, source=None, row_number=None) -> Optional[float]:
    """Strict: null sentinels give None, anything else unparseable raises RowParseError."""
    if is_null(value):
        return None
    if isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if text.endswith("%"):
        text = text[:-1].strip()
    try:
        return float(text)
    except ValueError:
        raise RowParseError(source, row_number, column, value) from None


def parse_int(value, column=None, source=None, row_number=None) -> Optional[int]:
    number = parse_float(value, column, source, row_number)
    if number is None:
        return None
    if not number.is_integer():
        raise RowParseError(source, row_number, column, value)
    return int(number)


def parse_bool(value) -> Optional[bool]:
    """Lenient: returns None for anything that is not a recognised truth literal."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not (isinstance(value, float) and math.isnan(value)):
        if value in (0, 1):
            return bool(value)
        return None
    if is_null(value):
        return None
    text = str(value).strip().lower()
    if text in TRUTHY:
        return True
    if text in FALSY:
        return False
    return None


def is_truthy(value) -> bool:
    """Accepts True, 1, "1", "true", "True" (and the other TRUTHY literals)."""
    return parse_bool(value) is True


def parse_age(value) -> Optional[int]:
    """Plain integer age, or the midpoint of an "Age18-60" style group."""
    if is_null(value):
        return None
    text = str(value).strip()
    try:
        number = float(text)
        if number > 0:
            return int(number)
    except ValueError:
        pass
    match = _AGE_RANGE.search(text)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        if low > 0 and high > 0:
            return int(math.floor((low + high) / 2 + 0.5))
    return None


def parse_date(value):
    """Lenient date parse; returns a datetime.date or None."""
    if is_null(value):
        return None
    parsed = pd.to_datetime(str(value).strip(), errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


class TypedRow:
    """
    One source record with typed accessors.

    Column lookup is exact first, then case-insensitive; missing columns read as None.
    Strict accessors raise RowParseError carrying source/row/column context.
    """

    def __init__(self, record: Dict[str, str], source: str, row_number: int):
        self.record = record
        self.source = source
        self.row_number = row_number
        self._folded = {str(k).lower(): k for k in record}

    def raw(self, column: str):
        if column in self.record:
            return self.record[column]
        key = self._folded.get(column.lower())
        return self.record[key] if key is not None else None

    def has(self, column: str) -> bool:
        return column in self.record or column.lower() in self._folded

    def text(self, column: str) -> Optional[str]:
        return clean_string(self.raw(column))

    def number(self, column: str) -> Optional[float]:
        return parse_float(self.raw(column), column, self.source, self.row_number)

    def integer(self, column: str) -> Optional[int]:
        return parse_int(self.raw(column), column, self.source, self.row_number)

    def flag(self, column: str) -> Optional[bool]:
        return parse_bool(self.raw(column))

    def age(self, column: str) -> Optional[int]:
        return parse_age(self.raw(column))

    def date(self, column: str):
        return parse_date(self.raw(column))
