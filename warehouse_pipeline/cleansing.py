"""
Field-level validation and normalization rules.

Every function here is a pure scalar mapping so the rules can be tested
without a database. Mapping functions are total: any input, including
missing values and unexpected codes, lands on a canonical label.
"""

from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

UNKNOWN = "N/A"

MARITAL_STATUSES = frozenset({"Single", "Married", UNKNOWN})
GENDERS = frozenset({"Male", "Female", UNKNOWN})
PRODUCT_LINES = frozenset({"Mountain", "Road", "Sports", "Touring", UNKNOWN})

_MARITAL_CODES = {"S": "Single", "M": "Married"}
_CRM_GENDER_CODES = {"F": "Female", "M": "Male"}
_ERP_GENDER_CODES = {"F": "Female", "FEMALE": "Female", "M": "Male", "MALE": "Male"}
_PRODUCT_LINE_CODES = {"M": "Mountain", "R": "Road", "S": "Sports", "T": "Touring"}
_COUNTRY_CODES = {"DE": "Germany", "US": "United States", "USA": "United States"}

NAS_PREFIX = "NAS"


def is_missing(value: Any) -> bool:
    """True for None, NaN, NaT and pd.NA."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        # list-likes are never "missing" scalars
        return False


def strip_control_chars(value: str) -> str:
    return value.replace("\r", "").replace("\n", "")


def clean_text(value: Any) -> Optional[str]:
    """Trim surrounding whitespace; missing stays missing."""
    if is_missing(value):
        return None
    return str(value).strip()


def normalize_code(value: Any) -> str:
    """Canonical form for code comparisons: no CR/LF, trimmed, upper case."""
    if is_missing(value):
        return ""
    return strip_control_chars(str(value)).strip().upper()


# ---------------------------------------------------------------------------
# Numbers and dates
# ---------------------------------------------------------------------------

def to_number(value: Any) -> Optional[float]:
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return None if pd.isna(number) else number


def to_integer_id(value: Any) -> Optional[int]:
    """Parse a numeric identifier. Non-integral or non-numeric input gives None."""
    number = to_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def parse_yyyymmdd(value: Any) -> Optional[date]:
    """
    Parse an integer-encoded YYYYMMDD date.

    Valid only when the value is non-zero, has exactly eight digits and names
    a real calendar day. Anything else (zero, wrong length, Feb 30, text) is
    treated as absent.

    >>> parse_yyyymmdd(20240229)
    datetime.date(2024, 2, 29)
    >>> parse_yyyymmdd(20240230) is None
    True
    """
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    text = str(value).strip()
    if len(text) != 8 or not text.isdigit() or int(text) == 0:
        return None
    try:
        return datetime.strptime(text, "%Y%m%d").date()
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[date]:
    """Parse date or datetime text (ISO style) into a date; junk gives None."""
    if is_missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    # ISO text first: pandas timestamps stop at 2262, open-end sentinels like 9999-12-31 do not
    for parse_iso in (date.fromisoformat, lambda s: datetime.fromisoformat(s).date()):
        try:
            return parse_iso(text)
        except ValueError:
            pass
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


def to_iso(value: Optional[date]) -> Optional[str]:
    return None if value is None else value.isoformat()


# ---------------------------------------------------------------------------
# Controlled vocabularies
# ---------------------------------------------------------------------------

def map_marital_status(value: Any) -> str:
    return _MARITAL_CODES.get(normalize_code(value), UNKNOWN)


def map_crm_gender(value: Any) -> str:
    return _CRM_GENDER_CODES.get(normalize_code(value), UNKNOWN)


def map_erp_gender(value: Any) -> str:
    return _ERP_GENDER_CODES.get(normalize_code(value), UNKNOWN)


def map_product_line(value: Any) -> str:
    return _PRODUCT_LINE_CODES.get(normalize_code(value), UNKNOWN)


def map_country(value: Any) -> str:
    """
    Map a country code to its display name.

    Known codes map to full names, blank or missing to N/A; anything else is
    passed through trimmed with its original casing.
    """
    code = normalize_code(value)
    if not code:
        return UNKNOWN
    if code in _COUNTRY_CODES:
        return _COUNTRY_CODES[code]
    return strip_control_chars(str(value)).strip()


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def strip_nas_prefix(value: Any) -> Optional[str]:
    """Drop a literal leading 'NAS' from an ERP customer id."""
    text = clean_text(value)
    if text is None:
        return None
    return text[len(NAS_PREFIX):] if text.startswith(NAS_PREFIX) else text


def remove_dashes(value: Any) -> Optional[str]:
    text = clean_text(value)
    return None if text is None else text.replace("-", "")


def normalize_category_id(value: Any) -> Optional[str]:
    """Category ids use '-' as separator on both the CRM and ERP side."""
    text = clean_text(value)
    return None if text is None else text.replace("_", "-")
