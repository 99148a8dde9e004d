import datetime as dt
import math
import re
import warnings
from enum import Enum
from typing import Any, Optional

import pandas as pd


class ColumnType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DATE = "date"


ISO_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_number(value: Any) -> Optional[float]:
    """Return the finite float for ``value`` or None. Booleans are not numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            num = float(text)
        except (TypeError, ValueError, OverflowError):
            return None
    if not math.isfinite(num):
        return None
    return num


def parse_date(value: Any) -> Optional[pd.Timestamp]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return pd.Timestamp(value)
    text = str(value).strip()
    if not text:
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            parsed = pd.to_datetime(text, errors="coerce")
        except (TypeError, ValueError, OverflowError):
            return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed


def infer_type(value: Any) -> ColumnType:
    if value is None:
        return ColumnType.STRING
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return ColumnType.DATE
    text = value if isinstance(value, str) else str(value)
    if not text.strip():
        return ColumnType.STRING
    if ISO_DATE_PREFIX_RE.match(text.strip()) and parse_date(text) is not None:
        return ColumnType.DATE
    num = parse_number(value)
    if num is None:
        return ColumnType.STRING
    if num.is_integer():
        return ColumnType.INTEGER
    return ColumnType.FLOAT
