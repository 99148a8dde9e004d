import re
from typing import Iterable


CHART_INTENT_RE = re.compile(
    r"chart|graph|distribution|visuali[sz]e|plot"
    r"|show.*chart|create.*chart|display.*graph",
    re.I,
)

SUMMARY_CATEGORY_NAME_HINTS = ("bucket", "category", "region", "type", "group")
SUMMARY_METRIC_NAME_HINTS = ("count", "total", "sum", "average")
SEQUENTIAL_NAME_HINTS = ("time", "date", "month", "year", "day", "quarter", "week")
STATUS_NAME_HINTS = ("status", "category", "type", "bucket")
DATE_AXIS_NAME_HINTS = ("month", "date")
HISTOGRAM_RANGE_NAME_HINTS = ("range", "bin", "interval")
HISTOGRAM_COUNT_NAME_HINTS = ("count", "frequency")

MONTH_YEAR_VALUE_RE = re.compile(r"[a-z]{3}\s+\d{4}", re.I)
DATE_SHAPE_VALUE_RE = re.compile(
    r"^\s*(?:\d{4}[-/.]\d{1,2}(?:[-/.]\d{1,2})?|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4})(?:[ T]\d{1,2}:\d{2}|\s*$)"
    r"|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{1,4}\b"
    r"|\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\b",
    re.I,
)


def has_chart_intent(text: str) -> bool:
    return bool(CHART_INTENT_RE.search(text or ""))


def name_has_hint(name: str, hints: Iterable[str]) -> bool:
    lowered = str(name or "").lower()
    return any(h in lowered for h in hints)
