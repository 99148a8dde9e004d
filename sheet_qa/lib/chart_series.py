import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sheet_qa.lib.chart_analysis import (
    CATEGORICAL_MAX_UNIQUE,
    HISTOGRAM_MIN_UNIQUE,
    PIE_MAX_SLICES,
    PIE_MIN_SLICES,
    ColumnProfile,
    profile_columns,
)
from sheet_qa.lib.query_signals import (
    DATE_AXIS_NAME_HINTS,
    HISTOGRAM_COUNT_NAME_HINTS,
    HISTOGRAM_RANGE_NAME_HINTS,
    MONTH_YEAR_VALUE_RE,
    name_has_hint,
)
from sheet_qa.lib.result_classifier import StructuredResult
from sheet_qa.lib.type_inference import parse_date, parse_number

MAX_HISTOGRAM_BINS = 10


@dataclass
class ChartSeries:
    chart_type: str
    title: str
    labels: List[str] = field(default_factory=list)
    datasets: List[Dict[str, Any]] = field(default_factory=list)
    x_column: Optional[str] = None
    bins: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chartType": self.chart_type,
            "title": self.title,
            "labels": list(self.labels),
            "datasets": [dict(d) for d in self.datasets],
            "xColumn": self.x_column,
            "bins": [dict(b) for b in self.bins],
        }


@dataclass
class HistogramBin:
    start: float
    end: float
    count: int

    @property
    def label(self) -> str:
        return f"{self.start:.1f}-{self.end:.1f}"


def _cell(row: Any, column: str) -> Any:
    return row.get(column) if isinstance(row, dict) else None


def _number_or_zero(value: Any) -> float:
    num = parse_number(value)
    return num if num is not None else 0.0


def _label(value: Any, default: str = "") -> str:
    if value is None or value == "":
        return default
    return str(value)


def _pick_label_column(profiles: List[ColumnProfile], max_unique: int, min_unique: int = 1) -> Optional[ColumnProfile]:
    candidates = [p for p in profiles if p.total_count > 0 and min_unique <= p.unique_count <= max_unique]
    for p in candidates:
        if not p.is_numeric:
            return p
    return candidates[0] if candidates else None


def _pick_numeric_column(profiles: List[ColumnProfile], exclude: Optional[str] = None) -> Optional[ColumnProfile]:
    for p in profiles:
        if p.is_numeric and p.name != exclude:
            return p
    return None


def bar_series(result: StructuredResult) -> Optional[ChartSeries]:
    profiles = profile_columns(result)
    label_col = _pick_label_column(profiles, CATEGORICAL_MAX_UNIQUE)
    value_col = _pick_numeric_column(profiles, exclude=label_col.name if label_col else None)
    if label_col is None or value_col is None:
        return None
    grouped: Dict[str, float] = {}
    for row in result.rows:
        key = _label(_cell(row, label_col.name), "Unknown")
        grouped[key] = grouped.get(key, 0.0) + _number_or_zero(_cell(row, value_col.name))
    return ChartSeries(
        chart_type="bar",
        title=f"{value_col.name} by {label_col.name}",
        labels=list(grouped.keys()),
        datasets=[{"label": f"{value_col.name} by {label_col.name}", "data": list(grouped.values())}],
        x_column=label_col.name,
    )


def pie_series(result: StructuredResult) -> Optional[ChartSeries]:
    profiles = profile_columns(result)
    label_col = _pick_label_column(profiles, PIE_MAX_SLICES, min_unique=PIE_MIN_SLICES)
    value_col = _pick_numeric_column(profiles, exclude=label_col.name if label_col else None)
    if label_col is None or value_col is None:
        return None
    return ChartSeries(
        chart_type="pie",
        title=f"{value_col.name} by {label_col.name}",
        labels=[_label(_cell(row, label_col.name), "Unknown") for row in result.rows],
        datasets=[{"label": value_col.name, "data": [_number_or_zero(_cell(row, value_col.name)) for row in result.rows]}],
        x_column=label_col.name,
    )


def _axis_is_date_like(result: StructuredResult, column: ColumnProfile) -> bool:
    if name_has_hint(column.name, DATE_AXIS_NAME_HINTS) or column.is_date_like:
        return True
    return any(MONTH_YEAR_VALUE_RE.search(str(_cell(row, column.name) or "")) for row in result.rows)


def line_series(result: StructuredResult) -> Optional[ChartSeries]:
    profiles = profile_columns(result)
    varied = [p for p in profiles if p.total_count > 0 and p.unique_count > 1]
    x_col = next((p for p in varied if not p.is_numeric), varied[0] if varied else None)
    if x_col is None:
        return None
    value_cols = [p for p in profiles if p.is_numeric and p.name != x_col.name]
    if not value_cols:
        return None
    rows = list(result.rows)
    if _axis_is_date_like(result, x_col):
        labels = [_label(_cell(row, x_col.name)) for row in rows]
        parsed = [parse_date(text) for text in labels]
        order = sorted(range(len(rows)), key=lambda i: labels[i])
        if all(p is not None for p in parsed):
            try:
                order = sorted(range(len(rows)), key=lambda i: parsed[i])
            except TypeError:
                # tz-aware and naive timestamps do not compare
                pass
        rows = [rows[i] for i in order]
    return ChartSeries(
        chart_type="line",
        title=f"{', '.join(p.name for p in value_cols)} by {x_col.name}",
        labels=[_label(_cell(row, x_col.name)) for row in rows],
        datasets=[
            {"label": p.name, "data": [_number_or_zero(_cell(row, p.name)) for row in rows]}
            for p in value_cols
        ],
        x_column=x_col.name,
    )


def compute_histogram_bins(values: List[float]) -> List[HistogramBin]:
    if not values:
        return []
    lo = min(values)
    hi = max(values)
    bin_count = min(MAX_HISTOGRAM_BINS, math.ceil(math.sqrt(len(values))))
    bin_size = (hi - lo) / bin_count
    bins: List[HistogramBin] = []
    for i in range(bin_count):
        start = lo + i * bin_size
        end = lo + (i + 1) * bin_size
        if i == bin_count - 1:
            # Last bin is closed so the maximum is counted.
            count = sum(1 for v in values if start <= v <= hi)
            end = hi
        else:
            count = sum(1 for v in values if start <= v < end)
        bins.append(HistogramBin(start=start, end=end, count=count))
    return bins


def histogram_series(result: StructuredResult) -> Optional[ChartSeries]:
    range_col = next((c for c in result.columns if name_has_hint(c, HISTOGRAM_RANGE_NAME_HINTS)), None)
    count_col = next((c for c in result.columns if name_has_hint(c, HISTOGRAM_COUNT_NAME_HINTS)), None)
    if range_col and count_col:
        return ChartSeries(
            chart_type="histogram",
            title="Distribution",
            labels=[_label(_cell(row, range_col)) for row in result.rows],
            datasets=[{"label": "Frequency", "data": [_number_or_zero(_cell(row, count_col)) for row in result.rows]}],
            x_column=range_col,
        )
    profiles = profile_columns(result)
    value_col = next(
        (p for p in profiles if p.is_numeric and p.numeric_unique_count > HISTOGRAM_MIN_UNIQUE),
        _pick_numeric_column(profiles),
    )
    if value_col is None:
        return None
    values = [parse_number(_cell(row, value_col.name)) for row in result.rows]
    bins = compute_histogram_bins([v for v in values if v is not None])
    return ChartSeries(
        chart_type="histogram",
        title=f"Distribution of {value_col.name}",
        labels=[b.label for b in bins],
        datasets=[{"label": "Frequency", "data": [b.count for b in bins]}],
        x_column=value_col.name,
        bins=[{"start": b.start, "end": b.end, "count": b.count} for b in bins],
    )


SERIES_BUILDERS = {
    "bar": bar_series,
    "pie": pie_series,
    "line": line_series,
    "histogram": histogram_series,
}


def derive_series(result: StructuredResult, chart_type: str) -> Optional[ChartSeries]:
    builder = SERIES_BUILDERS.get(chart_type)
    if builder is None or not result.rows:
        return None
    return builder(result)
