"""Decide whether a structured result can be charted, and with which chart types.

The decision is an ordered table of named rules. Each rule reads the column
profiles and the signals produced by the rules before it and yields one
signal, so every intermediate boolean is visible in the verdict.
"""
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

import pandas as pd

from sheet_qa.lib.query_signals import (
    DATE_SHAPE_VALUE_RE,
    SEQUENTIAL_NAME_HINTS,
    STATUS_NAME_HINTS,
    SUMMARY_CATEGORY_NAME_HINTS,
    SUMMARY_METRIC_NAME_HINTS,
    has_chart_intent,
    name_has_hint,
)
from sheet_qa.lib.result_classifier import StructuredResult
from sheet_qa.lib.type_inference import parse_date, parse_number

logger = logging.getLogger(__name__)

CATEGORICAL_MAX_UNIQUE = 20
HIGH_UNIQUE_ROW_RATIO = 0.8
RAW_COLUMN_RATIO = 0.6
SMALL_SAMPLE_ROWS = 5
MAX_CHART_COLUMNS = 8
AGGREGATE_UNIQUE_RATIO = 0.9
PIE_MIN_SLICES = 2
PIE_MAX_SLICES = 10
HISTOGRAM_MIN_UNIQUE = 5

CHART_TYPES = ("bar", "pie", "histogram", "line")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def column_values(result: StructuredResult, column: str) -> List[Any]:
    out: List[Any] = []
    for row in result.rows:
        value = row.get(column) if isinstance(row, dict) else None
        if not is_blank(value):
            out.append(value)
    return out


def is_date_value(value: Any) -> bool:
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return True
    if isinstance(value, (int, float, bool)) or parse_number(value) is not None:
        return False
    # Only values shaped like a calendar date; ordinals such as "1st" parse leniently.
    if not DATE_SHAPE_VALUE_RE.search(str(value)):
        return False
    return parse_date(value) is not None


@dataclass(frozen=True)
class ColumnProfile:
    name: str
    is_numeric: bool
    is_categorical: bool
    is_date_like: bool
    unique_count: int
    total_count: int
    numeric_unique_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "isNumeric": self.is_numeric,
            "isCategorical": self.is_categorical,
            "isDate": self.is_date_like,
            "uniqueCount": self.unique_count,
            "totalCount": self.total_count,
        }


def profile_column(result: StructuredResult, column: str) -> ColumnProfile:
    values = column_values(result, column)
    numbers = [parse_number(v) if not isinstance(v, bool) else None for v in values]
    is_numeric = bool(values) and all(n is not None for n in numbers)
    unique = {str(v) for v in values}
    return ColumnProfile(
        name=column,
        is_numeric=is_numeric,
        is_categorical=bool(values) and len(unique) <= CATEGORICAL_MAX_UNIQUE,
        is_date_like=any(is_date_value(v) for v in values),
        unique_count=len(unique),
        total_count=len(values),
        numeric_unique_count=len({n for n in numbers if n is not None}),
    )


def profile_columns(result: StructuredResult) -> List[ColumnProfile]:
    return [profile_column(result, c) for c in result.columns]


@dataclass(frozen=True)
class ChartContext:
    total_rows: int
    total_columns: int
    columns: Sequence[ColumnProfile]
    numeric: Sequence[ColumnProfile]
    categorical: Sequence[ColumnProfile]
    user_query: str


Rule = Tuple[str, Callable[[ChartContext, Dict[str, Any]], Any]]


def _high_unique_cols(ctx: ChartContext, s: Dict[str, Any]) -> int:
    return sum(1 for c in ctx.columns if c.unique_count > ctx.total_rows * HIGH_UNIQUE_ROW_RATIO)


def _is_likely_raw(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return s["high_unique_cols"] > ctx.total_columns * RAW_COLUMN_RATIO


def _is_small_sample(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return ctx.total_rows < SMALL_SAMPLE_ROWS


def _is_too_many_columns(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return ctx.total_columns > MAX_CHART_COLUMNS


def _has_perfect_aggregation(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return (
        ctx.total_columns == 2
        and len(ctx.categorical) == 1
        and len(ctx.numeric) == 1
        and ctx.numeric[0].unique_count <= ctx.total_rows * AGGREGATE_UNIQUE_RATIO
    )


def _has_summary_pattern(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return any(name_has_hint(c.name, SUMMARY_CATEGORY_NAME_HINTS) for c in ctx.categorical) and any(
        name_has_hint(c.name, SUMMARY_METRIC_NAME_HINTS) for c in ctx.numeric
    )


def _user_wants_visualization(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return has_chart_intent(ctx.user_query)


def _has_chartable_columns(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    return len(ctx.numeric) > 0 or len(ctx.categorical) > 0


def _is_suitable(ctx: ChartContext, s: Dict[str, Any]) -> bool:
    aggregate_shape = not s["is_likely_raw"] and not s["is_small_sample"] and not s["is_too_many_columns"]
    requested = s["user_wants_visualization"] and not s["is_too_many_columns"] and s["has_chartable_columns"]
    return (
        s["has_perfect_aggregation"] or s["has_summary_pattern"] or aggregate_shape or requested
    ) and s["has_chartable_columns"]


SUITABILITY_RULES: Tuple[Rule, ...] = (
    ("high_unique_cols", _high_unique_cols),
    ("is_likely_raw", _is_likely_raw),
    ("is_small_sample", _is_small_sample),
    ("is_too_many_columns", _is_too_many_columns),
    ("has_perfect_aggregation", _has_perfect_aggregation),
    ("has_summary_pattern", _has_summary_pattern),
    ("user_wants_visualization", _user_wants_visualization),
    ("has_chartable_columns", _has_chartable_columns),
    ("is_suitable", _is_suitable),
)


def _bar_available(ctx: ChartContext) -> bool:
    return len(ctx.categorical) > 0 and len(ctx.numeric) > 0


def _pie_available(ctx: ChartContext) -> bool:
    return len(ctx.numeric) > 0 and any(
        PIE_MIN_SLICES <= c.unique_count <= PIE_MAX_SLICES for c in ctx.categorical
    )


def _histogram_available(ctx: ChartContext) -> bool:
    return any(c.numeric_unique_count > HISTOGRAM_MIN_UNIQUE for c in ctx.numeric)


def _line_available(ctx: ChartContext) -> bool:
    has_date_column = any(c.is_date_like for c in ctx.columns)
    has_sequential_name = any(name_has_hint(c.name, SEQUENTIAL_NAME_HINTS) for c in ctx.columns)
    is_status_data = len(ctx.numeric) == 1 and any(
        name_has_hint(c.name, STATUS_NAME_HINTS) for c in ctx.categorical
    )
    return (has_date_column or has_sequential_name or len(ctx.numeric) >= 2) and not is_status_data


CHART_RULES: Tuple[Tuple[str, Callable[[ChartContext], bool]], ...] = (
    ("bar", _bar_available),
    ("pie", _pie_available),
    ("histogram", _histogram_available),
    ("line", _line_available),
)


@dataclass
class ChartVerdict:
    is_suitable: bool
    available_chart_types: List[str] = field(default_factory=list)
    columns: List[ColumnProfile] = field(default_factory=list)
    signals: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isSuitable": self.is_suitable,
            "availableChartTypes": list(self.available_chart_types),
            "columns": [c.to_dict() for c in self.columns],
            "signals": dict(self.signals),
        }


def build_context(result: StructuredResult, user_query: str = "") -> ChartContext:
    profiles = profile_columns(result)
    return ChartContext(
        total_rows=len(result.rows),
        total_columns=len(result.columns),
        columns=profiles,
        numeric=[p for p in profiles if p.is_numeric],
        categorical=[p for p in profiles if p.is_categorical],
        user_query=user_query or "",
    )


def evaluate_signals(ctx: ChartContext) -> Dict[str, Any]:
    signals: Dict[str, Any] = {}
    for name, rule in SUITABILITY_RULES:
        signals[name] = rule(ctx, signals)
    signals["numeric_columns"] = len(ctx.numeric)
    signals["categorical_columns"] = len(ctx.categorical)
    return signals


def analyze(result: StructuredResult, user_query: str = "") -> ChartVerdict:
    if not result.rows or not result.columns:
        return ChartVerdict(is_suitable=False)
    ctx = build_context(result, user_query)
    signals = evaluate_signals(ctx)
    available: List[str] = []
    if signals["is_suitable"]:
        available = [name for name, rule in CHART_RULES if rule(ctx)]
    logger.info(
        "event=chart_verdict rows=%s cols=%s suitable=%s charts=%s",
        ctx.total_rows,
        ctx.total_columns,
        signals["is_suitable"],
        ",".join(available) or "-",
    )
    return ChartVerdict(
        is_suitable=bool(signals["is_suitable"]),
        available_chart_types=available,
        columns=list(ctx.columns),
        signals=signals,
    )
