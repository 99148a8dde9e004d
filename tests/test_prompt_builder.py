import json

import pytest

from sheet_qa.lib.errors import EmptyDatasetError
from sheet_qa.lib.prompt_builder import build_prompt
from sheet_qa.lib.schema import ColumnDescriptor, SchemaSnapshot
from sheet_qa.lib.type_inference import ColumnType


def _snapshot(total_rows: int = 5) -> SchemaSnapshot:
    rows = [{"Region": f"R{i}", "Sales": str(100 + i)} for i in range(total_rows)]
    return SchemaSnapshot(
        sheet_name="Sales",
        columns=[
            ColumnDescriptor("Region", ColumnType.STRING),
            ColumnDescriptor("Sales", ColumnType.INTEGER),
        ],
        total_rows=total_rows,
        sample_rows=rows[:5],
    )


def test_build_prompt_is_deterministic() -> None:
    snapshot = _snapshot()
    assert build_prompt("total sales?", snapshot) == build_prompt("total sales?", snapshot)


def test_build_prompt_sections_in_order() -> None:
    prompt = build_prompt('Which region has "most" sales?', _snapshot())
    header = prompt.index("You are a data query assistant.")
    columns = prompt.index("- Region (string)")
    sales_col = prompt.index("- Sales (integer)")
    sample = prompt.index("Here are 3 example rows")
    question = prompt.index('The user has asked: "Which region has "most" sales?"')
    constraints = prompt.index("Assumptions and constraints:")
    assert header < columns < sales_col < sample < question < constraints


def test_build_prompt_includes_at_most_three_sample_rows() -> None:
    prompt = build_prompt("q", _snapshot())
    start = prompt.index("[")
    end = prompt.index("]", start) + 1
    rows = json.loads(prompt[start:end])
    assert [r["Region"] for r in rows] == ["R0", "R1", "R2"]


def test_build_prompt_with_fewer_rows_than_sample_size() -> None:
    prompt = build_prompt("q", _snapshot(total_rows=2))
    assert "Here are 2 example rows" in prompt


def test_build_prompt_constraints_block() -> None:
    prompt = build_prompt("q", _snapshot())
    assert "use exact names shown above after trimming" in prompt
    assert ".astype(str).str.strip()" in prompt
    assert "single print(...)" in prompt
    assert "markdown" in prompt


def test_build_prompt_rejects_empty_sheet() -> None:
    with pytest.raises(EmptyDatasetError):
        build_prompt("q", SchemaSnapshot(sheet_name="Empty"))
