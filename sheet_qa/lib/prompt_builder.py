import json
from typing import List

from sheet_qa.lib.errors import EmptyDatasetError
from sheet_qa.lib.pipeline_prompts import (
    PROMPT_COLUMNS_INTRO,
    PROMPT_CONSTRAINTS,
    PROMPT_ROLE_HEADER,
    PROMPT_SAMPLE_INTRO,
)
from sheet_qa.lib.schema import SchemaSnapshot

PROMPT_SAMPLE_ROWS = 3


def _column_lines(snapshot: SchemaSnapshot) -> List[str]:
    return [f"- {c.name} ({c.type.value})" for c in snapshot.columns]


def build_prompt(user_query: str, snapshot: SchemaSnapshot) -> str:
    """Compose the code generation prompt for one question against one sheet.

    The output depends only on ``user_query`` and ``snapshot``; equal inputs give
    byte-identical prompts.
    """
    if snapshot.total_rows == 0:
        raise EmptyDatasetError(f"sheet '{snapshot.sheet_name}' has no rows")
    sample = [dict(r) for r in snapshot.sample_rows[:PROMPT_SAMPLE_ROWS]]
    parts = [
        PROMPT_ROLE_HEADER,
        PROMPT_COLUMNS_INTRO,
        "\n".join(_column_lines(snapshot)),
        "",
        PROMPT_SAMPLE_INTRO.format(count=len(sample)),
        json.dumps(sample, ensure_ascii=False, indent=2, default=str),
        "",
        f'The user has asked: "{user_query}"',
        "",
        PROMPT_CONSTRAINTS,
    ]
    return "\n".join(parts).strip()
