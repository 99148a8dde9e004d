import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)

EMPTY_ANSWER = "(empty)"


@dataclass(frozen=True)
class TextAnswer:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "text", "text": self.text}


@dataclass(frozen=True)
class StructuredResult:
    rows: List[Any] = field(default_factory=list)
    # Taken from the first record only; later rows with other keys are kept as-is.
    columns: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "table", "columns": list(self.columns), "rows": list(self.rows)}


ClassifiedResult = Union[TextAnswer, StructuredResult]


def classify_stdout(stdout: str) -> ClassifiedResult:
    text = str(stdout or "").strip()
    if not text:
        return TextAnswer(EMPTY_ANSWER)
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        logger.debug("event=result_malformed reason=%s", type(exc).__name__)
        return TextAnswer(text)
    if not isinstance(parsed, list):
        return TextAnswer(text)
    columns: List[str] = []
    if parsed and isinstance(parsed[0], dict):
        columns = [str(k) for k in parsed[0].keys()]
    return StructuredResult(rows=parsed, columns=columns)


def classify(execution_result: Any) -> ClassifiedResult:
    """Classify a sandbox run; anything that is not a JSON array is a text answer."""
    return classify_stdout(getattr(execution_result, "stdout", "") or "")
