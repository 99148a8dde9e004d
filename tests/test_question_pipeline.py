import asyncio
import logging
import os

import pytest

from sandbox_service.harness import HARNESS_PREFIX
from sheet_qa.codegen_client import CodeGenerationClient
from sheet_qa.lib.errors import (
    EmptyDatasetError,
    ErrorKind,
    ExecutionTimeoutError,
    GenerationFailedError,
    GenerationUnavailableError,
    UnreadableDatasetError,
    user_message_for,
)
from sheet_qa.lib.result_classifier import StructuredResult, TextAnswer
from sheet_qa.question_pipeline import STATUS_EXECUTION_ERROR, STATUS_OK, STATUS_TIMEOUT, Pipeline


class _FakeCodegen:
    def __init__(self, response: str) -> None:
        self.response = response
        self.prompts = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.response


def _pipeline(codegen, **valves) -> Pipeline:
    valves.setdefault("persist_schema", False)
    return Pipeline(valves=Pipeline.Valves(**valves), codegen=codegen)


def _write_csv(tmp_path) -> str:
    path = tmp_path / "sales.csv"
    path.write_text("Region,Sales\nEast,100\nWest,150\n", encoding="utf-8")
    return str(path)


def test_answer_structured_result_with_chart(tmp_path) -> None:
    path = _write_csv(tmp_path)
    codegen = _FakeCodegen(
        "```python\n"
        "out = df.groupby('Region', as_index=False)['Sales'].sum()\n"
        "print(to_output(out))\n"
        "```"
    )
    exchange = asyncio.run(_pipeline(codegen).answer(path, "show me a chart of sales by region"))
    assert exchange.status == STATUS_OK
    assert exchange.generated_code.startswith("out = df.groupby")
    assert "```" not in exchange.generated_code
    assert 'The user has asked: "show me a chart of sales by region"' in codegen.prompts[0]
    assert isinstance(exchange.classified_result, StructuredResult)
    assert exchange.classified_result.columns == ["Region", "Sales"]
    verdict = exchange.analyze_chart()
    assert verdict is not None and verdict.is_suitable
    assert "bar" in verdict.available_chart_types
    bar = exchange.chart_series("bar")
    assert bar is not None and bar.labels == ["East", "West"]
    assert exchange.chart_series("line") is None
    payload = exchange.to_dict(include_chart=True)
    assert payload["chartVerdict"]["isSuitable"] is True
    assert payload["executionResult"]["exit_code"] == 0


def test_answer_text_result(tmp_path) -> None:
    path = _write_csv(tmp_path)
    exchange = asyncio.run(_pipeline(_FakeCodegen("print(df['Sales'].max())")).answer(path, "max sales?"))
    assert exchange.classified_result == TextAnswer("150")
    assert exchange.analyze_chart() is None
    assert exchange.chart_series("bar") is None


def test_answer_forwards_failing_code_as_data(tmp_path) -> None:
    path = _write_csv(tmp_path)
    exchange = asyncio.run(_pipeline(_FakeCodegen("print(df['Nope'])")).answer(path, "q"))
    assert exchange.status == STATUS_EXECUTION_ERROR
    assert "KeyError" in exchange.execution_result.stderr
    assert exchange.classified_result == TextAnswer("(empty)")


def test_answer_timeout_returns_bounded_failure(tmp_path) -> None:
    path = _write_csv(tmp_path)
    codegen = _FakeCodegen("while True:\n    pass")
    pipeline = _pipeline(codegen, code_timeout_s=2, cpu_time_s=0, max_memory_mb=0)
    exchange = asyncio.run(pipeline.answer(path, "loop forever"))
    assert exchange.status == STATUS_TIMEOUT
    assert exchange.error_kind == ErrorKind.EXECUTION_TIMEOUT
    assert exchange.user_message == user_message_for(ExecutionTimeoutError(2))
    assert exchange.classified_result == TextAnswer(exchange.user_message)
    assert [n for n in os.listdir(tmp_path) if n.startswith(HARNESS_PREFIX)] == []


def test_answer_empty_dataset_aborts_before_generation(tmp_path) -> None:
    path = tmp_path / "empty.csv"
    path.write_text("Region,Sales\n", encoding="utf-8")
    codegen = _FakeCodegen("print(1)")
    with pytest.raises(EmptyDatasetError):
        asyncio.run(_pipeline(codegen).answer(str(path), "q"))
    assert codegen.prompts == []


def test_answer_unreadable_dataset(tmp_path) -> None:
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"\x00\x01garbage")
    with pytest.raises(UnreadableDatasetError):
        asyncio.run(_pipeline(_FakeCodegen("print(1)")).answer(str(path), "q"))


def test_answer_generation_unavailable_without_credentials(tmp_path) -> None:
    path = _write_csv(tmp_path)
    client = CodeGenerationClient(api_key="", model="some-model")
    with pytest.raises(GenerationUnavailableError):
        asyncio.run(_pipeline(client).answer(path, "q"))
    assert [n for n in os.listdir(tmp_path) if n.startswith(HARNESS_PREFIX)] == []


def test_answer_blank_generation_is_a_failure(tmp_path) -> None:
    path = _write_csv(tmp_path)
    with pytest.raises(GenerationFailedError):
        asyncio.run(_pipeline(_FakeCodegen("```python\n```")).answer(path, "q"))


def test_user_messages_distinguish_generation_from_execution() -> None:
    assert user_message_for(GenerationUnavailableError()) != user_message_for(GenerationFailedError())
    assert "model" in user_message_for(GenerationFailedError())


def test_module_logs_carry_exchange_id(tmp_path, caplog) -> None:
    path = _write_csv(tmp_path)
    pipeline = _pipeline(_FakeCodegen("print(df.shape[0])"))
    caplog.set_level(logging.INFO)
    exchange = asyncio.run(pipeline.answer(path, "how many rows?"))
    tag = f"exchange_id={exchange.exchange_id}"
    by_logger = {r.name: r.getMessage() for r in caplog.records if tag in r.getMessage()}
    assert "sheet_qa.question_pipeline" in by_logger
    assert "sandbox_service.harness" in by_logger
    assert any(r.exchange_id == exchange.exchange_id for r in caplog.records if r.name == "sandbox_service.harness")

    caplog.clear()
    logging.getLogger("sheet_qa.lib.schema").info("event=outside_exchange")
    assert caplog.records[-1].getMessage() == "event=outside_exchange"
