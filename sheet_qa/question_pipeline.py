import asyncio
import contextvars
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel, Field

from sandbox_service import harness
from sandbox_service.harness import ExecutionResult, ResourceLimits
from sheet_qa.codegen_client import CodeGenerationClient
from sheet_qa.lib.chart_analysis import ChartVerdict, analyze
from sheet_qa.lib.chart_series import ChartSeries, derive_series
from sheet_qa.lib.code_cleanup import strip_code_fences
from sheet_qa.lib.errors import (
    ErrorKind,
    ExecutionTimeoutError,
    GenerationFailedError,
    user_message_for,
)
from sheet_qa.lib.prompt_builder import build_prompt
from sheet_qa.lib.result_classifier import ClassifiedResult, StructuredResult, TextAnswer, classify
from sheet_qa.lib.schema import SchemaStore

logger = logging.getLogger(__name__)

_EXCHANGE_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("sheetqa_exchange_id", default="-")


def _install_exchange_record_factory() -> None:
    """Tag records from every logger created inside an exchange with its ``exchange_id``."""
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "_sheetqa_exchange_factory", False):
        return

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        exchange_id = (_EXCHANGE_ID_CTX.get() or "-").strip() or "-"
        record.exchange_id = exchange_id
        if exchange_id != "-" and isinstance(record.msg, str):
            record.msg = f"exchange_id={exchange_id} {record.msg}"
        return record

    factory._sheetqa_exchange_factory = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(factory)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _safe_trunc(text: Any, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


STATUS_OK = "ok"
STATUS_EXECUTION_ERROR = "execution_error"
STATUS_TIMEOUT = "timeout"


@dataclass
class AnswerExchange:
    exchange_id: str
    question: str
    dataset_path: str
    sheet_name: str
    prompt: str = ""
    generated_code: str = ""
    execution_result: Optional[ExecutionResult] = None
    classified_result: Optional[ClassifiedResult] = None
    status: str = STATUS_OK
    error_kind: Optional[ErrorKind] = None
    user_message: str = ""
    _chart_verdict: Optional[ChartVerdict] = field(default=None, repr=False)

    @property
    def is_structured(self) -> bool:
        return isinstance(self.classified_result, StructuredResult)

    def analyze_chart(self) -> Optional[ChartVerdict]:
        """Run chart analysis for a structured result; cached for the exchange."""
        if not isinstance(self.classified_result, StructuredResult):
            return None
        if self._chart_verdict is None:
            self._chart_verdict = analyze(self.classified_result, self.question)
        return self._chart_verdict

    def chart_series(self, chart_type: str) -> Optional[ChartSeries]:
        result = self.classified_result
        if not isinstance(result, StructuredResult):
            return None
        verdict = self.analyze_chart()
        if verdict is None or chart_type not in verdict.available_chart_types:
            return None
        return derive_series(result, chart_type)

    def to_dict(self, include_chart: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "exchangeId": self.exchange_id,
            "question": self.question,
            "sheetName": self.sheet_name,
            "status": self.status,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "userMessage": self.user_message,
            "prompt": self.prompt,
            "generatedCode": self.generated_code,
            "executionResult": self.execution_result.to_dict() if self.execution_result else None,
            "classifiedResult": self.classified_result.to_dict() if self.classified_result else None,
        }
        if include_chart:
            verdict = self.analyze_chart()
            payload["chartVerdict"] = verdict.to_dict() if verdict else None
        return payload


class Pipeline(object):
    class Valves(BaseModel):
        debug: bool = Field(default=_env_bool("SHEETQA_DEBUG", False))

        llm_base_url: str = Field(default=os.getenv("LLM_BASE_URL", ""))
        llm_api_key: str = Field(default=os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", "")))
        llm_model: str = Field(default=os.getenv("LLM_MODEL", "gpt-4o-mini"))
        llm_timeout_s: int = Field(default=_env_int("LLM_TIMEOUT_S", 45), ge=1)
        llm_max_retries: int = Field(default=_env_int("LLM_MAX_RETRIES", 1), ge=0)
        llm_max_tokens: int = Field(default=_env_int("LLM_MAX_TOKENS", 1024), ge=64)

        sandbox_url: str = Field(default=os.getenv("SANDBOX_URL", ""))
        sandbox_api_key: str = Field(default=os.getenv("SANDBOX_API_KEY", ""))
        code_timeout_s: int = Field(default=_env_int("SHEETQA_CODE_TIMEOUT_S", 60), ge=1)
        code_guard_enabled: bool = Field(default=_env_bool("SHEETQA_CODE_GUARD", True))
        max_memory_mb: int = Field(default=_env_int("SHEETQA_MAX_MEMORY_MB", harness.MAX_MEMORY_MB), ge=0)
        cpu_time_s: int = Field(default=_env_int("SHEETQA_CPU_TIME_S", harness.CPU_TIME_S), ge=0)
        max_stdout_chars: int = Field(default=_env_int("SHEETQA_MAX_STDOUT_CHARS", harness.DEF_MAX_STDOUT_CHARS), ge=1000)
        persist_schema: bool = Field(default=_env_bool("SHEETQA_PERSIST_SCHEMA", True))

    def __init__(
        self,
        valves: Optional["Pipeline.Valves"] = None,
        codegen: Optional[CodeGenerationClient] = None,
        schema_store: Optional[SchemaStore] = None,
    ) -> None:
        self.valves = valves or self.Valves()
        logging.basicConfig(level=logging.DEBUG if self.valves.debug else logging.INFO)
        _install_exchange_record_factory()
        self.codegen = codegen or CodeGenerationClient(
            base_url=self.valves.llm_base_url,
            api_key=self.valves.llm_api_key,
            model=self.valves.llm_model,
            timeout_s=self.valves.llm_timeout_s,
            max_retries=self.valves.llm_max_retries,
            max_tokens=self.valves.llm_max_tokens,
        )
        self.schema_store = schema_store or SchemaStore(persist=self.valves.persist_schema)
        logger.info(
            "event=pipeline_init model=%s sandbox=%s timeout_s=%s",
            self.valves.llm_model,
            "remote" if self.valves.sandbox_url else "local",
            self.valves.code_timeout_s,
        )

    def _limits(self) -> ResourceLimits:
        return ResourceLimits(max_memory_mb=self.valves.max_memory_mb, cpu_time_s=self.valves.cpu_time_s)

    def _sandbox_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.valves.sandbox_api_key:
            headers["Authorization"] = f"Bearer {self.valves.sandbox_api_key}"
        return headers

    def _execute_remote_sync(self, dataset_path: str, code: str, sheet_name: Optional[str]) -> ExecutionResult:
        url = f"{self.valves.sandbox_url.rstrip('/')}/v1/execute"
        payload = {
            "filename": os.path.basename(dataset_path),
            "code": code,
            "timeout_s": self.valves.code_timeout_s,
            "sheet_name": sheet_name,
        }
        resp = requests.post(
            url,
            json=payload,
            headers=self._sandbox_headers(),
            timeout=self.valves.code_timeout_s + 15,
        )
        resp.raise_for_status()
        data = resp.json()
        if data.get("status") == STATUS_TIMEOUT:
            raise ExecutionTimeoutError(self.valves.code_timeout_s)
        return ExecutionResult(
            exit_code=int(data.get("exit_code", -1)),
            stdout=str(data.get("stdout") or ""),
            stderr=str(data.get("stderr") or ""),
            duration_ms=float(data.get("duration_ms") or 0.0),
        )

    async def run_code(self, dataset_path: str, code: str, sheet_name: Optional[str] = None) -> ExecutionResult:
        if self.valves.sandbox_url:
            return await asyncio.to_thread(self._execute_remote_sync, dataset_path, code, sheet_name)
        return await harness.execute(
            dataset_path,
            code,
            timeout_s=self.valves.code_timeout_s,
            sheet_name=sheet_name,
            guard=self.valves.code_guard_enabled,
            limits=self._limits(),
            max_stdout_chars=self.valves.max_stdout_chars,
        )

    async def answer(self, dataset_path: str, question: str, sheet_name: Optional[str] = None) -> AnswerExchange:
        """Answer one question about one sheet of a dataset.

        Unreadable or empty datasets and code generation failures raise before
        any process is spawned. A timed-out run returns an exchange with
        ``status="timeout"``; a failing generated program returns
        ``status="execution_error"`` with its stderr.
        """
        exchange_id = uuid.uuid4().hex[:16]
        token = _EXCHANGE_ID_CTX.set(exchange_id)
        try:
            snapshot = self.schema_store.get_sheet(dataset_path, sheet_name)
            exchange = AnswerExchange(
                exchange_id=exchange_id,
                question=question,
                dataset_path=dataset_path,
                sheet_name=snapshot.sheet_name,
            )
            exchange.prompt = build_prompt(question, snapshot)
            logger.info(
                "event=prompt_built sheet=%s columns=%s question=%s",
                snapshot.sheet_name,
                len(snapshot.columns),
                _safe_trunc(question, 200),
            )

            raw = await self.codegen.generate(exchange.prompt)
            exchange.generated_code = strip_code_fences(raw)
            if not exchange.generated_code:
                raise GenerationFailedError("model response contained no code")

            try:
                exchange.execution_result = await self.run_code(
                    dataset_path, exchange.generated_code, sheet_name=exchange.sheet_name
                )
            except ExecutionTimeoutError as exc:
                exchange.status = STATUS_TIMEOUT
                exchange.error_kind = exc.kind
                exchange.user_message = user_message_for(exc)
                exchange.classified_result = TextAnswer(exchange.user_message)
                return exchange

            result = exchange.execution_result
            if result.exit_code != 0:
                exchange.status = STATUS_EXECUTION_ERROR
                logger.info(
                    "event=generated_code_failed exit_code=%s stderr=%s",
                    result.exit_code,
                    _safe_trunc(result.stderr, 300),
                )
            exchange.classified_result = classify(result)
            logger.info(
                "event=exchange_done status=%s result_kind=%s",
                exchange.status,
                "table" if exchange.is_structured else "text",
            )
            return exchange
        finally:
            _EXCHANGE_ID_CTX.reset(token)

    def delete_dataset(self, dataset_path: str) -> None:
        self.schema_store.delete_dataset(dataset_path)
