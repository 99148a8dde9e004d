import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from sheet_qa.lib.errors import GenerationFailedError, GenerationUnavailableError
from sheet_qa.lib.pipeline_prompts import CODEGEN_SYSTEM

logger = logging.getLogger(__name__)


def _safe_trunc(text: Any, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[:limit] + "...(truncated)"


def _message_text(resp: Any) -> str:
    choices = getattr(resp, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return str(content or "")


class CodeGenerationClient:
    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        model: str = "",
        timeout_s: float = 45,
        max_retries: int = 1,
        max_tokens: int = 1024,
        system_prompt: str = CODEGEN_SYSTEM,
        client: Optional[Any] = None,
    ) -> None:
        self.base_url = (base_url or "").strip()
        self.api_key = (api_key or "").strip()
        self.model = (model or "").strip()
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.model) and (self._client is not None or bool(self.api_key))

    def _llm(self) -> Any:
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self.base_url or None,
                api_key=self.api_key,
                timeout=self.timeout_s,
                max_retries=self.max_retries,
            )
        return self._client

    async def generate(self, prompt: str) -> str:
        """Return the raw model text for ``prompt``; code fences are left in place."""
        if not self.configured:
            raise GenerationUnavailableError("no API key or model configured for code generation")
        try:
            resp = await self._llm().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=0,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            logger.warning("event=codegen_failed model=%s error=%s", self.model, _safe_trunc(exc, 300))
            raise GenerationFailedError(f"{type(exc).__name__}: {_safe_trunc(exc, 300)}") from exc
        text = _message_text(resp)
        if not text.strip():
            raise GenerationFailedError("model returned an empty response")
        logger.info("event=codegen_done model=%s chars=%s", self.model, len(text))
        return text
