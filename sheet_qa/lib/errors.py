from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNREADABLE_DATASET = "unreadable_dataset"
    EMPTY_DATASET = "empty_dataset"
    GENERATION_UNAVAILABLE = "generation_unavailable"
    GENERATION_FAILED = "generation_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    MALFORMED_RESULT = "malformed_result"


class SheetQAError(Exception):
    kind: ErrorKind = ErrorKind.MALFORMED_RESULT

    def __init__(self, detail: str = "", kind: Optional[ErrorKind] = None) -> None:
        if kind is not None:
            self.kind = kind
        self.detail = str(detail or "")
        super().__init__(f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value)


class UnreadableDatasetError(SheetQAError):
    kind = ErrorKind.UNREADABLE_DATASET


class EmptyDatasetError(SheetQAError):
    kind = ErrorKind.EMPTY_DATASET


class GenerationUnavailableError(SheetQAError):
    kind = ErrorKind.GENERATION_UNAVAILABLE


class GenerationFailedError(SheetQAError):
    kind = ErrorKind.GENERATION_FAILED


class ExecutionTimeoutError(SheetQAError):
    kind = ErrorKind.EXECUTION_TIMEOUT

    def __init__(self, timeout_s: float, detail: str = "") -> None:
        self.timeout_s = timeout_s
        super().__init__(detail or f"Timeout after {timeout_s}s")


class CodeGuardError(ValueError):
    """Generated code was rejected before execution."""


USER_MESSAGES = {
    ErrorKind.UNREADABLE_DATASET: "The uploaded file could not be read as a spreadsheet. It may be corrupted or in an unsupported format.",
    ErrorKind.EMPTY_DATASET: "The spreadsheet has no data rows to analyze.",
    ErrorKind.GENERATION_UNAVAILABLE: "The code generation model is not configured, so the question cannot be answered right now.",
    ErrorKind.GENERATION_FAILED: "The code generation model did not return usable code. Please try again or rephrase the question.",
    ErrorKind.EXECUTION_TIMEOUT: "The analysis took too long and was stopped. Try a narrower question.",
    ErrorKind.MALFORMED_RESULT: "The analysis output could not be interpreted.",
}


def user_message_for(error: BaseException) -> str:
    if isinstance(error, SheetQAError):
        return USER_MESSAGES.get(error.kind, str(error))
    return "Unexpected error while answering the question."
