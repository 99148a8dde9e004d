import ast
import asyncio
import contextlib
import logging
import os
import resource
import sys
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from sheet_qa.lib.errors import CodeGuardError, ExecutionTimeoutError
from sheet_qa.lib.schema import CSV_EXTENSIONS, dataset_extension

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DEF_TIMEOUT_S = _env_int("EXEC_TIMEOUT_S", 60)
CPU_TIME_S = _env_int("CPU_TIME_S", 60)
MAX_MEMORY_MB = _env_int("MAX_MEMORY_MB", 2048)
DEF_MAX_STDOUT_CHARS = _env_int("MAX_STDOUT_CHARS", 200000)
DEF_MAX_STDERR_CHARS = _env_int("MAX_STDERR_CHARS", 8000)
GUARD_EXIT_CODE = 1
HARNESS_PREFIX = ".sheetqa_harness_"

BEGIN_MARKER = "# --- BEGIN GENERATED CODE ---"
END_MARKER = "# --- END GENERATED CODE ---"

ALLOWED_IMPORT_ROOTS = {
    "pandas",
    "numpy",
    "math",
    "re",
    "datetime",
    "json",
    "statistics",
    "collections",
    "itertools",
    "functools",
    "decimal",
}
FORBIDDEN_CALLS = {
    "eval",
    "exec",
    "compile",
    "open",
    "input",
    "__import__",
    "globals",
    "locals",
    "vars",
    "getattr",
    "setattr",
    "delattr",
    "breakpoint",
}
SAFE_PD_TO = {"to_numeric", "to_datetime", "to_timedelta"}
FILE_IO_METHODS = {
    "to_csv",
    "to_excel",
    "to_pickle",
    "to_parquet",
    "to_feather",
    "to_hdf",
    "to_sql",
    "to_stata",
    "to_orc",
    "to_clipboard",
    "to_gbq",
    "tofile",
    "save",
    "savez",
    "savetxt",
    "load",
    "loadtxt",
    "fromfile",
}


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ResourceLimits:
    max_memory_mb: int = MAX_MEMORY_MB
    cpu_time_s: int = CPU_TIME_S


def _safe_trunc(text: str, limit: int) -> str:
    text = str(text)
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def guard_generated_code(code: str) -> None:
    try:
        tree = ast.parse(code)
    except SyntaxError:
        # The child process reports syntax errors on stderr.
        return
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name.split(".", 1)[0] not in ALLOWED_IMPORT_ROOTS:
                    raise CodeGuardError(f"forbidden_import:{alias.name}")
        if isinstance(node, ast.ImportFrom):
            module = node.module or ""
            if node.level or module.split(".", 1)[0] not in ALLOWED_IMPORT_ROOTS:
                raise CodeGuardError(f"forbidden_import:{module or '.'}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise CodeGuardError("forbidden_dunder_attr")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise CodeGuardError("forbidden_dunder_name")
        if isinstance(node, ast.Call):
            func = node.func
            if isinstance(func, ast.Name) and func.id in FORBIDDEN_CALLS:
                raise CodeGuardError(f"forbidden_call:{func.id}")
            if isinstance(func, ast.Attribute):
                if func.attr.startswith("read_"):
                    raise CodeGuardError("forbidden_pandas_io")
                if isinstance(func.value, ast.Name) and func.value.id == "pd":
                    if func.attr.startswith("to_") and func.attr not in SAFE_PD_TO:
                        raise CodeGuardError("forbidden_pandas_io")
                if func.attr in FILE_IO_METHODS:
                    raise CodeGuardError(f"forbidden_file_io:{func.attr}")


_HARNESS_TEMPLATE = '''\
import json

import numpy as np
import pandas as pd

DATASET_FILE = {dataset_file!r}
SHEET_NAME = {sheet_name!r}

{loader}
df.columns = [str(c).strip() for c in df.columns]


def normalize_text(value):
    if value is None or (isinstance(value, float) and value != value):
        return ""
    return str(value).strip()


def to_output(value):
    if isinstance(value, pd.DataFrame):
        return value.to_json(orient="records", date_format="iso", force_ascii=False)
    if isinstance(value, pd.Series):
        try:
            frame = value.to_frame(name="value" if value.name is None else str(value.name)).reset_index()
            return frame.to_json(orient="records", date_format="iso", force_ascii=False)
        except ValueError:
            return json.dumps(value.to_dict(), ensure_ascii=False, default=str)
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if value is None:
        return ""
    return str(value)


{begin}
{code}
{end}
print("")
'''


def _loader_source(dataset_file: str) -> str:
    ext = dataset_extension(dataset_file)
    if ext in CSV_EXTENSIONS:
        sep = "\\t" if ext == "tsv" else ","
        return f'df = pd.read_csv(DATASET_FILE, sep="{sep}")'
    return "df = pd.read_excel(DATASET_FILE, sheet_name=SHEET_NAME if SHEET_NAME is not None else 0)"


def build_harness(dataset_file: str, generated_code: str, sheet_name: Optional[str] = None) -> str:
    """Wrap ``generated_code`` in a script that loads ``dataset_file`` into ``df``.

    The dataset is opened by its base name, so the script must run with the
    dataset directory as its working directory.
    """
    return _HARNESS_TEMPLATE.format(
        dataset_file=os.path.basename(dataset_file),
        sheet_name=sheet_name,
        loader=_loader_source(dataset_file),
        begin=BEGIN_MARKER,
        code=generated_code,
        end=END_MARKER,
    )


def harness_path_for(dataset_path: str) -> str:
    directory = os.path.dirname(os.path.abspath(dataset_path))
    return os.path.join(directory, f"{HARNESS_PREFIX}{uuid.uuid4().hex}.py")


@contextlib.contextmanager
def materialized_harness(dataset_path: str, source: str) -> Iterator[str]:
    path = harness_path_for(dataset_path)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(source)
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(path)


def _child_env() -> Dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", ""),
        "PYTHONIOENCODING": "utf-8",
        "PYTHONDONTWRITEBYTECODE": "1",
        "OMP_NUM_THREADS": "1",
        "OPENBLAS_NUM_THREADS": "1",
        "MKL_NUM_THREADS": "1",
    }
    for key in ("PYTHONPATH", "LANG", "LC_ALL", "TZ"):
        if os.environ.get(key):
            env[key] = os.environ[key]
    return env


def _limit_setter(limits: ResourceLimits, timeout_s: float) -> Callable[[], None]:
    def _apply() -> None:
        if limits.max_memory_mb > 0:
            mem_bytes = limits.max_memory_mb * 1024 * 1024
            with contextlib.suppress(ValueError, OSError):
                resource.setrlimit(resource.RLIMIT_AS, (mem_bytes, mem_bytes))
        if limits.cpu_time_s > 0:
            cpu_limit = max(1, int(min(limits.cpu_time_s, timeout_s) if timeout_s else limits.cpu_time_s))
            with contextlib.suppress(ValueError, OSError):
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_limit, cpu_limit))

    return _apply


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    with contextlib.suppress(ProcessLookupError):
        await proc.wait()


async def execute(
    dataset_path: str,
    generated_code: str,
    timeout_s: float = DEF_TIMEOUT_S,
    sheet_name: Optional[str] = None,
    guard: bool = True,
    limits: Optional[ResourceLimits] = None,
    max_stdout_chars: int = DEF_MAX_STDOUT_CHARS,
    max_stderr_chars: int = DEF_MAX_STDERR_CHARS,
) -> ExecutionResult:
    """Run generated code against a dataset in a fresh interpreter.

    A non-zero exit code or stderr output is returned, not raised. Exceeding
    ``timeout_s`` kills the child and raises ExecutionTimeoutError; task
    cancellation kills the child and re-raises. The harness file is removed on
    every path.
    """
    started = time.monotonic()
    if guard:
        try:
            guard_generated_code(generated_code)
        except CodeGuardError as exc:
            logger.warning("event=code_guard_rejected reason=%s", exc)
            return ExecutionResult(
                exit_code=GUARD_EXIT_CODE,
                stdout="",
                stderr=f"CodeGuardError: {exc}",
                duration_ms=round((time.monotonic() - started) * 1000.0, 3),
            )

    dataset_path = os.path.abspath(dataset_path)
    workdir = os.path.dirname(dataset_path)
    limits = limits or ResourceLimits()
    source = build_harness(dataset_path, generated_code, sheet_name=sheet_name)

    with materialized_harness(dataset_path, source) as harness_path:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-B",
            harness_path,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env=_child_env(),
            preexec_fn=_limit_setter(limits, timeout_s),
        )
        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            await _terminate(proc)
            logger.warning("event=sandbox_timeout timeout_s=%s harness=%s", timeout_s, os.path.basename(harness_path))
            raise ExecutionTimeoutError(timeout_s)
        except asyncio.CancelledError:
            await _terminate(proc)
            logger.info("event=sandbox_cancelled harness=%s", os.path.basename(harness_path))
            raise

    duration_ms = round((time.monotonic() - started) * 1000.0, 3)
    exit_code = proc.returncode if proc.returncode is not None else -1
    result = ExecutionResult(
        exit_code=exit_code,
        stdout=_safe_trunc(stdout_b.decode("utf-8", errors="replace"), max_stdout_chars),
        stderr=_safe_trunc(stderr_b.decode("utf-8", errors="replace"), max_stderr_chars),
        duration_ms=duration_ms,
    )
    logger.info(
        "event=sandbox_exec exit_code=%s duration_ms=%s stdout_chars=%s stderr_chars=%s",
        result.exit_code,
        duration_ms,
        len(result.stdout),
        len(result.stderr),
    )
    return result
