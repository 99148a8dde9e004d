import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from sandbox_service import harness
from sandbox_service.harness import ResourceLimits
from sheet_qa.lib.errors import ExecutionTimeoutError, UnreadableDatasetError
from sheet_qa.lib.schema import SchemaStore

logger = logging.getLogger(__name__)

app = FastAPI()

SANDBOX_API_KEY = os.getenv("SANDBOX_API_KEY", "")
DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))
EXEC_TIMEOUT_S = harness.DEF_TIMEOUT_S
MAX_TIMEOUT_S = int(os.getenv("MAX_EXEC_TIMEOUT_S", "300"))
CODE_GUARD_ENABLED = os.getenv("CODE_GUARD", "true").lower() in ("1", "true", "yes", "on")

SCHEMA_STORE = SchemaStore()


class ExecuteRequest(BaseModel):
    filename: str
    code: str
    timeout_s: Optional[int] = Field(default=None, ge=1)
    sheet_name: Optional[str] = None


def _require_auth(request: Request) -> None:
    if not SANDBOX_API_KEY:
        return
    auth = request.headers.get("authorization", "")
    if auth != f"Bearer {SANDBOX_API_KEY}":
        raise HTTPException(status_code=401, detail="unauthorized")


def _dataset_path(filename: str) -> str:
    base = os.path.abspath(DATA_DIR)
    name = str(filename or "").strip()
    if not name or name != os.path.basename(name) or name.startswith("."):
        raise HTTPException(status_code=400, detail="invalid_filename")
    path = os.path.abspath(os.path.join(base, name))
    if os.path.dirname(path) != base:
        raise HTTPException(status_code=400, detail="invalid_filename")
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="dataset_not_found")
    return path


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/v1/datasets/{filename}/schema")
def get_schema(filename: str, request: Request) -> Dict[str, Any]:
    _require_auth(request)
    path = _dataset_path(filename)
    try:
        snapshots = SCHEMA_STORE.get(path)
    except UnreadableDatasetError as exc:
        raise HTTPException(status_code=400, detail=f"unreadable_dataset:{exc.detail}")
    sheets: List[Dict[str, Any]] = [s.to_dict() for s in snapshots]
    return {"filename": filename, "sheets": sheets}


@app.delete("/v1/datasets/{filename}")
def delete_dataset(filename: str, request: Request) -> dict:
    _require_auth(request)
    path = _dataset_path(filename)
    SCHEMA_STORE.delete_dataset(path)
    return {"status": "deleted", "filename": filename}


@app.post("/v1/execute")
async def execute(req: ExecuteRequest, request: Request) -> dict:
    _require_auth(request)
    path = _dataset_path(req.filename)
    timeout_s = min(req.timeout_s or EXEC_TIMEOUT_S, MAX_TIMEOUT_S)
    try:
        result = await harness.execute(
            path,
            req.code,
            timeout_s=timeout_s,
            sheet_name=req.sheet_name,
            guard=CODE_GUARD_ENABLED,
            limits=ResourceLimits(),
        )
    except ExecutionTimeoutError as exc:
        return {
            "status": "timeout",
            "exit_code": -1,
            "stdout": "",
            "stderr": str(exc.detail),
            "duration_ms": float(timeout_s) * 1000.0,
        }
    payload = result.to_dict()
    payload["status"] = "ok" if result.ok else "err"
    return payload
