import json
import os

from fastapi.testclient import TestClient

from sandbox_service import main as sandbox_main
from sheet_qa.lib.schema import SchemaStore, schema_path_for


client = TestClient(sandbox_main.app)


def _setup(tmp_path, monkeypatch, api_key: str = "") -> str:
    monkeypatch.setattr(sandbox_main, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(sandbox_main, "SANDBOX_API_KEY", api_key)
    monkeypatch.setattr(sandbox_main, "SCHEMA_STORE", SchemaStore())
    path = tmp_path / "sales.csv"
    path.write_text("Region,Sales\nEast,100\nWest,150\n", encoding="utf-8")
    return str(path)


def test_health() -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_schema_endpoint_persists_snapshot(tmp_path, monkeypatch) -> None:
    path = _setup(tmp_path, monkeypatch)
    resp = client.get("/v1/datasets/sales.csv/schema")
    assert resp.status_code == 200
    sheets = resp.json()["sheets"]
    assert sheets[0]["name"] == "sales"
    assert sheets[0]["columns"] == [{"name": "Region", "type": "string"}, {"name": "Sales", "type": "integer"}]
    assert sheets[0]["totalRows"] == 2
    with open(schema_path_for(path), encoding="utf-8") as f:
        assert json.load(f)["sheets"][0]["name"] == "sales"


def test_schema_endpoint_rejects_unreadable_file(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch)
    (tmp_path / "broken.xlsx").write_bytes(b"not a workbook")
    resp = client.get("/v1/datasets/broken.xlsx/schema")
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("unreadable_dataset")


def test_execute_endpoint_ok_and_err(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch)
    resp = client.post("/v1/execute", json={"filename": "sales.csv", "code": "print(int(df['Sales'].sum()))"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["stdout"].strip() == "250"

    resp = client.post("/v1/execute", json={"filename": "sales.csv", "code": "print(df['Nope'])"})
    body = resp.json()
    assert body["status"] == "err"
    assert "KeyError" in body["stderr"]


def test_execute_endpoint_guard_rejection(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch)
    monkeypatch.setattr(sandbox_main, "CODE_GUARD_ENABLED", True)
    resp = client.post("/v1/execute", json={"filename": "sales.csv", "code": "import os\nprint(os.getcwd())"})
    body = resp.json()
    assert body["status"] == "err"
    assert body["stderr"].startswith("CodeGuardError: forbidden_import:os")


def test_execute_endpoint_timeout(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch)

    async def _slow(*args, **kwargs):
        raise sandbox_main.ExecutionTimeoutError(kwargs["timeout_s"])

    monkeypatch.setattr(sandbox_main.harness, "execute", _slow)
    resp = client.post("/v1/execute", json={"filename": "sales.csv", "code": "print(1)", "timeout_s": 3})
    body = resp.json()
    assert body["status"] == "timeout"
    assert body["exit_code"] == -1
    assert body["duration_ms"] == 3000.0


def test_auth_required_when_key_set(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch, api_key="secret")
    resp = client.get("/v1/datasets/sales.csv/schema")
    assert resp.status_code == 401
    resp = client.get("/v1/datasets/sales.csv/schema", headers={"Authorization": "Bearer secret"})
    assert resp.status_code == 200


def test_dataset_name_validation(tmp_path, monkeypatch) -> None:
    _setup(tmp_path, monkeypatch)
    resp = client.post("/v1/execute", json={"filename": "../sales.csv", "code": "print(1)"})
    assert resp.status_code == 400
    resp = client.get("/v1/datasets/.hidden.csv/schema")
    assert resp.status_code == 400
    resp = client.get("/v1/datasets/missing.csv/schema")
    assert resp.status_code == 404


def test_delete_dataset_removes_file_and_schema(tmp_path, monkeypatch) -> None:
    path = _setup(tmp_path, monkeypatch)
    assert client.get("/v1/datasets/sales.csv/schema").status_code == 200
    assert os.path.exists(schema_path_for(path))
    resp = client.delete("/v1/datasets/sales.csv")
    assert resp.status_code == 200
    assert resp.json()["status"] == "deleted"
    assert not os.path.exists(path)
    assert not os.path.exists(schema_path_for(path))
    assert client.get("/v1/datasets/sales.csv/schema").status_code == 404
