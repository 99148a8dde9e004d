import pytest

from sandbox_service.harness import BEGIN_MARKER, END_MARKER, build_harness, guard_generated_code
from sheet_qa.lib.errors import CodeGuardError


def test_guard_allows_safe_pd_converters() -> None:
    guard_generated_code("result = pd.to_numeric(df['x'], errors='coerce')\nprint(result.sum())")
    guard_generated_code("result = pd.to_datetime(df['ts'], errors='coerce')")
    guard_generated_code("import pandas as pd\nimport numpy as np\nfrom collections import Counter")


def test_guard_allows_json_output_helpers() -> None:
    guard_generated_code("print(df.head().to_json(orient='records'))")
    guard_generated_code("print(to_output(df.groupby('a')['b'].sum()))")


def test_guard_blocks_pd_to_pickle() -> None:
    with pytest.raises(CodeGuardError, match="forbidden_pandas_io"):
        guard_generated_code("pd.to_pickle(df, '/tmp/out.pkl')")


def test_guard_blocks_file_writes_and_reads() -> None:
    with pytest.raises(CodeGuardError, match="forbidden_file_io"):
        guard_generated_code("df.to_csv('/tmp/x.csv')")
    with pytest.raises(CodeGuardError, match="forbidden_pandas_io"):
        guard_generated_code("other = pd.read_csv('/etc/passwd')")
    with pytest.raises(CodeGuardError, match="forbidden_call:open"):
        guard_generated_code("print(open('/etc/passwd').read())")


def test_guard_blocks_system_imports() -> None:
    with pytest.raises(CodeGuardError, match="forbidden_import:os"):
        guard_generated_code("import os\nos.system('id')")
    with pytest.raises(CodeGuardError, match="forbidden_import:subprocess"):
        guard_generated_code("from subprocess import run")


def test_guard_blocks_dunder_escape() -> None:
    with pytest.raises(CodeGuardError):
        guard_generated_code("print(().__class__.__bases__)")


def test_guard_leaves_syntax_errors_to_the_child() -> None:
    guard_generated_code("print(")


def test_build_harness_embeds_code_between_markers() -> None:
    code = "total = df['Sales'].sum()\nprint(total)"
    source = build_harness("/data/sales.xlsx", code, sheet_name="Q1")
    begin = source.index(BEGIN_MARKER)
    end = source.index(END_MARKER)
    assert source[begin:end].strip().endswith(code)
    assert "DATASET_FILE = 'sales.xlsx'" in source
    assert "SHEET_NAME = 'Q1'" in source
    assert "pd.read_excel" in source
    assert "df.columns = [str(c).strip() for c in df.columns]" in source
    assert "def normalize_text(value):" in source
    assert "def to_output(value):" in source
    assert source.rstrip().endswith('print("")')


def test_build_harness_csv_loader() -> None:
    source = build_harness("/data/sales.csv", "print(1)")
    assert 'pd.read_csv(DATASET_FILE, sep=",")' in source
    assert compile(source, "<harness>", "exec") is not None
