import csv
import io
import json
import sys
import types
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import redash  # noqa: E402
import redash_cli  # noqa: E402


def _result(result_id=42):
    return redash.QueryResult.from_payload(
        {
            "id": result_id,
            "query_id": 7,
            "data_source_id": 5,
            "query_hash": "h",
            "query": "SELECT name, n FROM t",
            "data": {
                "columns": [
                    {"name": "name", "type": "string", "friendly_name": "Name"},
                    {"name": "n", "type": "integer", "friendly_name": "N"},
                ],
                "rows": [{"name": "a\tb", "n": 1}, {"name": "c", "n": 2}],
            },
            "runtime": 0.5,
            "retrieved_at": "2026-10-01T00:00:00Z",
        }
    )


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("REDASH_URL", "https://redash.example.test")
    monkeypatch.setenv("REDASH_API_KEY", "key123456789")
    monkeypatch.delenv("REDASH_TIMEOUT", raising=False)
    monkeypatch.delenv("REDASH_IGNORE_SSL_ERRORS", raising=False)


def _install_client(monkeypatch, **methods):
    captured = {"calls": []}

    class DummyClient:
        def __init__(self, config, session=None):
            captured["config"] = config

        def __getattr__(self, name):
            if name not in methods:
                raise AttributeError(name)

            def call(*args, **kwargs):
                captured["calls"].append((name, args, kwargs))
                impl = methods[name]
                return impl(*args, **kwargs) if callable(impl) else impl

            return call

    monkeypatch.setattr(redash, "RedashClient", DummyClient)
    return captured


def test_parse_parameters_inline_and_file(tmp_path):
    assert redash_cli._parse_parameters("") == {}
    assert redash_cli._parse_parameters('{"day": "2026-10-01"}') == {"day": "2026-10-01"}

    p = tmp_path / "params.json"
    p.write_text('{"limit": 5}', encoding="utf-8")
    assert redash_cli._parse_parameters(f"@{p}") == {"limit": 5}


@pytest.mark.parametrize("value", ["[1, 2]", "{not json", "@/nonexistent/params.json"])
def test_parse_parameters_invalid(value):
    with pytest.raises(ValueError):
        redash_cli._parse_parameters(value)


def test_parse_http_timeout_variants():
    assert redash_cli._parse_http_timeout("30") == (10.0, 30.0)
    assert redash_cli._parse_http_timeout(" 5 , 30 ") == (5.0, 30.0)
    for bad in ["", "0", "5,", "nan", "-1"]:
        with pytest.raises(ValueError):
            redash_cli._parse_http_timeout(bad)


def test_resolve_cli_log_level_prefers_explicit_over_verbose():
    args = types.SimpleNamespace(log_level="WARNING", verbose=2)
    assert redash_cli._resolve_cli_log_level(args) == "WARNING"
    assert redash_cli._resolve_cli_log_level(types.SimpleNamespace(log_level="", verbose=1)) == "INFO"
    assert redash_cli._resolve_cli_log_level(types.SimpleNamespace(log_level="", verbose=0)) is None


def test_rows_to_tab_lines_normalizes_control_whitespace():
    lines = redash_cli._rows_to_tab_lines(
        [{"id": "a\tb", "state": "line1\nline2", "detail": None}],
        ["id", "state", "detail"],
    )
    assert lines == ["a b\tline1 line2\t"]


def test_cli_query_run_json_passes_request_and_wait_bounds(env, monkeypatch, capsys):
    captured = _install_client(monkeypatch, execute_query=_result())

    rc = redash_cli.main(
        [
            "query",
            "run",
            "--query",
            "SELECT 1",
            "--data-source-id",
            "5",
            "--parameters",
            '{"x": 1}',
            "--poll-interval-s",
            "0.5",
            "--timeout-s",
            "120",
        ]
    )

    assert rc == 0
    name, args, kwargs = captured["calls"][0]
    assert name == "execute_query"
    assert args == ("SELECT 1", 5)
    assert kwargs == {
        "parameters": {"x": 1},
        "max_age": 0,
        "poll_interval_s": 0.5,
        "timeout_s": 120.0,
    }
    assert captured["config"].base_url == "https://redash.example.test"
    payload = json.loads(capsys.readouterr().out)
    assert payload["id"] == 42
    assert payload["data"]["rows"][1] == {"name": "c", "n": 2}


def test_cli_queries_execute_csv_uses_result_column_order(env, monkeypatch, capsys):
    captured = _install_client(monkeypatch, execute_saved_query=_result())

    rc = redash_cli.main(["queries", "execute", "7", "--format", "csv"])

    assert rc == 0
    assert captured["calls"][0][1] == (7,)
    rows = list(csv.reader(io.StringIO(capsys.readouterr().out)))
    assert rows == [["name", "n"], ["a\tb", "1"], ["c", "2"]]


def test_cli_results_get_lines_writes_file(env, monkeypatch, tmp_path):
    _install_client(monkeypatch, fetch_query_result=_result())
    out = tmp_path / "rows.tsv"

    rc = redash_cli.main(["results", "get", "42", "--format", "lines", "--out", str(out)])

    assert rc == 0
    assert out.read_text(encoding="utf-8").splitlines() == ["name\tn", "a b\t1", "c\t2"]


def test_cli_jobs_get_reports_terminal_flag(env, monkeypatch, capsys):
    job = redash.Job(id="abc", status=3, result_id="42", extra={"updated_at": 1})
    _install_client(monkeypatch, get_job=job)

    assert redash_cli.main(["jobs", "get", "abc"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "id": "abc",
        "status": 3,
        "terminal": True,
        "query_result_id": "42",
        "error": None,
        "updated_at": 1,
    }


def test_cli_job_failure_exit_code_and_message(env, monkeypatch, capsys):
    def fail(*_args, **_kwargs):
        raise redash.JobFailedError("abc", "division by zero")

    _install_client(monkeypatch, poll_job=fail)

    rc = redash_cli.main(["jobs", "wait", "abc"])

    assert rc == 3
    err = capsys.readouterr().err
    assert "job_failed" in err
    assert "division by zero" in err


def test_cli_timeout_exit_code(env, monkeypatch, capsys):
    def slow(*_args, **_kwargs):
        raise redash.QueryTimeoutError("abc", 60.2, 60.0, 2)

    _install_client(monkeypatch, execute_saved_query=slow)

    rc = redash_cli.main(["queries", "execute", "7"])

    assert rc == 4
    assert "timed out waiting for job abc" in capsys.readouterr().err


def test_cli_backend_error_is_redacted(env, monkeypatch, capsys):
    def denied(*_args, **_kwargs):
        raise redash.BackendError("GET", "/api/data_sources", 401, "bad Key key123456789")

    _install_client(monkeypatch, list_data_sources=denied)

    rc = redash_cli.main(["data-sources", "list"])

    assert rc == 1
    err = capsys.readouterr().err
    assert "status: 401" in err
    assert "key123456789" not in err


def test_cli_invalid_parameters_is_usage_error(env, monkeypatch, capsys):
    _install_client(monkeypatch, execute_saved_query=_result())

    rc = redash_cli.main(["queries", "execute", "7", "--parameters", "[1]"])

    assert rc == 2
    assert "JSON object" in capsys.readouterr().err


def test_cli_missing_config_is_usage_error(monkeypatch, capsys):
    monkeypatch.delenv("REDASH_URL", raising=False)
    monkeypatch.delenv("REDASH_API_KEY", raising=False)
    monkeypatch.setattr(redash, "load_dotenv", lambda *a, **k: False)

    rc = redash_cli.main(["data-sources", "list"])

    assert rc == 2
    assert "configuration error" in capsys.readouterr().err


def test_cli_flags_override_env(env, monkeypatch):
    captured = _install_client(monkeypatch, list_data_sources=[])

    rc = redash_cli.main(
        [
            "data-sources",
            "list",
            "--redash-url",
            "https://other.example.test/",
            "--insecure",
            "--no-retry",
            "--http-timeout",
            "3,9",
        ]
    )

    assert rc == 0
    cfg = captured["config"]
    assert cfg.base_url == "https://other.example.test"
    assert cfg.verify_tls is False
    assert cfg.retry is False
    assert cfg.http_timeout == (3.0, 9.0)


def test_cli_queries_list_lines(env, monkeypatch, capsys):
    page = {
        "count": 2,
        "page": 1,
        "page_size": 25,
        "results": [
            {"id": 1, "name": "Daily sales", "data_source_id": 5},
            {"id": 2, "name": "Signups", "data_source_id": 6},
        ],
    }
    captured = _install_client(monkeypatch, list_queries=page)

    rc = redash_cli.main(["queries", "list", "--format", "lines", "--search", "s"])

    assert rc == 0
    assert captured["calls"][0][2] == {"page": 1, "page_size": 25, "search": "s"}
    assert capsys.readouterr().out.splitlines() == ["1\tDaily sales\t5", "2\tSignups\t6"]


def test_cli_dashboards_list_lines(env, monkeypatch, capsys):
    page = {
        "count": 1,
        "page": 2,
        "page_size": 10,
        "results": [{"id": 3, "name": "Ops overview", "slug": "ops-overview"}],
    }
    captured = _install_client(monkeypatch, list_dashboards=page)

    rc = redash_cli.main(["dashboards", "list", "--page", "2", "--page-size", "10", "--format", "lines"])

    assert rc == 0
    assert captured["calls"][0][2] == {"page": 2, "page_size": 10}
    assert capsys.readouterr().out.splitlines() == ["3\tOps overview\tops-overview"]


def test_cli_dashboards_get_by_slug_writes_json(env, monkeypatch, tmp_path):
    dashboard = {"id": 3, "slug": "ops-overview", "widgets": [{"id": 9, "visualization": {"id": 11}}]}
    captured = _install_client(monkeypatch, get_dashboard=dashboard)
    out = tmp_path / "dash.json"

    rc = redash_cli.main(["dashboards", "get", "ops-overview", "--out", str(out)])

    assert rc == 0
    assert captured["calls"][0][1] == ("ops-overview",)
    assert json.loads(out.read_text(encoding="utf-8")) == dashboard


def test_cli_visualizations_get(env, monkeypatch, capsys):
    viz = {"id": 11, "type": "CHART", "name": "Daily", "query": {"id": 7}}
    captured = _install_client(monkeypatch, get_visualization=viz)

    rc = redash_cli.main(["visualizations", "get", "11"])

    assert rc == 0
    assert captured["calls"][0][1] == (11,)
    assert json.loads(capsys.readouterr().out) == viz


def test_cli_visualizations_get_not_found_exit_code(env, monkeypatch, capsys):
    def missing(*_args, **_kwargs):
        raise redash.BackendError("GET", "/api/visualizations/99", 404, "not found")

    _install_client(monkeypatch, get_visualization=missing)

    rc = redash_cli.main(["visualizations", "get", "99"])

    assert rc == 1
    assert "status: 404" in capsys.readouterr().err
