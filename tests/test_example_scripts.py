import importlib
import sys
from pathlib import Path
from unittest import mock


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))


def test_example_scripts_are_import_safe():
    # Importing an example must not build a client, touch the network or call sys.exit().
    mod = importlib.import_module("run_saved_query")
    assert hasattr(mod, "main")


def test_run_saved_query_prints_row_count(monkeypatch, capsys):
    import redash
    import run_saved_query

    monkeypatch.setenv("REDASH_URL", "https://r.example.test")
    monkeypatch.setenv("REDASH_API_KEY", "secret123456")

    result = redash.QueryResult.from_payload(
        {
            "id": 1,
            "data": {"columns": [{"name": "x"}], "rows": [{"x": 1}, {"x": 2}]},
        }
    )
    client = mock.Mock()
    client.execute_saved_query.return_value = result

    with mock.patch.object(redash, "RedashClient", return_value=client):
        assert run_saved_query.main(7, {"day": "today"}) == 0

    client.execute_saved_query.assert_called_once_with(7, parameters={"day": "today"})
    assert "query 7: 2 rows, columns=['x']" in capsys.readouterr().out


def test_run_saved_query_reports_job_failure(monkeypatch, capsys):
    import redash
    import run_saved_query

    monkeypatch.setenv("REDASH_URL", "https://r.example.test")
    monkeypatch.setenv("REDASH_API_KEY", "secret123456")

    client = mock.Mock()
    client.execute_saved_query.side_effect = redash.JobFailedError("j1", "relation does not exist")

    with mock.patch.object(redash, "RedashClient", return_value=client):
        assert run_saved_query.main(7) == 1

    assert "relation does not exist" in capsys.readouterr().err
