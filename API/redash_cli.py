#!/usr/bin/python3
import argparse
import csv
import json
import math
import os
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

_EXIT_OK = 0
_EXIT_FAILED = 1
_EXIT_USAGE = 2
_EXIT_JOB_FAILED = 3
_EXIT_TIMED_OUT = 4
_EXIT_INTERRUPTED = 130

_REQUIRED_ENV = ["REDASH_URL", "REDASH_API_KEY"]
_OPTIONAL_ENV = ["REDASH_TIMEOUT", "REDASH_IGNORE_SSL_ERRORS"]


def _json_default(obj):
    # Dataclasses from the helper (QueryResult, Job) know how to render themselves.
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    try:
        return dict(vars(obj))
    except TypeError:
        return str(obj)


def _parse_http_timeout(value: str) -> tuple[float, float]:
    """
    Parse `--http-timeout` as either:
      - "read" (seconds) -> (10, read)
      - "connect,read" (seconds) -> (connect, read)
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timeout")

    if "," in raw:
        parts = [p.strip() for p in raw.split(",", 1)]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid timeout format: {value!r}")
        connect_s = float(parts[0])
        read_s = float(parts[1])
    else:
        connect_s = 10.0
        read_s = float(raw)

    if not math.isfinite(connect_s) or not math.isfinite(read_s):
        raise ValueError("timeouts must be finite")
    if connect_s <= 0 or read_s <= 0:
        raise ValueError("timeouts must be > 0")
    return (connect_s, read_s)


def _parse_parameters(value: str) -> dict:
    """
    Parse `--parameters` as a JSON object, either inline or `@path/to/file.json`.
    """
    raw = (value or "").strip()
    if not raw:
        return {}
    if raw.startswith("@"):
        path = Path(raw[1:])
        if not path.is_file():
            raise ValueError(f"parameters file not found: {path}")
        raw = path.read_text(encoding="utf-8")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"parameters must be valid JSON: {e}") from None
    if not isinstance(parsed, dict):
        raise ValueError("parameters must be a JSON object")
    return parsed


def _positive_float(value: str) -> float:
    f = float(value)
    if not math.isfinite(f) or f <= 0:
        raise argparse.ArgumentTypeError("must be a finite number > 0")
    return f


def _non_negative_float(value: str) -> float:
    f = float(value)
    if not math.isfinite(f) or f < 0:
        raise argparse.ArgumentTypeError("must be a finite number >= 0")
    return f


def _find_dotenv_path(start: Path | None = None) -> Path | None:
    """
    Find a `.env` file by walking up from `start` (default: CWD).

    Mirrors the parent search `python-dotenv` does, so `redash doctor` can report which file
    would be picked up.
    """
    cur = (start or Path.cwd()).resolve()
    for p in [cur, *cur.parents]:
        cand = p / ".env"
        if cand.is_file():
            return cand
    return None


def _cli_version() -> str:
    try:
        return pkg_version("redash-cli")
    except PackageNotFoundError:
        try:
            import redash

            return str(getattr(redash, "_VERSION", "unknown"))
        except ImportError:
            return "unknown"


def _resolve_out_path(value: str) -> Path | None:
    if not value or value == "-":
        return None
    return Path(value)


def _resolve_cli_log_level(args) -> str | None:
    if getattr(args, "log_level", ""):
        return args.log_level
    verbose = getattr(args, "verbose", 0) or 0
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return None


def _atomic_write_text(path: Path, data: str, *, encoding: str = "utf-8") -> None:
    """
    Write to a temp file in the destination directory, then replace the final path, so an
    interrupted run never leaves a half-written output file.
    """
    tmp_fh, tmp_path = _atomic_open_text(path, encoding=encoding, newline="\n")
    try:
        with tmp_fh:
            tmp_fh.write(data)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                # Some filesystems may not support fsync; atomic replace still helps.
                pass
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _atomic_open_text(path: Path, *, encoding: str = "utf-8", newline: str | None = None):
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        newline=newline,
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    return tmp_fh, Path(tmp_fh.name)


def _write_json(path: Path | None, payload, *, pretty: bool) -> None:
    if pretty:
        data = json.dumps(payload, indent=2, default=_json_default, sort_keys=True)
    else:
        # Compact JSON is friendlier for pipes and large payloads.
        data = json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":"))
    if path is None:
        sys.stdout.write(data + "\n")
    else:
        _atomic_write_text(path, data + "\n", encoding="utf-8")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    if path is None:
        out_fh = sys.stdout
        for line in lines:
            out_fh.write(str(line) + "\n")
        return
    data = "".join(f"{line}\n" for line in lines)
    _atomic_write_text(path, data, encoding="utf-8")


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=_json_default, sort_keys=True)
    return str(value)


def _rows_to_tab_lines(rows, columns: list[str]) -> list[str]:
    lines = []
    for row in rows:
        # Tabs/newlines inside a cell would break the one-row-per-line shape.
        cells = [" ".join(_cell_text(row.get(c)).split()) for c in columns]
        lines.append("\t".join(cells))
    return lines


def _write_csv(path: Path | None, rows, *, columns: list[str] | None = None) -> None:
    # Union-of-keys header to avoid silently dropping columns, unless columns are explicit.
    fieldnames: list[str] = columns or sorted({k for r in rows for k in r.keys()})

    def write_rows(out_fh) -> None:
        writer = csv.DictWriter(out_fh, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            cooked = {}
            for k in fieldnames:
                v = row.get(k)
                if isinstance(v, (dict, list)):
                    cooked[k] = json.dumps(v, default=_json_default, sort_keys=True)
                else:
                    cooked[k] = v
            writer.writerow(cooked)

    if path is None:
        write_rows(sys.stdout)
        return

    tmp_fh, tmp_path = _atomic_open_text(path, encoding="utf-8", newline="")
    try:
        with tmp_fh:
            write_rows(tmp_fh)
            tmp_fh.flush()
            try:
                os.fsync(tmp_fh.fileno())
            except OSError:
                pass
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_query_result(path: Path | None, result, fmt: str) -> None:
    if fmt == "json":
        _write_json(path, result.to_dict(), pretty=True)
        return
    columns = result.column_names or sorted({k for r in result.rows for k in r.keys()})
    if fmt == "csv":
        _write_csv(path, list(result.rows), columns=columns)
        return
    _write_lines(path, ["\t".join(columns)] + _rows_to_tab_lines(result.rows, columns))


def _add_connection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--redash-url",
        default=None,
        help="Redash base URL (default: env REDASH_URL)",
    )
    p.add_argument(
        "--api-key",
        default=None,
        help="Redash API key (default: env REDASH_API_KEY)",
    )
    p.add_argument(
        "--http-timeout",
        type=_parse_http_timeout,
        default=None,
        help="HTTP timeouts in seconds: 'read' or 'connect,read' (default: env REDASH_TIMEOUT or 10,30)",
    )
    p.add_argument(
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification (self-signed instances)",
    )
    p.add_argument(
        "--no-retry",
        action="store_true",
        help="Disable retry of read requests on connection errors (default: enabled)",
    )
    p.add_argument(
        "--max-retry",
        type=int,
        default=None,
        help="Max attempts per read request when retry is enabled (default: 3)",
    )
    p.add_argument(
        "--backoff-max-s",
        type=float,
        default=None,
        help="Max backoff sleep seconds between retries (default: 30)",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )
    p.add_argument("--out", default="", help="Output path (default: stdout)")


def _add_wait_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--poll-interval-s",
        type=_non_negative_float,
        default=1.0,
        help="Job polling interval seconds (default: 1)",
    )
    p.add_argument(
        "--timeout-s",
        type=_positive_float,
        default=60.0,
        help="Maximum seconds to wait for a queued job (default: 60)",
    )


def _add_result_format_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--format",
        choices=["json", "csv", "lines"],
        default="json",
        help="Output format: full result as json, or rows as csv / tab-separated lines (default: json)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Small CLI for running Redash queries and reading their results.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    sub = p.add_subparsers(dest="cmd", required=True)

    doctor = sub.add_parser("doctor", help="Environment/config sanity checks (non-destructive)")
    doctor.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    doctor.add_argument(
        "--probe",
        action="store_true",
        help="Attempt a tiny probe (list data sources). Requires URL and API key.",
    )
    _add_connection_args(doctor)

    data_sources = sub.add_parser("data-sources", help="Data source operations")
    data_sources_sub = data_sources.add_subparsers(dest="data_sources_cmd", required=True)
    ds_list = data_sources_sub.add_parser("list", help="List data sources")
    ds_list.add_argument(
        "--format",
        choices=["json", "lines"],
        default="json",
        help="Output format (default: json)",
    )
    _add_connection_args(ds_list)

    queries = sub.add_parser("queries", help="Saved query operations")
    queries_sub = queries.add_subparsers(dest="queries_cmd", required=True)

    q_list = queries_sub.add_parser("list", help="List saved queries (single page)")
    q_list.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    q_list.add_argument("--page-size", type=int, default=25, help="Page size (default: 25)")
    q_list.add_argument("--search", default="", help="Search text")
    q_list.add_argument(
        "--format",
        choices=["json", "lines"],
        default="json",
        help="Output format (default: json)",
    )
    _add_connection_args(q_list)

    q_get = queries_sub.add_parser("get", help="Get a saved query definition")
    q_get.add_argument("query_id", type=int)
    _add_connection_args(q_get)

    q_execute = queries_sub.add_parser("execute", help="Execute a saved query and print its result")
    q_execute.add_argument("query_id", type=int)
    q_execute.add_argument(
        "--parameters",
        default="",
        help="Query parameters as a JSON object, or @file.json",
    )
    q_execute.add_argument(
        "--max-age",
        type=int,
        default=None,
        help="Accept cached results up to this many seconds old (default: backend default)",
    )
    _add_result_format_arg(q_execute)
    _add_wait_args(q_execute)
    _add_connection_args(q_execute)

    query = sub.add_parser("query", help="Ad-hoc query operations")
    query_sub = query.add_subparsers(dest="query_cmd", required=True)
    q_run = query_sub.add_parser("run", help="Run raw query text against a data source")
    q_run.add_argument("--query", required=True, help="Query text (or @file.sql)")
    q_run.add_argument("--data-source-id", type=int, required=True, help="Data source id")
    q_run.add_argument(
        "--parameters",
        default="",
        help="Query parameters as a JSON object, or @file.json",
    )
    q_run.add_argument(
        "--max-age",
        type=int,
        default=0,
        help="Accept cached results up to this many seconds old (default: 0, always execute)",
    )
    _add_result_format_arg(q_run)
    _add_wait_args(q_run)
    _add_connection_args(q_run)

    jobs = sub.add_parser("jobs", help="Background job operations")
    jobs_sub = jobs.add_subparsers(dest="jobs_cmd", required=True)
    jobs_get = jobs_sub.add_parser("get", help="Get a job's current status")
    jobs_get.add_argument("job_id")
    _add_connection_args(jobs_get)
    jobs_wait = jobs_sub.add_parser("wait", help="Poll a job until it finishes and print its result")
    jobs_wait.add_argument("job_id")
    _add_result_format_arg(jobs_wait)
    _add_wait_args(jobs_wait)
    _add_connection_args(jobs_wait)

    results = sub.add_parser("results", help="Query result operations")
    results_sub = results.add_subparsers(dest="results_cmd", required=True)
    results_get = results_sub.add_parser("get", help="Fetch a query result by id")
    results_get.add_argument("result_id")
    _add_result_format_arg(results_get)
    _add_connection_args(results_get)

    dashboards = sub.add_parser("dashboards", help="Dashboard operations (read-only)")
    dashboards_sub = dashboards.add_subparsers(dest="dashboards_cmd", required=True)
    d_list = dashboards_sub.add_parser("list", help="List dashboards (single page)")
    d_list.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    d_list.add_argument("--page-size", type=int, default=25, help="Page size (default: 25)")
    d_list.add_argument(
        "--format",
        choices=["json", "lines"],
        default="json",
        help="Output format (default: json)",
    )
    _add_connection_args(d_list)
    d_get = dashboards_sub.add_parser("get", help="Get a dashboard and its widgets")
    d_get.add_argument("dashboard", help="Dashboard slug or id")
    _add_connection_args(d_get)

    visualizations = sub.add_parser("visualizations", help="Visualization operations (read-only)")
    visualizations_sub = visualizations.add_subparsers(dest="visualizations_cmd", required=True)
    v_get = visualizations_sub.add_parser("get", help="Get a visualization definition")
    v_get.add_argument("visualization_id", type=int)
    _add_connection_args(v_get)

    return p


def _build_client(redash, args):
    config = redash.RedashConfig.from_env(
        base_url=args.redash_url,
        api_key=args.api_key,
        http_timeout=args.http_timeout,
        verify_tls=False if args.insecure else None,
        retry=False if args.no_retry else None,
        max_retry=args.max_retry,
        backoff_max_s=args.backoff_max_s,
    )
    return redash.RedashClient(config)


def _exit_code_for(err) -> int:
    kind = getattr(getattr(err, "kind", None), "value", "")
    if kind == "job_failed":
        return _EXIT_JOB_FAILED
    if kind == "timeout":
        return _EXIT_TIMED_OUT
    return _EXIT_FAILED


def _run_doctor(args) -> int:
    env_state = {}
    missing_required: list[str] = []
    for k in _REQUIRED_ENV + _OPTIONAL_ENV:
        v = os.getenv(k)
        if k == "REDASH_API_KEY":
            # Never echo the key in diagnostics.
            env_state[k] = {"set": bool(v)}
        else:
            env_state[k] = {"set": bool(v), "value": (v if v else "")}
    if not (args.redash_url or env_state["REDASH_URL"]["set"]):
        missing_required.append("REDASH_URL")
    if not (args.api_key or env_state["REDASH_API_KEY"]["set"]):
        missing_required.append("REDASH_API_KEY")

    dotenv_path = _find_dotenv_path()
    payload = {
        "ok": len(missing_required) == 0,
        "cwd": str(Path.cwd()),
        "dotenv": str(dotenv_path) if dotenv_path else "",
        "checks": {
            "env": {
                "missing_required": missing_required,
                "required": list(_REQUIRED_ENV),
                "optional": list(_OPTIONAL_ENV),
                "values": env_state,
            }
        },
    }

    if args.probe and not missing_required:
        import redash

        level = _resolve_cli_log_level(args)
        if level:
            try:
                redash.configure_logging(level)
            except ValueError as e:
                sys.stderr.write(f"invalid --log-level: {e}\n")
                return _EXIT_USAGE

        try:
            client = _build_client(redash, args)
            sources = client.list_data_sources()
            payload["checks"]["probe"] = {"ok": True, "data_sources": {"count": len(sources)}}
        except Exception as e:
            # The probe result is the report; any failure is recorded, not raised.
            payload["ok"] = False
            payload["checks"]["probe"] = {"ok": False, "error": str(e)}

    out_path = _resolve_out_path(args.out)
    if args.format == "json":
        _write_json(out_path, payload, pretty=True)
    else:
        lines: list[str] = ["ok: true" if payload["ok"] else "ok: false"]
        if payload.get("dotenv"):
            lines.append(f"dotenv: {payload['dotenv']}")
        if missing_required:
            lines.append("missing required config: " + ", ".join(missing_required))
        if args.probe:
            probe = payload["checks"].get("probe") or {}
            if probe.get("ok"):
                lines.append(f"probe: ok (data_sources={probe['data_sources']['count']})")
            elif probe:
                lines.append(f"probe: failed ({probe.get('error', '')})")
            else:
                lines.append("probe: skipped (missing required config)")
        _write_lines(out_path, lines)

    return _EXIT_OK if payload["ok"] else _EXIT_FAILED


def _run_command(client, args) -> int:
    out_path = _resolve_out_path(args.out)

    if args.cmd == "data-sources" and args.data_sources_cmd == "list":
        sources = client.list_data_sources()
        if args.format == "json":
            _write_json(out_path, sources, pretty=True)
        else:
            _write_lines(
                out_path,
                _rows_to_tab_lines(
                    [s for s in sources if isinstance(s, dict)], ["id", "name", "type"]
                ),
            )
        return _EXIT_OK

    if args.cmd == "queries":
        if args.queries_cmd == "list":
            page = client.list_queries(page=args.page, page_size=args.page_size, search=args.search or None)
            if args.format == "json":
                _write_json(out_path, page, pretty=True)
            else:
                _write_lines(
                    out_path,
                    _rows_to_tab_lines(page["results"], ["id", "name", "data_source_id"]),
                )
            return _EXIT_OK

        if args.queries_cmd == "get":
            _write_json(out_path, client.get_query(args.query_id), pretty=True)
            return _EXIT_OK

        if args.queries_cmd == "execute":
            parameters = _parse_parameters(args.parameters)
            result = client.execute_saved_query(
                args.query_id,
                parameters=parameters,
                max_age=args.max_age,
                poll_interval_s=args.poll_interval_s,
                timeout_s=args.timeout_s,
            )
            _write_query_result(out_path, result, args.format)
            return _EXIT_OK

    if args.cmd == "query" and args.query_cmd == "run":
        query_text = args.query
        if query_text.startswith("@"):
            query_text = Path(query_text[1:]).read_text(encoding="utf-8")
        result = client.execute_query(
            query_text,
            args.data_source_id,
            parameters=_parse_parameters(args.parameters),
            max_age=args.max_age,
            poll_interval_s=args.poll_interval_s,
            timeout_s=args.timeout_s,
        )
        _write_query_result(out_path, result, args.format)
        return _EXIT_OK

    if args.cmd == "jobs":
        if args.jobs_cmd == "get":
            job = client.get_job(args.job_id)
            payload = dict(job.extra)
            payload.update(
                {
                    "id": job.id,
                    "status": job.status,
                    "terminal": job.is_terminal,
                    "query_result_id": job.result_id,
                    "error": job.error,
                }
            )
            _write_json(out_path, payload, pretty=True)
            return _EXIT_OK

        if args.jobs_cmd == "wait":
            result = client.poll_job(
                args.job_id,
                poll_interval_s=args.poll_interval_s,
                timeout_s=args.timeout_s,
            )
            _write_query_result(out_path, result, args.format)
            return _EXIT_OK

    if args.cmd == "results" and args.results_cmd == "get":
        _write_query_result(out_path, client.fetch_query_result(args.result_id), args.format)
        return _EXIT_OK

    if args.cmd == "dashboards":
        if args.dashboards_cmd == "list":
            page = client.list_dashboards(page=args.page, page_size=args.page_size)
            if args.format == "json":
                _write_json(out_path, page, pretty=True)
            else:
                _write_lines(out_path, _rows_to_tab_lines(page["results"], ["id", "name", "slug"]))
            return _EXIT_OK

        if args.dashboards_cmd == "get":
            _write_json(out_path, client.get_dashboard(args.dashboard), pretty=True)
            return _EXIT_OK

    if args.cmd == "visualizations" and args.visualizations_cmd == "get":
        _write_json(out_path, client.get_visualization(args.visualization_id), pretty=True)
        return _EXIT_OK

    sys.stderr.write("unknown command\n")
    return _EXIT_USAGE


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "doctor":
        # Don't import the helper unless a probe is requested; `redash doctor` should work
        # even before dependencies are installed.
        return _run_doctor(args)

    import redash

    level = _resolve_cli_log_level(args)
    if level:
        try:
            redash.configure_logging(level)
        except ValueError as e:
            sys.stderr.write(f"invalid --log-level: {e}\n")
            return _EXIT_USAGE

    try:
        client = _build_client(redash, args)
    except ValueError as e:
        sys.stderr.write(f"configuration error: {e}\n")
        return _EXIT_USAGE

    try:
        return _run_command(client, args)
    except redash.RedashError as e:
        kind = getattr(getattr(e, "kind", None), "value", "error")
        sys.stderr.write(f"{args.cmd} failed ({kind}): {e}\n")
        return _exit_code_for(e)
    except (ValueError, OSError) as e:
        sys.stderr.write(f"{args.cmd} failed: {redash.redact_sensitive_text(e)}\n")
        return _EXIT_USAGE
    except KeyboardInterrupt:
        sys.stderr.write("interrupted\n")
        return _EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
