#!/usr/bin/python3
"""Helper library for the Redash query API.

The interesting part is query execution: a POST either answers with the
result directly or hands back a background job, which is polled until it
succeeds, fails, or the caller's timeout runs out. Everything else is a single
request/response round trip through `RedashClient._request`.
"""
import enum
import logging
import os
import random
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Any

import requests
from dotenv import load_dotenv

_VERSION = 0.3

_DEFAULT_HTTP_TIMEOUT = (10.0, 30.0)
_DEFAULT_MAX_RETRY = 3
_DEFAULT_BACKOFF_MAX_S = 30.0
_DEFAULT_POLL_INTERVAL_S = 1.0
_DEFAULT_TIMEOUT_S = 60.0

_REDACTED = "[REDACTED]"
_REDACT_PATTERNS = (
    # Authorization header values: "Key abc1...", "Bearer abc1...". Tokens contain a digit,
    # which keeps ordinary prose like "duplicate key value" intact.
    (
        re.compile(r"(?i)\b(key|bearer)\s+(?=[A-Za-z._~+/=-]*\d)[A-Za-z0-9._~+/=-]{8,}"),
        r"\1 " + _REDACTED,
    ),
    # JSON / form style secrets: "api_key":"x", api_key=x
    (
        re.compile(r'(?i)("?(?:api_key|apikey|access_token|password)"?\s*[:=]\s*"?)([^"&\s,}]+)'),
        r"\1" + _REDACTED,
    ),
)


def redact_sensitive_text(text) -> str:
    """Mask API keys and similar secrets before text reaches logs or stderr."""
    cooked = str(text or "")
    for pattern, repl in _REDACT_PATTERNS:
        cooked = pattern.sub(repl, cooked)
    return cooked


def configure_logging(level="INFO") -> None:
    if isinstance(level, str):
        level = getattr(logging, level.strip().upper(), None)
        if not isinstance(level, int):
            raise ValueError("invalid log level")
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)


class ErrorKind(enum.Enum):
    TRANSPORT = "transport"
    BACKEND = "backend"
    JOB_FAILED = "job_failed"
    PROTOCOL = "protocol_violation"
    TIMEOUT = "timeout"


class RedashError(Exception):
    kind: ErrorKind = ErrorKind.PROTOCOL


class ApiRequestError(RedashError):
    """A request that did not produce a usable 2xx response.

    Messages echo request and response text, so they are redacted before they can reach
    logs or stderr.
    """

    def __init__(self, message: str):
        super().__init__(redact_sensitive_text(message))


class TransportError(ApiRequestError):
    kind = ErrorKind.TRANSPORT

    def __init__(self, method: str, path: str, cause: Exception):
        self.method = method.upper()
        self.path = path
        self.cause = cause
        super().__init__(f"no response for {self.method} {path}: {cause}")


class BackendError(ApiRequestError):
    kind = ErrorKind.BACKEND

    def __init__(self, method: str, path: str, status_code: int, body: str):
        self.method = method.upper()
        self.path = path
        self.status_code = status_code
        self.body = body
        super().__init__(f"{self.method} {path} failed -- status: {status_code} -- body: {body[:500]}")


class JobFailedError(RedashError):
    kind = ErrorKind.JOB_FAILED

    def __init__(self, job_id: str, error_message: str):
        self.job_id = job_id
        self.error_message = error_message
        super().__init__(f"query execution failed (job {job_id}): {error_message}")


class ProtocolViolationError(RedashError):
    kind = ErrorKind.PROTOCOL


class QueryTimeoutError(RedashError, TimeoutError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, job_id: str, elapsed_s: float, timeout_s: float, last_status=None):
        self.job_id = job_id
        self.elapsed_s = elapsed_s
        self.timeout_s = timeout_s
        self.last_status = last_status
        super().__init__(
            f"timed out waiting for job {job_id} after {elapsed_s:.1f}s "
            f"(timeout={timeout_s}s, last status={last_status if last_status is not None else 'unknown'})"
        )


class JobStatus(enum.IntEnum):
    PENDING = 1
    STARTED = 2
    SUCCESS = 3
    FAILURE = 4
    CANCELLED = 5


_JOB_TERMINAL_STATUSES = {JobStatus.SUCCESS, JobStatus.FAILURE}


@dataclass
class Job:
    id: str
    status: int
    result_id: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        # Codes other than SUCCESS/FAILURE (including ones we don't know) mean "keep polling".
        return self.status in _JOB_TERMINAL_STATUSES

    @classmethod
    def from_payload(cls, payload) -> "Job":
        if isinstance(payload, dict) and isinstance(payload.get("job"), dict):
            payload = payload["job"]
        if not isinstance(payload, dict):
            raise ProtocolViolationError(f"job response is not an object: {payload!r}")
        status = payload.get("status")
        if isinstance(status, bool) or not isinstance(status, int):
            raise ProtocolViolationError(f"job response has no integer status: {payload!r}")
        result_id = payload.get("query_result_id")
        extra = {
            k: v
            for k, v in payload.items()
            if k not in ("id", "status", "query_result_id", "error")
        }
        return cls(
            id=str(payload.get("id", "")),
            status=status,
            result_id=str(result_id) if result_id not in (None, "") else None,
            error=payload.get("error"),
            extra=extra,
        )


@dataclass(frozen=True)
class Column:
    name: str
    type: str | None = None
    friendly_name: str | None = None


@dataclass(frozen=True)
class QueryResult:
    id: Any
    query_id: Any
    data_source_id: Any
    query_hash: str | None
    query_text: str | None
    columns: tuple[Column, ...]
    rows: tuple[dict, ...]
    runtime_s: float | None = None
    retrieved_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @classmethod
    def from_payload(cls, payload) -> "QueryResult":
        if isinstance(payload, dict) and isinstance(payload.get("query_result"), dict):
            payload = payload["query_result"]
        if not isinstance(payload, dict):
            raise ProtocolViolationError(f"query result is not an object: {payload!r}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ProtocolViolationError(
                f"query result {payload.get('id')!r} has no data section"
            )
        columns = []
        for col in data.get("columns") or []:
            if not isinstance(col, dict) or "name" not in col:
                raise ProtocolViolationError(f"malformed column in query result: {col!r}")
            columns.append(
                Column(name=str(col["name"]), type=col.get("type"), friendly_name=col.get("friendly_name"))
            )
        rows = data.get("rows") or []
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ProtocolViolationError("query result rows must be a list of objects")
        known = {"id", "query_id", "data_source_id", "query_hash", "query", "data", "runtime", "retrieved_at"}
        return cls(
            id=payload.get("id"),
            query_id=payload.get("query_id"),
            data_source_id=payload.get("data_source_id"),
            query_hash=payload.get("query_hash"),
            query_text=payload.get("query"),
            columns=tuple(columns),
            rows=tuple(dict(r) for r in rows),
            runtime_s=payload.get("runtime"),
            retrieved_at=payload.get("retrieved_at"),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def to_dict(self) -> dict:
        out = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "query_id": self.query_id,
                "data_source_id": self.data_source_id,
                "query_hash": self.query_hash,
                "query": self.query_text,
                "data": {
                    "columns": [
                        {"name": c.name, "type": c.type, "friendly_name": c.friendly_name}
                        for c in self.columns
                    ],
                    "rows": [dict(r) for r in self.rows],
                },
                "runtime": self.runtime_s,
                "retrieved_at": self.retrieved_at,
            }
        )
        return out


@dataclass
class ExecutionRequest:
    """Either raw query text against a data source, or a saved query by id."""

    query_text: str | None = None
    data_source_id: int | None = None
    saved_query_id: int | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    max_age: int | None = None

    def __post_init__(self):
        if (self.query_text is None) == (self.saved_query_id is None):
            raise ValueError("exactly one of query_text or saved_query_id is required")
        if self.query_text is not None and self.data_source_id is None:
            raise ValueError("data_source_id is required for raw query text")
        if self.parameters is None:
            self.parameters = {}
        if not isinstance(self.parameters, dict):
            raise ValueError("parameters must be a mapping")
        if self.max_age is not None and self.max_age < 0:
            raise ValueError("max_age must be >= 0")

    @property
    def path(self) -> str:
        if self.saved_query_id is not None:
            return f"/api/queries/{self.saved_query_id}/results"
        return "/api/query_results"

    def to_payload(self) -> dict:
        if self.saved_query_id is not None:
            body = {"parameters": dict(self.parameters)}
            if self.max_age is not None:
                body["max_age"] = self.max_age
            return body
        return {
            "query": self.query_text,
            "data_source_id": self.data_source_id,
            "parameters": dict(self.parameters),
            "max_age": self.max_age or 0,
        }


def _env_flag(name: str) -> bool:
    return str(os.getenv(name, "") or "").strip().lower() in {"1", "true", "yes"}


@dataclass
class RedashConfig:
    base_url: str
    api_key: str
    http_timeout: tuple[float, float] = _DEFAULT_HTTP_TIMEOUT
    verify_tls: bool = True
    retry: bool = True
    max_retry: int = _DEFAULT_MAX_RETRY
    backoff_max_s: float = _DEFAULT_BACKOFF_MAX_S
    poll_interval_s: float = _DEFAULT_POLL_INTERVAL_S
    timeout_s: float = _DEFAULT_TIMEOUT_S

    def __post_init__(self):
        self.base_url = str(self.base_url or "").strip().rstrip("/")
        self.api_key = str(self.api_key or "").strip()
        if not self.base_url or not self.api_key:
            raise ValueError("REDASH_URL and REDASH_API_KEY must be provided (flags, env or .env)")
        if not self.base_url.startswith(("https://", "http://")):
            raise ValueError(f"REDASH_URL must be an http(s) URL: {self.base_url!r}")

    @classmethod
    def from_env(cls, **overrides) -> "RedashConfig":
        """Build a config from the environment (and a `.env` file), then apply non-None overrides."""
        load_dotenv()
        values: dict[str, Any] = {
            "base_url": os.getenv("REDASH_URL", ""),
            "api_key": os.getenv("REDASH_API_KEY", ""),
        }
        raw_timeout = str(os.getenv("REDASH_TIMEOUT", "") or "").strip()
        if raw_timeout:
            # Milliseconds, applied to the read timeout.
            try:
                read_s = float(raw_timeout) / 1000.0
            except ValueError:
                raise ValueError(f"REDASH_TIMEOUT must be milliseconds: {raw_timeout!r}") from None
            if read_s <= 0:
                raise ValueError("REDASH_TIMEOUT must be > 0")
            values["http_timeout"] = (_DEFAULT_HTTP_TIMEOUT[0], read_s)
        if _env_flag("REDASH_IGNORE_SSL_ERRORS"):
            values["verify_tls"] = False
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class RedashClient:
    def __init__(self, config: RedashConfig, session=None):
        self.config = config
        self._session = session if session is not None else requests.Session()
        self._headers = {
            "Authorization": f"Key {config.api_key}",
            "Content-Type": "application/json",
        }

    # -- transport -----------------------------------------------------------------

    def _request(self, method: str, path: str, *, json_body=None, params=None, deadline=None):
        """Perform one API call and return the decoded JSON body.

        Only idempotent GETs are retried, and only when no response arrived at all.
        `deadline` is a `time.monotonic()` value retries must not sleep past; once the next
        backoff would cross it, the remaining time is waited out and the transport error raised.
        """
        method = method.upper()
        url = f"{self.config.base_url}{path}"
        attempts = max(int(self.config.max_retry or 1), 1) if (self.config.retry and method == "GET") else 1

        for attempt in range(1, attempts + 1):
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    json=json_body,
                    params=params,
                    timeout=self.config.http_timeout,
                    verify=self.config.verify_tls,
                )
            except requests.RequestException as e:
                if attempt < attempts:
                    backoff_max_s = self.config.backoff_max_s
                    sleep_s = min(2 ** (attempt - 1), 30.0 if backoff_max_s is None else float(backoff_max_s))
                    sleep_s += random.uniform(0, min(0.25, sleep_s / 4))
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if sleep_s >= remaining:
                            time.sleep(max(remaining, 0.0))
                            raise TransportError(method, path, e) from e
                    logging.warning(
                        redact_sensitive_text(
                            f"{method} {path} attempt {attempt}/{attempts} failed ({e}); retrying in {sleep_s:.2f}s"
                        )
                    )
                    time.sleep(sleep_s)
                    continue
                raise TransportError(method, path, e) from e

            if not resp.ok:
                body = str(getattr(resp, "text", "") or "")
                logging.debug(redact_sensitive_text(f"{method} {path} -> {resp.status_code}: {body[:500]}"))
                raise BackendError(method, path, int(resp.status_code), body)
            try:
                return resp.json()
            except ValueError as e:
                raise ProtocolViolationError(f"{method} {path} returned a non-JSON body: {e}") from e

    # -- execution -----------------------------------------------------------------

    def submit(self, request: ExecutionRequest, *, poll_interval_s=None, timeout_s=None) -> QueryResult:
        logging.debug(f"submitting query to {request.path}")
        payload = self._request("POST", request.path, json_body=request.to_payload())
        if not isinstance(payload, dict):
            raise ProtocolViolationError(f"execution response is not an object: {payload!r}")

        job = payload.get("job")
        if isinstance(job, dict):
            job_id = job.get("id")
            if job_id in (None, ""):
                raise ProtocolViolationError("execution response has a job without an id")
            logging.info(f"query queued as job {job_id}")
            return self.poll_job(
                str(job_id),
                poll_interval_s=self.config.poll_interval_s if poll_interval_s is None else poll_interval_s,
                timeout_s=self.config.timeout_s if timeout_s is None else timeout_s,
            )
        if isinstance(payload.get("query_result"), dict) or isinstance(payload.get("data"), dict):
            return QueryResult.from_payload(payload)
        raise ProtocolViolationError(
            f"execution response has neither a job nor a query result: keys={sorted(payload)}"
        )

    def execute_query(self, query_text: str, data_source_id: int, parameters=None, max_age: int = 0, **kwargs):
        req = ExecutionRequest(
            query_text=query_text,
            data_source_id=data_source_id,
            parameters=parameters or {},
            max_age=max_age,
        )
        return self.submit(req, **kwargs)

    def execute_saved_query(self, query_id: int, parameters=None, max_age=None, **kwargs):
        req = ExecutionRequest(saved_query_id=query_id, parameters=parameters or {}, max_age=max_age)
        return self.submit(req, **kwargs)

    def get_job(self, job_id: str, *, deadline=None) -> Job:
        return Job.from_payload(self._request("GET", f"/api/jobs/{job_id}", deadline=deadline))

    def poll_job(
        self,
        job_id: str,
        poll_interval_s: float = _DEFAULT_POLL_INTERVAL_S,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
    ) -> QueryResult:
        if poll_interval_s < 0:
            raise ValueError("poll_interval_s must be >= 0")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

        started = time.monotonic()
        last_status = None
        polls = 0
        while True:
            elapsed = time.monotonic() - started
            if elapsed >= timeout_s:
                logging.error(f"job {job_id} timed out after {polls} polls")
                raise QueryTimeoutError(job_id, elapsed, timeout_s, last_status)

            try:
                job = self.get_job(job_id, deadline=started + timeout_s)
            except TransportError as e:
                elapsed = time.monotonic() - started
                if elapsed >= timeout_s:
                    logging.error(f"job {job_id} timed out after {polls} polls")
                    raise QueryTimeoutError(job_id, elapsed, timeout_s, last_status) from e
                raise
            polls += 1
            last_status = job.status

            if job.status == JobStatus.SUCCESS:
                if not job.result_id:
                    raise ProtocolViolationError(
                        f"job {job_id} completed but no query_result_id was provided"
                    )
                logging.info(f"job {job_id} completed; fetching query result {job.result_id}")
                return self.fetch_query_result(job.result_id)
            if job.status == JobStatus.FAILURE:
                logging.error(redact_sensitive_text(f"job {job_id} failed: {job.error}"))
                raise JobFailedError(job_id, job.error if job.error is not None else "")

            logging.debug(f"job {job_id} status: {job.status}, continuing to poll...")
            remaining = timeout_s - (time.monotonic() - started)
            time.sleep(max(min(poll_interval_s, remaining), 0.0))

    def fetch_query_result(self, result_id) -> QueryResult:
        return QueryResult.from_payload(self._request("GET", f"/api/query_results/{result_id}"))

    # -- single round-trip reads ----------------------------------------------------

    def list_data_sources(self) -> list:
        payload = self._request("GET", "/api/data_sources")
        if not isinstance(payload, list):
            raise ProtocolViolationError("data sources response is not a list")
        return payload

    def get_query(self, query_id: int) -> dict:
        return self._request("GET", f"/api/queries/{query_id}")

    def list_queries(self, page: int = 1, page_size: int = 25, search: str | None = None) -> dict:
        params = {"page": page, "page_size": page_size}
        if search:
            params["q"] = search
        payload = self._request("GET", "/api/queries", params=params)
        if not isinstance(payload, dict):
            raise ProtocolViolationError("queries response is not an object")
        return {
            "count": payload.get("count"),
            "page": payload.get("page"),
            "page_size": payload.get("page_size"),
            "results": payload.get("results") or [],
        }

    def list_dashboards(self, page: int = 1, page_size: int = 25) -> dict:
        payload = self._request("GET", "/api/dashboards", params={"page": page, "page_size": page_size})
        if not isinstance(payload, dict):
            raise ProtocolViolationError("dashboards response is not an object")
        return {
            "count": payload.get("count"),
            "page": payload.get("page"),
            "page_size": payload.get("page_size"),
            "results": payload.get("results") or [],
        }

    def get_dashboard(self, slug_or_id) -> dict:
        """Dashboard with its widgets, addressed by slug (older servers) or numeric id."""
        return self._request("GET", f"/api/dashboards/{slug_or_id}")

    def get_visualization(self, visualization_id: int) -> dict:
        return self._request("GET", f"/api/visualizations/{visualization_id}")
