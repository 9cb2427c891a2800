from __future__ import annotations

import logging
import re
import threading
from time import time
from typing import Any, Callable, Mapping, Optional, Sequence

import clickhouse_connect
from clickhouse_connect.driver.exceptions import OperationalError

from .errors import NodeUnreachableError

_logger = logging.getLogger("chexplorer.connection")

# Detect statements that mutate data or metadata so we can guard read-only sessions.
_MUTATING_RE = re.compile(
    r"^\s*(ALTER|ATTACH|DETACH|DROP|TRUNCATE|RENAME|"
    r"INSERT|UPDATE|DELETE|REPLACE|OPTIMIZE|SYSTEM|"
    r"CREATE|KILL)\b",
    re.IGNORECASE | re.DOTALL,
)


def is_mutating(sql: str) -> bool:
    """Return True when the statement mutates ClickHouse state."""
    return bool(_MUTATING_RE.match(sql or ""))


class NodeConnection:
    """
    Connection to one physical ClickHouse node on top of ``clickhouse_connect``:

    * lazy, thread-safe client initialisation (one client per node, shared by requests)
    * structured logging for every statement and insert
    * a single choke point for enforcing read-only sessions
    * connection failures surfaced as :class:`NodeUnreachableError`
    """

    def __init__(
        self,
        name: str,
        host: str,
        *,
        port: int = 8123,
        user: str = "default",
        password: str = "",
        read_only: bool = False,
        secure: bool = False,
        verify: bool = False,
        query_timeout: int = 30,
        log_sql_text: bool = True,
        log_sql_truncate: int = 4000,
        client_factory: Callable[
            ..., clickhouse_connect.driver.client.Client
        ] = clickhouse_connect.get_client,
    ) -> None:
        self.name = name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.read_only = read_only
        self.secure = secure
        self.verify = verify
        self.query_timeout = query_timeout
        self.log_sql_text = log_sql_text
        self.log_sql_truncate = (
            log_sql_truncate if log_sql_truncate and log_sql_truncate > 0 else 4000
        )
        self._client_factory = client_factory
        self._client: Optional[clickhouse_connect.driver.client.Client] = None
        self._lock = threading.Lock()

        if not _logger.handlers:
            logging.basicConfig(
                level=logging.INFO,
                format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            )

    # ----------------------- connection management -----------------------
    @property
    def client(self) -> clickhouse_connect.driver.client.Client:
        with self._lock:
            if self._client is None:
                settings: dict[str, Any] = {"max_execution_time": self.query_timeout}
                if self.read_only:
                    settings["readonly"] = 1

                _logger.info(
                    "Establishing connection | node=%s host=%s:%s user=%s secure=%s "
                    "verify=%s read_only=%s",
                    self.name,
                    self.host,
                    self.port,
                    self.user,
                    self.secure,
                    self.verify,
                    self.read_only,
                )
                try:
                    self._client = self._client_factory(
                        host=self.host,
                        port=self.port,
                        username=self.user,
                        password=self.password,
                        secure=self.secure,
                        verify=self.verify,
                        settings=settings,
                        connect_timeout=min(self.query_timeout, 10),
                        send_receive_timeout=self.query_timeout,
                        autogenerate_session_id=False,
                    )
                except OperationalError as exc:
                    _logger.error("Connection failed | node=%s | error=%s", self.name, exc)
                    raise NodeUnreachableError(self.name, str(exc)) from exc
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                _logger.info("Closing connection | node=%s", self.name)
                self._client.close()
                self._client = None

    # ---------------------------- execution ------------------------------
    def _display(self, sql: str) -> str:
        if len(sql) <= self.log_sql_truncate:
            return sql
        return sql[: self.log_sql_truncate] + " ... [truncated]"

    def _execute_logged(
        self, sql: str, *, parameters: Optional[Mapping[str, Any]] = None
    ):
        trimmed = (sql or "").strip()
        mutating = is_mutating(trimmed)
        kind = "MUTATION" if mutating else "QUERY"

        if self.log_sql_text:
            _logger.info(
                "%s | node=%s | len=%d | sql=%s",
                kind,
                self.name,
                len(trimmed),
                self._display(trimmed),
            )
        else:
            _logger.info("%s | node=%s | len=%d", kind, self.name, len(trimmed))

        if mutating and self.read_only:
            _logger.error("Mutating statement denied on read-only node=%s", self.name)
            raise PermissionError("Mutating statement on read-only node session")

        start = time()
        try:
            if mutating:
                self.client.command(trimmed, parameters=parameters)
                _logger.info(
                    "MUTATION OK | node=%s | elapsed=%.3fs", self.name, time() - start
                )
                return None
            result = self.client.query(trimmed, parameters=parameters)
            _logger.info(
                "QUERY OK | node=%s | rows=%d | elapsed=%.3fs",
                self.name,
                len(result.result_rows),
                time() - start,
            )
            return result
        except OperationalError as exc:
            _logger.warning(
                "%s UNREACHABLE | node=%s | elapsed=%.3fs | error=%s",
                kind,
                self.name,
                time() - start,
                exc,
            )
            raise NodeUnreachableError(self.name, str(exc)) from exc
        except Exception as exc:
            _logger.exception(
                "%s FAILED | node=%s | elapsed=%.3fs | error=%s",
                kind,
                self.name,
                time() - start,
                exc,
            )
            raise

    def query(self, sql: str, *, parameters: Optional[Mapping[str, Any]] = None):
        """Execute SQL and return rows (or None for mutation statements)."""
        result = self._execute_logged(sql, parameters=parameters)
        return None if result is None else result.result_rows

    def query_records(
        self, sql: str, *, parameters: Optional[Mapping[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Execute a SELECT and return rows as dictionaries keyed by column name."""
        result = self._execute_logged(sql, parameters=parameters)
        if result is None:
            return []
        return [dict(zip(result.column_names, row)) for row in result.result_rows]

    def query_scalar(self, sql: str, *, parameters: Optional[Mapping[str, Any]] = None):
        rows = self.query(sql, parameters=parameters)
        if not rows:
            return None
        return rows[0][0]

    def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Insert dictionaries into ``table`` (``db.table``); all rows must share the same keys.

        Returns the number of rows written.
        """
        if not rows:
            return 0
        if self.read_only:
            _logger.error("Insert denied on read-only node=%s", self.name)
            raise PermissionError("Insert on read-only node session")

        column_names = list(rows[0].keys())
        data = [[row[column] for column in column_names] for row in rows]
        _logger.info(
            "INSERT | node=%s | table=%s | rows=%d | columns=%s",
            self.name,
            table,
            len(data),
            column_names,
        )

        start = time()
        try:
            self.client.insert(
                table,
                data,
                column_names=column_names,
                settings=dict(settings or {}),
            )
        except OperationalError as exc:
            _logger.warning(
                "INSERT UNREACHABLE | node=%s | elapsed=%.3fs | error=%s",
                self.name,
                time() - start,
                exc,
            )
            raise NodeUnreachableError(self.name, str(exc)) from exc
        except Exception as exc:
            _logger.exception(
                "INSERT FAILED | node=%s | elapsed=%.3fs | error=%s",
                self.name,
                time() - start,
                exc,
            )
            raise
        _logger.info(
            "INSERT OK | node=%s | rows=%d | elapsed=%.3fs",
            self.name,
            len(data),
            time() - start,
        )
        return len(data)

    def ping(self) -> bool:
        return bool(self.client.ping())

    # ------------------------------ misc ---------------------------------
    def __repr__(self) -> str:  # pragma: no cover - trivial
        mode = "read-only" if self.read_only else "read-write"
        return f"<NodeConnection {self.name} {self.user}@{self.host}:{self.port} ({mode})>"
