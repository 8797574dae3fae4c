"""
In-memory stand-in for a DB-API driver connection, used instead of
psycopg/pymysql in unit tests.

FakeConnection records every statement it sees. ``responses`` maps a SQL
prefix (upper-cased) to rows or to an exception instance to raise.
"""

import threading
from typing import Any


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self.description: list[tuple[str, Any]] | None = None
        self.rowcount = -1
        self.statusmessage: str | None = None
        self._rows: list[tuple] = []
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        if self._conn.closed:
            raise ConnectionError("connection is closed")
        self._conn.executed.append((sql, params))
        if self._conn.delay is not None:
            self._conn.delay.wait()
        key = sql.strip().upper()
        for prefix, response in self._conn.responses.items():
            if key.startswith(prefix):
                if isinstance(response, BaseException):
                    raise response
                self._set_rows(response)
                break
        else:
            self._set_rows(None)
        self.statusmessage = key.split()[0] if key else ""

    def _set_rows(self, rows: list[dict[str, Any]] | None) -> None:
        if not rows:
            self.description = None
            self._rows = []
            self.rowcount = 0
            return
        names = list(rows[0])
        self.description = [(n, None) for n in names]
        self._rows = [tuple(r[n] for n in names) for r in rows]
        self.rowcount = len(self._rows)

    def fetchall(self) -> list[tuple]:
        rows, self._rows = self._rows, []
        return rows

    def fetchone(self) -> tuple | None:
        return self._rows.pop(0) if self._rows else None

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = responses if responses is not None else {}
        self.executed: list[tuple[str, Any]] = []
        self.closed = False
        self.rollbacks = 0
        self.delay: threading.Event | None = None

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def rollback(self) -> None:
        if self.closed:
            raise ConnectionError("connection is closed")
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True

    def statements(self) -> list[str]:
        return [sql for sql, _ in self.executed]


class FakeDriver:
    """Callable connect_fn producing FakeConnections; keeps every one it made."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.connections: list[FakeConnection] = []
        self.fail_with: BaseException | None = None
        self._lock = threading.Lock()

    def __call__(self) -> FakeConnection:
        if self.fail_with is not None:
            raise self.fail_with
        conn = FakeConnection(self.responses)
        with self._lock:
            self.connections.append(conn)
        return conn

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if not c.closed]
